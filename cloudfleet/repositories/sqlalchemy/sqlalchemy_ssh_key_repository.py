from typing import List, Optional
from cloudfleet.database import models
from cloudfleet.repositories.interfaces import ISSHKeyRepository

class SqlalchemySSHKeyRepository(ISSHKeyRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, key_model: models.SSHKey) -> models.SSHKey:
        with self.session_factory() as db:
            db.add(key_model)
            db.commit()
            db.refresh(key_model)
            return key_model

    def find_by_name(self, owner_id: int, name: str) -> Optional[models.SSHKey]:
        with self.session_factory() as db:
            return db.query(models.SSHKey).filter(
                models.SSHKey.owner_id == owner_id,
                models.SSHKey.name == name
            ).first()

    def list_by_owner(self, owner_id: int) -> List[models.SSHKey]:
        with self.session_factory() as db:
            return db.query(models.SSHKey).filter(models.SSHKey.owner_id == owner_id).order_by(models.SSHKey.name.asc()).all()

    def delete(self, key: models.SSHKey) -> bool:
        with self.session_factory() as db:
            deleted = db.query(models.SSHKey).filter(models.SSHKey.id == key.id).delete(synchronize_session=False)
            db.commit()
            return deleted > 0
