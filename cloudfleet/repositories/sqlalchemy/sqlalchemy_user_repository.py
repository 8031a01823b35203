from typing import List, Optional, Dict, Any
from cloudfleet.database import models
from cloudfleet.repositories.interfaces import IUserRepository

class SqlalchemyUserRepository(IUserRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, user_model: models.User) -> models.User:
        with self.session_factory() as db:
            db.add(user_model)
            db.commit()
            db.refresh(user_model)
            return user_model

    def find_by_id(self, user_id: int) -> Optional[models.User]:
        with self.session_factory() as db:
            return db.query(models.User).filter(models.User.id == user_id).first()

    def find_by_username(self, username: str) -> Optional[models.User]:
        with self.session_factory() as db:
            return db.query(models.User).filter(models.User.username == username).first()

    def list_all(self, limit: int = 100, offset: int = 0) -> List[models.User]:
        with self.session_factory() as db:
            return db.query(models.User).order_by(models.User.id.asc()).offset(offset).limit(limit).all()

    def update(self, user_id: int, fields: Dict[str, Any]) -> Optional[models.User]:
        with self.session_factory() as db:
            user = db.query(models.User).filter(models.User.id == user_id).first()
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            db.commit()
            db.refresh(user)
            return user

    def delete(self, user: models.User) -> bool:
        with self.session_factory() as db:
            deleted = db.query(models.User).filter(models.User.id == user.id).delete(synchronize_session=False)
            db.commit()
            return deleted > 0
