from typing import List, Optional
from cloudfleet.database import models
from cloudfleet.database.models import ADMIN_ID
from cloudfleet.repositories.interfaces import IProjectRepository

class SqlalchemyProjectRepository(IProjectRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, project_model: models.Project) -> models.Project:
        with self.session_factory() as db:
            db.add(project_model)
            db.commit()
            db.refresh(project_model)
            return project_model

    def find_by_id(self, project_id: int) -> Optional[models.Project]:
        with self.session_factory() as db:
            return db.query(models.Project).filter(models.Project.id == project_id).first()

    def find_by_name(self, owner_id: int, name: str) -> Optional[models.Project]:
        with self.session_factory() as db:
            query = db.query(models.Project).filter(models.Project.name == name)
            if owner_id != ADMIN_ID:
                query = query.filter(models.Project.owner_id == owner_id)
            return query.order_by(models.Project.id.asc()).first()

    def list_by_owner(self, owner_id: int, limit: int = 100, offset: int = 0) -> List[models.Project]:
        with self.session_factory() as db:
            query = db.query(models.Project)
            if owner_id != ADMIN_ID:
                query = query.filter(models.Project.owner_id == owner_id)
            return query.order_by(models.Project.name.asc()).offset(offset).limit(limit).all()

    def delete(self, project: models.Project) -> bool:
        with self.session_factory() as db:
            deleted = db.query(models.Project).filter(models.Project.id == project.id).delete(synchronize_session=False)
            db.commit()
            return deleted > 0
