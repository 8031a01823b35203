from typing import List, Optional, Sequence, Dict, Any
from sqlalchemy import or_, select
from cloudfleet.database import models
from cloudfleet.database.models import ADMIN_ID, InstanceStatus, PayloadStatus
from cloudfleet.database.database import utcnow
from cloudfleet.repositories.interfaces import IInstanceRepository

class SqlalchemyInstanceRepository(IInstanceRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_by_id(self, instance_id: int) -> Optional[models.Instance]:
        with self.session_factory() as db:
            return db.query(models.Instance).filter(models.Instance.id == instance_id).first()

    def find_by_ids(self, instance_ids: Sequence[int]) -> List[models.Instance]:
        if not instance_ids:
            return []
        with self.session_factory() as db:
            return db.query(models.Instance).filter(
                models.Instance.id.in_(list(instance_ids))
            ).order_by(models.Instance.id.asc()).all()

    def find_active_by_name(self, project_id: int, name: str) -> Optional[models.Instance]:
        with self.session_factory() as db:
            return db.query(models.Instance).filter(
                models.Instance.project_id == project_id,
                models.Instance.name == name,
                models.Instance.status != InstanceStatus.TERMINATED
            ).order_by(models.Instance.id.desc()).first()

    def list_by_owner(self, owner_id: int, include_terminated: bool = False,
                      limit: int = 100, offset: int = 0) -> List[models.Instance]:
        with self.session_factory() as db:
            query = db.query(models.Instance)
            if owner_id != ADMIN_ID:
                query = query.filter(models.Instance.owner_id == owner_id)
            if not include_terminated:
                query = query.filter(models.Instance.status != InstanceStatus.TERMINATED)
            return query.order_by(models.Instance.id.asc()).offset(offset).limit(limit).all()

    def list_by_project(self, project_id: int, include_terminated: bool = False) -> List[models.Instance]:
        with self.session_factory() as db:
            query = db.query(models.Instance).filter(models.Instance.project_id == project_id)
            if not include_terminated:
                query = query.filter(models.Instance.status != InstanceStatus.TERMINATED)
            return query.order_by(models.Instance.id.asc()).all()

    def count_active_by_project(self, project_id: int) -> int:
        with self.session_factory() as db:
            return db.query(models.Instance).filter(
                models.Instance.project_id == project_id,
                models.Instance.status != InstanceStatus.TERMINATED
            ).count()

    def update_status(self, instance_id: int, expected: Sequence[InstanceStatus],
                      new_status: InstanceStatus, fields: Optional[Dict[str, Any]] = None) -> bool:
        values = dict(fields or {})
        values["status"] = new_status
        with self.session_factory() as db:
            updated = db.query(models.Instance).filter(
                models.Instance.id == instance_id,
                models.Instance.status.in_(list(expected))
            ).update(values, synchronize_session=False)
            db.commit()
            return updated == 1

    def update_payload_status(self, instance_id: int, expected: Sequence[PayloadStatus],
                              new_status: PayloadStatus) -> bool:
        with self.session_factory() as db:
            updated = db.query(models.Instance).filter(
                models.Instance.id == instance_id,
                models.Instance.status == InstanceStatus.READY,
                models.Instance.payload_status.in_(list(expected))
            ).update({"payload_status": new_status}, synchronize_session=False)
            db.commit()
            return updated == 1

    def update_fields(self, instance_id: int, fields: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.query(models.Instance).filter(models.Instance.id == instance_id).update(
                dict(fields), synchronize_session=False
            )
            db.commit()

    def claim(self, instance_ids: Sequence[int], task_id: int) -> bool:
        ids = list(set(instance_ids))
        if not ids:
            return True
        # 점유는 소유 태스크의 잠금이 살아 있는 동안 유지됩니다. 태스크 상태와는 무관합니다.
        unlocked_tasks = select(models.Task.id).where(
            or_(models.Task.locked_at.is_(None), models.Task.lock_expiry < utcnow())
        )
        with self.session_factory() as db:
            claimed = db.query(models.Instance).filter(
                models.Instance.id.in_(ids),
                or_(
                    models.Instance.locked_by_task_id.is_(None),
                    models.Instance.locked_by_task_id == task_id,
                    models.Instance.locked_by_task_id.in_(unlocked_tasks),
                )
            ).update({"locked_by_task_id": task_id}, synchronize_session=False)
            if claimed != len(ids):
                # 하나라도 다른 활성 태스크가 잡고 있으면 전부 되돌립니다.
                db.rollback()
                return False
            db.commit()
            return True

    def release(self, instance_ids: Sequence[int], task_id: int) -> None:
        ids = list(instance_ids)
        if not ids:
            return
        with self.session_factory() as db:
            db.query(models.Instance).filter(
                models.Instance.id.in_(ids),
                models.Instance.locked_by_task_id == task_id
            ).update({"locked_by_task_id": None}, synchronize_session=False)
            db.commit()
