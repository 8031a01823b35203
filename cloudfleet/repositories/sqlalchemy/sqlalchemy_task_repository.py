from datetime import timedelta
from typing import List, Optional, Sequence, Dict, Any
from sqlalchemy import or_
from cloudfleet.database import models
from cloudfleet.database.database import utcnow
from cloudfleet.database.models import TaskStatus, TaskAction, TaskPriority
from cloudfleet.database.models.enums import ACTIVE_TASK_STATUSES
from cloudfleet.repositories.interfaces import ITaskRepository

class SqlalchemyTaskRepository(ITaskRepository):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create_with_targets(self, task: models.Task, new_instances: Sequence[models.Instance],
                            existing_instance_ids: Sequence[int] = ()) -> models.Task:
        with self.session_factory() as db:
            try:
                db.add(task)
                db.flush()  # task.id 할당

                for instance in new_instances:
                    instance.last_task_id = task.id
                    db.add(instance)
                db.flush()

                target_ids = [i.id for i in new_instances] + list(existing_instance_ids)
                if existing_instance_ids:
                    db.query(models.Instance).filter(
                        models.Instance.id.in_(list(existing_instance_ids))
                    ).update({"last_task_id": task.id}, synchronize_session=False)
                for instance_id in target_ids:
                    db.add(models.TaskInstance(task_id=task.id, instance_id=instance_id))

                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(task)
            for instance in new_instances:
                db.refresh(instance)
            return task

    def find_by_id(self, task_id: int) -> Optional[models.Task]:
        with self.session_factory() as db:
            return db.query(models.Task).filter(models.Task.id == task_id).first()

    def list_by_project(self, project_id: int, limit: int = 100, offset: int = 0) -> List[models.Task]:
        with self.session_factory() as db:
            return db.query(models.Task).filter(
                models.Task.project_id == project_id
            ).order_by(models.Task.created_at.desc(), models.Task.id.desc()).offset(offset).limit(limit).all()

    def list_by_instance(self, instance_id: int, action: Optional[TaskAction] = None,
                         limit: int = 20, offset: int = 0) -> List[models.Task]:
        with self.session_factory() as db:
            query = db.query(models.Task).join(
                models.TaskInstance, models.TaskInstance.task_id == models.Task.id
            ).filter(models.TaskInstance.instance_id == instance_id)
            if action is not None:
                query = query.filter(models.Task.action == action)
            return query.order_by(models.Task.created_at.desc(), models.Task.id.desc()).offset(offset).limit(limit).all()

    def get_instance_ids(self, task_id: int) -> List[int]:
        with self.session_factory() as db:
            rows = db.query(models.TaskInstance.instance_id).filter(
                models.TaskInstance.task_id == task_id
            ).order_by(models.TaskInstance.instance_id.asc()).all()
            return [row[0] for row in rows]

    def update_status(self, task_id: int, expected: Sequence[TaskStatus], new_status: TaskStatus,
                      fields: Optional[Dict[str, Any]] = None) -> bool:
        values = dict(fields or {})
        values["status"] = new_status
        with self.session_factory() as db:
            updated = db.query(models.Task).filter(
                models.Task.id == task_id,
                models.Task.status.in_(list(expected))
            ).update(values, synchronize_session=False)
            db.commit()
            return updated == 1

    def update_fields(self, task_id: int, fields: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.query(models.Task).filter(models.Task.id == task_id).update(dict(fields), synchronize_session=False)
            db.commit()

    def append_log(self, task_id: int, line: str) -> None:
        with self.session_factory() as db:
            db.query(models.Task).filter(models.Task.id == task_id).update(
                {"logs": models.Task.logs + line + "\n"}, synchronize_session=False
            )
            db.commit()

    def increment_attempts(self, task_id: int) -> int:
        with self.session_factory() as db:
            db.query(models.Task).filter(models.Task.id == task_id).update(
                {"attempts": models.Task.attempts + 1}, synchronize_session=False
            )
            db.commit()
            attempts = db.query(models.Task.attempts).filter(models.Task.id == task_id).scalar()
            return attempts or 0

    def acquire_lock(self, task_id: int, timeout_seconds: int) -> bool:
        now = utcnow()
        with self.session_factory() as db:
            updated = db.query(models.Task).filter(
                models.Task.id == task_id,
                or_(models.Task.locked_at.is_(None), models.Task.lock_expiry < now)
            ).update({
                "locked_at": now,
                "lock_expiry": now + timedelta(seconds=timeout_seconds),
            }, synchronize_session=False)
            db.commit()
            return updated == 1

    def release_lock(self, task_id: int) -> None:
        with self.session_factory() as db:
            db.query(models.Task).filter(models.Task.id == task_id).update(
                {"locked_at": None, "lock_expiry": None}, synchronize_session=False
            )
            db.commit()

    def extend_lock(self, task_id: int, timeout_seconds: int) -> bool:
        with self.session_factory() as db:
            updated = db.query(models.Task).filter(
                models.Task.id == task_id,
                models.Task.locked_at.isnot(None)
            ).update({"lock_expiry": utcnow() + timedelta(seconds=timeout_seconds)}, synchronize_session=False)
            db.commit()
            return updated == 1

    def get_schedulable(self, priority: TaskPriority, max_attempts: int, limit: int) -> List[models.Task]:
        now = utcnow()
        with self.session_factory() as db:
            return db.query(models.Task).filter(
                models.Task.priority == int(priority),
                models.Task.status.in_(list(ACTIVE_TASK_STATUSES)),
                models.Task.attempts <= max_attempts,
                or_(models.Task.locked_at.is_(None), models.Task.lock_expiry < now)
            ).order_by(models.Task.priority.asc(), models.Task.id.asc()).limit(limit).all()

    def recover_stale(self) -> int:
        now = utcnow()
        with self.session_factory() as db:
            recovered = db.query(models.Task).filter(
                models.Task.status == TaskStatus.RUNNING,
                models.Task.locked_at.isnot(None),
                models.Task.lock_expiry < now
            ).update({"locked_at": None, "lock_expiry": None}, synchronize_session=False)
            db.commit()
            return recovered

    def mark_webhook_sent(self, task_id: int) -> bool:
        with self.session_factory() as db:
            updated = db.query(models.Task).filter(
                models.Task.id == task_id,
                models.Task.webhook_sent.is_(False)
            ).update({"webhook_sent": True}, synchronize_session=False)
            db.commit()
            return updated == 1

    def clear_webhook_sent(self, task_id: int) -> None:
        with self.session_factory() as db:
            db.query(models.Task).filter(models.Task.id == task_id).update(
                {"webhook_sent": False}, synchronize_session=False
            )
            db.commit()
