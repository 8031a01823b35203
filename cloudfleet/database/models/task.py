from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, JSON, ForeignKey
from ..database import Base, utcnow
from .enums import TaskStatus, TaskAction, TaskPriority, enum_column_type

class Task(Base):
    """
    하나의 생성/종료 요청을 비동기로 처리하기 위한 작업 기록입니다.

    요청이 접수되면 pending으로 저장되고, 워커가 running으로 바꾼 뒤
    대상 인스턴스들의 결과를 모아 completed/failed로 끝냅니다.
    terminate 요청을 받으면 terminated가 되며, 종료 상태에서는 더 이상 바뀌지 않습니다.

    locked_at/lock_expiry는 워커 간 중복 처리를 막는 잠금이고,
    attempts는 워커가 이 태스크를 집어든 횟수입니다.
    """
    __tablename__ = "tasks"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    action = Column(enum_column_type(TaskAction), nullable=False)
    status = Column(enum_column_type(TaskStatus), nullable=False, default=TaskStatus.PENDING, index=True)
    priority = Column(Integer, nullable=False, default=int(TaskPriority.LOW))
    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=False, default="")
    logs = Column(Text, nullable=False, default="")
    attempts = Column(Integer, nullable=False, default=0)
    webhook_url = Column(String, nullable=False, default="")
    webhook_sent = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)
    lock_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
