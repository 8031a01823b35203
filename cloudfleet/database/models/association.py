from sqlalchemy import Column, Integer, ForeignKey
from ..database import Base

class TaskInstance(Base):
    """
    Task와 Task가 대상으로 하는 Instance 사이의 다대다 관계를 연결하는 연관 테이블입니다.
    태스크 레코드와 같은 트랜잭션에서 함께 기록됩니다.
    """
    __tablename__ = 'task_instances'
    task_id = Column(Integer, ForeignKey('tasks.id'), primary_key=True)
    instance_id = Column(Integer, ForeignKey('instances.id'), primary_key=True)
