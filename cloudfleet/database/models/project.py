from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, UniqueConstraint
from ..database import Base, utcnow

class Project(Base):
    """
    소유자(owner) 단위로 격리된 작업 공간을 나타냅니다.
    모든 Task와 Instance는 하나의 Project에 소속됩니다.
    프로젝트 이름은 같은 소유자 안에서만 고유하면 됩니다.
    """
    __tablename__ = "projects"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_projects_owner_name"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
