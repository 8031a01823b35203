from sqlalchemy import Column, Integer, String, Text, DateTime
from ..database import Base, utcnow
from .enums import UserRole, enum_column_type

class User(Base):
    """
    리소스를 소유하는 사용자를 나타냅니다.
    role이 admin인 사용자의 요청은 ADMIN_ID로 처리되어 소유자 범위 검사를 건너뜁니다.
    """
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=False, default="")
    role = Column(enum_column_type(UserRole), nullable=False, default=UserRole.USER)
    public_ssh_key = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
