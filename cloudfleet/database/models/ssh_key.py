from sqlalchemy import Column, Integer, String, Text, DateTime, UniqueConstraint
from ..database import Base, utcnow

class SSHKey(Base):
    """인스턴스 생성 요청에서 이름으로 참조하는 사용자 SSH 공개 키."""
    __tablename__ = "ssh_keys"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_ssh_keys_owner_name"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    public_key = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
