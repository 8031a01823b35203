from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, ForeignKey
from ..database import Base, utcnow
from .enums import InstanceStatus, PayloadStatus, ProviderID, enum_column_type

class Instance(Base):
    """
    프로바이더 위에서 수명 주기가 관리되는 하나의 가상 머신을 나타냅니다.

    status(프로비저닝 단계)와 payload_status(페이로드 배포 단계)는 독립된 축입니다.
    레코드는 물리적으로 삭제되지 않고 terminated 상태로 남습니다.
    last_task_id는 감사용 역참조이고, locked_by_task_id는 현재 이 인스턴스를
    변경할 수 있는 유일한 태스크를 가리킵니다.
    """
    __tablename__ = "instances"
    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    last_task_id = Column(Integer, nullable=True)
    locked_by_task_id = Column(Integer, nullable=True, index=True)

    provider_id = Column(enum_column_type(ProviderID), nullable=False)
    provider_instance_id = Column(String, nullable=False, default="")
    name = Column(String, nullable=False, index=True)
    status = Column(enum_column_type(InstanceStatus), nullable=False, default=InstanceStatus.PENDING, index=True)
    payload_status = Column(enum_column_type(PayloadStatus), nullable=False, default=PayloadStatus.NONE)

    public_ip = Column(String, nullable=False, default="")
    region = Column(String, nullable=False, default="")
    size = Column(String, nullable=False, default="")
    image = Column(String, nullable=False, default="")
    cpu = Column(Integer, nullable=True)
    memory_mb = Column(Integer, nullable=True)
    disk_gb = Column(Integer, nullable=True)
    hypervisor_id = Column(String, nullable=True)
    network_profile_id = Column(String, nullable=True)
    ssh_key_name = Column(String, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    volume_ids = Column(JSON, nullable=False, default=list)
    volume_details = Column(JSON, nullable=False, default=list)

    payload_path = Column(String, nullable=False, default="")
    execute_payload = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def has_payload(self) -> bool:
        return bool(self.payload_path)
