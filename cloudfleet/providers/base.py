import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cloudfleet.utils.context import CallContext


class ServerState(str, enum.Enum):
    """프로바이더별 상태를 정규화한 값."""
    PENDING = "pending"
    PROVISIONING = "provisioning"
    CREATED = "created"
    READY = "ready"
    SUSPENDED = "suspended"
    DELETED = "deleted"
    ERROR = "error"


@dataclass
class Resources:
    cpu: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[int] = None


@dataclass
class VolumeSpec:
    name: str
    size_gb: int
    mount_point: str = ""
    filesystem: str = "ext4"


@dataclass
class CreateServerRequest:
    name: str
    image: str
    region: str = ""
    size: str = ""
    resources: Resources = field(default_factory=Resources)
    hypervisor_id: Optional[str] = None
    network_profile_id: Optional[str] = None
    ssh_public_keys: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    volumes: List[VolumeSpec] = field(default_factory=list)


@dataclass
class ServerInfo:
    provider_instance_id: str
    state: ServerState
    public_ip: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    volume_ids: List[str] = field(default_factory=list)


@dataclass
class NetworkProfile:
    id: str
    name: str = ""
    primary: bool = False
    default: bool = False


@dataclass
class Hypervisor:
    id: str
    name: str = ""
    region: str = ""
    enabled: bool = True
    networks: List[NetworkProfile] = field(default_factory=list)


class ProviderAdapter(ABC):
    """
    모든 클라우드/하이퍼바이저 백엔드가 구현하는 공통 계약.

    모든 호출은 CallContext를 받아 그 기한 안에서 끝나야 합니다.
    실패는 cloudfleet.services.exceptions의 ProviderError 계층으로 표현합니다.
        - 일시적 오류(네트워크, 레이트 리밋, 타임아웃): retryable=True
        - 인증 실패: ProviderAuthError (재시도하지 않음)
        - 리소스 없음: ProviderNotFoundError
    필수 설정이 없으면 생성자에서 ConfigurationError를 발생시켜야 합니다.
    """

    provider_id: str = ""

    @abstractmethod
    def connect(self, ctx: CallContext) -> None:
        """자격 증명을 검증합니다. 실패 시 ProviderAuthError."""
        pass

    @abstractmethod
    def list_regions(self, ctx: CallContext) -> List[Hypervisor]:
        """사용 가능한 리전/하이퍼바이저 목록을 조회합니다."""
        pass

    @abstractmethod
    def create_server(self, ctx: CallContext, request: CreateServerRequest) -> ServerInfo:
        """
        서버 생성을 요청하고, 프로바이더가 부여한 ID와 초기 상태를 반환합니다.
        서버가 ready가 될 때까지 기다리지 않습니다.
        """
        pass

    @abstractmethod
    def get_server(self, ctx: CallContext, provider_instance_id: str) -> ServerInfo:
        """서버 상태와 공인 IP를 조회합니다. 없으면 ProviderNotFoundError."""
        pass

    @abstractmethod
    def delete_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        """서버를 삭제합니다. 없으면 ProviderNotFoundError."""
        pass

    @abstractmethod
    def suspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        pass

    @abstractmethod
    def unsuspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        pass

    def close(self) -> None:
        """어댑터가 잡고 있는 연결을 정리합니다."""
        return None
