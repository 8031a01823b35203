import threading
import uuid
from typing import Dict, List, Optional

from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import (
    CreateServerRequest,
    Hypervisor,
    NetworkProfile,
    ProviderAdapter,
    ServerInfo,
    ServerState,
    VolumeSpec,
)
from cloudfleet.providers.hypervisor import select_hypervisor, select_network_profile
from cloudfleet.services.exceptions import ProviderError, ProviderNotFoundError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

DEFAULT_MOCK_IP = "192.168.1.100"


class _MockServer:
    def __init__(self, server_id: str, request: CreateServerRequest, polls_until_ready: int, network_id: str,
                 volume_ids: List[str]):
        self.id = server_id
        self.request = request
        self.remaining_polls = polls_until_ready
        self.state = ServerState.PROVISIONING
        self.network_id = network_id
        self.volume_ids = volume_ids


class MockProvider(ProviderAdapter):
    """
    메모리 안에서 동작하는 테스트용 프로바이더.

    실패 주입:
        fail_create_names: 이 이름의 서버 생성은 영구 실패합니다.
        transient_failures: 연산 이름 -> 남은 일시적 실패 횟수.
        polls_until_ready: get_server를 몇 번 호출해야 ready가 되는지.
    """

    provider_id = "mock"

    def __init__(self, polls_until_ready: int = 1, public_ip: str = DEFAULT_MOCK_IP,
                 hypervisors: Optional[List[Hypervisor]] = None, default_hypervisor_id: Optional[str] = None):
        self._lock = threading.Lock()
        self._servers: Dict[str, _MockServer] = {}
        self.polls_until_ready = polls_until_ready
        self.public_ip = public_ip
        self.hypervisors = hypervisors if hypervisors is not None else [
            Hypervisor(id="1", name="mock-hv-1", region="mock-region",
                       networks=[NetworkProfile(id="10", name="public", primary=True, default=True)]),
        ]
        self.default_hypervisor_id = default_hypervisor_id or (self.hypervisors[0].id if self.hypervisors else None)
        self.fail_create_names = set()
        self.transient_failures: Dict[str, int] = {}
        self.calls: List[str] = []
        self.volumes: Dict[str, VolumeSpec] = {}

    def _record(self, operation: str):
        self.calls.append(operation)
        remaining = self.transient_failures.get(operation, 0)
        if remaining > 0:
            self.transient_failures[operation] = remaining - 1
            raise ProviderError(f"mock transient failure in {operation}", retryable=True)

    def connect(self, ctx: CallContext) -> None:
        ctx.check("connect")

    def list_regions(self, ctx: CallContext) -> List[Hypervisor]:
        ctx.check("list_regions")
        with self._lock:
            self._record("list_regions")
            return list(self.hypervisors)

    def create_server(self, ctx: CallContext, request: CreateServerRequest) -> ServerInfo:
        ctx.check("create_server")
        with self._lock:
            self._record("create_server")
            if request.name in self.fail_create_names:
                raise ProviderError(f"mock refused to create '{request.name}'", retryable=False)

        # 네트워크 선택 규칙은 실제 하이퍼바이저 프로바이더와 같습니다.
        hypervisor = select_hypervisor(self.hypervisors, request.hypervisor_id, self.default_hypervisor_id)
        network = select_network_profile(hypervisor, request.network_profile_id)

        with self._lock:
            server_id = f"mock-{uuid.uuid4().hex[:12]}"
            volume_ids = []
            for volume in request.volumes:
                volume_id = f"vol-{uuid.uuid4().hex[:12]}"
                self.volumes[volume_id] = volume
                volume_ids.append(volume_id)
            self._servers[server_id] = _MockServer(server_id, request, self.polls_until_ready, network.id, volume_ids)
        logger.debug("mock_server_created", server_id=server_id, name=request.name, volume_ids=volume_ids)
        return ServerInfo(provider_instance_id=server_id, state=ServerState.PROVISIONING,
                          metadata={"hypervisor_id": hypervisor.id, "network_id": network.id},
                          volume_ids=list(volume_ids))

    def get_server(self, ctx: CallContext, provider_instance_id: str) -> ServerInfo:
        ctx.check("get_server")
        with self._lock:
            self._record("get_server")
            server = self._servers.get(provider_instance_id)
            if server is None:
                raise ProviderNotFoundError(f"server '{provider_instance_id}' not found")
            if server.state == ServerState.PROVISIONING:
                server.remaining_polls -= 1
                if server.remaining_polls <= 0:
                    server.state = ServerState.READY
            public_ip = self.public_ip if server.state in (ServerState.READY, ServerState.SUSPENDED) else ""
            return ServerInfo(provider_instance_id=server.id, state=server.state, public_ip=public_ip,
                              metadata={"network_id": server.network_id}, volume_ids=list(server.volume_ids))

    def delete_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        ctx.check("delete_server")
        with self._lock:
            self._record("delete_server")
            server = self._servers.pop(provider_instance_id, None)
            if server is None:
                raise ProviderNotFoundError(f"server '{provider_instance_id}' not found")
            for volume_id in server.volume_ids:
                self.volumes.pop(volume_id, None)

    def suspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self._set_state(ctx, "suspend_server", provider_instance_id, ServerState.SUSPENDED)

    def unsuspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self._set_state(ctx, "unsuspend_server", provider_instance_id, ServerState.READY)

    def _set_state(self, ctx: CallContext, operation: str, provider_instance_id: str, state: ServerState):
        ctx.check(operation)
        with self._lock:
            self._record(operation)
            server = self._servers.get(provider_instance_id)
            if server is None:
                raise ProviderNotFoundError(f"server '{provider_instance_id}' not found")
            server.state = state

    def server_ids(self) -> List[str]:
        with self._lock:
            return list(self._servers)
