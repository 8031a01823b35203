from typing import Any, Dict, List, Optional

import httpx

from cloudfleet.config import VirtFusionSettings, load_provider_settings
from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import (
    CreateServerRequest,
    Hypervisor,
    NetworkProfile,
    ProviderAdapter,
    ServerInfo,
    ServerState,
)
from cloudfleet.providers.http_api import HttpApi
from cloudfleet.providers.hypervisor import select_hypervisor, select_network_profile
from cloudfleet.services.exceptions import ProviderError, ProviderNotFoundError, ProvisioningError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

# VirtFusion의 서버 상태 문자열 -> 정규화된 상태
_STATE_MAP = {
    "complete": ServerState.READY,
    "running": ServerState.READY,
    "active": ServerState.READY,
    "queued": ServerState.PROVISIONING,
    "pending": ServerState.PROVISIONING,
    "building": ServerState.PROVISIONING,
    "provisioning": ServerState.PROVISIONING,
    "created": ServerState.CREATED,
    "stopped": ServerState.CREATED,
    "suspended": ServerState.SUSPENDED,
    "deleted": ServerState.DELETED,
    "failed": ServerState.ERROR,
    "error": ServerState.ERROR,
}


class VirtFusionProvider(ProviderAdapter):
    """
    VirtFusion REST API 어댑터.

    VIRTFUSION_API_TOKEN, VIRTFUSION_HOST가 없으면 생성 시점에 ConfigurationError가 발생합니다.
    서버 생성은 두 단계입니다: POST /servers 로 서버를 만든 뒤 POST /servers/{id}/build 로
    OS를 설치합니다.
    """

    provider_id = "virtfusion"

    def __init__(self, settings: Optional[VirtFusionSettings] = None,
                 transport: Optional[httpx.BaseTransport] = None, default_timeout: float = 30.0):
        self.settings = settings or load_provider_settings(VirtFusionSettings, self.provider_id)
        base_url = f"{self.settings.host.rstrip('/')}/api/v1"
        self.api = HttpApi(base_url, self.settings.api_token, self.provider_id,
                           default_timeout=default_timeout, transport=transport)

    def connect(self, ctx: CallContext) -> None:
        self.api.request(ctx, "GET", "/connect")

    def list_regions(self, ctx: CallContext) -> List[Hypervisor]:
        data = self.api.request(ctx, "GET", "/compute/hypervisors")
        return [self._parse_hypervisor(item) for item in data.get("data", [])]

    def _get_hypervisor(self, ctx: CallContext, hypervisor_id: str) -> Hypervisor:
        data = self.api.request(ctx, "GET", f"/compute/hypervisors/{hypervisor_id}")
        return self._parse_hypervisor(data.get("data", {}))

    @staticmethod
    def _parse_hypervisor(item: Dict[str, Any]) -> Hypervisor:
        networks = [
            NetworkProfile(
                id=str(net.get("id")),
                name=net.get("bridge") or net.get("name") or "",
                primary=bool(net.get("primary")),
                default=bool(net.get("default")),
            )
            for net in item.get("networks") or []
        ]
        group = item.get("group") or {}
        return Hypervisor(
            id=str(item.get("id")),
            name=item.get("name", ""),
            region=group.get("name", ""),
            enabled=bool(item.get("enabled", True)) and not item.get("maintenance", False),
            networks=networks,
        )

    def create_server(self, ctx: CallContext, request: CreateServerRequest) -> ServerInfo:
        default_hv = str(self.settings.hypervisor_id) if self.settings.hypervisor_id is not None else None
        requested_hv = request.hypervisor_id or default_hv
        candidates = []
        if requested_hv:
            try:
                candidates.append(self._get_hypervisor(ctx, requested_hv))
            except ProviderNotFoundError as e:
                raise ProvisioningError(f"hypervisor '{requested_hv}' does not exist") from e
        hypervisor = select_hypervisor(candidates, request.hypervisor_id, default_hv)
        network = select_network_profile(hypervisor, request.network_profile_id)

        os_id = request.image or (str(self.settings.operating_system_id) if self.settings.operating_system_id else "")
        if not str(os_id).isdigit():
            raise ProvisioningError(f"virtfusion image must be a numeric operating system id, got '{request.image}'")

        # 별도 볼륨이 없으므로 요청된 볼륨 크기만큼 기본 디스크를 늘립니다.
        storage_gb = (request.resources.disk_gb or self.settings.storage_gb) + sum(v.size_gb for v in request.volumes)
        body: Dict[str, Any] = {
            "packageId": self.settings.package_id,
            "userId": self.settings.user_id,
            "hypervisorId": int(hypervisor.id),
            "ipv4": 1,
            "name": request.name,
            "storage": storage_gb,
            "traffic": self.settings.traffic_gb,
            "networkProfile": int(network.id) if network.id.isdigit() else network.id,
        }
        if request.resources.memory_mb:
            body["memory"] = request.resources.memory_mb
        if request.resources.cpu:
            body["cpuCores"] = request.resources.cpu

        created = self.api.request(ctx, "POST", "/servers", json=body)
        server = created.get("data") or {}
        server_id = server.get("id")
        if server_id is None:
            raise ProviderError(f"virtfusion create response has no server id: {created}", retryable=False)

        try:
            self.api.request(ctx, "POST", f"/servers/{server_id}/build", json={
                "operatingSystemId": int(os_id),
                "name": request.name,
                "hostname": request.name,
                "sshKeys": list(self.settings.ssh_key_ids),
            })
        except ProviderError:
            # 재시도 시 서버가 중복 생성되지 않도록 빌드에 실패한 서버를 정리합니다.
            self._discard(ctx, server_id)
            raise
        logger.info("virtfusion_server_created", server_id=server_id, hypervisor_id=hypervisor.id,
                    network_id=network.id)
        return ServerInfo(
            provider_instance_id=str(server_id),
            state=ServerState.PROVISIONING,
            metadata={"hypervisor_id": hypervisor.id, "network_id": network.id},
        )

    def _discard(self, ctx: CallContext, server_id) -> None:
        try:
            self.delete_server(ctx.child(timeout=self.api.default_timeout), str(server_id))
        except ProviderError as e:
            logger.warning("virtfusion_discard_failed", server_id=server_id, error=str(e))

    def get_server(self, ctx: CallContext, provider_instance_id: str) -> ServerInfo:
        data = self.api.request(ctx, "GET", f"/servers/{provider_instance_id}").get("data") or {}
        state = _STATE_MAP.get(str(data.get("state") or data.get("status") or "").lower(), ServerState.PROVISIONING)
        if data.get("suspended"):
            state = ServerState.SUSPENDED
        return ServerInfo(
            provider_instance_id=provider_instance_id,
            state=state,
            public_ip=self._extract_ipv4(data),
            metadata={"hypervisor_id": data.get("hypervisorId")},
        )

    @staticmethod
    def _extract_ipv4(data: Dict[str, Any]) -> str:
        interfaces = (data.get("network") or {}).get("interfaces") or []
        if not interfaces:
            return ""
        addresses = interfaces[0].get("ipv4") or []
        if not addresses:
            return ""
        return addresses[0].get("address", "")

    def delete_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self.api.request(ctx, "DELETE", f"/servers/{provider_instance_id}", params={"delay": 0})

    def suspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self.api.request(ctx, "POST", f"/servers/{provider_instance_id}/suspend")

    def unsuspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self.api.request(ctx, "POST", f"/servers/{provider_instance_id}/unsuspend")

    def close(self) -> None:
        self.api.close()
