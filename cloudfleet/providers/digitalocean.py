import re
from typing import Any, Dict, List, Optional

import httpx

from cloudfleet.config import DigitalOceanSettings, load_provider_settings
from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import (
    CreateServerRequest,
    Hypervisor,
    ProviderAdapter,
    ServerInfo,
    ServerState,
)
from cloudfleet.providers.http_api import HttpApi
from cloudfleet.services.exceptions import ProviderError, ProviderNotFoundError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

_STATE_MAP = {
    "new": ServerState.PROVISIONING,
    "active": ServerState.READY,
    "off": ServerState.SUSPENDED,
    "archive": ServerState.DELETED,
}

_VOLUME_NAME_INVALID = re.compile(r"[^a-z0-9-]")
MAX_VOLUME_NAME_LENGTH = 64


class DigitalOceanProvider(ProviderAdapter):
    """DigitalOcean Droplets API 어댑터. DIGITALOCEAN_TOKEN이 필요합니다."""

    provider_id = "do"

    def __init__(self, settings: Optional[DigitalOceanSettings] = None,
                 transport: Optional[httpx.BaseTransport] = None, default_timeout: float = 30.0):
        self.settings = settings or load_provider_settings(DigitalOceanSettings, self.provider_id)
        self.api = HttpApi(self.settings.api_url, self.settings.token, self.provider_id,
                           default_timeout=default_timeout, transport=transport)

    def connect(self, ctx: CallContext) -> None:
        self.api.request(ctx, "GET", "/account")

    def list_regions(self, ctx: CallContext) -> List[Hypervisor]:
        data = self.api.request(ctx, "GET", "/regions")
        return [
            Hypervisor(id=r["slug"], name=r.get("name", ""), region=r["slug"], enabled=bool(r.get("available", True)))
            for r in data.get("regions", [])
        ]

    def create_server(self, ctx: CallContext, request: CreateServerRequest) -> ServerInfo:
        """
        드롭릿을 생성합니다.

        요청에 볼륨이 있으면 같은 리전에 블록 스토리지 볼륨을 먼저 만들고
        드롭릿 생성 요청의 volumes로 넘겨 생성과 함께 붙입니다.
        드롭릿 생성이 실패하면 이번 호출에서 만든 볼륨은 삭제합니다.
        """
        volume_ids = self._create_volumes(ctx, request)
        body: Dict[str, Any] = {
            "name": request.name,
            "region": request.region,
            "size": request.size,
            "image": request.image,
            "ssh_keys": list(self.settings.ssh_key_ids),
            "tags": list(request.tags),
        }
        if volume_ids:
            body["volumes"] = volume_ids
        try:
            data = self.api.request(ctx, "POST", "/droplets", json=body)
            droplet = data.get("droplet") or {}
            if "id" not in droplet:
                raise ProviderError(f"digitalocean create response has no droplet id: {data}", retryable=False)
        except ProviderError:
            self._delete_volumes(ctx, volume_ids)
            raise
        logger.info("digitalocean_droplet_created", droplet_id=droplet["id"], region=request.region,
                    volume_ids=volume_ids)
        info = self._to_server_info(droplet)
        if not info.volume_ids:
            info.volume_ids = list(volume_ids)
        return info

    def _create_volumes(self, ctx: CallContext, request: CreateServerRequest) -> List[str]:
        volume_ids: List[str] = []
        for volume in request.volumes:
            name = _VOLUME_NAME_INVALID.sub("-", f"{request.name}-{volume.name}".lower())[:MAX_VOLUME_NAME_LENGTH]
            body = {
                "name": name,
                "size_gigabytes": volume.size_gb,
                "region": request.region,
                "filesystem_type": volume.filesystem,
                "tags": list(request.tags),
            }
            try:
                data = self.api.request(ctx, "POST", "/volumes", json=body)
                volume_id = (data.get("volume") or {}).get("id")
                if not volume_id:
                    raise ProviderError(f"digitalocean volume response has no id: {data}", retryable=False)
            except ProviderError:
                self._delete_volumes(ctx, volume_ids)
                raise
            volume_ids.append(str(volume_id))
            logger.info("digitalocean_volume_created", volume_id=volume_id, name=name, size_gb=volume.size_gb)
        return volume_ids

    def _delete_volumes(self, ctx: CallContext, volume_ids: List[str]) -> None:
        # 원래 호출의 기한이 지났어도 정리는 시도합니다.
        cleanup_ctx = CallContext(timeout=self.api.default_timeout, cancel_event=ctx.cancel_event)
        for volume_id in volume_ids:
            try:
                self.api.request(cleanup_ctx, "DELETE", f"/volumes/{volume_id}")
            except ProviderNotFoundError:
                continue
            except ProviderError as e:
                logger.warning("digitalocean_volume_cleanup_failed", volume_id=volume_id, error=str(e))

    def get_server(self, ctx: CallContext, provider_instance_id: str) -> ServerInfo:
        data = self.api.request(ctx, "GET", f"/droplets/{provider_instance_id}")
        return self._to_server_info(data.get("droplet") or {"id": provider_instance_id})

    @staticmethod
    def _to_server_info(droplet: Dict[str, Any]) -> ServerInfo:
        public_ip = ""
        for network in (droplet.get("networks") or {}).get("v4") or []:
            if network.get("type") == "public":
                public_ip = network.get("ip_address", "")
                break
        return ServerInfo(
            provider_instance_id=str(droplet.get("id")),
            state=_STATE_MAP.get(droplet.get("status", "new"), ServerState.PROVISIONING),
            public_ip=public_ip,
            metadata={"region": (droplet.get("region") or {}).get("slug", "")},
            volume_ids=[str(v) for v in droplet.get("volume_ids") or []],
        )

    def delete_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        info = self.get_server(ctx, provider_instance_id)
        if not info.volume_ids:
            self.api.request(ctx, "DELETE", f"/droplets/{provider_instance_id}")
            return
        # 드롭릿 삭제는 붙어 있는 볼륨을 남기므로 함께 지정해서 삭제합니다.
        self.api.request(ctx, "DELETE", f"/droplets/{provider_instance_id}/destroy_with_associated_resources/selective",
                         json={"volumes": info.volume_ids})
        logger.info("digitalocean_droplet_deleted_with_volumes", droplet_id=provider_instance_id,
                    volume_ids=info.volume_ids)

    def suspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self.api.request(ctx, "POST", f"/droplets/{provider_instance_id}/actions", json={"type": "power_off"})

    def unsuspend_server(self, ctx: CallContext, provider_instance_id: str) -> None:
        self.api.request(ctx, "POST", f"/droplets/{provider_instance_id}/actions", json={"type": "power_on"})

    def close(self) -> None:
        self.api.close()
