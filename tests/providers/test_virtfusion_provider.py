# tests/providers/test_virtfusion_provider.py
import json

import httpx
import pytest

from cloudfleet.config import VirtFusionSettings
from cloudfleet.providers.base import CreateServerRequest, Resources, ServerState, VolumeSpec
from cloudfleet.providers.virtfusion import VirtFusionProvider
from cloudfleet.services.exceptions import (
    ProviderAuthError, ProviderError, ProviderNotFoundError, ProvisioningError
)
from cloudfleet.utils.context import CallContext

HYPERVISOR = {
    "id": 4, "name": "hv-4", "enabled": True, "group": {"name": "fra"},
    "networks": [{"id": 21, "bridge": "br0", "primary": False, "default": True}],
}


class FakeVirtFusion:
    """요청을 기록하고 경로별로 미리 정한 응답을 돌려주는 VirtFusion API."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, body = self.responses.get(key, (404, {"msg": "not found"}))
        return httpx.Response(status, json=body)

    def body_of(self, method, path):
        for request in self.requests:
            if (request.method, request.url.path) == (method, path):
                return json.loads(request.content)
        return None


@pytest.fixture
def api() -> FakeVirtFusion:
    fake = FakeVirtFusion()
    fake.responses[("GET", "/api/v1/compute/hypervisors/4")] = (200, {"data": HYPERVISOR})
    fake.responses[("POST", "/api/v1/servers")] = (201, {"data": {"id": 77}})
    fake.responses[("POST", "/api/v1/servers/77/build")] = (200, {"data": {}})
    return fake


@pytest.fixture
def provider(api) -> VirtFusionProvider:
    settings = VirtFusionSettings(_env_file=None, api_token="secret", host="https://vf.example.com",
                                  hypervisor_id=4, ssh_key_ids=[3])
    return VirtFusionProvider(settings, transport=httpx.MockTransport(api))


def request(**overrides) -> CreateServerRequest:
    defaults = dict(name="web-0", image="12", resources=Resources(cpu=2, memory_mb=2048, disk_gb=40))
    defaults.update(overrides)
    return CreateServerRequest(**defaults)


class TestCreateServer:
    def test_create_and_build(self, provider, api):
        """서버 생성 후 빌드 요청까지 보내고, 기본 네트워크 프로필을 사용합니다."""
        # === Act ===
        info = provider.create_server(CallContext(timeout=5), request())

        # === Assert ===
        assert info.provider_instance_id == "77"
        assert info.state == ServerState.PROVISIONING
        assert info.metadata == {"hypervisor_id": "4", "network_id": "21"}
        body = api.body_of("POST", "/api/v1/servers")
        assert body["hypervisorId"] == 4
        assert body["networkProfile"] == 21
        assert (body["cpuCores"], body["memory"], body["storage"]) == (2, 2048, 40)
        build = api.body_of("POST", "/api/v1/servers/77/build")
        assert build["operatingSystemId"] == 12
        assert build["sshKeys"] == [3]
        assert api.requests[0].headers["Authorization"] == "Bearer secret"

    def test_volumes_are_added_to_storage(self, provider, api):
        """VirtFusion은 별도 볼륨이 없으므로 볼륨 크기를 디스크에 더합니다."""
        volumes = [VolumeSpec(name="data", size_gb=10, mount_point="/mnt/data"),
                   VolumeSpec(name="logs", size_gb=5, mount_point="/var/log/app")]

        provider.create_server(CallContext(timeout=5), request(volumes=volumes))

        assert api.body_of("POST", "/api/v1/servers")["storage"] == 55

    def test_unknown_hypervisor(self, provider):
        with pytest.raises(ProvisioningError, match="hypervisor '9' does not exist"):
            provider.create_server(CallContext(timeout=5), request(hypervisor_id="9"))

    def test_missing_network_profile(self, provider):
        with pytest.raises(ProvisioningError, match="network profile '99' not found"):
            provider.create_server(CallContext(timeout=5), request(network_profile_id="99"))

    def test_non_numeric_image(self, provider):
        with pytest.raises(ProvisioningError, match="numeric operating system id"):
            provider.create_server(CallContext(timeout=5), request(image="ubuntu"))

    def test_failed_build_discards_server(self, provider, api):
        """빌드 요청이 실패하면 만들어진 서버를 삭제하고 오류를 그대로 전달합니다."""
        api.responses[("POST", "/api/v1/servers/77/build")] = (503, {"msg": "busy"})
        api.responses[("DELETE", "/api/v1/servers/77")] = (204, {})

        with pytest.raises(ProviderError) as exc_info:
            provider.create_server(CallContext(timeout=5), request())

        assert exc_info.value.retryable is True
        assert ("DELETE", "/api/v1/servers/77") in [(r.method, r.url.path) for r in api.requests]


class TestServerState:
    def test_ready_server_with_ip(self, provider, api):
        api.responses[("GET", "/api/v1/servers/77")] = (200, {"data": {
            "state": "complete",
            "network": {"interfaces": [{"ipv4": [{"address": "203.0.113.7"}]}]},
        }})

        info = provider.get_server(CallContext(timeout=5), "77")

        assert info.state == ServerState.READY
        assert info.public_ip == "203.0.113.7"

    def test_suspended_flag(self, provider, api):
        api.responses[("GET", "/api/v1/servers/77")] = (200, {"data": {"state": "complete", "suspended": True}})
        assert provider.get_server(CallContext(timeout=5), "77").state == ServerState.SUSPENDED

    def test_missing_server(self, provider):
        with pytest.raises(ProviderNotFoundError):
            provider.get_server(CallContext(timeout=5), "404")

    def test_auth_failure(self, provider, api):
        api.responses[("GET", "/api/v1/connect")] = (401, {"msg": "unauthenticated"})
        with pytest.raises(ProviderAuthError):
            provider.connect(CallContext(timeout=5))

    def test_delete_uses_no_delay(self, provider, api):
        api.responses[("DELETE", "/api/v1/servers/77")] = (204, {})

        provider.delete_server(CallContext(timeout=5), "77")

        assert api.requests[-1].url.params["delay"] == "0"
