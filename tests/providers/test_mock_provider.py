# tests/providers/test_mock_provider.py
import pytest

from cloudfleet.providers.base import CreateServerRequest, Hypervisor, ServerState, VolumeSpec
from cloudfleet.providers.mock import MockProvider, DEFAULT_MOCK_IP
from cloudfleet.services.exceptions import ProviderError, ProviderNotFoundError, ProvisioningError
from cloudfleet.utils.context import CallContext


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider(polls_until_ready=2)


def request(name="web-0", **overrides) -> CreateServerRequest:
    return CreateServerRequest(name=name, image="ubuntu", region="mock-region", **overrides)


class TestMockProvider:
    def test_server_becomes_ready_after_polls(self, provider):
        """polls_until_ready번 조회한 뒤에 ready 상태와 공인 IP를 돌려줍니다."""
        ctx = CallContext()
        server_id = provider.create_server(ctx, request()).provider_instance_id

        first = provider.get_server(ctx, server_id)
        second = provider.get_server(ctx, server_id)

        assert first.state == ServerState.PROVISIONING
        assert first.public_ip == ""
        assert second.state == ServerState.READY
        assert second.public_ip == DEFAULT_MOCK_IP

    def test_delete_then_get_is_not_found(self, provider):
        ctx = CallContext()
        server_id = provider.create_server(ctx, request()).provider_instance_id

        provider.delete_server(ctx, server_id)

        with pytest.raises(ProviderNotFoundError):
            provider.get_server(ctx, server_id)
        with pytest.raises(ProviderNotFoundError):
            provider.delete_server(ctx, server_id)

    def test_volumes_live_and_die_with_server(self, provider):
        """생성된 볼륨은 서버 정보에 나타나고 서버와 함께 삭제됩니다."""
        ctx = CallContext()
        created = provider.create_server(ctx, request(volumes=[VolumeSpec(name="data", size_gb=10)]))

        assert len(created.volume_ids) == 1
        assert provider.get_server(ctx, created.provider_instance_id).volume_ids == created.volume_ids
        assert provider.volumes[created.volume_ids[0]].size_gb == 10

        provider.delete_server(ctx, created.provider_instance_id)

        assert provider.volumes == {}

    def test_permanent_create_failure(self, provider):
        provider.fail_create_names.add("bad")

        with pytest.raises(ProviderError) as exc_info:
            provider.create_server(CallContext(), request("bad"))
        assert exc_info.value.retryable is False
        assert provider.server_ids() == []

    def test_transient_failures_are_consumed(self, provider):
        provider.transient_failures["create_server"] = 1

        with pytest.raises(ProviderError) as exc_info:
            provider.create_server(CallContext(), request())
        assert exc_info.value.retryable is True
        assert provider.create_server(CallContext(), request()).provider_instance_id.startswith("mock-")

    def test_suspend_and_unsuspend(self, provider):
        ctx = CallContext()
        server_id = provider.create_server(ctx, request()).provider_instance_id

        provider.suspend_server(ctx, server_id)
        assert provider.get_server(ctx, server_id).state == ServerState.SUSPENDED
        provider.unsuspend_server(ctx, server_id)
        assert provider.get_server(ctx, server_id).state == ServerState.READY

    def test_network_selection_error(self):
        """네트워크 설정이 없는 하이퍼바이저에서는 생성이 실패합니다."""
        provider = MockProvider(hypervisors=[Hypervisor(id="1", networks=[])])

        with pytest.raises(ProvisioningError, match="network configuration"):
            provider.create_server(CallContext(), request())

    def test_expired_context(self, provider):
        with pytest.raises(ProviderError):
            provider.create_server(CallContext(timeout=0), request())
