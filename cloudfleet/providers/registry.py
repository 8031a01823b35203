import importlib
import threading
from typing import Callable, Dict, Optional

from cloudfleet.database.models import ProviderID
from cloudfleet.logging_config import get_logger
from cloudfleet.providers.base import ProviderAdapter
from cloudfleet.services.exceptions import ConfigurationError, ProviderAuthError, ProviderError, ValidationError
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

# provider_id -> "모듈:클래스". 선택적 의존성(libvirt)이 있으므로 실제로 쓸 때 import 합니다.
_BUILTIN_ADAPTERS = {
    ProviderID.MOCK: "cloudfleet.providers.mock:MockProvider",
    ProviderID.VIRTFUSION: "cloudfleet.providers.virtfusion:VirtFusionProvider",
    ProviderID.DIGITALOCEAN: "cloudfleet.providers.digitalocean:DigitalOceanProvider",
    ProviderID.LIBVIRT: "cloudfleet.providers.libvirt_provider:LibvirtProvider",
}


def parse_provider_id(value) -> ProviderID:
    try:
        return ProviderID(value)
    except ValueError:
        supported = ", ".join(p.value for p in ProviderID)
        raise ValidationError(f"unsupported provider '{value}' (supported: {supported})")


class ProviderRegistry:
    """
    provider_id로 어댑터를 찾아 돌려주는 레지스트리.

    어댑터는 처음 요청될 때 한 번만 생성되고 connect로 자격 증명을 확인한 뒤 캐시됩니다.
    설정이 없거나 인증이 거부되면 ConfigurationError가 발생하며, 실패한 어댑터는 캐시하지 않습니다.
    """

    def __init__(self, factories: Optional[Dict[ProviderID, Callable[[], ProviderAdapter]]] = None,
                 connect_timeout: float = 60.0):
        self.connect_timeout = connect_timeout
        self._lock = threading.Lock()
        self._adapters: Dict[ProviderID, ProviderAdapter] = {}
        self._factories: Dict[ProviderID, Callable[[], ProviderAdapter]] = dict(factories or {})

    def register(self, provider_id, adapter: ProviderAdapter) -> None:
        """이미 만들어진 어댑터를 등록합니다. 테스트나 외부 조립 코드에서 사용합니다."""
        with self._lock:
            self._adapters[parse_provider_id(provider_id)] = adapter

    def get(self, provider_id) -> ProviderAdapter:
        pid = parse_provider_id(provider_id)
        with self._lock:
            adapter = self._adapters.get(pid)
            if adapter is None:
                adapter = self._build(pid)
                self._connect(pid, adapter)
                self._adapters[pid] = adapter
                logger.info("provider_adapter_created", provider=pid.value)
            return adapter

    def _connect(self, pid: ProviderID, adapter: ProviderAdapter) -> None:
        try:
            adapter.connect(CallContext(timeout=self.connect_timeout))
        except ProviderError as e:
            adapter.close()
            logger.error("provider_connect_failed", provider=pid.value, error=str(e))
            if isinstance(e, ProviderAuthError):
                raise ConfigurationError(f"provider '{pid.value}' rejected the configured credentials: {e}") from e
            raise

    def _build(self, pid: ProviderID) -> ProviderAdapter:
        factory = self._factories.get(pid)
        if factory is not None:
            return factory()

        target = _BUILTIN_ADAPTERS.get(pid)
        if target is None:
            raise ConfigurationError(f"no adapter is installed for provider '{pid.value}'")

        module_name, class_name = target.split(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ConfigurationError(
                f"provider '{pid.value}' requires an optional dependency that is not installed: {e}"
            ) from e
        return getattr(module, class_name)()

    def close(self) -> None:
        with self._lock:
            for adapter in self._adapters.values():
                adapter.close()
            self._adapters.clear()
