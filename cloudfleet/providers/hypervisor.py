from typing import Iterable, Optional

from cloudfleet.providers.base import Hypervisor, NetworkProfile
from cloudfleet.services.exceptions import ProvisioningError


def select_hypervisor(hypervisors: Iterable[Hypervisor], requested_id: Optional[str],
                      default_id: Optional[str] = None) -> Hypervisor:
    """
    요청된 하이퍼바이저를 고릅니다.

    1. 요청에 명시된 ID
    2. 프로바이더 설정의 기본 ID
    3. 둘 다 없으면 ProvisioningError (임의의 하이퍼바이저로 대체하지 않음)
    """
    by_id = {str(h.id): h for h in hypervisors}

    for candidate, source in ((requested_id, "requested"), (default_id, "default")):
        if candidate is None or candidate == "":
            continue
        hypervisor = by_id.get(str(candidate))
        if hypervisor is None:
            raise ProvisioningError(f"{source} hypervisor '{candidate}' does not exist")
        if not hypervisor.enabled:
            raise ProvisioningError(f"{source} hypervisor '{candidate}' is disabled")
        return hypervisor

    raise ProvisioningError("no hypervisor specified in request and no default hypervisor configured")


def select_network_profile(hypervisor: Hypervisor, requested_id: Optional[str]) -> NetworkProfile:
    """
    하이퍼바이저에서 사용할 네트워크 프로필을 고릅니다.

    1. 요청에 명시된 프로필 ID
    2. 하이퍼바이저의 primary 네트워크, 없으면 default 네트워크
    3. 둘 다 없으면 ProvisioningError
    """
    if requested_id:
        for network in hypervisor.networks:
            if str(network.id) == str(requested_id):
                return network
        raise ProvisioningError(
            f"network profile '{requested_id}' not found on hypervisor '{hypervisor.id}'"
        )

    for network in hypervisor.networks:
        if network.primary:
            return network
    for network in hypervisor.networks:
        if network.default:
            return network

    raise ProvisioningError(
        f"hypervisor '{hypervisor.id}' has no primary or default network configuration "
        f"and no network profile was requested"
    )
