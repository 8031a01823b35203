from .base import (
    CreateServerRequest,
    Hypervisor,
    NetworkProfile,
    ProviderAdapter,
    Resources,
    ServerInfo,
    ServerState,
)
from .registry import ProviderRegistry
