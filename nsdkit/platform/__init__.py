"""Platform capabilities that perform the actual DNS-SD work."""

from .base import (
    DiscoveryListener,
    FailureCode,
    NsdPlatform,
    RegistrationListener,
    ResolveHandler,
)
from .mdns import ZeroconfPlatform

__all__ = [
    "DiscoveryListener",
    "FailureCode",
    "NsdPlatform",
    "RegistrationListener",
    "ResolveHandler",
    "ZeroconfPlatform",
]
