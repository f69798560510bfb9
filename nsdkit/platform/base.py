"""Abstract DNS-SD platform capability and the listener interfaces it reports to."""

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Mapping

from ..service import PlatformServiceInfo, RegisteredService, ServiceRef


class FailureCode(IntEnum):
    """Error codes a platform reports with a failed operation."""

    INTERNAL_ERROR = 0
    ALREADY_ACTIVE = 3  # the resolver is busy with another request
    MAX_LIMIT = 4
    OPERATION_NOT_RUNNING = 5
    BAD_PARAMETERS = 6


class DiscoveryListener(ABC):
    """Receives the events of one browse operation."""

    @abstractmethod
    def on_discovery_started(self, service_type: str) -> None:
        pass

    @abstractmethod
    def on_service_found(self, ref: ServiceRef) -> None:
        pass

    @abstractmethod
    def on_service_lost(self, ref: ServiceRef) -> None:
        pass

    @abstractmethod
    def on_discovery_stopped(self, service_type: str) -> None:
        pass

    @abstractmethod
    def on_start_discovery_failed(self, service_type: str, error_code: int) -> None:
        pass

    @abstractmethod
    def on_stop_discovery_failed(self, service_type: str, error_code: int) -> None:
        pass


class RegistrationListener(ABC):
    """Receives the events of one registration."""

    @abstractmethod
    def on_service_registered(self, service: RegisteredService) -> None:
        pass

    @abstractmethod
    def on_registration_failed(self, error_code: int) -> None:
        pass

    @abstractmethod
    def on_service_unregistered(self) -> None:
        pass

    @abstractmethod
    def on_unregistration_failed(self, error_code: int) -> None:
        pass


class ResolveHandler(ABC):
    """Receives resolve outcomes, keyed by the ref that was resolved."""

    @abstractmethod
    def on_service_resolved(self, ref: ServiceRef, info: PlatformServiceInfo) -> None:
        pass

    @abstractmethod
    def on_resolve_failed(self, ref: ServiceRef, error_code: int) -> None:
        pass


class NsdPlatform(ABC):
    """A DNS-SD implementation that reports outcomes asynchronously.

    Every method returns immediately; results arrive later through the
    listener or handler passed in, possibly on another thread. Only one
    resolve may be outstanding at a time. A second concurrent resolve fails
    with FailureCode.ALREADY_ACTIVE or is silently lost, depending on the
    platform.
    """

    @abstractmethod
    def register_service(
        self,
        name: str,
        service_type: str,
        port: int,
        txt: Mapping[str, str | bytes | None],
        listener: RegistrationListener,
    ) -> None:
        """Start registering a service.

        Raises:
            ValueError: If the name, type, port or TXT records are malformed.
        """
        pass

    @abstractmethod
    def unregister_service(self, listener: RegistrationListener) -> None:
        pass

    @abstractmethod
    def discover_services(self, service_type: str, listener: DiscoveryListener) -> None:
        pass

    @abstractmethod
    def stop_service_discovery(self, listener: DiscoveryListener) -> None:
        pass

    @abstractmethod
    def resolve_service(self, ref: ServiceRef, handler: ResolveHandler) -> None:
        pass
