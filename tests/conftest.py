"""Shared fixtures: a scriptable platform and a recording event channel."""

import threading

import pytest

from nsdkit.events import ChannelRegistry, EventChannel
from nsdkit.platform.base import (
    DiscoveryListener,
    NsdPlatform,
    RegistrationListener,
    ResolveHandler,
)
from nsdkit.resolve_queue import ResolveQueue
from nsdkit.service import PlatformServiceInfo, RegisteredService, ServiceRef


def make_info(ref: ServiceRef, port: int = 80) -> PlatformServiceInfo:
    """A plausible resolve answer for a ref."""
    return PlatformServiceInfo(
        name=ref.name,
        service_type=ref.service_type,
        hostname=f"{ref.name.lower()}.local",
        address="192.168.1.10",
        port=port,
        attributes={"path": "/"},
    )


class FakePlatform(NsdPlatform):
    """Records every call. Resolve outcomes are delivered by the test.

    Discovery start/stop and unregistration answer synchronously;
    registration waits for confirm_registration() or fail_registration().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.open_resolves: list[tuple[ServiceRef, ResolveHandler]] = []
        self.resolve_order: list[ServiceRef] = []
        self.max_concurrent_resolves = 0
        self.resolve_error: Exception | None = None

        self.browsing: dict[DiscoveryListener, str] = {}
        self.discover_calls: list[str] = []
        self.start_discovery_error: int | None = None
        self.stop_discovery_error: int | None = None

        self.registrations: list[tuple[str, str, int, dict]] = []
        self.registration_listener: RegistrationListener | None = None
        self.unregister_calls = 0
        self.unregister_error: int | None = None

    # Resolution

    def resolve_service(self, ref: ServiceRef, handler: ResolveHandler) -> None:
        if self.resolve_error is not None:
            raise self.resolve_error
        with self._lock:
            self.open_resolves.append((ref, handler))
            self.resolve_order.append(ref)
            self.max_concurrent_resolves = max(
                self.max_concurrent_resolves, len(self.open_resolves)
            )

    def _take(self) -> tuple[ServiceRef, ResolveHandler]:
        with self._lock:
            return self.open_resolves.pop(0)

    def complete(self, port: int = 80) -> ServiceRef:
        """Resolve the oldest open request successfully."""
        ref, handler = self._take()
        handler.on_service_resolved(ref, make_info(ref, port))
        return ref

    def fail(self, error_code: int) -> ServiceRef:
        """Fail the oldest open request."""
        ref, handler = self._take()
        handler.on_resolve_failed(ref, error_code)
        return ref

    # Discovery

    def discover_services(self, service_type: str, listener: DiscoveryListener) -> None:
        if not service_type.startswith("_"):
            raise ValueError(f"bad service type {service_type!r}")
        self.discover_calls.append(service_type)
        if self.start_discovery_error is not None:
            listener.on_start_discovery_failed(service_type, self.start_discovery_error)
            return
        self.browsing[listener] = service_type
        listener.on_discovery_started(service_type)

    def stop_service_discovery(self, listener: DiscoveryListener) -> None:
        service_type = self.browsing.pop(listener)
        if self.stop_discovery_error is not None:
            listener.on_stop_discovery_failed(service_type, self.stop_discovery_error)
            return
        listener.on_discovery_stopped(service_type)

    # Registration

    def register_service(self, name, service_type, port, txt, listener) -> None:
        if not name or not 0 < port < 65536:
            raise ValueError("malformed service")
        self.registrations.append((name, service_type, port, dict(txt)))
        self.registration_listener = listener

    def confirm_registration(self, effective_name: str | None = None) -> None:
        name, service_type, _, _ = self.registrations[-1]
        self.registration_listener.on_service_registered(
            RegisteredService(effective_name or name, service_type)
        )

    def fail_registration(self, error_code: int) -> None:
        self.registration_listener.on_registration_failed(error_code)

    def unregister_service(self, listener: RegistrationListener) -> None:
        self.unregister_calls += 1
        if self.unregister_error is not None:
            listener.on_unregistration_failed(self.unregister_error)
            return
        listener.on_service_unregistered()


class RecordingChannel(EventChannel):
    """Keeps every event it receives."""

    def __init__(self):
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def registry():
    return ChannelRegistry()


@pytest.fixture
def queue(platform, registry):
    return ResolveQueue(platform, registry)


@pytest.fixture
def channel():
    return RecordingChannel()
