"""High-level publish/browse object with a cache of resolved services."""

import logging
import threading
from enum import IntEnum
from typing import Callable

from .discovery import DiscoverySession
from .events import (
    BrowserStateChanged,
    ChannelRegistry,
    Event,
    EventChannel,
    PublisherStateChanged,
    ServiceNameChanged,
    ServiceRemoved,
    ServiceResolved,
)
from .platform.base import NsdPlatform
from .publication import PublicationSession
from .resolve_queue import ResolveQueue
from .service import ResolvedService

logger = logging.getLogger(__name__)

ServiceCallback = Callable[[ResolvedService], None]


class ZeroConfError(IntEnum):
    NO_ERROR = 0
    SERVICE_REGISTRATION_FAILED = -1
    BROWSER_FAILED = -3


class ZeroConf(EventChannel):
    """Coordinates one browse and one publication on a platform.

    Resolved services are cached by name. The first resolve of a name is
    reported through service_added, later ones through service_updated, and
    a lost service through service_removed.

    Example:
        zc = ZeroConf(platform)
        zc.on_service_added(lambda service: print(service))
        zc.start_browser("_http._tcp")
        zc.add_service_txt_record("path", "/")
        zc.start_service_publish("Printer", "_http._tcp", 8080)
    """

    def __init__(
        self,
        platform: NsdPlatform,
        queue: ResolveQueue | None = None,
        registry: ChannelRegistry | None = None,
    ):
        """Initialize the facade.

        Args:
            platform: Platform doing the DNS-SD work.
            queue: Resolve queue for that platform. Pass the same queue to
                every ZeroConf sharing a platform.
            registry: Registry the queue routes results through. Must be the
                registry the queue was built with.
        """
        if queue is not None and registry is None:
            raise ValueError("A shared queue needs the registry it was built with")
        self._registry = registry if registry is not None else ChannelRegistry()
        self._queue = queue if queue is not None else ResolveQueue(platform, self._registry)

        self._browser = DiscoverySession(platform, self._queue, self._registry, self)
        self._publisher = PublicationSession(platform, self._registry, self)

        self._services: dict[str, ResolvedService] = {}
        self._txt_records: dict[str, str | None] = {}
        self._lock = threading.Lock()

        self._browser_exists = False
        self._publish_exists = False

        self._added_callbacks: list[ServiceCallback] = []
        self._updated_callbacks: list[ServiceCallback] = []
        self._removed_callbacks: list[ServiceCallback] = []
        self._published_callbacks: list[Callable[[], None]] = []
        self._name_changed_callbacks: list[Callable[[str], None]] = []
        self._error_callbacks: list[Callable[[ZeroConfError], None]] = []

    # Callback registration

    def on_service_added(self, callback: ServiceCallback) -> None:
        self._added_callbacks.append(callback)

    def on_service_updated(self, callback: ServiceCallback) -> None:
        self._updated_callbacks.append(callback)

    def on_service_removed(self, callback: ServiceCallback) -> None:
        self._removed_callbacks.append(callback)

    def on_service_published(self, callback: Callable[[], None]) -> None:
        self._published_callbacks.append(callback)

    def on_service_name_changed(self, callback: Callable[[str], None]) -> None:
        self._name_changed_callbacks.append(callback)

    def on_error(self, callback: Callable[[ZeroConfError], None]) -> None:
        self._error_callbacks.append(callback)

    # Publishing

    def start_service_publish(self, name: str, service_type: str, port: int) -> None:
        """Publish a service with the TXT records added so far."""
        with self._lock:
            txt = dict(self._txt_records)
        self._publisher.register(name, service_type, port, txt)

    def stop_service_publish(self) -> None:
        self._publisher.unregister()

    @property
    def publish_exists(self) -> bool:
        return self._publish_exists

    def add_service_txt_record(self, name: str, value: str | None = None) -> None:
        """Add a TXT record for the next publish. A None value publishes the bare key."""
        with self._lock:
            self._txt_records[name] = value

    def clear_service_txt_records(self) -> None:
        with self._lock:
            self._txt_records.clear()

    # Browsing

    def start_browser(self, service_type: str) -> None:
        self._browser.start(service_type)

    def stop_browser(self) -> None:
        self._browser.stop()

    @property
    def browser_exists(self) -> bool:
        return self._browser_exists

    @property
    def services(self) -> dict[str, ResolvedService]:
        """Snapshot of the resolved services, keyed by name."""
        with self._lock:
            return dict(self._services)

    @property
    def resolve_queue(self) -> ResolveQueue:
        return self._queue

    def close(self) -> None:
        """Stop browsing and publishing and detach from the registry."""
        self._browser.close()
        self._publisher.close()
        self._browser_exists = False
        self._publish_exists = False
        logger.info("ZeroConf closed")

    # EventChannel

    def publish(self, event: Event) -> None:
        if isinstance(event, ServiceResolved):
            self._service_resolved(event.service)
        elif isinstance(event, ServiceRemoved):
            self._service_removed(event.name)
        elif isinstance(event, BrowserStateChanged):
            self._browser_exists = event.running
            if event.error:
                self._emit(self._error_callbacks, ZeroConfError.BROWSER_FAILED)
        elif isinstance(event, PublisherStateChanged):
            self._publish_exists = event.running
            if event.running:
                self._emit(self._published_callbacks)
            if event.error:
                self._emit(self._error_callbacks, ZeroConfError.SERVICE_REGISTRATION_FAILED)
        elif isinstance(event, ServiceNameChanged):
            self._emit(self._name_changed_callbacks, event.new_name)

    def _service_resolved(self, service: ResolvedService) -> None:
        with self._lock:
            known = service.name in self._services
            self._services[service.name] = service

        if known:
            logger.debug(f"Service updated: {service}")
            self._emit(self._updated_callbacks, service)
        else:
            logger.info(f"Service added: {service}")
            self._emit(self._added_callbacks, service)

    def _service_removed(self, name: str) -> None:
        with self._lock:
            service = self._services.pop(name, None)
        if service is None:
            return
        logger.info(f"Service removed: {service}")
        self._emit(self._removed_callbacks, service)

    def _emit(self, callbacks: list[Callable], *args) -> None:
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback {callback!r} failed: {e}", exc_info=True)
