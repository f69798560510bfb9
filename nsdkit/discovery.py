"""Browse sessions: one active browse for one service type."""

import logging

from .events import BrowserStateChanged, ChannelRegistry, EventChannel, ServiceRemoved
from .platform.base import DiscoveryListener, FailureCode, NsdPlatform
from .resolve_queue import ResolveQueue
from .service import BrowseState, ServiceRef, normalize_service_type

logger = logging.getLogger(__name__)


class DiscoverySession(DiscoveryListener):
    """Tracks one browse operation and feeds found services to the resolve queue.

    Found services are never resolved directly; they go through the shared
    ResolveQueue. Lost services are reported straight away and are not
    pulled out of the queue, so a service lost while still waiting to be
    resolved may be reported as resolved afterwards.
    """

    def __init__(
        self,
        platform: NsdPlatform,
        queue: ResolveQueue,
        registry: ChannelRegistry,
        channel: EventChannel,
    ):
        """Initialize the discovery session.

        Args:
            platform: Platform to browse on.
            queue: Resolve queue shared by every session of that platform.
            registry: Registry the channel is attached to.
            channel: Where this session's notifications go.
        """
        self._platform = platform
        self._queue = queue
        self._registry = registry
        self._token = registry.attach(channel)
        self._state: BrowseState | None = None
        self._active = False
        self._closed = False

    @property
    def token(self) -> int:
        """Session token used to route this session's notifications."""
        return self._token

    @property
    def state(self) -> BrowseState | None:
        return self._state

    @property
    def running(self) -> bool:
        return bool(self._state and self._state.running)

    def _report(self, running: bool, error: bool) -> None:
        self._registry.deliver(self._token, BrowserStateChanged(running, error))

    def start(self, service_type: str) -> None:
        """Start browsing for a service type."""
        if self._closed:
            raise RuntimeError("DiscoverySession is closed")
        if self._active:
            # The running browse is left untouched.
            logger.warning(f"Already browsing for {self._state.service_type}")
            self._report(running=self.running, error=True)
            return

        service_type = normalize_service_type(service_type)
        self._state = BrowseState(service_type=service_type)
        self._active = True
        try:
            self._platform.discover_services(service_type, self)
        except ValueError as e:
            logger.warning(f"Browsing for {service_type} rejected: {e}")
            self._active = False
            self._state.last_error = FailureCode.BAD_PARAMETERS
            self._report(running=False, error=True)
            return
        except Exception:
            self._active = False
            raise

        logger.info(f"Browsing for {service_type} services")

    def stop(self) -> None:
        """Stop browsing. Reports "not running" if nothing was being browsed."""
        if not self._active:
            self._report(running=False, error=False)
            return
        self._platform.stop_service_discovery(self)

    def close(self) -> None:
        """Stop browsing and drop everything still queued for this session."""
        if self._closed:
            return
        if self._active:
            self.stop()
        self._closed = True
        self._queue.discard(self._token)
        self._registry.detach(self._token)

    def on_discovery_started(self, service_type: str) -> None:
        if self._state:
            self._state.running = True
        self._report(running=True, error=False)

    def on_service_found(self, ref: ServiceRef) -> None:
        if self._closed:
            return
        logger.debug(f"Found {ref}")
        self._queue.enqueue(ref, self._token)

    def on_service_lost(self, ref: ServiceRef) -> None:
        logger.debug(f"Lost {ref}")
        self._registry.deliver(self._token, ServiceRemoved(ref.name))

    def on_discovery_stopped(self, service_type: str) -> None:
        self._active = False
        if self._state:
            self._state.running = False
        logger.info(f"Stopped browsing for {service_type}")
        self._report(running=False, error=False)

    def on_start_discovery_failed(self, service_type: str, error_code: int) -> None:
        self._failed("start", service_type, error_code)

    def on_stop_discovery_failed(self, service_type: str, error_code: int) -> None:
        self._failed("stop", service_type, error_code)

    def _failed(self, operation: str, service_type: str, error_code: int) -> None:
        self._active = False
        if self._state:
            self._state.running = False
            self._state.last_error = error_code
        logger.warning(f"Failed to {operation} browsing for {service_type}: {error_code}")
        self._report(running=False, error=True)
