"""Publication sessions: one service registration at a time."""

import logging
from typing import Mapping

from .events import ChannelRegistry, EventChannel, PublisherStateChanged, ServiceNameChanged
from .errors import NsdError
from .platform.base import FailureCode, NsdPlatform, RegistrationListener
from .service import RegisteredService, RegistrationState, normalize_service_type

logger = logging.getLogger(__name__)


class PublicationSession(RegistrationListener):
    """Tracks one registration, including renames forced by name collisions.

    Failures are not retried; call register() again after an error.
    """

    def __init__(
        self,
        platform: NsdPlatform,
        registry: ChannelRegistry,
        channel: EventChannel,
    ):
        self._platform = platform
        self._registry = registry
        self._token = registry.attach(channel)
        self._state: RegistrationState | None = None
        self._active = False
        self._closed = False

    @property
    def token(self) -> int:
        return self._token

    @property
    def state(self) -> RegistrationState | None:
        """Current registration, or None once it has been unregistered."""
        return self._state

    @property
    def running(self) -> bool:
        return bool(self._state and self._state.running)

    def _report(self, running: bool, error: bool) -> None:
        self._registry.deliver(self._token, PublisherStateChanged(running, error))

    def register(
        self,
        name: str,
        service_type: str,
        port: int,
        txt: Mapping[str, str | bytes | None] | None = None,
    ) -> None:
        """Register a service.

        Malformed input is reported as PublisherStateChanged(running=False,
        error=True) rather than raised.

        Args:
            name: Requested instance name. The platform may change it.
            service_type: Service type, e.g. "_http._tcp".
            port: Port the service listens on.
            txt: TXT records. A value of None publishes a key without value.
        """
        if self._closed:
            raise RuntimeError("PublicationSession is closed")
        if self._active:
            logger.warning(f"Already publishing {self._state.effective_name}")
            self._report(running=self.running, error=True)
            return

        service_type = normalize_service_type(service_type)
        self._state = RegistrationState(
            requested_name=name,
            effective_name=name,
            service_type=service_type,
            port=port,
        )
        self._active = True
        try:
            self._platform.register_service(name, service_type, port, dict(txt or {}), self)
        except ValueError as e:
            logger.warning(f"Error registering service {name!r}: {e}")
            self._active = False
            self._state.last_error = FailureCode.BAD_PARAMETERS
            self._report(running=False, error=True)
        except Exception:
            self._active = False
            raise

    def unregister(self) -> None:
        """Withdraw the registration. Reports "not running" if there is none."""
        if not self._active:
            self._report(running=False, error=False)
            return
        self._platform.unregister_service(self)

    def close(self) -> None:
        if self._closed:
            return
        if self._active:
            try:
                self.unregister()
            except NsdError as e:
                logger.warning(f"Unregistering on close failed: {e}")
        self._closed = True
        self._registry.detach(self._token)

    def on_service_registered(self, service: RegisteredService) -> None:
        state = self._state
        if state is None:
            return
        state.running = True
        state.effective_name = service.name
        logger.info(f"Published {service.name}.{state.service_type} on port {state.port}")
        self._report(running=True, error=False)
        if service.name != state.requested_name:
            logger.info(f"Service {state.requested_name!r} renamed to {service.name!r}")
            self._registry.deliver(self._token, ServiceNameChanged(service.name))

    def on_registration_failed(self, error_code: int) -> None:
        self._active = False
        if self._state:
            self._state.running = False
            self._state.last_error = error_code
        logger.warning(f"Registration failed: {error_code}")
        self._report(running=False, error=True)

    def on_service_unregistered(self) -> None:
        self._active = False
        self._state = None
        logger.info("Service unpublished")
        self._report(running=False, error=False)

    def on_unregistration_failed(self, error_code: int) -> None:
        # The service may still be published; unregister() can be retried.
        if self._state:
            self._state.running = False
            self._state.last_error = error_code
        logger.warning(f"Unregistration failed: {error_code}")
        self._report(running=False, error=True)
