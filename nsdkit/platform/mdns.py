"""DNS-SD platform backed by python-zeroconf.

zeroconf itself can resolve several services at once. This platform keeps
the single-resolve contract of NsdPlatform anyway: a resolve requested while
another one is running fails with FailureCode.ALREADY_ACTIVE. Callers go
through a ResolveQueue either way.
"""

import asyncio
import logging
import socket
import threading
from typing import Any, Coroutine, Mapping

from zeroconf import (
    BadTypeInNameException,
    IPVersion,
    ServiceInfo,
    ServiceStateChange,
    Zeroconf,
    service_type_name,
)
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from ..errors import InvalidServiceError, PlatformNotStartedError
from ..service import (
    PlatformServiceInfo,
    RegisteredService,
    ServiceRef,
    normalize_service_type,
    qualify_service_type,
)
from .base import (
    DiscoveryListener,
    FailureCode,
    NsdPlatform,
    RegistrationListener,
    ResolveHandler,
)

logger = logging.getLogger(__name__)

MAX_INSTANCE_NAME_LENGTH = 63


def _instance_name(full_name: str, type_: str) -> str:
    """Strip the type from "Printer._http._tcp.local."."""
    suffix = "." + type_
    if full_name.endswith(suffix):
        return full_name[: -len(suffix)]
    return full_name.split(".")[0]


def _local_address() -> str:
    hostname = socket.gethostname()
    return socket.gethostbyname(hostname)


class ZeroconfPlatform(NsdPlatform):
    """NsdPlatform on top of an AsyncZeroconf instance.

    All platform methods may be called from any thread. The work runs on the
    event loop the platform was started on, and listeners are called back on
    that loop's thread.
    """

    def __init__(
        self,
        resolve_timeout_ms: int = 3000,
        addresses: list[str] | None = None,
        hostname: str | None = None,
        ip_version: IPVersion = IPVersion.V4Only,
    ):
        """Initialize the platform.

        Args:
            resolve_timeout_ms: How long a single resolve may take.
            addresses: Addresses to publish services on. Defaults to the
                address the local hostname resolves to.
            hostname: Host name to publish services under.
            ip_version: IP versions to listen and answer on.
        """
        self.resolve_timeout_ms = resolve_timeout_ms
        self._addresses = addresses
        self._hostname = hostname
        self._ip_version = ip_version

        self._aiozc: AsyncZeroconf | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._browsers: dict[DiscoveryListener, tuple[AsyncServiceBrowser, str]] = {}
        self._registrations: dict[RegistrationListener, ServiceInfo] = {}
        self._resolving: ServiceRef | None = None
        self._resolve_lock = threading.Lock()

    async def start(self, aiozc: AsyncZeroconf | None = None) -> None:
        """Bind the platform to the running loop and open zeroconf."""
        self._loop = asyncio.get_running_loop()
        self._aiozc = aiozc or AsyncZeroconf(ip_version=self._ip_version)
        logger.info("Zeroconf platform started")

    async def close(self) -> None:
        """Cancel all browses, withdraw all registrations and close zeroconf."""
        if not self._aiozc:
            return
        for browser, _ in list(self._browsers.values()):
            await browser.async_cancel()
        self._browsers.clear()
        # async_close() unregisters every service still published
        self._registrations.clear()
        await self._aiozc.async_close()
        self._aiozc = None
        logger.info("Zeroconf platform closed")

    async def __aenter__(self) -> "ZeroconfPlatform":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def zeroconf(self) -> Zeroconf:
        if not self._aiozc:
            raise PlatformNotStartedError("ZeroconfPlatform.start() has not been called")
        return self._aiozc.zeroconf

    def _submit(self, coro: Coroutine[Any, Any, None]) -> None:
        if not self._loop or not self._aiozc:
            coro.close()
            raise PlatformNotStartedError("ZeroconfPlatform.start() has not been called")
        asyncio.run_coroutine_threadsafe(coro, self._loop)

    # Registration

    def _build_service_info(
        self,
        name: str,
        service_type: str,
        port: int,
        txt: Mapping[str, str | bytes | None],
    ) -> ServiceInfo:
        if not name or len(name.encode("utf-8")) > MAX_INSTANCE_NAME_LENGTH:
            raise InvalidServiceError(
                f"Service name must be 1-{MAX_INSTANCE_NAME_LENGTH} bytes: {name!r}"
            )
        if not 0 < port < 65536:
            raise InvalidServiceError(f"Invalid port: {port}")

        type_ = qualify_service_type(service_type)
        try:
            service_type_name(type_)
            properties = {str(k): v for k, v in txt.items()}
            hostname = self._hostname or socket.gethostname()
            addresses = self._addresses or [_local_address()]
            return ServiceInfo(
                type_,
                f"{name}.{type_}",
                port=port,
                properties=properties,
                server=f"{hostname}.local.",
                parsed_addresses=addresses,
            )
        except (BadTypeInNameException, TypeError, ValueError) as e:
            raise InvalidServiceError(str(e)) from e

    def register_service(
        self,
        name: str,
        service_type: str,
        port: int,
        txt: Mapping[str, str | bytes | None],
        listener: RegistrationListener,
    ) -> None:
        if listener in self._registrations:
            raise InvalidServiceError("Listener is already registering a service")
        info = self._build_service_info(name, service_type, port, txt)
        self._registrations[listener] = info
        try:
            self._submit(self._register(info, listener))
        except PlatformNotStartedError:
            del self._registrations[listener]
            raise

    async def _register(self, info: ServiceInfo, listener: RegistrationListener) -> None:
        try:
            task = await self._aiozc.async_register_service(info, allow_name_change=True)
            await task
        except Exception as e:
            logger.warning(f"Registering {info.name} failed: {e}")
            self._registrations.pop(listener, None)
            listener.on_registration_failed(FailureCode.INTERNAL_ERROR)
            return

        # allow_name_change rewrites info.name when the name was taken
        listener.on_service_registered(
            RegisteredService(
                name=_instance_name(info.name, info.type),
                service_type=normalize_service_type(info.type),
            )
        )

    def unregister_service(self, listener: RegistrationListener) -> None:
        info = self._registrations.get(listener)
        if info is None:
            raise InvalidServiceError("Listener has no registered service")
        self._submit(self._unregister(info, listener))

    async def _unregister(self, info: ServiceInfo, listener: RegistrationListener) -> None:
        try:
            task = await self._aiozc.async_unregister_service(info)
            await task
        except Exception as e:
            logger.warning(f"Unregistering {info.name} failed: {e}")
            listener.on_unregistration_failed(FailureCode.INTERNAL_ERROR)
            return
        self._registrations.pop(listener, None)
        listener.on_service_unregistered()

    # Discovery

    def discover_services(self, service_type: str, listener: DiscoveryListener) -> None:
        if listener in self._browsers:
            raise InvalidServiceError("Listener is already browsing")
        type_ = qualify_service_type(service_type)
        try:
            service_type_name(type_)
        except BadTypeInNameException as e:
            raise InvalidServiceError(str(e)) from e
        self._submit(self._discover(type_, listener))

    async def _discover(self, type_: str, listener: DiscoveryListener) -> None:
        bare_type = normalize_service_type(type_)

        def on_state_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            ref = ServiceRef(
                _instance_name(name, service_type), normalize_service_type(service_type)
            )
            if state_change is ServiceStateChange.Removed:
                listener.on_service_lost(ref)
            else:
                # Updated is treated as found again so new TXT data gets resolved
                listener.on_service_found(ref)

        try:
            browser = AsyncServiceBrowser(
                self._aiozc.zeroconf, type_, handlers=[on_state_change]
            )
        except Exception as e:
            logger.warning(f"Browsing for {type_} failed: {e}")
            listener.on_start_discovery_failed(bare_type, FailureCode.INTERNAL_ERROR)
            return

        self._browsers[listener] = (browser, bare_type)
        listener.on_discovery_started(bare_type)

    def stop_service_discovery(self, listener: DiscoveryListener) -> None:
        self._submit(self._stop_discovery(listener))

    async def _stop_discovery(self, listener: DiscoveryListener) -> None:
        entry = self._browsers.pop(listener, None)
        if entry is None:
            listener.on_stop_discovery_failed("", FailureCode.OPERATION_NOT_RUNNING)
            return
        browser, service_type = entry
        try:
            await browser.async_cancel()
        except Exception as e:
            logger.warning(f"Stopping browse for {service_type} failed: {e}")
            listener.on_stop_discovery_failed(service_type, FailureCode.INTERNAL_ERROR)
            return
        listener.on_discovery_stopped(service_type)

    # Resolution

    def resolve_service(self, ref: ServiceRef, handler: ResolveHandler) -> None:
        with self._resolve_lock:
            busy = self._resolving is not None
            if not busy:
                self._resolving = ref
        if busy:
            self._submit(self._report_busy(ref, handler))
            return
        try:
            self._submit(self._resolve(ref, handler))
        except PlatformNotStartedError:
            with self._resolve_lock:
                self._resolving = None
            raise

    async def _report_busy(self, ref: ServiceRef, handler: ResolveHandler) -> None:
        handler.on_resolve_failed(ref, FailureCode.ALREADY_ACTIVE)

    async def _resolve(self, ref: ServiceRef, handler: ResolveHandler) -> None:
        type_ = qualify_service_type(ref.service_type)
        info = AsyncServiceInfo(type_, f"{ref.name}.{type_}")
        try:
            found = await info.async_request(self._aiozc.zeroconf, self.resolve_timeout_ms)
        except Exception as e:
            logger.debug(f"Resolve request for {ref} raised: {e}")
            found = False
        finally:
            with self._resolve_lock:
                self._resolving = None

        addresses = info.parsed_addresses(IPVersion.V4Only) or info.parsed_addresses()
        if not found or not addresses:
            handler.on_resolve_failed(ref, FailureCode.INTERNAL_ERROR)
            return

        handler.on_service_resolved(
            ref,
            PlatformServiceInfo(
                name=ref.name,
                service_type=ref.service_type,
                hostname=(info.server or "").rstrip("."),
                address=addresses[0],
                port=info.port or 0,
                attributes=info.properties or {},
            ),
        )
