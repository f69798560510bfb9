"""Serialized resolution of discovered services.

The platform resolver can only work on one request at a time: a second
concurrent resolve fails outright or silently stalls. Resolving every
service as soon as it is found therefore loses results as soon as a handful
of devices announce themselves together. The ResolveQueue turns that fan-out
into a FIFO backlog that is drained one request at a time.

One queue exists per platform resolver instance. Sessions that browse
through the same resolver must share the queue.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any

from .events import ChannelRegistry, ServiceResolved
from .platform.base import FailureCode, NsdPlatform, ResolveHandler
from .service import PlatformServiceInfo, ResolvedService, ServiceRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolveRequest:
    """A ref waiting to be resolved, and the session that asked for it."""

    ref: ServiceRef
    session: int


class ResolveQueue(ResolveHandler):
    """FIFO of pending resolve requests with a single in-flight slot.

    State machine:
        Idle (nothing pending, nothing in flight)
        Draining (one request in flight, zero or more pending)

    Failure policy:
        FailureCode.ALREADY_ACTIVE means the resolver is busy with something
        outside this queue. The request goes back to the tail, so other
        pending requests get a turn first. Any other failure is terminal for
        that request: it is logged and dropped, and no caller is notified.
        A failed resolve does not mean the service went away.

    No timeout is imposed. If the platform never answers a resolve, the
    queue stalls.
    """

    def __init__(
        self,
        platform: NsdPlatform,
        registry: ChannelRegistry,
        deduplicate: bool = False,
        busy_retry_delay: float = 0.0,
    ):
        """Initialize the resolve queue.

        Args:
            platform: Platform whose resolver this queue serializes.
            registry: Registry used to route results to sessions.
            deduplicate: Skip a request already pending or in flight for the
                same session.
            busy_retry_delay: Seconds to wait before draining again after a
                busy resolver sent a request back to the tail.
        """
        self._platform = platform
        self._registry = registry
        self._deduplicate = deduplicate
        self._busy_retry_delay = busy_retry_delay

        self._pending: deque[ResolveRequest] = deque()
        self._in_flight: ResolveRequest | None = None
        self._lock = threading.Lock()
        self._retry_timer: threading.Timer | None = None
        self._draining = False

        self._counters = {
            "enqueued": 0,
            "resolved": 0,
            "failed": 0,
            "retried": 0,
            "skipped": 0,
        }

    @property
    def pending(self) -> tuple[ServiceRef, ...]:
        """Snapshot of the refs waiting to be resolved, head first."""
        with self._lock:
            return tuple(request.ref for request in self._pending)

    @property
    def in_flight(self) -> ServiceRef | None:
        """The ref currently being resolved, if any."""
        with self._lock:
            return self._in_flight.ref if self._in_flight else None

    @property
    def idle(self) -> bool:
        with self._lock:
            return self._in_flight is None and not self._pending

    def enqueue(self, ref: ServiceRef, session: int) -> None:
        """Queue a ref for resolution on behalf of a session."""
        request = ResolveRequest(ref, session)
        with self._lock:
            if self._deduplicate and (
                request == self._in_flight or request in self._pending
            ):
                self._counters["skipped"] += 1
                logger.debug(f"Already queued for resolve: {ref}")
                return
            self._pending.append(request)
            self._counters["enqueued"] += 1
        logger.debug(f"Queued for resolve: {ref}")
        self._drain()

    def discard(self, session: int) -> int:
        """Drop every pending request of a session.

        A request of that session already in flight is left to finish; its
        outcome is dropped by the registry once the session is detached.

        Returns:
            Number of requests removed.
        """
        with self._lock:
            kept = deque(r for r in self._pending if r.session != session)
            removed = len(self._pending) - len(kept)
            self._pending = kept
        if removed:
            logger.debug(f"Discarded {removed} pending resolve(s) of session {session}")
        return removed

    def clear(self) -> None:
        """Drop all pending requests and abandon the one in flight.

        The platform offers no way to cancel a resolve, so a late outcome
        for the abandoned request may still arrive. It is ignored.
        """
        with self._lock:
            self._pending.clear()
            abandoned = self._in_flight
            self._in_flight = None
            if self._retry_timer:
                self._retry_timer.cancel()
                self._retry_timer = None
        if abandoned:
            logger.debug(f"Abandoned in-flight resolve of {abandoned.ref}")

    def get_status(self) -> dict[str, Any]:
        """Get queue statistics.

        Returns:
            Dictionary with queue depth, the in-flight ref and counters.
        """
        with self._lock:
            return {
                "pending": len(self._pending),
                "in_flight": str(self._in_flight.ref) if self._in_flight else None,
                **self._counters,
            }

    def _drain(self) -> None:
        """Issue resolves until one is outstanding or nothing is pending.

        Only one caller drains at a time. Outcomes delivered synchronously
        from inside resolve_service() call back in here; those calls return
        at once and the running loop picks up the next request, so the stack
        does not grow with the backlog.
        """
        with self._lock:
            if self._draining:
                return
            self._draining = True

        while (request := self._claim_next()) is not None:
            logger.debug(f"Resolving {request.ref}")
            try:
                self._platform.resolve_service(request.ref, self)
            except Exception:
                logger.exception(f"Resolve of {request.ref} was rejected")
                if self._finish(request.ref) is not None:
                    with self._lock:
                        self._counters["failed"] += 1

    def _claim_next(self) -> ResolveRequest | None:
        """Move the head of the queue into the in-flight slot.

        Returns None, and gives up draining, when a resolve is outstanding,
        a busy retry is scheduled or nothing is pending.
        """
        with self._lock:
            if (
                self._in_flight is not None
                or self._retry_timer is not None
                or not self._pending
            ):
                self._draining = False
                return None
            request = self._pending.popleft()
            self._in_flight = request
            return request

    def _finish(self, ref: ServiceRef) -> ResolveRequest | None:
        """Release the in-flight slot if it belongs to ref."""
        with self._lock:
            request = self._in_flight
            if request is None or request.ref != ref:
                return None
            self._in_flight = None
            return request

    def on_service_resolved(self, ref: ServiceRef, info: PlatformServiceInfo) -> None:
        request = self._finish(ref)
        if request is None:
            logger.debug(f"Ignoring stale resolve result for {ref}")
            return

        try:
            service = ResolvedService.from_platform(info)
        except Exception:
            logger.exception(f"Unusable resolve result for {ref}")
            with self._lock:
                self._counters["failed"] += 1
        else:
            with self._lock:
                self._counters["resolved"] += 1
            logger.debug(f"Resolved {service}")
            self._registry.deliver(request.session, ServiceResolved(service))
        self._drain()

    def on_resolve_failed(self, ref: ServiceRef, error_code: int) -> None:
        request = self._finish(ref)
        if request is None:
            logger.debug(f"Ignoring stale resolve failure for {ref}: {error_code}")
            return

        if error_code == FailureCode.ALREADY_ACTIVE:
            timer = None
            with self._lock:
                self._pending.append(request)
                self._counters["retried"] += 1
                if self._busy_retry_delay > 0:
                    # Holds off every drain until it fires.
                    timer = self._retry_timer = threading.Timer(
                        self._busy_retry_delay, self._retry_drain
                    )
                    timer.daemon = True
            logger.debug(f"Resolver busy, requeued {ref}")
            if timer is not None:
                timer.start()
                return
        else:
            with self._lock:
                self._counters["failed"] += 1
            logger.debug(f"Resolving failed for {ref}: {error_code}")

        self._drain()

    def _retry_drain(self) -> None:
        with self._lock:
            # Runs on the timer thread; a timer replaced by clear() is stale.
            if self._retry_timer is not threading.current_thread():
                return
            self._retry_timer = None
        self._drain()
