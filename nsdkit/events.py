"""Notifications reported to callers of the discovery and registration lifecycle.

Sessions and the resolve queue never hold a channel directly. They hold an
opaque session token handed out by a ChannelRegistry, and deliver through
the registry. Once a token is detached, anything delivered to it is dropped,
so outcomes that arrive after a session is torn down are absorbed without
reaching a channel that no longer wants them.
"""

import asyncio
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from .service import ResolvedService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrowserStateChanged:
    running: bool
    error: bool


@dataclass(frozen=True)
class PublisherStateChanged:
    running: bool
    error: bool


@dataclass(frozen=True)
class ServiceRemoved:
    name: str


@dataclass(frozen=True)
class ServiceResolved:
    service: ResolvedService


@dataclass(frozen=True)
class ServiceNameChanged:
    new_name: str


Event = (
    BrowserStateChanged
    | PublisherStateChanged
    | ServiceRemoved
    | ServiceResolved
    | ServiceNameChanged
)


class EventChannel(ABC):
    """One-way sink for lifecycle notifications."""

    @abstractmethod
    def publish(self, event: Event) -> None:
        """Receive a notification.

        May be called from any thread, including a platform callback thread.
        Implementations must not block.
        """
        pass


class CallbackEventChannel(EventChannel):
    """Forwards every event to a plain callable."""

    def __init__(self, callback: Callable[[Event], None]):
        self._callback = callback

    def publish(self, event: Event) -> None:
        self._callback(event)


class QueueEventChannel(EventChannel):
    """Hands events over to an asyncio queue on a given event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        """Initialize the channel.

        Args:
            loop: Loop owning the queue. Defaults to the running loop, so
                construct this inside a coroutine when no loop is given.
        """
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[Event] = asyncio.Queue()

    def publish(self, event: Event) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self) -> Event:
        """Wait for the next event."""
        return await self._queue.get()

    def empty(self) -> bool:
        return self._queue.empty()


class ChannelRegistry:
    """Maps session tokens to live event channels."""

    def __init__(self):
        self._channels: dict[int, EventChannel] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def attach(self, channel: EventChannel) -> int:
        """Register a channel and return the session token that addresses it."""
        with self._lock:
            token = next(self._tokens)
            self._channels[token] = channel
        return token

    def detach(self, token: int) -> None:
        """Invalidate a token. Later deliveries to it are dropped."""
        with self._lock:
            self._channels.pop(token, None)

    def is_attached(self, token: int) -> bool:
        with self._lock:
            return token in self._channels

    def deliver(self, token: int, event: Event) -> bool:
        """Deliver an event to the channel behind a token.

        Returns:
            True if a channel received the event, False if it was dropped.
        """
        # Lookup under the lock, publish outside it so a channel may call
        # back into sessions without deadlocking.
        with self._lock:
            channel = self._channels.get(token)
        if channel is None:
            logger.debug(f"Dropping {event!r} for detached session {token}")
            return False

        try:
            channel.publish(event)
        except Exception:
            logger.exception(f"Event channel for session {token} failed on {event!r}")
            return False
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
