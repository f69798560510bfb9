"""Tests for the serialized resolve queue."""

import sys
import threading
import time

import pytest

from conftest import FakePlatform, RecordingChannel, make_info
from nsdkit.events import ChannelRegistry, ServiceResolved
from nsdkit.platform.base import FailureCode
from nsdkit.resolve_queue import ResolveQueue
from nsdkit.service import ServiceRef

X = ServiceRef("X", "_http._tcp")
Y = ServiceRef("Y", "_http._tcp")
Z = ServiceRef("Z", "_http._tcp")


@pytest.fixture
def session(registry, channel):
    return registry.attach(channel)


def resolved_names(channel: RecordingChannel) -> list[str]:
    return [e.service.name for e in channel.events if isinstance(e, ServiceResolved)]


class TestOrdering:
    """FIFO resolution without failures."""

    def test_resolves_in_discovery_order(self, platform, queue, channel, session):
        """X, Y, Z are resolved one after the other, in order."""
        for ref in (X, Y, Z):
            queue.enqueue(ref, session)

        assert platform.resolve_order == [X]
        assert queue.in_flight == X
        assert queue.pending == (Y, Z)

        platform.complete()
        platform.complete()
        platform.complete()

        assert platform.resolve_order == [X, Y, Z]
        assert resolved_names(channel) == ["X", "Y", "Z"]
        assert queue.idle

    def test_resolved_event_carries_service(self, platform, queue, channel, session):
        queue.enqueue(X, session)
        platform.complete(port=8080)

        (event,) = channel.events
        assert event.service.name == "X"
        assert event.service.service_type == "_http._tcp"
        assert event.service.hostname == "x.local"
        assert event.service.address == "192.168.1.10"
        assert event.service.port == 8080
        assert event.service.txt == {b"path": b"/"}

    def test_enqueue_while_idle_issues_immediately(self, platform, queue, session):
        queue.enqueue(X, session)
        platform.complete()
        assert queue.idle

        queue.enqueue(Y, session)
        assert platform.resolve_order == [X, Y]
        assert queue.in_flight == Y


class TestSingleFlight:
    """At most one resolve is ever outstanding."""

    def test_burst_of_enqueues(self, platform, queue, session):
        refs = [ServiceRef(f"dev{i}", "_http._tcp") for i in range(12)]
        for ref in refs:
            queue.enqueue(ref, session)

        assert len(platform.open_resolves) == 1
        while platform.open_resolves:
            platform.complete()

        assert platform.max_concurrent_resolves == 1
        assert platform.resolve_order == refs

    def test_concurrent_enqueue_from_threads(self, platform, queue, channel, session):
        """Enqueueing from several threads never opens a second resolve."""

        def worker(prefix: str) -> None:
            for i in range(25):
                queue.enqueue(ServiceRef(f"{prefix}-{i}", "_http._tcp"), session)

        threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        while platform.open_resolves:
            platform.complete()

        assert platform.max_concurrent_resolves == 1
        assert len(resolved_names(channel)) == 100
        assert queue.idle


class TestBusyResolver:
    """ALREADY_ACTIVE sends the request back to the tail."""

    def test_requeued_behind_others(self, platform, queue, channel, session):
        queue.enqueue(X, session)
        queue.enqueue(Y, session)

        platform.fail(FailureCode.ALREADY_ACTIVE)

        assert queue.in_flight == Y
        assert queue.pending == (X,)

        platform.complete()
        platform.complete()

        assert platform.resolve_order == [X, Y, X]
        assert resolved_names(channel) == ["Y", "X"]

    def test_requeued_once_per_failure_and_terminates(self, platform, queue, channel, session):
        queue.enqueue(X, session)

        for _ in range(3):
            platform.fail(FailureCode.ALREADY_ACTIVE)
            assert queue.in_flight == X
            assert queue.pending == ()

        platform.complete()

        assert platform.resolve_order == [X, X, X, X]
        assert resolved_names(channel) == ["X"]
        assert queue.idle
        assert queue.get_status()["retried"] == 3

    def test_retry_delay_defers_next_resolve(self, platform, registry, channel):
        queue = ResolveQueue(platform, registry, busy_retry_delay=0.01)
        session = registry.attach(channel)
        queue.enqueue(X, session)

        platform.fail(FailureCode.ALREADY_ACTIVE)
        assert queue.in_flight is None
        assert queue.pending == (X,)

        deadline = time.monotonic() + 2.0
        while not platform.open_resolves and time.monotonic() < deadline:
            time.sleep(0.005)

        assert platform.resolve_order == [X, X]
        platform.complete()
        assert resolved_names(channel) == ["X"]


class ImmediatePlatform(FakePlatform):
    """Answers resolves from inside resolve_service() once `immediate` is set.

    The first `busy_answers` resolves fail with ALREADY_ACTIVE, the rest succeed.
    """

    def __init__(self, immediate: bool = True, busy_answers: int = 0):
        super().__init__()
        self.immediate = immediate
        self.busy_answers = busy_answers

    def resolve_service(self, ref, handler):
        if not self.immediate:
            super().resolve_service(ref, handler)
            return
        self.resolve_order.append(ref)
        if self.busy_answers:
            self.busy_answers -= 1
            handler.on_resolve_failed(ref, FailureCode.ALREADY_ACTIVE)
        else:
            handler.on_service_resolved(ref, make_info(ref))


class TestSynchronousOutcomes:
    """Outcomes delivered before resolve_service() returns."""

    def test_busy_answers_beyond_recursion_limit(self, registry, channel):
        """A request answered busy over and over is still resolved in the end."""
        busy = sys.getrecursionlimit() + 500
        platform = ImmediatePlatform(busy_answers=busy)
        queue = ResolveQueue(platform, registry)
        session = registry.attach(channel)

        queue.enqueue(X, session)

        assert resolved_names(channel) == ["X"]
        assert len(platform.resolve_order) == busy + 1
        status = queue.get_status()
        assert status["retried"] == busy
        assert status["failed"] == 0
        assert queue.idle

    def test_backlog_beyond_recursion_limit(self, registry, channel):
        """A long backlog drains in order when every answer is synchronous."""
        platform = ImmediatePlatform(immediate=False)
        queue = ResolveQueue(platform, registry)
        session = registry.attach(channel)
        refs = [ServiceRef(f"dev{i}", "_http._tcp") for i in range(sys.getrecursionlimit() + 500)]

        for ref in refs:
            queue.enqueue(ref, session)
        assert queue.in_flight == refs[0]

        platform.immediate = True
        platform.complete()

        assert resolved_names(channel) == [ref.name for ref in refs]
        assert queue.get_status()["failed"] == 0
        assert queue.idle

    def test_busy_with_retry_delay_waits_for_timer(self, registry, channel):
        platform = ImmediatePlatform(busy_answers=1)
        queue = ResolveQueue(platform, registry, busy_retry_delay=0.05)
        session = registry.attach(channel)

        queue.enqueue(X, session)
        assert platform.resolve_order == [X]
        assert queue.pending == (X,)

        deadline = time.monotonic() + 2.0
        while not queue.idle and time.monotonic() < deadline:
            time.sleep(0.005)

        assert resolved_names(channel) == ["X"]
        assert platform.resolve_order == [X, X]


class TestTerminalFailure:
    """Any other failure drops the request without telling anyone."""

    def test_failed_ref_is_dropped(self, platform, queue, channel, session):
        queue.enqueue(X, session)
        queue.enqueue(Y, session)

        platform.fail(FailureCode.INTERNAL_ERROR)

        assert queue.in_flight == Y
        assert queue.pending == ()
        platform.complete()

        assert resolved_names(channel) == ["Y"]
        assert platform.resolve_order == [X, Y]
        assert queue.get_status()["failed"] == 1

    def test_synchronous_rejection_is_terminal(self, platform, queue, session):
        platform.resolve_error = RuntimeError("resolver gone")
        queue.enqueue(X, session)

        assert queue.idle
        assert queue.get_status()["failed"] == 1

        platform.resolve_error = None
        queue.enqueue(Y, session)
        assert queue.in_flight == Y


class TestTeardown:
    """Outcomes after teardown are absorbed."""

    def test_outcome_for_detached_session_is_dropped(self, platform, queue, registry):
        """The queue keeps draining when an outcome's session is gone."""
        gone, alive = RecordingChannel(), RecordingChannel()
        gone_session = registry.attach(gone)
        alive_session = registry.attach(alive)

        queue.enqueue(X, gone_session)
        queue.enqueue(Y, alive_session)
        registry.detach(gone_session)

        platform.complete()
        assert gone.events == []
        assert queue.in_flight == Y

        platform.complete()
        assert resolved_names(alive) == ["Y"]

    def test_discard_removes_pending_of_session(self, platform, queue, registry, channel):
        mine = registry.attach(channel)
        other = registry.attach(RecordingChannel())

        queue.enqueue(X, mine)
        queue.enqueue(Y, mine)
        queue.enqueue(Z, other)

        assert queue.discard(mine) == 1
        assert queue.in_flight == X
        assert queue.pending == (Z,)

    def test_stale_outcome_after_clear(self, platform, queue, channel, session):
        queue.enqueue(X, session)
        queue.enqueue(Y, session)
        queue.clear()

        assert queue.idle
        platform.complete()

        assert channel.events == []
        assert queue.idle

    def test_mismatched_outcome_is_ignored(self, platform, queue, channel, session):
        queue.enqueue(X, session)
        queue.on_resolve_failed(Y, FailureCode.ALREADY_ACTIVE)

        assert queue.in_flight == X
        assert queue.pending == ()


class TestDeduplicate:
    """Optional skipping of duplicate requests."""

    def test_duplicates_kept_by_default(self, platform, queue, session):
        queue.enqueue(X, session)
        queue.enqueue(X, session)
        assert queue.pending == (X,)

    def test_duplicates_skipped_when_enabled(self, platform, registry, channel):
        queue = ResolveQueue(platform, registry, deduplicate=True)
        session = registry.attach(channel)

        queue.enqueue(X, session)
        queue.enqueue(Y, session)
        queue.enqueue(X, session)
        queue.enqueue(Y, session)

        assert queue.in_flight == X
        assert queue.pending == (Y,)
        assert queue.get_status()["skipped"] == 2

    def test_same_ref_for_other_session_is_kept(self, platform, registry):
        queue = ResolveQueue(platform, registry, deduplicate=True)
        a = registry.attach(RecordingChannel())
        b = registry.attach(RecordingChannel())

        queue.enqueue(X, a)
        queue.enqueue(X, b)
        assert queue.pending == (X,)


class TestStatus:
    def test_get_status(self, platform, queue, session):
        queue.enqueue(X, session)
        queue.enqueue(Y, session)
        platform.complete()

        status = queue.get_status()
        assert status["pending"] == 0
        assert status["in_flight"] == "Y._http._tcp"
        assert status["enqueued"] == 2
        assert status["resolved"] == 1

    def test_separate_queues_are_independent(self):
        """Each resolver domain gets its own queue."""
        first, second = FakePlatform(), FakePlatform()
        registry = ChannelRegistry()
        session = registry.attach(RecordingChannel())
        q1 = ResolveQueue(first, registry)
        q2 = ResolveQueue(second, registry)

        q1.enqueue(X, session)
        q2.enqueue(Y, session)

        assert first.resolve_order == [X]
        assert second.resolve_order == [Y]
