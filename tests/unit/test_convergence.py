"""
Unit tests for replication convergence detection.

Tests cover:
- Tail then complete converges exactly once
- Complete events before the tail are ignored
- wait() closes the subscription and honours timeouts
"""

import asyncio

import pytest

from archival.logvault.convergence import ConvergenceDetector, ConvergenceState
from archival.logvault.errors import LogStoreError
from archival.logvault.logstore.base import (
    Entry,
    ReplicationComplete,
    ReplicationFanout,
    ReplicationProgress,
    database_address,
)

ADDRESS = database_address("events")


def progress(payload="entry0", pending=()):
    entry = Entry.create(ADDRESS, payload, [], 1)
    return ReplicationProgress(ADDRESS, entry, tuple(pending))


class TestConvergenceDetector:
    """Tests for the convergence state machine."""

    @pytest.fixture
    def detector(self):
        return ConvergenceDetector(ADDRESS)

    def test_initial_state(self, detector):
        assert detector.state is ConvergenceState.AWAITING_TAIL
        assert not detector.converged
        assert not detector.tail_observed

    def test_tail_then_complete_converges(self, detector):
        assert detector.feed(progress(pending=["abc"])) is False
        assert detector.feed(progress("entry1")) is False
        assert detector.tail_observed

        assert detector.feed(ReplicationComplete(ADDRESS, 2)) is True
        assert detector.converged

    def test_complete_before_tail_does_not_converge(self, detector):
        assert detector.feed(ReplicationComplete(ADDRESS, 1)) is False
        assert not detector.converged

        detector.feed(progress())
        assert detector.feed(ReplicationComplete(ADDRESS, 1)) is True

    def test_progress_with_pending_is_not_tail(self, detector):
        detector.feed(progress(pending=["a", "b"]))
        assert detector.feed(ReplicationComplete(ADDRESS, 1)) is False
        assert not detector.tail_observed

    def test_convergence_reported_once(self, detector):
        detector.feed(progress())
        assert detector.feed(ReplicationComplete(ADDRESS, 1)) is True

        # Later events are ignored
        assert detector.feed(progress("entry2")) is False
        assert detector.feed(ReplicationComplete(ADDRESS, 1)) is False
        assert detector.events_seen == 2

    def test_reset(self, detector):
        detector.feed(progress())
        detector.feed(ReplicationComplete(ADDRESS, 1))

        detector.reset()

        assert detector.state is ConvergenceState.AWAITING_TAIL
        assert detector.events_seen == 0


class TestConvergenceWait:
    """Tests for ConvergenceDetector.wait()."""

    @pytest.mark.asyncio
    async def test_wait_returns_on_convergence(self):
        fanout = ReplicationFanout()
        subscription = fanout.subscribe()
        detector = ConvergenceDetector(ADDRESS)

        fanout.publish(progress(pending=["x"]))
        fanout.publish(progress("entry1"))
        fanout.publish(ReplicationComplete(ADDRESS, 2))

        await detector.wait(subscription, timeout=1.0)

        assert detector.converged
        assert subscription.closed
        assert not fanout.subscriptions

    @pytest.mark.asyncio
    async def test_wait_consumes_events_published_later(self):
        fanout = ReplicationFanout()
        subscription = fanout.subscribe()
        detector = ConvergenceDetector(ADDRESS)

        async def replicate():
            await asyncio.sleep(0.01)
            fanout.publish(ReplicationComplete(ADDRESS, 0))
            fanout.publish(progress())
            fanout.publish(ReplicationComplete(ADDRESS, 1))

        task = asyncio.create_task(replicate())
        await detector.wait(subscription, timeout=1.0)
        await task

        assert detector.converged
        assert detector.events_seen == 3

    @pytest.mark.asyncio
    async def test_wait_timeout_closes_subscription(self):
        fanout = ReplicationFanout()
        subscription = fanout.subscribe()
        detector = ConvergenceDetector(ADDRESS)

        with pytest.raises(asyncio.TimeoutError):
            await detector.wait(subscription, timeout=0.05)

        assert subscription.closed
        assert not detector.converged

    @pytest.mark.asyncio
    async def test_wait_raises_when_stream_closes_early(self):
        fanout = ReplicationFanout()
        subscription = fanout.subscribe()
        detector = ConvergenceDetector(ADDRESS)

        fanout.publish(progress(pending=["x"]))
        fanout.close_all()

        with pytest.raises(LogStoreError):
            await detector.wait(subscription, timeout=1.0)
