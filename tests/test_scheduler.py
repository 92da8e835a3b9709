"""
Scheduler Test Suite
Priority dispatch, bounded concurrency, retry with backoff, dependencies
and cancellation.
"""

from __future__ import annotations

import threading
import time

import pytest

from tests.helpers import EventRecorder
from tribunal.errors import TransientExecutionError, ValidationError
from tribunal.models import ExecutionStatus
from tribunal.scheduler import PREREQUISITE_FAILED, SHUTDOWN, Scheduler


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scheduler(bus, sleeps):
    s = Scheduler(max_workers=1, retry_attempts=3, backoff_base=0.5, bus=bus, sleep=sleeps.append)
    yield s
    s.shutdown(wait=True)


def _recording(order, name, cost=0.0):
    def job():
        order.append(name)
        return cost
    return job


def _flaky(failures, cost=1.0):
    """Raise TransientExecutionError ``failures`` times, then succeed."""
    remaining = [failures]

    def job():
        if remaining[0] > 0:
            remaining[0] -= 1
            raise TransientExecutionError("upstream timeout")
        return cost
    return job


def _gated(gate, order, name):
    def job():
        gate.wait(timeout=5)
        order.append(name)
        return 0.0
    return job


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatch:

    def test_priority_then_fifo(self, scheduler, make_proposal):
        gate, order = threading.Event(), []
        scheduler.schedule(make_proposal("blocker"), _gated(gate, order, "blocker"))
        for name, priority in [("low", 0), ("high", 5), ("mid", 2), ("mid-later", 2)]:
            scheduler.schedule(make_proposal(name, priority=priority), _recording(order, name))

        assert scheduler.status("low") == "ready"
        gate.set()
        assert scheduler.wait_idle(timeout=5)
        assert order == ["blocker", "high", "mid", "mid-later", "low"]

    def test_success_record(self, scheduler, bus, make_proposal):
        events = EventRecorder(bus, "scheduler.succeeded")
        records = []
        proposal = make_proposal()
        scheduler.schedule(proposal, lambda: 12.5, on_done=records.append)
        assert scheduler.wait_idle(timeout=5)

        (record,) = records
        assert record.status == ExecutionStatus.SUCCEEDED
        assert record.attempts == 1
        assert record.actual_cost == 12.5
        assert scheduler.status(proposal.id) == record
        assert events.payloads("scheduler.succeeded")[0]["proposal_id"] == proposal.id

    def test_worker_bound(self, bus, make_proposal):
        scheduler = Scheduler(max_workers=2, bus=bus)
        lock = threading.Lock()
        active, peak = [0], [0]

        def job():
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1
            return 0.0

        try:
            for _ in range(6):
                scheduler.schedule(make_proposal(), job)
            assert scheduler.wait_idle(timeout=5)
        finally:
            scheduler.shutdown()
        assert 1 <= peak[0] <= 2
        assert scheduler.status()["succeeded"] == 6

    def test_duplicate_schedule(self, scheduler, make_proposal):
        proposal = make_proposal()
        scheduler.schedule(proposal, lambda: 0.0)
        with pytest.raises(ValidationError):
            scheduler.schedule(proposal, lambda: 0.0)

    def test_schedule_after_shutdown(self, bus, make_proposal):
        scheduler = Scheduler(bus=bus)
        scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.schedule(make_proposal(), lambda: 0.0)

    @pytest.mark.parametrize("kwargs", [
        {"max_workers": 0},
        {"retry_attempts": 0},
        {"backoff_multiplier": 0.5},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValidationError):
            Scheduler(**kwargs)


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

class TestRetries:

    def test_backoff_delays(self, scheduler):
        assert [scheduler.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_transient_failures_are_retried(self, scheduler, sleeps, make_proposal):
        records = []
        scheduler.schedule(make_proposal(), _flaky(2, cost=7.0), on_done=records.append)
        assert scheduler.wait_idle(timeout=5)

        (record,) = records
        assert record.status == ExecutionStatus.SUCCEEDED
        assert record.attempts == 3
        assert record.actual_cost == 7.0
        assert sleeps == [0.5, 1.0]

    def test_retries_exhausted(self, scheduler, sleeps, make_proposal):
        records = []
        scheduler.schedule(make_proposal(), _flaky(10), on_done=records.append)
        assert scheduler.wait_idle(timeout=5)

        (record,) = records
        assert record.status == ExecutionStatus.FAILED
        assert record.attempts == 3
        assert record.error == "upstream timeout"
        assert sleeps == [0.5, 1.0]

    def test_other_errors_fail_immediately(self, scheduler, sleeps, make_proposal):
        def job():
            raise ValueError("boom")

        records = []
        scheduler.schedule(make_proposal(), job, on_done=records.append)
        assert scheduler.wait_idle(timeout=5)

        (record,) = records
        assert record.status == ExecutionStatus.FAILED
        assert record.attempts == 1
        assert record.error == "ValueError: boom"
        assert sleeps == []

    def test_callback_errors_do_not_stall_the_queue(self, scheduler, make_proposal):
        def broken_callback(record):
            raise RuntimeError("observer bug")

        order = []
        scheduler.schedule(make_proposal("a"), _recording(order, "a"), on_done=broken_callback)
        scheduler.schedule(make_proposal("b"), _recording(order, "b"))
        assert scheduler.wait_idle(timeout=5)
        assert order == ["a", "b"]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class TestDependencies:

    def test_waits_for_prerequisite(self, scheduler, make_proposal):
        order = []
        scheduler.schedule(make_proposal("child", depends_on=("parent",)), _recording(order, "child"))
        assert scheduler.status("child") == "waiting"

        scheduler.schedule(make_proposal("parent"), _recording(order, "parent"))
        assert scheduler.wait_idle(timeout=5)

        assert order == ["parent", "child"]
        assert scheduler.status("child").status == ExecutionStatus.SUCCEEDED

    def test_failed_prerequisite_fails_dependents(self, scheduler, make_proposal):
        def fail():
            raise ValueError("nope")

        records = {}

        def collect(record):
            records[record.proposal_id] = record

        scheduler.schedule(make_proposal("child", depends_on=("parent",)), lambda: 0.0, on_done=collect)
        scheduler.schedule(
            make_proposal("grandchild", depends_on=("child",)), lambda: 0.0, on_done=collect,
        )
        scheduler.schedule(make_proposal("parent"), fail, on_done=collect)
        assert scheduler.wait_idle(timeout=5)

        assert records["parent"].status == ExecutionStatus.FAILED
        for pid in ("child", "grandchild"):
            assert records[pid].status == ExecutionStatus.FAILED
            assert records[pid].error == PREREQUISITE_FAILED
            assert records[pid].attempts == 0

    def test_schedule_after_prerequisite_failed(self, scheduler, make_proposal):
        scheduler.cancel("denied")
        records = []
        scheduler.schedule(
            make_proposal("late", depends_on=("denied",)), lambda: 0.0, on_done=records.append,
        )
        (record,) = records
        assert record.error == PREREQUISITE_FAILED


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:

    def test_cancel_queued(self, scheduler, make_proposal):
        gate, order = threading.Event(), []
        records = []
        scheduler.schedule(make_proposal("blocker"), _gated(gate, order, "blocker"))
        scheduler.schedule(make_proposal("queued"), _recording(order, "queued"), on_done=records.append)

        assert scheduler.cancel("queued") is True
        gate.set()
        assert scheduler.wait_idle(timeout=5)

        assert order == ["blocker"]
        (record,) = records
        assert record.status == ExecutionStatus.CANCELLED
        assert scheduler.cancel("queued") is False

    def test_cancel_running_stops_at_retry_boundary(self, bus, make_proposal):
        proposal = make_proposal()
        holder = {}

        def sleep(delay):
            holder["cancelled"] = holder["scheduler"].cancel(proposal.id)

        scheduler = Scheduler(max_workers=1, bus=bus, sleep=sleep)
        holder["scheduler"] = scheduler
        records = []
        try:
            scheduler.schedule(proposal, _flaky(5), on_done=records.append)
            assert scheduler.wait_idle(timeout=5)
        finally:
            scheduler.shutdown()

        assert holder["cancelled"] is True
        (record,) = records
        assert record.status == ExecutionStatus.CANCELLED
        assert record.attempts == 1

    def test_cancel_unknown_leaves_tombstone(self, scheduler, make_proposal):
        assert scheduler.cancel("ghost") is True
        assert scheduler.status("ghost").status == ExecutionStatus.CANCELLED
        with pytest.raises(ValidationError):
            scheduler.schedule(make_proposal("ghost"), lambda: 0.0)

    def test_counts(self, scheduler, make_proposal):
        scheduler.schedule(make_proposal("ok"), lambda: 0.0)
        scheduler.schedule(make_proposal("waits", depends_on=("never",)), lambda: 0.0)
        assert scheduler.wait_idle(timeout=5)
        scheduler.cancel("other")

        assert scheduler.status() == {
            "waiting": 1, "ready": 0, "running": 0,
            "succeeded": 1, "failed": 0, "cancelled": 1,
        }
        assert scheduler.status("nobody") is None


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------

class TestShutdown:

    def test_unstarted_jobs_are_recorded_as_cancelled(self, bus, make_proposal):
        scheduler = Scheduler(max_workers=1, bus=bus, sleep=lambda s: None)
        events = EventRecorder(bus, "scheduler.cancelled", "scheduler.succeeded")
        gate, order, records = threading.Event(), [], []
        scheduler.schedule(make_proposal("a"), _gated(gate, order, "a"), on_done=records.append)
        for name in ("b", "c"):
            scheduler.schedule(make_proposal(name), _recording(order, name), on_done=records.append)
        scheduler.schedule(
            make_proposal("d", depends_on=("never",)), _recording(order, "d"), on_done=records.append,
        )
        assert scheduler.status("a") == "running"

        scheduler.shutdown(wait=False)
        gate.set()
        assert scheduler.wait_idle(timeout=5)

        by_id = {}
        for record in records:
            by_id.setdefault(record.proposal_id, []).append(record)
        assert sorted(by_id) == ["a", "b", "c", "d"]
        assert all(len(found) == 1 for found in by_id.values())
        assert by_id["a"][0].status == ExecutionStatus.SUCCEEDED
        for name in ("b", "c", "d"):
            (record,) = by_id[name]
            assert record.status == ExecutionStatus.CANCELLED
            assert record.error == SHUTDOWN
            assert record.attempts == 0
        assert order == ["a"]
        assert events.topics().count("scheduler.cancelled") == 3
        assert scheduler.status() == {
            "waiting": 0, "ready": 0, "running": 0,
            "succeeded": 1, "failed": 0, "cancelled": 3,
        }

    def test_shutdown_is_repeatable(self, scheduler, make_proposal):
        records = []
        scheduler.schedule(make_proposal("waits", depends_on=("never",)), lambda: 0.0, on_done=records.append)
        scheduler.shutdown(wait=True)
        scheduler.shutdown(wait=True)
        (record,) = records
        assert record.status == ExecutionStatus.CANCELLED
