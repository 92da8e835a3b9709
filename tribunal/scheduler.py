"""
Scheduler
Runs admitted proposals on a bounded worker pool.

    waiting  -> prerequisites (``depends_on``) not yet SUCCEEDED
    ready    -> priority heap: higher priority first, then FIFO
    running  -> at most ``max_workers`` in flight
    done     -> SUCCEEDED | FAILED | CANCELLED (ExecutionRecord)

A job returns the actual cost of the executed action. A
TransientExecutionError is retried with exponential backoff, up to
``retry_attempts`` total attempts; any other exception fails the job on
the spot. Every job ends with exactly one ExecutionRecord handed to its
``on_done`` callback, so nothing is silently dropped; shutdown records
jobs that never started as CANCELLED.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from tribunal.errors import TransientExecutionError, ValidationError
from tribunal.event_bus import EventBus
from tribunal.models import ExecutionRecord, ExecutionStatus, Proposal, utcnow

logger = logging.getLogger(__name__)

Job = Callable[[], float]
DoneCallback = Callable[[ExecutionRecord], None]

PREREQUISITE_FAILED = "prerequisite_failed"
SHUTDOWN = "shutdown"


@dataclass
class _Entry:
    proposal: Proposal
    job: Job
    on_done: Optional[DoneCallback]
    seq: int
    running: bool = False
    cancelled: bool = False


class Scheduler:

    def __init__(
        self,
        max_workers: int = 4,
        retry_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_multiplier: float = 2.0,
        bus: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_workers < 1:
            raise ValidationError(f"max_workers must be >= 1 (got {max_workers})")
        if retry_attempts < 1:
            raise ValidationError(f"retry_attempts must be >= 1 (got {retry_attempts})")
        if backoff_base < 0 or backoff_multiplier < 1:
            raise ValidationError(
                f"Invalid backoff (base={backoff_base}, multiplier={backoff_multiplier})"
            )
        self.max_workers = max_workers
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base
        self.backoff_multiplier = backoff_multiplier
        self._bus = bus
        self._sleep = sleep

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tribunal-exec")
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._entries: dict[str, _Entry] = {}
        self._waiting: dict[str, _Entry] = {}
        self._ready: list[tuple[int, int, str]] = []
        self._done: dict[str, ExecutionRecord] = {}
        self._running = 0
        self._completing = 0
        self._closed = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1``."""
        return self.backoff_base * self.backoff_multiplier ** (attempt - 1)

    # -- internal (condition held) -------------------------------------------

    def _prereq_state(self, entry: _Entry) -> Optional[bool]:
        """True if every prerequisite succeeded, False if one failed, None while pending."""
        for dep in entry.proposal.depends_on:
            record = self._done.get(dep)
            if record is None:
                return None
            if record.status != ExecutionStatus.SUCCEEDED:
                return False
        return True

    def _push(self, entry: _Entry) -> None:
        heapq.heappush(self._ready, (-entry.proposal.priority, entry.seq, entry.proposal.id))

    def _release_waiters(self) -> list[_Entry]:
        """Move unblocked waiters to the ready heap; return those that can never run."""
        doomed = []
        for pid, entry in list(self._waiting.items()):
            state = self._prereq_state(entry)
            if state is None:
                continue
            del self._waiting[pid]
            if state:
                self._push(entry)
            else:
                doomed.append(entry)
        return doomed

    # -- dispatch -------------------------------------------------------------

    def _dispatch(self) -> None:
        with self._cond:
            while self._ready and self._running < self.max_workers and not self._closed:
                _, _, pid = heapq.heappop(self._ready)
                entry = self._entries[pid]
                if entry.cancelled or pid in self._done:
                    continue
                entry.running = True
                self._running += 1
                self._pool.submit(self._run, entry)
            self._cond.notify_all()

    def _run(self, entry: _Entry) -> None:
        pid = entry.proposal.id
        attempt = 0
        status = ExecutionStatus.FAILED
        actual_cost: Optional[float] = None
        error: Optional[str] = None
        while True:
            if entry.cancelled:
                status, error = ExecutionStatus.CANCELLED, "cancelled"
                break
            attempt += 1
            try:
                actual_cost = float(entry.job())
                status = ExecutionStatus.SUCCEEDED
                break
            except TransientExecutionError as exc:
                error = str(exc) or type(exc).__name__
                if attempt >= self.retry_attempts:
                    logger.warning("Execution of %s failed after %d attempts: %s", pid, attempt, error)
                    break
                delay = self.backoff_delay(attempt)
                logger.info("Transient failure on %s (attempt %d), retrying in %.2fs", pid, attempt, delay)
                self._sleep(delay)
            except Exception as exc:
                logger.exception("Execution of %s failed", pid)
                error = f"{type(exc).__name__}: {exc}"
                break

        self._complete(entry, ExecutionRecord(
            proposal_id=pid,
            status=status,
            attempts=attempt,
            actual_cost=actual_cost,
            error=error,
            finished_at=utcnow(),
        ))

    def _complete(self, entry: Optional[_Entry], record: ExecutionRecord) -> None:
        """Record a finished job, notify its owner, then cascade to dependents."""
        with self._cond:
            self._completing += 1
        try:
            work = [(entry, record)]
            while work:
                entry, record = work.pop(0)
                try:
                    if entry is not None and entry.on_done is not None:
                        try:
                            entry.on_done(record)
                        except Exception:
                            logger.exception("on_done callback for %s failed", record.proposal_id)
                    if self._bus is not None:
                        topic = f"scheduler.{record.status.value.lower()}"
                        self._bus.publish(topic, record.to_record(), publisher="scheduler")
                finally:
                    with self._cond:
                        self._done[record.proposal_id] = record
                        if entry is not None and entry.running:
                            entry.running = False
                            self._running -= 1
                        for doomed in self._release_waiters():
                            work.append((doomed, ExecutionRecord(
                                proposal_id=doomed.proposal.id,
                                status=ExecutionStatus.FAILED,
                                attempts=0,
                                error=PREREQUISITE_FAILED,
                                finished_at=utcnow(),
                            )))
            self._dispatch()
        finally:
            with self._cond:
                self._completing -= 1
                self._cond.notify_all()

    # -- public API -----------------------------------------------------------

    def schedule(self, proposal: Proposal, job: Job, on_done: Optional[DoneCallback] = None) -> None:
        """Queue ``job`` for ``proposal``; it runs once every prerequisite has succeeded."""
        with self._cond:
            if self._closed:
                raise RuntimeError("Scheduler is shut down")
            if proposal.id in self._entries or proposal.id in self._done:
                raise ValidationError(f"Proposal {proposal.id} is already scheduled")
            entry = _Entry(proposal, job, on_done, next(self._seq))
            self._entries[proposal.id] = entry
            state = self._prereq_state(entry)
            if state is None:
                self._waiting[proposal.id] = entry
                logger.debug("%s waiting on %s", proposal.id, list(proposal.depends_on))
            elif state:
                self._push(entry)

        if state is False:
            self._complete(entry, ExecutionRecord(
                proposal_id=proposal.id,
                status=ExecutionStatus.FAILED,
                attempts=0,
                error=PREREQUISITE_FAILED,
                finished_at=utcnow(),
            ))
        else:
            self._dispatch()

    def cancel(self, proposal_id: str) -> bool:
        """
        Cooperatively cancel ``proposal_id``.

        A queued or waiting job is cancelled at once; a running job stops at
        its next retry boundary. Cancelling an id that was never scheduled
        records it as CANCELLED so its dependents fail instead of waiting.
        Returns False if the job had already finished.
        """
        with self._cond:
            if proposal_id in self._done:
                return False
            entry = self._entries.get(proposal_id)
            if entry is not None:
                entry.cancelled = True
                if entry.running:
                    return True
                self._waiting.pop(proposal_id, None)
        self._complete(entry, ExecutionRecord(
            proposal_id=proposal_id,
            status=ExecutionStatus.CANCELLED,
            attempts=0,
            error="cancelled",
            finished_at=utcnow(),
        ))
        return True

    def status(self, proposal_id: Optional[str] = None):
        """
        With an id: that job's ExecutionRecord, or a state string
        (``waiting``, ``ready``, ``running``), or None if unknown.
        Without: queue counters.
        """
        with self._cond:
            if proposal_id is not None:
                if proposal_id in self._done:
                    return self._done[proposal_id]
                entry = self._entries.get(proposal_id)
                if entry is None:
                    return None
                if entry.running:
                    return "running"
                return "waiting" if proposal_id in self._waiting else "ready"
            counts = {s.value.lower(): 0 for s in ExecutionStatus}
            for record in self._done.values():
                counts[record.status.value.lower()] += 1
            return {
                "waiting": len(self._waiting),
                "ready": sum(
                    1 for _, _, pid in self._ready
                    if pid not in self._done and not self._entries[pid].cancelled
                ),
                "running": self._running,
                **counts,
            }

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is ready, running or completing. False on timeout."""
        def idle() -> bool:
            live_ready = any(pid not in self._done for _, _, pid in self._ready)
            return self._running == 0 and self._completing == 0 and not live_ready

        with self._cond:
            return self._cond.wait_for(idle, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting work. Jobs that never started are recorded as
        CANCELLED (error ``shutdown``); running jobs finish, and with
        ``wait`` the call blocks until they have.
        """
        with self._cond:
            self._closed = True
            pending = [
                self._entries[pid] for _, _, pid in sorted(self._ready)
                if pid not in self._done and not self._entries[pid].cancelled
            ]
            pending.extend(self._waiting.values())
            self._ready.clear()
            self._waiting.clear()
            for entry in pending:
                entry.cancelled = True
            self._cond.notify_all()
        for entry in pending:
            self._complete(entry, ExecutionRecord(
                proposal_id=entry.proposal.id,
                status=ExecutionStatus.CANCELLED,
                attempts=0,
                error=SHUTDOWN,
                finished_at=utcnow(),
            ))
        if pending:
            logger.warning("Scheduler shutdown cancelled %d queued jobs", len(pending))
        self._pool.shutdown(wait=wait)
        logger.info("Scheduler shut down (%d jobs recorded)", len(self._done))
