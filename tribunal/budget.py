"""
Budget Tracker / Circuit Breaker
Hard spend ceiling that no policy, vote or approval can override.

Breaker states:
  CLOSED     admits a proposal iff spent + reserved + estimated cost < limit
  OPEN       denies everything until ``cooldown`` has elapsed since opened_at
  HALF_OPEN  admits exactly one trial; its commit under the limit closes
             the breaker, its failure re-opens it with a fresh cooldown

The breaker opens when committed spend reaches the limit, or after
``fault_threshold`` consecutive execution failures. Every read-modify-write
happens under the lock of the single active billing period.
"""

from __future__ import annotations

import calendar
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tribunal.errors import NotFoundError, ValidationError
from tribunal.event_bus import EventBus
from tribunal.models import BreakerState, BudgetState, Outcome, utcnow

logger = logging.getLogger(__name__)

# Commits older than this no longer count towards the hourly burn rate.
BURN_WINDOW = timedelta(hours=6)


def period_for(now: datetime, cycle_start_day: int = 1) -> str:
    """Billing period key ``YYYY-MM`` named after the month the cycle started in."""
    year, month = now.year, now.month
    if now.day < cycle_start_day:
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return f"{year:04d}-{month:02d}"


def period_end(period_id: str, cycle_start_day: int = 1) -> datetime:
    """First instant of the period that follows ``period_id``, in UTC."""
    year, month = (int(part) for part in period_id.split("-"))
    year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    day = min(cycle_start_day, calendar.monthrange(year, month)[1])
    return datetime(year, month, day, tzinfo=timezone.utc)


def _pressure(state: BudgetState) -> float:
    return min(max(1.0 - state.remaining / state.limit, 0.0), 1.0)


@dataclass
class _Period:
    period_id: str
    spent: float = 0.0
    breaker: BreakerState = BreakerState.CLOSED
    opened_at: Optional[datetime] = None
    consecutive_failures: int = 0
    trial_id: Optional[str] = None
    alerts_sent: set[str] = field(default_factory=set)
    commits: list[tuple[datetime, float]] = field(default_factory=list)


class BudgetTracker:
    """
    Reservation/commit accounting for one active billing period.

    ``reserve``, ``commit``, ``release`` and ``record_failure`` are
    idempotent per proposal id: repeating a call has no further effect.
    """

    def __init__(
        self,
        limit: float,
        cooldown: timedelta,
        fault_threshold: int = 3,
        cycle_start_day: int = 1,
        warning_fraction: float = 0.70,
        critical_fraction: float = 0.90,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if limit <= 0:
            raise ValidationError(f"Budget limit must be positive (got {limit})")
        if fault_threshold < 1:
            raise ValidationError(f"fault_threshold must be >= 1 (got {fault_threshold})")
        self.limit = float(limit)
        self.cooldown = cooldown
        self.fault_threshold = fault_threshold
        self.cycle_start_day = cycle_start_day
        self.warning_fraction = warning_fraction
        self.critical_fraction = critical_fraction
        self._bus = bus
        self._clock = clock
        self._lock = threading.Lock()

        self._period = _Period(period_for(clock(), cycle_start_day))
        self._reservations: dict[str, float] = {}
        self._admissions: dict[str, Outcome] = {}
        self._committed: dict[str, float] = {}
        self._failed: set[str] = set()

    # -- internal (lock held) -----------------------------------------------

    def _reserved_total(self) -> float:
        return sum(self._reservations.values())

    def _roll_period(self, now: datetime, events: list) -> None:
        period_id = period_for(now, self.cycle_start_day)
        if period_id == self._period.period_id:
            return
        logger.info("Budget period %s ended; starting %s", self._period.period_id, period_id)
        previous = self._period
        self._period = _Period(period_id)
        # Per-proposal bookkeeping only matters while a reservation is open.
        live = set(self._reservations)
        self._admissions = {pid: outcome for pid, outcome in self._admissions.items() if pid in live}
        self._committed.clear()
        self._failed.clear()
        events.append(("budget.period_started", {
            "period_id": period_id,
            "previous_period_id": previous.period_id,
            "previous_spent": previous.spent,
        }))

    def _set_breaker(self, state: BreakerState, now: datetime, cause: str, events: list) -> None:
        period = self._period
        previous = period.breaker
        period.breaker = state
        if state == BreakerState.OPEN:
            period.opened_at = now
            period.trial_id = None
        elif state == BreakerState.CLOSED:
            period.opened_at = None
            period.consecutive_failures = 0
            period.trial_id = None
        log = logger.warning if state == BreakerState.OPEN else logger.info
        log("Budget breaker %s -> %s (%s)", previous.value, state.value, cause)
        events.append(("budget.breaker", {
            "period_id": period.period_id,
            "from": previous.value,
            "to": state.value,
            "cause": cause,
            "spent": period.spent,
            "limit": self.limit,
        }))

    def _refresh(self, now: datetime, events: list) -> None:
        self._roll_period(now, events)
        period = self._period
        if (
            period.breaker == BreakerState.OPEN
            and period.opened_at is not None
            and now - period.opened_at >= self.cooldown
        ):
            self._set_breaker(BreakerState.HALF_OPEN, now, "cooldown_elapsed", events)

    def _check_alerts(self, events: list) -> None:
        period = self._period
        fraction = period.spent / self.limit
        for name, threshold in (("warning", self.warning_fraction), ("critical", self.critical_fraction)):
            if fraction >= threshold and name not in period.alerts_sent:
                period.alerts_sent.add(name)
                events.append((f"budget.{name}", {
                    "period_id": period.period_id,
                    "spent": period.spent,
                    "limit": self.limit,
                    "fraction": round(fraction, 4),
                }))

    def _burn_rate(self, now: datetime) -> float:
        period = self._period
        cutoff = now - BURN_WINDOW
        period.commits = [(at, cost) for at, cost in period.commits if at >= cutoff]
        hours = BURN_WINDOW.total_seconds() / 3600.0
        return sum(cost for _, cost in period.commits) / hours

    def _hours_remaining(self, now: datetime) -> float:
        end = period_end(self._period.period_id, self.cycle_start_day)
        return max((end - now).total_seconds() / 3600.0, 0.0)

    def _projection(self, now: datetime) -> tuple[float, float, float]:
        """(projected spend at period end, hourly burn rate, hours remaining)."""
        burn_rate = self._burn_rate(now)
        hours_remaining = self._hours_remaining(now)
        return self._period.spent + burn_rate * hours_remaining, burn_rate, hours_remaining

    def _check_projection(self, now: datetime, events: list) -> None:
        period = self._period
        projected, burn_rate, hours_remaining = self._projection(now)
        if projected <= self.limit or "projection" in period.alerts_sent:
            return
        period.alerts_sent.add("projection")
        logger.warning(
            "Budget period %s projected to reach %.2f of %.2f",
            period.period_id, projected, self.limit,
        )
        events.append(("budget.projection_exceeded", {
            "period_id": period.period_id,
            "projected": round(projected, 4),
            "limit": self.limit,
            "burn_rate": round(burn_rate, 4),
            "hours_remaining": round(hours_remaining, 2),
            "percent_over": round((projected / self.limit - 1.0) * 100.0, 2),
        }))

    def _publish(self, events: list) -> None:
        if self._bus is None:
            return
        for topic, payload in events:
            self._bus.publish(topic, payload, publisher="budget")

    def _snapshot(self) -> BudgetState:
        period = self._period
        return BudgetState(
            period_id=period.period_id,
            spent=period.spent,
            reserved=self._reserved_total(),
            limit=self.limit,
            breaker_state=period.breaker,
            opened_at=period.opened_at,
        )

    # -- public API ---------------------------------------------------------

    def reserve(self, proposal_id: str, estimated_cost: float) -> Outcome:
        """Admit or deny a proposal's estimated cost. Repeat calls return the first answer."""
        if estimated_cost < 0:
            raise ValidationError(f"estimated_cost must be non-negative (got {estimated_cost})")
        events: list = []
        with self._lock:
            if proposal_id in self._admissions:
                return self._admissions[proposal_id]
            now = self._clock()
            self._refresh(now, events)
            period = self._period
            fits = period.spent + self._reserved_total() + estimated_cost < self.limit

            if period.breaker == BreakerState.OPEN:
                outcome = Outcome.DENY
            elif period.breaker == BreakerState.HALF_OPEN:
                if period.trial_id is None and fits:
                    period.trial_id = proposal_id
                    outcome = Outcome.ALLOW
                else:
                    outcome = Outcome.DENY
            else:
                outcome = Outcome.ALLOW if fits else Outcome.DENY

            self._admissions[proposal_id] = outcome
            if outcome == Outcome.ALLOW:
                self._reservations[proposal_id] = float(estimated_cost)
            logger.debug(
                "reserve %s cost=%.4f -> %s (breaker=%s)",
                proposal_id, estimated_cost, outcome.value, period.breaker.value,
            )
        self._publish(events)
        return outcome

    def admit(self, proposal_id: str) -> Outcome:
        """Re-check a held reservation before a later stage admits the proposal."""
        events: list = []
        with self._lock:
            self._refresh(self._clock(), events)
            period = self._period
            if proposal_id not in self._reservations:
                outcome = Outcome.DENY
            elif period.breaker == BreakerState.OPEN:
                outcome = Outcome.DENY
            elif period.breaker == BreakerState.HALF_OPEN:
                if period.trial_id is None:
                    period.trial_id = proposal_id
                outcome = Outcome.ALLOW if period.trial_id == proposal_id else Outcome.DENY
            else:
                outcome = Outcome.ALLOW
        self._publish(events)
        return outcome

    def commit(self, proposal_id: str, actual_cost: float) -> BudgetState:
        """Reconcile a reservation with the actual cost of the executed action."""
        if actual_cost < 0:
            raise ValidationError(f"actual_cost must be non-negative (got {actual_cost})")
        events: list = []
        with self._lock:
            if proposal_id in self._committed:
                return self._snapshot()
            if proposal_id not in self._reservations:
                raise NotFoundError(f"No open budget reservation for proposal {proposal_id}")
            now = self._clock()
            self._refresh(now, events)
            period = self._period

            self._reservations.pop(proposal_id)
            self._committed[proposal_id] = float(actual_cost)
            period.spent += actual_cost
            period.commits.append((now, float(actual_cost)))
            period.consecutive_failures = 0
            was_trial = period.trial_id == proposal_id

            if period.spent >= self.limit:
                if period.breaker != BreakerState.OPEN or was_trial:
                    self._set_breaker(BreakerState.OPEN, now, "limit_reached", events)
            elif was_trial:
                self._set_breaker(BreakerState.CLOSED, now, "trial_succeeded", events)

            self._check_alerts(events)
            self._check_projection(now, events)
            snapshot = self._snapshot()
        self._publish(events)
        return snapshot

    def release(self, proposal_id: str) -> None:
        """
        Return a reservation whose proposal was denied downstream.

        The admission answer is forgotten too, so a later ``reserve`` for
        the same id is evaluated afresh.
        """
        with self._lock:
            self._admissions.pop(proposal_id, None)
            if self._reservations.pop(proposal_id, None) is None:
                return
            if self._period.trial_id == proposal_id:
                self._period.trial_id = None
            logger.debug("released reservation for %s", proposal_id)

    def record_failure(self, proposal_id: str) -> BudgetState:
        """Release the reservation of a failed execution and count the fault."""
        events: list = []
        with self._lock:
            if proposal_id in self._failed or proposal_id in self._committed:
                return self._snapshot()
            self._failed.add(proposal_id)
            self._reservations.pop(proposal_id, None)
            now = self._clock()
            self._refresh(now, events)
            period = self._period

            if period.trial_id == proposal_id:
                self._set_breaker(BreakerState.OPEN, now, "trial_failed", events)
            elif period.breaker == BreakerState.CLOSED:
                period.consecutive_failures += 1
                if period.consecutive_failures >= self.fault_threshold:
                    self._set_breaker(BreakerState.OPEN, now, "fault_threshold_exceeded", events)
            snapshot = self._snapshot()
        self._publish(events)
        return snapshot

    def state(self) -> BudgetState:
        events: list = []
        with self._lock:
            self._refresh(self._clock(), events)
            snapshot = self._snapshot()
        self._publish(events)
        return snapshot

    def pressure(self) -> float:
        """0.0 with the whole limit available, 1.0 once nothing is left."""
        return _pressure(self.state())

    def summary(self) -> dict[str, Any]:
        events: list = []
        with self._lock:
            now = self._clock()
            self._refresh(now, events)
            state = self._snapshot()
            projected, burn_rate, hours_remaining = self._projection(now)
        self._publish(events)
        return {
            "period_id": state.period_id,
            "spent": state.spent,
            "reserved": state.reserved,
            "remaining": state.remaining,
            "limit": state.limit,
            "percent_used": round(100.0 * state.spent / state.limit, 2),
            "breaker_state": state.breaker_state.value,
            "opened_at": state.opened_at.isoformat() if state.opened_at else None,
            "burn_rate": round(burn_rate, 4),
            "hours_remaining": round(hours_remaining, 2),
            "projected": round(projected, 4),
            "pressure": round(_pressure(state), 4),
        }
