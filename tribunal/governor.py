"""
Governor
Admission pipeline that ties the governance components together.

    submit_proposal
      -> validate, refuse if the audit chain is compromised
      -> budget.reserve      DENY: BUDGET_EXCEEDED (policy never consulted)
      -> policy.evaluate     ALLOW | DENY | NEEDS_APPROVAL | NEEDS_COUNCIL
      -> approval queue / council vote (later: approve, reject, cast_vote, sweep)
      -> budget.admit        re-check before any ALLOW becomes final
      -> arbiter.review      may veto an ALLOW, never upgrades a DENY
      -> scheduler           execute, then commit (or fail) the spend

Every stage Decision is appended to the audit log and published as
``decision.recorded``. A terminal DENY after a reservation releases it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from tribunal.approval_queue import ApprovalQueue
from tribunal.arbiter import Arbiter
from tribunal.audit import AuditEntry, AuditLog, AuditSink, VerifyResult, canonical_record
from tribunal.budget import BudgetTracker
from tribunal.config import GovernanceConfig
from tribunal.council import Council
from tribunal.errors import (
    AlreadyResolvedError,
    ChainIntegrityError,
    NotFoundError,
    ValidationError,
    VotingClosedError,
)
from tribunal.event_bus import EventBus
from tribunal.models import (
    ApprovalStatus,
    BudgetState,
    CouncilDecision,
    Decision,
    ExecutionRecord,
    ExecutionStatus,
    Outcome,
    Proposal,
    Reason,
    Vote,
    utcnow,
    validate_proposal,
)
from tribunal.policy_engine import CONTENT_RULES, DEFAULT_RULES, PolicyEngine, rules_from_thresholds
from tribunal.scheduler import Scheduler

logger = logging.getLogger(__name__)

Executor = Callable[[Proposal], float]


def estimated_cost_executor(proposal: Proposal) -> float:
    """Stand-in executor: the action costs exactly what was estimated."""
    return proposal.estimated_cost


@dataclass
class _Track:
    proposal: Proposal
    decisions: list[Decision] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock)
    reserved: bool = False
    execution: Optional[ExecutionRecord] = None

    @property
    def settled(self) -> bool:
        return bool(self.decisions) and self.decisions[-1].terminal

    @property
    def next_stage(self) -> int:
        return len(self.decisions)


class Governor:
    """Owns every governance component; no module-level state."""

    def __init__(
        self,
        config: GovernanceConfig,
        audit: AuditLog,
        bus: EventBus,
        policy: PolicyEngine,
        council: Council,
        arbiter: Arbiter,
        approvals: ApprovalQueue,
        budget: BudgetTracker,
        scheduler: Scheduler,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.audit = audit
        self.bus = bus
        self.policy = policy
        self.council = council
        self.arbiter = arbiter
        self.approvals = approvals
        self.budget = budget
        self.scheduler = scheduler
        self._executor = executor or estimated_cost_executor
        self._clock = clock

        self._tracks: dict[str, _Track] = {}
        self._tracks_lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[GovernanceConfig] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
        audit_sink: Optional[AuditSink] = None,
        arbiter: Optional[Arbiter] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> "Governor":
        config = config or GovernanceConfig.from_env()
        config.validate()
        bus = EventBus()
        audit = AuditLog(
            sink=audit_sink,
            checkpoint_interval=config.checkpoint_interval,
            signing_key=config.checkpoint_key.encode() if config.checkpoint_key else None,
            clock=clock,
        )
        if config.risk_thresholds:
            rules = CONTENT_RULES + rules_from_thresholds(config.risk_thresholds)
        else:
            rules = DEFAULT_RULES
        scheduler_kwargs = {"sleep": sleep} if sleep is not None else {}
        return cls(
            config=config,
            audit=audit,
            bus=bus,
            policy=PolicyEngine(rules),
            council=Council(
                config.members,
                quorum_fraction=config.quorum_fraction,
                majority_fraction=config.majority_fraction,
                audit=audit,
                bus=bus,
                clock=clock,
            ),
            arbiter=arbiter or Arbiter(),
            approvals=ApprovalQueue(bus=bus, clock=clock),
            budget=BudgetTracker(
                config.budget_limit,
                cooldown=config.budget_cooldown,
                fault_threshold=config.budget_fault_threshold,
                cycle_start_day=config.billing_cycle_start_day,
                warning_fraction=config.budget_warning_fraction,
                critical_fraction=config.budget_critical_fraction,
                bus=bus,
                clock=clock,
            ),
            scheduler=Scheduler(
                max_workers=config.max_workers,
                retry_attempts=config.retry_attempts,
                backoff_base=config.backoff_base_seconds,
                backoff_multiplier=config.backoff_multiplier,
                bus=bus,
                **scheduler_kwargs,
            ),
            executor=executor,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch the background sweeper (approval TTLs, council deadlines)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="tribunal-sweeper", daemon=True)
        self._sweeper.start()
        logger.info("Governor started (sweep every %.1fs)", self.config.sweep_interval_seconds)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.sweep_interval_seconds):
            try:
                self.sweep()
            except ChainIntegrityError as exc:
                logger.error("Sweep skipped: %s", exc)
            except Exception:
                logger.exception("Sweep failed")

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.config.sweep_interval_seconds + 1)
            self._sweeper = None
        self.scheduler.shutdown(wait=wait)
        self.bus.clear()
        logger.info("Governor shut down")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _track(self, proposal_id: str) -> _Track:
        with self._tracks_lock:
            track = self._tracks.get(proposal_id)
        if track is None:
            raise NotFoundError(f"Unknown proposal {proposal_id}")
        return track

    def _record(self, track: _Track, decision: Decision, actor_id: Optional[str]) -> Decision:
        """Append to history; ``actor_id=None`` means the audit entry already exists."""
        if actor_id is not None:
            self.audit.append(actor_id, decision)
        track.decisions.append(decision)
        logger.info(
            "%s stage %d (%s) -> %s [%s]",
            decision.proposal_id, decision.stage, decision.stage_name,
            decision.outcome.value, decision.reason,
        )
        self.bus.publish("decision.recorded", canonical_record(decision), publisher="governor")
        return decision

    def _deny_settled(self, track: _Track) -> None:
        if track.reserved:
            self.budget.release(track.proposal.id)
        # Dependents of a denied proposal can never run
        self.scheduler.cancel(track.proposal.id)

    def _abandon(self, track: _Track) -> None:
        """Forget a submission that failed before its first decision reached the audit log."""
        if track.decisions:
            return
        pid = track.proposal.id
        self.budget.release(pid)
        with self._tracks_lock:
            self._tracks.pop(pid, None)
        logger.warning("Submission of %s abandoned before its first decision", pid)

    def _budget_denial(self, track: _Track, now: datetime, upstream: Optional[Decision]) -> Decision:
        detail = self.budget.summary()
        if upstream is not None:
            detail["upstream_stage"] = upstream.stage_name
        decision = Decision(
            proposal_id=track.proposal.id,
            stage=track.next_stage,
            stage_name="budget",
            outcome=Outcome.DENY,
            reason=Reason.BUDGET_EXCEEDED.value,
            decided_at=now,
            detail=detail,
        )
        self._record(track, decision, "budget")
        self._deny_settled(track)
        return decision

    def _route(self, track: _Track, decision: Decision) -> Decision:
        """Act on a non-budget stage outcome. Caller holds ``track.lock``."""
        proposal = track.proposal
        if decision.outcome == Outcome.DENY:
            self._deny_settled(track)
            return decision
        if decision.outcome == Outcome.ALLOW:
            return self._admit(track, decision)
        if decision.outcome == Outcome.NEEDS_APPROVAL:
            self.approvals.enqueue(proposal, self.config.approval_ttl)
            return decision
        deadline = self._clock() + self.config.council_ttl
        self.council.open_vote(proposal, deadline, stage=track.next_stage)
        return decision

    def _admit(self, track: _Track, upstream: Decision) -> Decision:
        """Final gates for an ALLOW: budget re-check, then the arbiter, then execution."""
        pid = track.proposal.id
        now = self._clock()
        if self.budget.admit(pid) == Outcome.DENY:
            return self._budget_denial(track, now, upstream)

        final = self.arbiter.review(track.proposal, upstream, stage=track.next_stage, now=now)
        if final is not upstream:
            self._record(track, final, "arbiter")
            self._deny_settled(track)
            return final

        self.scheduler.schedule(
            track.proposal,
            partial(self._executor, track.proposal),
            on_done=partial(self._on_executed, track),
        )
        return upstream

    def _on_executed(self, track: _Track, record: ExecutionRecord) -> None:
        pid = track.proposal.id
        with track.lock:
            if record.status == ExecutionStatus.SUCCEEDED:
                self.budget.commit(pid, record.actual_cost)
            elif record.attempts > 0:
                self.budget.record_failure(pid)
            else:
                self.budget.release(pid)
            track.execution = record
            self.audit.append("scheduler", record)

    def _settle_expired(self, track: _Track) -> Optional[Decision]:
        """Record APPROVAL_EXPIRED once the queue has expired the request. Caller holds the lock."""
        if track.settled:
            return None
        try:
            request = self.approvals.get(track.proposal.id)
        except NotFoundError:
            return None
        if request.status != ApprovalStatus.EXPIRED:
            return None
        decision = Decision(
            proposal_id=track.proposal.id,
            stage=track.next_stage,
            stage_name="approval",
            outcome=Outcome.DENY,
            reason=Reason.APPROVAL_EXPIRED.value,
            decided_at=request.resolved_at or self._clock(),
            detail={"expires_at": request.expires_at.isoformat()},
        )
        self._record(track, decision, "approval_queue")
        self._deny_settled(track)
        return decision

    def _continue_council(self, track: _Track) -> Optional[Decision]:
        """Pick up a finalized council vote and carry it through the pipeline."""
        with track.lock:
            if track.settled or any(d.stage_name == "council" for d in track.decisions):
                return None
            decision = self.council.outcome_decision(track.proposal.id)
            if decision is None:
                return None
            # The council appended its own audit entry at finalization
            self._record(track, decision, None)
            return self._route(track, decision)

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def submit_proposal(self, proposal: Proposal) -> Decision:
        """Run a new proposal through the pipeline; returns the latest stage Decision."""
        validate_proposal(proposal)
        self.audit.ensure_intact()
        track = _Track(proposal)
        # Registered with its lock already held: readers wait for the first decision
        with track.lock:
            with self._tracks_lock:
                if proposal.id in self._tracks:
                    raise ValidationError(f"Proposal {proposal.id} was already submitted")
                self._tracks[proposal.id] = track
            try:
                now = self._clock()
                if self.budget.reserve(proposal.id, proposal.estimated_cost) == Outcome.DENY:
                    return self._budget_denial(track, now, None)
                track.reserved = True

                decision = self.policy.evaluate(proposal, stage=track.next_stage, now=now)
                self._record(track, decision, "policy")
            except Exception:
                self._abandon(track)
                raise
            return self._route(track, decision)

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self._track(proposal_id).proposal

    def get_decision(self, proposal_id: str) -> Decision:
        """Latest Decision for the proposal (terminal once settled)."""
        track = self._track(proposal_id)
        with track.lock:
            if not track.decisions:
                raise NotFoundError(f"No decision recorded for proposal {proposal_id}")
            return track.decisions[-1]

    def decision_history(self, proposal_id: str) -> list[Decision]:
        track = self._track(proposal_id)
        with track.lock:
            return list(track.decisions)

    def get_execution(self, proposal_id: str) -> Optional[ExecutionRecord]:
        return self._track(proposal_id).execution

    def approve(self, proposal_id: str, approver_id: str, note: Optional[str] = None) -> Decision:
        track = self._track(proposal_id)
        self.audit.ensure_intact()
        with track.lock:
            try:
                request = self.approvals.approve(proposal_id, approver_id, note)
            except AlreadyResolvedError:
                self._settle_expired(track)
                raise
            decision = Decision(
                proposal_id=proposal_id,
                stage=track.next_stage,
                stage_name="approval",
                outcome=Outcome.ALLOW,
                reason="approved",
                decided_at=request.resolved_at,
                detail={"approver_id": approver_id, "note": note},
            )
            self._record(track, decision, approver_id)
            return self._admit(track, decision)

    def reject(self, proposal_id: str, approver_id: str, reason: Optional[str] = None) -> Decision:
        track = self._track(proposal_id)
        self.audit.ensure_intact()
        with track.lock:
            try:
                request = self.approvals.reject(proposal_id, approver_id, reason)
            except AlreadyResolvedError:
                self._settle_expired(track)
                raise
            decision = Decision(
                proposal_id=proposal_id,
                stage=track.next_stage,
                stage_name="approval",
                outcome=Outcome.DENY,
                reason=Reason.APPROVAL_REJECTED.value,
                decided_at=request.resolved_at,
                detail={"approver_id": approver_id, "note": reason},
            )
            self._record(track, decision, approver_id)
            self._deny_settled(track)
            return decision

    def cast_vote(self, proposal_id: str, vote: Vote) -> CouncilDecision:
        track = self._track(proposal_id)
        self.audit.ensure_intact()
        try:
            council_decision = self.council.cast_vote(proposal_id, vote)
        except VotingClosedError:
            self._continue_council(track)
            raise
        if council_decision.finalized:
            self._continue_council(track)
        return council_decision

    def finalize_council(self, proposal_id: str) -> CouncilDecision:
        track = self._track(proposal_id)
        council_decision = self.council.finalize(proposal_id)
        if council_decision.finalized:
            self._continue_council(track)
        return council_decision

    def sweep(self) -> list[Decision]:
        """
        Expire overdue approvals and council votes; return the decisions produced.

        Every unsettled proposal is rechecked, so an expiry whose audit
        append failed on an earlier pass is settled on the next one.
        """
        self.audit.ensure_intact()
        self.approvals.sweep(self._clock())
        self.council.expire_overdue()

        with self._tracks_lock:
            pending = [track for track in self._tracks.values() if not track.settled]
        produced = []
        for track in pending:
            with track.lock:
                decision = self._settle_expired(track)
            if decision is None:
                decision = self._continue_council(track)
            if decision is not None:
                produced.append(decision)
        if produced:
            logger.info("Sweep settled %d proposals", len(produced))
        return produced

    def get_budget_state(self) -> BudgetState:
        return self.budget.state()

    def get_audit_entries(self, start: int = 0, end: Optional[int] = None) -> list[AuditEntry]:
        return self.audit.entries(start, end)

    def verify_audit_chain(self) -> VerifyResult:
        return self.audit.verify()
