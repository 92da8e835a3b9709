"""
Council
Quorum-based collective vote on proposals the policy engine flags as
NEEDS_COUNCIL.

    quorum_threshold   = ceil(N * quorum_fraction)  votes cast (any choice)
    majority_threshold = fraction of non-abstaining weight FOR must
                         strictly exceed (0.5 = strict majority)

A vote is finalized exactly once, either when quorum is reached or when
the deadline passes, whichever comes first:
  - quorum never reached by the deadline  -> DENY (QUORUM_NOT_REACHED)
  - FOR weight > majority * (FOR + AGAINST) -> ALLOW
  - anything else, including ties         -> DENY (VOTE_FAILED)
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from tribunal.audit import AuditLog
from tribunal.errors import NotFoundError, ValidationError, VotingClosedError
from tribunal.event_bus import EventBus
from tribunal.models import (
    CouncilDecision,
    Decision,
    Outcome,
    Proposal,
    Reason,
    Vote,
    VoteChoice,
    utcnow,
)

logger = logging.getLogger(__name__)


class Council:
    """
    Fixed-size voting body.

    Votes for distinct proposals proceed fully in parallel; casting and
    finalizing on the same proposal share one per-proposal lock, which
    makes finalization a compare-and-set that succeeds at most once.

    Ballots are dropped at finalization, and only the newest
    ``retain_finalized`` results stay queryable; older ones raise
    NotFoundError from ``get``.
    """

    def __init__(
        self,
        members: Iterable[str],
        quorum_fraction: float = 0.5,
        majority_fraction: float = 0.5,
        audit: Optional[AuditLog] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        finalize_on_quorum: bool = True,
        retain_finalized: int = 10_000,
    ):
        self.members = tuple(dict.fromkeys(members))
        if not self.members:
            raise ValidationError("Council requires at least one member")
        if not 0.0 < quorum_fraction <= 1.0:
            raise ValidationError(f"quorum_fraction must be in (0, 1] (got {quorum_fraction})")
        if not 0.0 <= majority_fraction < 1.0:
            raise ValidationError(f"majority_fraction must be in [0, 1) (got {majority_fraction})")
        if retain_finalized < 1:
            raise ValidationError(f"retain_finalized must be >= 1 (got {retain_finalized})")
        self.quorum_threshold = max(1, math.ceil(len(self.members) * quorum_fraction))
        self.majority_fraction = majority_fraction
        self.finalize_on_quorum = finalize_on_quorum
        self.retain_finalized = retain_finalized
        self._audit = audit
        self._bus = bus
        self._clock = clock

        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._decisions: dict[str, CouncilDecision] = {}
        self._ballots: dict[str, dict[str, Vote]] = {}
        self._stages: dict[str, int] = {}
        self._outcomes: dict[str, Decision] = {}
        self._finalized: deque[str] = deque()

    # -- helpers ------------------------------------------------------------

    def _lock_for(self, proposal_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(proposal_id)
        if lock is None:
            raise NotFoundError(f"No council vote for proposal {proposal_id}")
        return lock

    def _publish(self, topic: str, payload: dict) -> None:
        if self._bus is not None:
            self._bus.publish(topic, payload, publisher="council")

    def _decision_locked(self, proposal_id: str) -> CouncilDecision:
        decision = self._decisions.get(proposal_id)
        if decision is None:
            raise NotFoundError(f"No council vote for proposal {proposal_id}")
        return decision

    def _retire(self, proposal_id: str) -> None:
        """Drop per-vote scratch state; keep the newest ``retain_finalized`` results."""
        with self._registry_lock:
            self._ballots.pop(proposal_id, None)
            self._stages.pop(proposal_id, None)
            self._finalized.append(proposal_id)
            while len(self._finalized) > self.retain_finalized:
                oldest = self._finalized.popleft()
                self._decisions.pop(oldest, None)
                self._outcomes.pop(oldest, None)
                self._locks.pop(oldest, None)

    def _finalize_locked(self, proposal_id: str, now: datetime) -> tuple[CouncilDecision, bool]:
        decision = self._decision_locked(proposal_id)
        if decision.finalized:
            return decision, False

        if len(decision.votes) >= decision.quorum_threshold:
            tally = decision.tally()
            for_weight = tally[VoteChoice.FOR.value]
            decisive = for_weight + tally[VoteChoice.AGAINST.value]
            if decisive > 0 and for_weight > decision.majority_threshold * decisive:
                outcome, reason = Outcome.ALLOW, "majority_for"
            else:
                outcome, reason = Outcome.DENY, Reason.VOTE_FAILED.value
        elif now >= decision.deadline:
            outcome, reason = Outcome.DENY, Reason.QUORUM_NOT_REACHED.value
        else:
            return decision, False

        decision = replace(decision, outcome=outcome, reason=reason, finalized_at=now)
        stage_decision = Decision(
            proposal_id=proposal_id,
            stage=self._stages[proposal_id],
            stage_name="council",
            outcome=outcome,
            reason=reason,
            decided_at=now,
            detail={"council": decision.to_record(), "tally": decision.tally()},
        )
        if self._audit is not None:
            self._audit.append("council", stage_decision)
        with self._registry_lock:
            self._decisions[proposal_id] = decision
            self._outcomes[proposal_id] = stage_decision
        self._retire(proposal_id)
        logger.info(
            "Council finalized %s -> %s (%s, %d votes)",
            proposal_id, outcome.value, reason, len(decision.votes),
        )
        return decision, True

    # -- public API ---------------------------------------------------------

    def open_vote(self, proposal: Proposal, deadline: datetime, stage: int = 0) -> CouncilDecision:
        """Create the CouncilDecision for ``proposal``. Re-opening returns the existing one."""
        if deadline.tzinfo is None:
            raise ValidationError("Council deadline must be timezone-aware")
        with self._registry_lock:
            existing = self._decisions.get(proposal.id)
            if existing is not None:
                return existing
            decision = CouncilDecision(
                proposal_id=proposal.id,
                votes=(),
                quorum_threshold=self.quorum_threshold,
                majority_threshold=self.majority_fraction,
                deadline=deadline,
            )
            self._locks[proposal.id] = threading.Lock()
            self._decisions[proposal.id] = decision
            self._ballots[proposal.id] = {}
            self._stages[proposal.id] = stage
        self._publish("council.opened", {
            "proposal_id": proposal.id,
            "quorum_threshold": self.quorum_threshold,
            "deadline": deadline.isoformat(),
        })
        return decision

    def cast_vote(self, proposal_id: str, vote: Vote) -> CouncilDecision:
        """
        Register or replace ``vote.voter_id``'s vote.

        Raises VotingClosedError once the decision is final or the deadline
        has passed (a late vote also triggers the deadline finalization).
        """
        lock = self._lock_for(proposal_id)
        finalized = False
        late = False
        with lock:
            decision = self._decision_locked(proposal_id)
            if decision.finalized:
                raise VotingClosedError(
                    f"Council vote on {proposal_id} was finalized at "
                    f"{decision.finalized_at.isoformat()}"
                )
            now = self._clock()
            if now >= decision.deadline:
                decision, finalized = self._finalize_locked(proposal_id, now)
                late = True
            else:
                if vote.proposal_id != proposal_id:
                    raise ValidationError(
                        f"Vote is for {vote.proposal_id}, not {proposal_id}"
                    )
                if vote.voter_id not in self.members:
                    raise ValidationError(f"{vote.voter_id} is not a council member")
                if not isinstance(vote.choice, VoteChoice):
                    raise ValidationError(f"Invalid vote choice {vote.choice!r}")
                if not vote.weight > 0:
                    raise ValidationError(f"Vote weight must be positive (got {vote.weight})")

                ballots = self._ballots[proposal_id]
                replaced = vote.voter_id in ballots
                ballots[vote.voter_id] = vote
                decision = replace(
                    decision,
                    votes=tuple(ballots[v] for v in sorted(ballots)),
                )
                self._decisions[proposal_id] = decision
                if self.finalize_on_quorum and len(decision.votes) >= decision.quorum_threshold:
                    decision, finalized = self._finalize_locked(proposal_id, now)

        if late:
            if finalized:
                self._publish("council.finalized", decision.to_record())
            raise VotingClosedError(
                f"Council vote on {proposal_id} closed at {decision.deadline.isoformat()}"
            )

        self._publish("council.vote_cast", {
            "proposal_id": proposal_id,
            "voter_id": vote.voter_id,
            "choice": vote.choice.value,
            "replaced": replaced,
        })
        if finalized:
            self._publish("council.finalized", decision.to_record())
        return decision

    def finalize(self, proposal_id: str) -> CouncilDecision:
        """
        Finalize if quorum is reached or the deadline has passed.

        Idempotent: an already-final decision is returned unchanged. Before
        either condition holds, the open decision is returned as-is.
        """
        lock = self._lock_for(proposal_id)
        with lock:
            decision, finalized = self._finalize_locked(proposal_id, self._clock())
        if finalized:
            self._publish("council.finalized", decision.to_record())
        return decision

    def expire_overdue(self) -> list[CouncilDecision]:
        """Finalize every open vote whose deadline has passed."""
        now = self._clock()
        expired = []
        for decision in self.open_votes():
            if now >= decision.deadline:
                final = self.finalize(decision.proposal_id)
                if final.finalized:
                    expired.append(final)
        return expired

    def get(self, proposal_id: str) -> CouncilDecision:
        with self._registry_lock:
            decision = self._decisions.get(proposal_id)
        if decision is None:
            raise NotFoundError(f"No council vote for proposal {proposal_id}")
        return decision

    def outcome_decision(self, proposal_id: str) -> Optional[Decision]:
        """The stage Decision recorded at finalization, or None while voting is open."""
        with self._registry_lock:
            return self._outcomes.get(proposal_id)

    def open_votes(self) -> list[CouncilDecision]:
        with self._registry_lock:
            return [d for d in self._decisions.values() if not d.finalized]
