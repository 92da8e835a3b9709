"""
Governance Domain Types

Immutable records that flow through the admission pipeline. Nothing here
is mutated after construction; state changes produce new instances
(``dataclasses.replace``) owned by the component that made them.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from tribunal.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Outcome(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"
    NEEDS_COUNCIL = "NEEDS_COUNCIL"

    @property
    def terminal(self) -> bool:
        return self in (Outcome.ALLOW, Outcome.DENY)


class Reason(str, Enum):
    """Reason codes for expected (non-exceptional) terminal denials."""
    POLICY_DENIED = "POLICY_DENIED"
    CONSTITUTIONAL_VIOLATION = "CONSTITUTIONAL_VIOLATION"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    QUORUM_NOT_REACHED = "QUORUM_NOT_REACHED"
    VOTE_FAILED = "VOTE_FAILED"
    APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"


class VoteChoice(str, Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"
    ABSTAIN = "ABSTAIN"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class ExecutionStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    type: str
    content: str = ""
    irreversible: bool = False


@dataclass(frozen=True)
class Proposal:
    id: str
    requested_by: str
    action: Action
    risk_score: float          # 0.0 (safe) to 1.0 (critical)
    estimated_cost: float
    created_at: datetime = field(default_factory=utcnow)
    priority: int = 0
    depends_on: tuple[str, ...] = ()

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requested_by": self.requested_by,
            "action": {
                "type": self.action.type,
                "content": self.action.content,
                "irreversible": self.action.irreversible,
            },
            "risk_score": self.risk_score,
            "estimated_cost": self.estimated_cost,
            "created_at": self.created_at,
            "priority": self.priority,
            "depends_on": list(self.depends_on),
        }


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def validate_proposal(proposal: Any) -> None:
    """Raise ValidationError if a required proposal field is missing or malformed."""
    if not isinstance(proposal, Proposal):
        raise ValidationError(f"Expected a Proposal, got {type(proposal).__name__}")
    if not isinstance(proposal.id, str) or not proposal.id.strip():
        raise ValidationError("Proposal is missing an id")
    if not isinstance(proposal.requested_by, str) or not proposal.requested_by.strip():
        raise ValidationError(f"Proposal {proposal.id} is missing requested_by")
    action = proposal.action
    if not isinstance(action, Action) or not isinstance(action.type, str) or not action.type.strip():
        raise ValidationError(f"Proposal {proposal.id} is missing an action type")
    if not isinstance(action.content, str):
        raise ValidationError(f"Proposal {proposal.id} action content must be a string")
    if not _is_number(proposal.risk_score) or not 0.0 <= proposal.risk_score <= 1.0:
        raise ValidationError(
            f"Proposal {proposal.id} risk_score must be within [0, 1] "
            f"(got {proposal.risk_score!r})"
        )
    if not _is_number(proposal.estimated_cost) or proposal.estimated_cost < 0:
        raise ValidationError(
            f"Proposal {proposal.id} estimated_cost must be a non-negative number "
            f"(got {proposal.estimated_cost!r})"
        )
    if not isinstance(proposal.created_at, datetime) or proposal.created_at.tzinfo is None:
        raise ValidationError(f"Proposal {proposal.id} created_at must be timezone-aware")
    if proposal.id in proposal.depends_on:
        raise ValidationError(f"Proposal {proposal.id} cannot depend on itself")


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decision:
    proposal_id: str
    stage: int
    stage_name: str            # budget, policy, council, approval, arbiter
    outcome: Outcome
    reason: str
    decided_at: datetime = field(default_factory=utcnow)
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.outcome.terminal

    def to_record(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "stage": self.stage,
            "stage_name": self.stage_name,
            "outcome": self.outcome,
            "reason": self.reason,
            "decided_at": self.decided_at,
            "detail": self.detail,
        }


# ---------------------------------------------------------------------------
# Council
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Vote:
    proposal_id: str
    voter_id: str
    choice: VoteChoice
    weight: float = 1.0
    cast_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CouncilDecision:
    proposal_id: str
    votes: tuple[Vote, ...]
    quorum_threshold: int
    majority_threshold: float
    deadline: datetime
    outcome: Optional[Outcome] = None
    reason: Optional[str] = None
    finalized_at: Optional[datetime] = None

    @property
    def finalized(self) -> bool:
        return self.finalized_at is not None

    def tally(self) -> dict[str, float]:
        totals = {choice.value: 0.0 for choice in VoteChoice}
        for vote in self.votes:
            totals[vote.choice.value] += vote.weight
        return totals

    def to_record(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "votes": [
                {
                    "voter_id": v.voter_id,
                    "choice": v.choice,
                    "weight": v.weight,
                    "cast_at": v.cast_at,
                }
                for v in self.votes
            ],
            "quorum_threshold": self.quorum_threshold,
            "majority_threshold": self.majority_threshold,
            "deadline": self.deadline,
            "outcome": self.outcome,
            "reason": self.reason,
            "finalized_at": self.finalized_at,
        }


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ApprovalRequest:
    proposal_id: str
    status: ApprovalStatus
    created_at: datetime
    expires_at: datetime
    action_type: Optional[str] = None
    approver_id: Optional[str] = None
    note: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return self.status != ApprovalStatus.PENDING


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BudgetState:
    period_id: str
    spent: float
    reserved: float
    limit: float
    breaker_state: BreakerState
    opened_at: Optional[datetime] = None

    @property
    def remaining(self) -> float:
        return max(self.limit - self.spent - self.reserved, 0.0)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionRecord:
    proposal_id: str
    status: ExecutionStatus
    attempts: int
    actual_cost: Optional[float] = None
    error: Optional[str] = None
    finished_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "stage_name": "execution",
            "status": self.status,
            "attempts": self.attempts,
            "actual_cost": self.actual_cost,
            "error": self.error,
            "finished_at": self.finished_at,
        }
