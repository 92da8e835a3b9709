"""
Tribunal SDK: Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class DecisionResult(BaseModel):
    """Result of a POST /propose, /approve or /reject call."""
    proposal_id: str
    outcome: str            # ALLOW | DENY | NEEDS_APPROVAL | NEEDS_COUNCIL
    reason: str
    stage_name: str
    status_code: int
    raw: dict               # full response body

    @property
    def allowed(self) -> bool:
        return self.outcome == "ALLOW"

    @property
    def pending(self) -> bool:
        return self.outcome in ("NEEDS_APPROVAL", "NEEDS_COUNCIL")


class VoteResult(BaseModel):
    """Result of a POST /votes call."""
    success: bool
    proposal_id: str | None = None
    outcome: str | None = None     # set once the council vote is finalized
    votes_cast: int = 0
    raw: dict


class AuditVerification(BaseModel):
    """Result of GET /audit/verify."""
    valid: bool
    broken_at_index: int | None = None
    details: str = ""
    entries: int = 0
    raw: dict
