"""
Governance Gateway
HTTP surface over the Governor.

Agents submit proposals to /propose and receive the current stage
decision. Human operators resolve pending approvals (/approve, /reject)
and council members cast votes (/votes) with a Bearer API key. The audit
chain is readable and verifiable at /audit and /audit/verify.

    ALLOW           -> 200
    DENY            -> 403
    NEEDS_APPROVAL  -> 202
    NEEDS_COUNCIL   -> 202
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tribunal.audit import canonical_record
from tribunal.audit_store import PostgresAuditStore
from tribunal.config import GovernanceConfig
from tribunal.errors import (
    AlreadyResolvedError,
    ChainIntegrityError,
    GovernanceError,
    NotFoundError,
    ValidationError,
    VotingClosedError,
)
from tribunal.governor import Governor
from tribunal.identity import APPROVER_ROLES, COUNCIL_ROLES, Operator, OperatorRegistry
from tribunal.models import Action, Decision, Outcome, Proposal, Vote, VoteChoice

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    AlreadyResolvedError: 409,
    VotingClosedError: 409,
    ChainIntegrityError: 503,
}

_OUTCOME_STATUS = {
    Outcome.ALLOW: 200,
    Outcome.DENY: 403,
    Outcome.NEEDS_APPROVAL: 202,
    Outcome.NEEDS_COUNCIL: 202,
}

_OUTCOME_MESSAGE = {
    Outcome.ALLOW: "Proposal admitted. Scheduled for execution.",
    Outcome.DENY: "Proposal denied.",
    Outcome.NEEDS_APPROVAL: "Proposal requires human approval.",
    Outcome.NEEDS_COUNCIL: "Proposal referred to the council for a vote.",
}


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ActionBody(BaseModel):
    type: str
    content: str = ""
    irreversible: bool = False


class ProposeRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    requested_by: str
    action: ActionBody
    risk_score: float
    estimated_cost: float
    priority: int = 0
    depends_on: list[str] = []


class ApproveRequest(BaseModel):
    proposal_id: str
    note: Optional[str] = None


class RejectRequest(BaseModel):
    proposal_id: str
    reason: Optional[str] = None


class VoteRequest(BaseModel):
    proposal_id: str
    choice: VoteChoice
    weight: float = 1.0


class FinalizeRequest(BaseModel):
    proposal_id: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _authenticate(registry: OperatorRegistry, authorization: str, roles: frozenset[str]) -> Operator:
    """Resolve a Bearer token to an operator. Raises HTTPException on failure."""
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token.")
    token = authorization[len("Bearer "):]
    try:
        return registry.authenticate(token, roles)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc))


def _decision_response(decision: Decision) -> JSONResponse:
    return JSONResponse(
        status_code=_OUTCOME_STATUS[decision.outcome],
        content={
            **canonical_record(decision),
            "message": _OUTCOME_MESSAGE[decision.outcome],
        },
    )


def _error_status(exc: GovernanceError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


def _build_governor(config: GovernanceConfig) -> tuple[Governor, Optional[PostgresAuditStore]]:
    store = None
    if os.environ.get("TRIBUNAL_AUDIT_BACKEND", "memory") == "postgres":
        store = PostgresAuditStore()
    return Governor.from_config(config, audit_sink=store), store


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[GovernanceConfig] = None,
    governor: Optional[Governor] = None,
    operators: Optional[OperatorRegistry] = None,
) -> FastAPI:
    store = None
    if governor is None:
        governor, store = _build_governor(config or GovernanceConfig.from_env())
    registry = operators if operators is not None else OperatorRegistry.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if store is not None:
            existing = store.load()
            if existing:
                governor.audit.restore([e.model_dump(mode="json") for e in existing])
                logger.info("Loaded %d audit entries from PostgreSQL", len(existing))
        governor.start()
        yield
        governor.shutdown()

    app = FastAPI(
        title="Tribunal Governance Gateway",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.governor = governor
    app.state.operators = registry

    @app.exception_handler(GovernanceError)
    async def governance_error(request: Request, exc: GovernanceError):
        status = _error_status(exc)
        content: dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
        if isinstance(exc, ChainIntegrityError):
            content["broken_at_index"] = exc.broken_at_index
        return JSONResponse(status_code=status, content=content)

    # -- endpoints ----------------------------------------------------------

    @app.get("/health")
    def health():
        return {
            "status": "degraded" if governor.audit.compromised else "operational",
            "service": "governance-gateway",
            "audit_entries": len(governor.audit),
        }

    @app.post("/propose")
    def propose(body: ProposeRequest):
        """
        Submit a proposal for governance review.

        The response carries the latest stage decision; pending proposals
        are resolved later through /approve, /reject or /votes.
        """
        proposal = Proposal(
            id=body.id,
            requested_by=body.requested_by,
            action=Action(
                type=body.action.type,
                content=body.action.content,
                irreversible=body.action.irreversible,
            ),
            risk_score=body.risk_score,
            estimated_cost=body.estimated_cost,
            priority=body.priority,
            depends_on=tuple(body.depends_on),
        )
        return _decision_response(governor.submit_proposal(proposal))

    @app.get("/decisions/{proposal_id}")
    def get_decision(proposal_id: str):
        decision = governor.get_decision(proposal_id)
        history = governor.decision_history(proposal_id)
        execution = governor.get_execution(proposal_id)
        return {
            "proposal_id": proposal_id,
            "decision": canonical_record(decision),
            "history": [canonical_record(d) for d in history],
            "execution": canonical_record(execution) if execution else None,
        }

    @app.post("/approve")
    def approve(body: ApproveRequest, authorization: str = Header(default="")):
        operator = _authenticate(registry, authorization, APPROVER_ROLES)
        decision = governor.approve(body.proposal_id, operator.actor_id, body.note)
        return _decision_response(decision)

    @app.post("/reject")
    def reject(body: RejectRequest, authorization: str = Header(default="")):
        operator = _authenticate(registry, authorization, APPROVER_ROLES)
        decision = governor.reject(body.proposal_id, operator.actor_id, body.reason)
        return _decision_response(decision)

    @app.get("/approvals")
    def approvals(
        action_type: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
    ):
        return {
            "pending": [
                {
                    "proposal_id": r.proposal_id,
                    "action_type": r.action_type,
                    "created_at": r.created_at.isoformat(),
                    "expires_at": r.expires_at.isoformat(),
                }
                for r in governor.approvals.pending(action_type)
            ],
            "history": [
                {
                    "proposal_id": r.proposal_id,
                    "action_type": r.action_type,
                    "status": r.status.value,
                    "approver_id": r.approver_id,
                    "note": r.note,
                    "resolved_at": r.resolved_at.isoformat(),
                }
                for r in governor.approvals.history(limit)
            ],
            "stats": governor.approvals.stats(),
        }

    @app.post("/votes")
    def cast_vote(body: VoteRequest, authorization: str = Header(default="")):
        operator = _authenticate(registry, authorization, COUNCIL_ROLES)
        council_decision = governor.cast_vote(
            body.proposal_id,
            Vote(
                proposal_id=body.proposal_id,
                voter_id=operator.actor_id,
                choice=body.choice,
                weight=body.weight,
            ),
        )
        return canonical_record(council_decision)

    @app.post("/council/finalize")
    def finalize_council(body: FinalizeRequest):
        return canonical_record(governor.finalize_council(body.proposal_id))

    @app.get("/budget")
    def budget():
        return governor.budget.summary()

    @app.get("/audit")
    def audit_entries(start: int = Query(0, ge=0), end: Optional[int] = Query(None, ge=0)):
        if end is not None and end < start:
            raise HTTPException(status_code=422, detail=f"end ({end}) precedes start ({start})")
        entries = governor.get_audit_entries(start, end)
        return {
            "head_hash": governor.audit.head_hash,
            "entries": [e.model_dump(mode="json") for e in entries],
        }

    @app.get("/audit/verify")
    def audit_verify():
        result = governor.verify_audit_chain()
        body = {
            "valid": result.valid,
            "broken_at_index": result.broken_at_index,
            "details": result.details,
            "entries": len(governor.audit),
            "checkpoints": governor.audit.verify_checkpoints(),
        }
        return JSONResponse(status_code=200 if result.valid else 503, content=body)

    return app


app = create_app()
