"""
Approval Queue
Human-in-the-loop holding area for NEEDS_APPROVAL proposals.

Each request is PENDING until an operator approves or rejects it, or
until ``expires_at`` passes and the sweeper marks it EXPIRED. Resolution
is first-writer-wins: every state change happens under one lock, and a
resolved request cannot be resolved again.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from tribunal.errors import AlreadyResolvedError, NotFoundError, ValidationError
from tribunal.event_bus import EventBus
from tribunal.models import ApprovalRequest, ApprovalStatus, Proposal, utcnow

logger = logging.getLogger(__name__)


def _record(request: ApprovalRequest) -> dict[str, Any]:
    return {
        "proposal_id": request.proposal_id,
        "action_type": request.action_type,
        "status": request.status.value,
        "approver_id": request.approver_id,
        "note": request.note,
        "expires_at": request.expires_at.isoformat(),
        "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
    }


class ApprovalQueue:

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._requests: OrderedDict[str, ApprovalRequest] = OrderedDict()
        self._lock = threading.Lock()
        self._bus = bus
        self._clock = clock

    def _publish(self, topic: str, request: ApprovalRequest) -> None:
        if self._bus is not None:
            self._bus.publish(topic, _record(request), publisher="approval_queue")

    def enqueue(self, proposal: Proposal, ttl: timedelta) -> ApprovalRequest:
        if ttl <= timedelta(0):
            raise ValidationError(f"Approval TTL must be positive (got {ttl})")
        with self._lock:
            existing = self._requests.get(proposal.id)
            if existing is not None:
                if existing.terminal:
                    raise AlreadyResolvedError(
                        f"Approval for {proposal.id} already {existing.status.value}"
                    )
                return existing
            now = self._clock()
            request = ApprovalRequest(
                proposal_id=proposal.id,
                status=ApprovalStatus.PENDING,
                created_at=now,
                expires_at=now + ttl,
                action_type=proposal.action.type,
            )
            self._requests[proposal.id] = request
        logger.info("Approval requested for %s (expires %s)", proposal.id, request.expires_at.isoformat())
        self._publish("approval.enqueued", request)
        return request

    def _resolve(
        self,
        proposal_id: str,
        status: ApprovalStatus,
        approver_id: str,
        note: Optional[str],
    ) -> ApprovalRequest:
        if not approver_id:
            raise ValidationError("approver_id is required")
        expired = None
        with self._lock:
            request = self._requests.get(proposal_id)
            if request is None:
                raise NotFoundError(f"No approval request for proposal {proposal_id}")
            now = self._clock()
            if not request.terminal and now >= request.expires_at:
                expired = replace(request, status=ApprovalStatus.EXPIRED, resolved_at=now)
                self._requests[proposal_id] = expired
            elif not request.terminal:
                resolved = replace(
                    request, status=status, approver_id=approver_id,
                    note=note, resolved_at=now,
                )
                self._requests[proposal_id] = resolved

        if expired is not None:
            logger.info("Approval for %s expired before %s could act", proposal_id, approver_id)
            self._publish("approval.expired", expired)
            raise AlreadyResolvedError(f"Approval for {proposal_id} already EXPIRED")
        if request.terminal:
            raise AlreadyResolvedError(
                f"Approval for {proposal_id} already {request.status.value}"
            )

        logger.info("Approval for %s %s by %s", proposal_id, status.value, approver_id)
        self._publish("approval.resolved", resolved)
        return resolved

    def approve(self, proposal_id: str, approver_id: str, note: Optional[str] = None) -> ApprovalRequest:
        return self._resolve(proposal_id, ApprovalStatus.APPROVED, approver_id, note)

    def reject(self, proposal_id: str, approver_id: str, reason: Optional[str] = None) -> ApprovalRequest:
        return self._resolve(proposal_id, ApprovalStatus.REJECTED, approver_id, reason)

    def sweep(self, now: Optional[datetime] = None) -> list[ApprovalRequest]:
        """Expire every PENDING request whose deadline has passed."""
        now = now or self._clock()
        expired = []
        with self._lock:
            for proposal_id, request in self._requests.items():
                if not request.terminal and now >= request.expires_at:
                    request = replace(request, status=ApprovalStatus.EXPIRED, resolved_at=now)
                    self._requests[proposal_id] = request
                    expired.append(request)
        for request in expired:
            logger.info("Approval for %s expired", request.proposal_id)
            self._publish("approval.expired", request)
        return expired

    def get(self, proposal_id: str) -> ApprovalRequest:
        with self._lock:
            request = self._requests.get(proposal_id)
        if request is None:
            raise NotFoundError(f"No approval request for proposal {proposal_id}")
        return request

    def pending(self, action_type: Optional[str] = None) -> list[ApprovalRequest]:
        """PENDING requests, oldest first, optionally only those for one action type."""
        with self._lock:
            return [
                r for r in self._requests.values()
                if not r.terminal and (action_type is None or r.action_type == action_type)
            ]

    def history(self, limit: Optional[int] = 50) -> list[ApprovalRequest]:
        """Resolved and expired requests, most recently settled first."""
        with self._lock:
            settled = [r for r in self._requests.values() if r.terminal]
        settled.reverse()
        settled.sort(key=lambda r: r.resolved_at, reverse=True)
        return settled if limit is None else settled[:limit]

    def stats(self) -> dict[str, Any]:
        """
        Counts per status, plus:

            pending_by_type       PENDING requests per action type
            approval_rate         approved / (approved + rejected), 0.0 before any decision
            avg_decision_seconds  mean time from request to an operator's decision
        """
        with self._lock:
            requests = list(self._requests.values())
        counts: dict[str, Any] = {status.value.lower(): 0 for status in ApprovalStatus}
        by_type: dict[str, int] = {}
        waits = []
        for request in requests:
            counts[request.status.value.lower()] += 1
            if request.status == ApprovalStatus.PENDING:
                key = request.action_type or "unknown"
                by_type[key] = by_type.get(key, 0) + 1
            elif request.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
                waits.append((request.resolved_at - request.created_at).total_seconds())
        counts["total"] = len(requests)
        decided = counts["approved"] + counts["rejected"]
        counts["pending_by_type"] = by_type
        counts["approval_rate"] = round(counts["approved"] / decided, 4) if decided else 0.0
        counts["avg_decision_seconds"] = round(sum(waits) / len(waits), 3) if waits else 0.0
        return counts
