"""
Tribunal SDK: Client
Thin synchronous wrapper over the Tribunal governance gateway.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from tribunal_sdk.models import AuditVerification, DecisionResult, VoteResult


class TribunalClient:
    """
    Client for the Tribunal governance gateway.

    Agents submit proposals and poll decisions; operators holding an API
    key approve, reject or vote on pending proposals.
    """

    def __init__(
        self,
        gateway_url: str,
        actor_id: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            gateway_url: Base URL of the gateway (e.g. "http://localhost:8000")
            actor_id: Identity recorded as ``requested_by`` on proposals
            api_key: Bearer token for /approve, /reject and /votes
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.gateway_url = gateway_url.rstrip("/")
        self.actor_id = actor_id
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ValueError("No api_key configured on client.")
        return {"Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def _decision(resp: httpx.Response) -> DecisionResult:
        body = resp.json()
        return DecisionResult(
            proposal_id=body.get("proposal_id", ""),
            outcome=body.get("outcome", "UNKNOWN"),
            reason=body.get("reason", body.get("error", "")),
            stage_name=body.get("stage_name", ""),
            status_code=resp.status_code,
            raw=body,
        )

    def propose(
        self,
        action_type: str,
        content: str = "",
        risk_score: float = 0.0,
        estimated_cost: float = 0.0,
        proposal_id: str | None = None,
        irreversible: bool = False,
        priority: int = 0,
        depends_on: list[str] | None = None,
    ) -> DecisionResult:
        """
        Submit a proposal via POST /propose.

        Returns:
            DecisionResult for the latest stage (ALLOW/DENY or a pending outcome).
        """
        payload: dict[str, Any] = {
            "requested_by": self.actor_id,
            "action": {"type": action_type, "content": content, "irreversible": irreversible},
            "risk_score": risk_score,
            "estimated_cost": estimated_cost,
            "priority": priority,
            "depends_on": depends_on or [],
        }
        if proposal_id is not None:
            payload["id"] = proposal_id
        resp = self._client.post(f"{self.gateway_url}/propose", json=payload)
        return self._decision(resp)

    def decision(self, proposal_id: str) -> dict:
        """Latest decision and full stage history via GET /decisions/{id}."""
        resp = self._client.get(f"{self.gateway_url}/decisions/{proposal_id}")
        resp.raise_for_status()
        return resp.json()

    def approve(self, proposal_id: str, note: str | None = None) -> DecisionResult:
        resp = self._client.post(
            f"{self.gateway_url}/approve",
            json={"proposal_id": proposal_id, "note": note},
            headers=self._auth_headers(),
        )
        return self._decision(resp)

    def reject(self, proposal_id: str, reason: str | None = None) -> DecisionResult:
        resp = self._client.post(
            f"{self.gateway_url}/reject",
            json={"proposal_id": proposal_id, "reason": reason},
            headers=self._auth_headers(),
        )
        return self._decision(resp)

    def vote(self, proposal_id: str, choice: str, weight: float = 1.0) -> VoteResult:
        """Cast (or replace) this operator's council vote via POST /votes."""
        resp = self._client.post(
            f"{self.gateway_url}/votes",
            json={"proposal_id": proposal_id, "choice": choice, "weight": weight},
            headers=self._auth_headers(),
        )
        body = resp.json()
        return VoteResult(
            success=resp.status_code == 200,
            proposal_id=body.get("proposal_id"),
            outcome=body.get("outcome"),
            votes_cast=len(body.get("votes", [])),
            raw=body,
        )

    def approvals(self, action_type: str | None = None, limit: int = 50) -> dict:
        """Pending requests, recent history and queue statistics."""
        params: dict[str, str | int] = {"limit": limit}
        if action_type is not None:
            params["action_type"] = action_type
        resp = self._client.get(f"{self.gateway_url}/approvals", params=params)
        resp.raise_for_status()
        return resp.json()

    def budget(self) -> dict:
        resp = self._client.get(f"{self.gateway_url}/budget")
        resp.raise_for_status()
        return resp.json()

    def audit(self, start: int = 0, end: int | None = None) -> list[dict]:
        params: dict[str, int] = {"start": start}
        if end is not None:
            params["end"] = end
        resp = self._client.get(f"{self.gateway_url}/audit", params=params)
        resp.raise_for_status()
        return resp.json()["entries"]

    def verify_audit(self) -> AuditVerification:
        resp = self._client.get(f"{self.gateway_url}/audit/verify")
        body = resp.json()
        return AuditVerification(
            valid=body.get("valid", False),
            broken_at_index=body.get("broken_at_index"),
            details=body.get("details", ""),
            entries=body.get("entries", 0),
            raw=body,
        )

    def health(self) -> dict:
        """Check gateway health via GET /health."""
        resp = self._client.get(f"{self.gateway_url}/health")
        return resp.json()

    def close(self) -> None:
        self._client.close()
