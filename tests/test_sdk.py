"""
Tribunal SDK Test Suite
Checks request shapes and response parsing against a mocked gateway.
"""

from __future__ import annotations

import json

import httpx
import pytest

from tribunal_sdk.client import TribunalClient


class FakeGateway:
    """Records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    def last_json(self):
        return json.loads(self.requests[-1].content)


def _client(gateway, api_key=None):
    return TribunalClient(
        "http://gateway.test/",
        actor_id="agent:sdk",
        api_key=api_key,
        transport=httpx.MockTransport(gateway),
    )


class TestPropose:

    def test_payload_and_result(self):
        gateway = FakeGateway({("POST", "/propose"): (202, {
            "proposal_id": "p-1", "outcome": "NEEDS_APPROVAL", "reason": "no_matching_rule",
            "stage_name": "policy", "stage": 0,
        })})
        client = _client(gateway)

        result = client.propose("deploy", "kubectl apply", risk_score=0.5, estimated_cost=3.0,
                                proposal_id="p-1", depends_on=["p-0"])

        assert gateway.last_json() == {
            "id": "p-1",
            "requested_by": "agent:sdk",
            "action": {"type": "deploy", "content": "kubectl apply", "irreversible": False},
            "risk_score": 0.5,
            "estimated_cost": 3.0,
            "priority": 0,
            "depends_on": ["p-0"],
        }
        assert result.status_code == 202
        assert result.pending
        assert not result.allowed
        client.close()

    def test_error_body(self):
        gateway = FakeGateway({("POST", "/propose"): (422, {
            "error": "risk_score must be within [0, 1]", "type": "ValidationError",
        })})
        result = _client(gateway).propose("read_file", risk_score=2.0)
        assert result.outcome == "UNKNOWN"
        assert result.reason.startswith("risk_score")
        assert "id" not in gateway.last_json()


class TestOperators:

    def test_approve_sends_bearer(self):
        gateway = FakeGateway({("POST", "/approve"): (200, {
            "proposal_id": "p-1", "outcome": "ALLOW", "reason": "approved", "stage_name": "approval",
        })})
        result = _client(gateway, api_key="secret").approve("p-1", note="ok")

        assert gateway.requests[-1].headers["Authorization"] == "Bearer secret"
        assert gateway.last_json() == {"proposal_id": "p-1", "note": "ok"}
        assert result.allowed

    def test_operator_calls_need_key(self):
        client = _client(FakeGateway({}))
        with pytest.raises(ValueError):
            client.approve("p-1")
        with pytest.raises(ValueError):
            client.vote("p-1", "FOR")

    def test_vote(self):
        gateway = FakeGateway({("POST", "/votes"): (200, {
            "proposal_id": "p-1", "outcome": None,
            "votes": [{"voter_id": "c1", "choice": "FOR", "weight": 1.0}],
        })})
        result = _client(gateway, api_key="secret").vote("p-1", "FOR")
        assert result.success
        assert result.votes_cast == 1
        assert result.outcome is None

    def test_closed_vote(self):
        gateway = FakeGateway({("POST", "/votes"): (409, {
            "error": "closed", "type": "VotingClosedError",
        })})
        result = _client(gateway, api_key="secret").vote("p-1", "AGAINST")
        assert not result.success
        assert result.votes_cast == 0


class TestReadEndpoints:

    def test_audit_range(self):
        gateway = FakeGateway({("GET", "/audit"): (200, {"head_hash": "ab", "entries": [{"index": 1}]})})
        entries = _client(gateway).audit(1, 2)
        assert entries == [{"index": 1}]
        assert dict(gateway.requests[-1].url.params) == {"start": "1", "end": "2"}

    def test_approvals_filters(self):
        gateway = FakeGateway({("GET", "/approvals"): (200, {
            "pending": [{"proposal_id": "p-2", "action_type": "bash"}], "history": [], "stats": {},
        })})
        body = _client(gateway).approvals(action_type="bash", limit=5)
        assert body["pending"][0]["proposal_id"] == "p-2"
        assert dict(gateway.requests[-1].url.params) == {"limit": "5", "action_type": "bash"}

    def test_verify_audit_failure(self):
        gateway = FakeGateway({("GET", "/audit/verify"): (503, {
            "valid": False, "broken_at_index": 3, "details": "entry_hash mismatch", "entries": 9,
        })})
        result = _client(gateway).verify_audit()
        assert not result.valid
        assert result.broken_at_index == 3
        assert result.entries == 9

    def test_decision_raises_on_404(self):
        gateway = FakeGateway({("GET", "/decisions/ghost"): (404, {"error": "Unknown proposal ghost"})})
        with pytest.raises(httpx.HTTPStatusError):
            _client(gateway).decision("ghost")
