"""
Governance Gateway Test Suite
Drives the FastAPI app in-process and checks status codes, response
structure, operator authentication and audit chain exposure.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from main import create_app
from tribunal.config import GovernanceConfig
from tribunal.governor import Governor
from tribunal.identity import Operator, OperatorRegistry, hash_api_key

APPROVER_KEY = "alice-key"
COUNCIL_KEYS = {"c1": "c1-key", "c2": "c2-key"}
SUSPENDED_KEY = "eve-key"


def _bearer(key):
    return {"Authorization": f"Bearer {key}"}


def _proposal(**overrides):
    body = {
        "requested_by": "agent:gateway-test",
        "action": {"type": "read_file", "content": "cat README.md"},
        "risk_score": 0.1,
        "estimated_cost": 5.0,
    }
    body.update(overrides)
    return body


@pytest.fixture
def governor(clock):
    governor = Governor.from_config(
        GovernanceConfig(members=["c1", "c2", "c3"], budget_limit=100.0),
        clock=clock,
        sleep=lambda s: None,
    )
    yield governor
    governor.shutdown()


@pytest.fixture
def client(governor):
    operators = OperatorRegistry([
        Operator("alice", "approver", key_fingerprint=hash_api_key(APPROVER_KEY)),
        Operator("eve", "approver", status="suspended", key_fingerprint=hash_api_key(SUSPENDED_KEY)),
        *(
            Operator(actor_id, "council", key_fingerprint=hash_api_key(key))
            for actor_id, key in COUNCIL_KEYS.items()
        ),
    ])
    return TestClient(create_app(governor=governor, operators=operators))


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------

class TestPropose:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "operational"
        assert body["audit_entries"] == 0

    def test_allow(self, client, governor):
        resp = client.post("/propose", json=_proposal(id="read-1"))
        body = resp.json()

        assert resp.status_code == 200
        assert body["proposal_id"] == "read-1"
        assert body["outcome"] == "ALLOW"
        assert body["stage_name"] == "policy"
        assert body["message"]
        assert governor.scheduler.wait_idle(timeout=5)

        decisions = client.get("/decisions/read-1").json()
        assert decisions["execution"]["status"] == "SUCCEEDED"
        assert [d["stage_name"] for d in decisions["history"]] == ["policy"]

    def test_generated_id(self, client):
        body = client.post("/propose", json=_proposal()).json()
        assert body["proposal_id"]

    def test_deny(self, client):
        resp = client.post("/propose", json=_proposal(
            action={"type": "bash", "content": "sudo rm -rf /"},
        ))
        assert resp.status_code == 403
        assert resp.json()["reason"] == "POLICY_DENIED"

    def test_budget_deny(self, client):
        resp = client.post("/propose", json=_proposal(estimated_cost=500.0))
        assert resp.status_code == 403
        assert resp.json()["stage_name"] == "budget"

    def test_invalid_proposal(self, client):
        resp = client.post("/propose", json=_proposal(risk_score=1.5))
        assert resp.status_code == 422
        assert resp.json()["type"] == "ValidationError"

    def test_missing_field(self, client):
        body = _proposal()
        del body["requested_by"]
        assert client.post("/propose", json=body).status_code == 422

    def test_duplicate_id(self, client):
        client.post("/propose", json=_proposal(id="dup"))
        assert client.post("/propose", json=_proposal(id="dup")).status_code == 422

    def test_unknown_decision(self, client):
        resp = client.get("/decisions/ghost")
        assert resp.status_code == 404
        assert resp.json()["type"] == "NotFoundError"


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class TestApprovals:

    def test_approve(self, client):
        resp = client.post("/propose", json=_proposal(id="mid", risk_score=0.5))
        assert resp.status_code == 202
        assert resp.json()["outcome"] == "NEEDS_APPROVAL"

        pending = client.get("/approvals").json()
        assert [r["proposal_id"] for r in pending["pending"]] == ["mid"]
        assert pending["stats"]["pending"] == 1

        resp = client.post("/approve", json={"proposal_id": "mid"}, headers=_bearer(APPROVER_KEY))
        assert resp.status_code == 200
        assert resp.json()["stage_name"] == "approval"

        again = client.post("/approve", json={"proposal_id": "mid"}, headers=_bearer(APPROVER_KEY))
        assert again.status_code == 409

    def test_reject(self, client):
        client.post("/propose", json=_proposal(id="mid", risk_score=0.5))
        resp = client.post(
            "/reject", json={"proposal_id": "mid", "reason": "no"}, headers=_bearer(APPROVER_KEY),
        )
        assert resp.status_code == 403
        assert resp.json()["reason"] == "APPROVAL_REJECTED"

    def test_history_and_filters(self, client):
        client.post("/propose", json=_proposal(id="mid", risk_score=0.5))
        client.post(
            "/propose",
            json=_proposal(id="shell", risk_score=0.5, action={"type": "bash", "content": "ls"}),
        )
        client.post("/reject", json={"proposal_id": "mid", "reason": "no"}, headers=_bearer(APPROVER_KEY))

        body = client.get("/approvals", params={"action_type": "bash"}).json()

        assert [r["proposal_id"] for r in body["pending"]] == ["shell"]
        assert body["pending"][0]["action_type"] == "bash"
        (settled,) = body["history"]
        assert settled["proposal_id"] == "mid"
        assert settled["status"] == "REJECTED"
        assert settled["note"] == "no"
        assert body["stats"]["approval_rate"] == 0.0
        assert body["stats"]["pending_by_type"] == {"bash": 1}

    @pytest.mark.parametrize("headers", [
        {},
        _bearer("wrong-key"),
        _bearer(SUSPENDED_KEY),
        _bearer(COUNCIL_KEYS["c1"]),
    ])
    def test_approve_requires_approver(self, client, headers):
        client.post("/propose", json=_proposal(id="mid", risk_score=0.5))
        resp = client.post("/approve", json={"proposal_id": "mid"}, headers=headers)
        assert resp.status_code == 401

    def test_approve_unknown(self, client):
        resp = client.post("/approve", json={"proposal_id": "ghost"}, headers=_bearer(APPROVER_KEY))
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Council
# ---------------------------------------------------------------------------

class TestCouncilVotes:

    def test_votes_finalize(self, client):
        resp = client.post("/propose", json=_proposal(id="risky", risk_score=0.8))
        assert resp.json()["outcome"] == "NEEDS_COUNCIL"

        first = client.post(
            "/votes", json={"proposal_id": "risky", "choice": "FOR"}, headers=_bearer(COUNCIL_KEYS["c1"]),
        ).json()
        assert first["finalized_at"] is None
        assert first["votes"][0]["voter_id"] == "c1"

        second = client.post(
            "/votes", json={"proposal_id": "risky", "choice": "FOR"}, headers=_bearer(COUNCIL_KEYS["c2"]),
        ).json()
        assert second["outcome"] == "ALLOW"
        assert client.get("/decisions/risky").json()["decision"]["stage_name"] == "council"

    def test_vote_requires_council_role(self, client):
        client.post("/propose", json=_proposal(id="risky", risk_score=0.8))
        resp = client.post(
            "/votes", json={"proposal_id": "risky", "choice": "FOR"}, headers=_bearer(APPROVER_KEY),
        )
        assert resp.status_code == 401

    def test_bad_choice(self, client):
        client.post("/propose", json=_proposal(id="risky", risk_score=0.8))
        resp = client.post(
            "/votes", json={"proposal_id": "risky", "choice": "MAYBE"}, headers=_bearer(COUNCIL_KEYS["c1"]),
        )
        assert resp.status_code == 422

    def test_finalize_after_deadline(self, client, clock):
        client.post("/propose", json=_proposal(id="risky", risk_score=0.8))
        clock.advance(days=2)

        body = client.post("/council/finalize", json={"proposal_id": "risky"}).json()
        assert body["reason"] == "QUORUM_NOT_REACHED"

        late = client.post(
            "/votes", json={"proposal_id": "risky", "choice": "FOR"}, headers=_bearer(COUNCIL_KEYS["c1"]),
        )
        assert late.status_code == 409


# ---------------------------------------------------------------------------
# Budget and audit
# ---------------------------------------------------------------------------

class TestAuditEndpoints:

    def test_budget(self, client):
        body = client.get("/budget").json()
        assert body["limit"] == 100.0
        assert body["breaker_state"] == "CLOSED"
        assert body["pressure"] == 0.0
        assert body["burn_rate"] == 0.0

    def test_audit_range(self, client, governor):
        client.post("/propose", json=_proposal(risk_score=0.5))
        client.post("/propose", json=_proposal(risk_score=0.5))

        body = client.get("/audit").json()
        assert len(body["entries"]) == 2
        assert body["head_hash"] == body["entries"][-1]["entry_hash"]
        assert [e["index"] for e in client.get("/audit?start=1&end=2").json()["entries"]] == [1]
        assert client.get("/audit?start=2&end=1").status_code == 422

    def test_verify(self, client):
        client.post("/propose", json=_proposal(risk_score=0.5))
        body = client.get("/audit/verify").json()
        assert body["valid"] is True
        assert body["entries"] == 1

    def test_tampered_chain(self, client, governor):
        client.post("/propose", json=_proposal(risk_score=0.5))
        entries = governor.audit._entries
        entries[0] = entries[0].model_copy(update={"actor_id": "intruder"})

        resp = client.get("/audit/verify")
        assert resp.status_code == 503
        assert resp.json()["broken_at_index"] == 0

        refused = client.post("/propose", json=_proposal())
        assert refused.status_code == 503
        assert refused.json()["type"] == "ChainIntegrityError"
        assert client.get("/health").json()["status"] == "degraded"
