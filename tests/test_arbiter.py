"""
Constitutional Arbiter Test Suite
"""

from __future__ import annotations

import pytest

from tribunal.arbiter import Arbiter, ConstitutionalRule, RuleKind
from tribunal.errors import ValidationError
from tribunal.models import Decision, Outcome, Reason


def _upstream(proposal, outcome=Outcome.ALLOW, stage_name="policy", stage=0):
    return Decision(
        proposal_id=proposal.id,
        stage=stage,
        stage_name=stage_name,
        outcome=outcome,
        reason="upstream",
    )


@pytest.fixture
def arbiter():
    return Arbiter([
        ConstitutionalRule("spend_ceiling", RuleKind.MAX_COST, {"limit": 500}),
        ConstitutionalRule("risk_ceiling", RuleKind.MAX_RISK, {"limit": 0.95}),
        ConstitutionalRule("no_payments", RuleKind.FORBIDDEN_ACTION_TYPES, {"types": ["Payment"]}),
        ConstitutionalRule("no_secrets", RuleKind.CONTENT_PATTERN, {"pattern": r"/etc/shadow"}),
        ConstitutionalRule("human_for_irreversible", RuleKind.IRREVERSIBLE_REQUIRES_HUMAN),
    ])


class TestReview:

    def test_clean_allow_is_returned_unchanged(self, arbiter, make_proposal):
        proposal = make_proposal()
        upstream = _upstream(proposal)
        assert arbiter.review(proposal, upstream) is upstream

    @pytest.mark.parametrize("overrides,rule_id", [
        ({"estimated_cost": 501.0}, "spend_ceiling"),
        ({"risk_score": 0.99}, "risk_ceiling"),
        ({"action_type": "payment"}, "no_payments"),
        ({"content": "cat /etc/shadow"}, "no_secrets"),
        ({"irreversible": True}, "human_for_irreversible"),
    ])
    def test_violation_vetoes_allow(self, arbiter, make_proposal, overrides, rule_id):
        proposal = make_proposal(**overrides)
        upstream = _upstream(proposal, stage=2)

        decision = arbiter.review(proposal, upstream)

        assert decision.outcome == Outcome.DENY
        assert decision.reason == Reason.CONSTITUTIONAL_VIOLATION.value
        assert decision.stage_name == "arbiter"
        assert decision.stage == 3
        assert [v["rule_id"] for v in decision.detail["violations"]] == [rule_id]
        assert decision.detail["overridden_stage"] == "policy"

    def test_all_violations_reported(self, arbiter, make_proposal):
        proposal = make_proposal(estimated_cost=900.0, content="cat /etc/shadow")
        decision = arbiter.review(proposal, _upstream(proposal))
        assert {v["rule_id"] for v in decision.detail["violations"]} == {"spend_ceiling", "no_secrets"}

    def test_irreversible_passes_after_human_approval(self, arbiter, make_proposal):
        proposal = make_proposal(irreversible=True)
        upstream = _upstream(proposal, stage_name="approval")
        assert arbiter.review(proposal, upstream) is upstream

    def test_irreversible_council_allow_still_needs_human(self, arbiter, make_proposal):
        proposal = make_proposal(irreversible=True)
        decision = arbiter.review(proposal, _upstream(proposal, stage_name="council"))
        assert decision.outcome == Outcome.DENY

    @pytest.mark.parametrize("outcome", [Outcome.DENY, Outcome.NEEDS_APPROVAL, Outcome.NEEDS_COUNCIL])
    def test_never_touches_non_allow(self, arbiter, make_proposal, outcome):
        proposal = make_proposal(estimated_cost=10_000.0)
        upstream = _upstream(proposal, outcome=outcome)
        assert arbiter.review(proposal, upstream) is upstream

    def test_explicit_stage(self, arbiter, make_proposal):
        proposal = make_proposal(estimated_cost=10_000.0)
        assert arbiter.review(proposal, _upstream(proposal), stage=7).stage == 7


class TestRules:

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            ConstitutionalRule("x", "NO_SUCH_KIND")

    def test_missing_params(self):
        with pytest.raises(ValidationError):
            ConstitutionalRule("x", RuleKind.MAX_COST, {})

    def test_bad_pattern(self):
        with pytest.raises(ValidationError):
            ConstitutionalRule("x", RuleKind.CONTENT_PATTERN, {"pattern": "(["})

    def test_kind_accepts_plain_string(self):
        assert ConstitutionalRule("x", "MAX_RISK", {"limit": 0.5}).kind == RuleKind.MAX_RISK

    def test_duplicate_ids(self):
        rule = ConstitutionalRule("x", RuleKind.MAX_RISK, {"limit": 0.5})
        with pytest.raises(ValidationError):
            Arbiter([rule, rule])

    def test_default_constitution(self, make_proposal):
        arbiter = Arbiter()
        assert {r.kind for r in arbiter.rules()} == {
            RuleKind.IRREVERSIBLE_REQUIRES_HUMAN, RuleKind.CONTENT_PATTERN,
        }
        proposal = make_proposal(content="cat ~/.ssh/id_rsa")
        assert arbiter.violations(proposal, _upstream(proposal))
