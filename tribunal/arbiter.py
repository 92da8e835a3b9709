"""
Constitutional Arbiter
Final veto over any admitted proposal.

The arbiter sees every terminal upstream decision. It can only turn an
ALLOW into a DENY; it never upgrades, and a non-violating review hands
back the upstream Decision object untouched.

Constitutional rules are data descriptors interpreted by a fixed
evaluator:

    MAX_COST                     params: {"limit": float}
    MAX_RISK                     params: {"limit": float}
    FORBIDDEN_ACTION_TYPES       params: {"types": [str, ...]}
    CONTENT_PATTERN              params: {"pattern": regex}
    IRREVERSIBLE_REQUIRES_HUMAN  params: {}
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from tribunal.errors import ValidationError
from tribunal.models import Decision, Outcome, Proposal, Reason, utcnow

logger = logging.getLogger(__name__)


class RuleKind(str, Enum):
    MAX_COST = "MAX_COST"
    MAX_RISK = "MAX_RISK"
    FORBIDDEN_ACTION_TYPES = "FORBIDDEN_ACTION_TYPES"
    CONTENT_PATTERN = "CONTENT_PATTERN"
    IRREVERSIBLE_REQUIRES_HUMAN = "IRREVERSIBLE_REQUIRES_HUMAN"


_REQUIRED_PARAMS = {
    RuleKind.MAX_COST: ("limit",),
    RuleKind.MAX_RISK: ("limit",),
    RuleKind.FORBIDDEN_ACTION_TYPES: ("types",),
    RuleKind.CONTENT_PATTERN: ("pattern",),
    RuleKind.IRREVERSIBLE_REQUIRES_HUMAN: (),
}


@dataclass(frozen=True)
class ConstitutionalRule:
    rule_id: str
    kind: RuleKind
    params: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        try:
            kind = RuleKind(self.kind)
        except ValueError as exc:
            raise ValidationError(f"Constitutional rule {self.rule_id}: unknown kind {self.kind!r}") from exc
        object.__setattr__(self, "kind", kind)
        missing = [p for p in _REQUIRED_PARAMS[kind] if p not in self.params]
        if missing:
            raise ValidationError(f"Constitutional rule {self.rule_id}: missing params {missing}")
        if kind == RuleKind.CONTENT_PATTERN:
            try:
                re.compile(self.params["pattern"])
            except re.error as exc:
                raise ValidationError(f"Constitutional rule {self.rule_id}: bad pattern: {exc}") from exc


# Human approval is the only stage that counts as human sign-off
HUMAN_STAGES = frozenset({"approval"})


def _check(rule: ConstitutionalRule, proposal: Proposal, upstream: Decision) -> Optional[str]:
    """Return a violation message, or None if ``rule`` holds."""
    p = rule.params
    if rule.kind == RuleKind.MAX_COST:
        if proposal.estimated_cost > p["limit"]:
            return f"estimated cost {proposal.estimated_cost} exceeds ceiling {p['limit']}"
    elif rule.kind == RuleKind.MAX_RISK:
        if proposal.risk_score > p["limit"]:
            return f"risk score {proposal.risk_score} exceeds ceiling {p['limit']}"
    elif rule.kind == RuleKind.FORBIDDEN_ACTION_TYPES:
        forbidden = {t.lower() for t in p["types"]}
        if proposal.action.type.lower() in forbidden:
            return f"action type '{proposal.action.type}' is forbidden"
    elif rule.kind == RuleKind.CONTENT_PATTERN:
        if re.search(p["pattern"], proposal.action.content):
            return f"action content matches forbidden pattern {p['pattern']!r}"
    elif rule.kind == RuleKind.IRREVERSIBLE_REQUIRES_HUMAN:
        if proposal.action.irreversible and upstream.stage_name not in HUMAN_STAGES:
            return (
                f"irreversible action admitted by '{upstream.stage_name}' "
                "without human approval"
            )
    return None


DEFAULT_CONSTITUTION: list[ConstitutionalRule] = [
    ConstitutionalRule(
        "no_irreversible_without_human", RuleKind.IRREVERSIBLE_REQUIRES_HUMAN,
        description="Irreversible actions require a human approver",
    ),
    ConstitutionalRule(
        "no_credential_exfiltration", RuleKind.CONTENT_PATTERN,
        {"pattern": r"(?i)(\.ssh/id_|aws_secret_access_key|/etc/shadow)"},
        description="Never touch credential material",
    ),
]


class Arbiter:
    """Applies the constitution to terminal ALLOW decisions."""

    def __init__(self, rules: Iterable[ConstitutionalRule] = DEFAULT_CONSTITUTION):
        self._rules = tuple(rules)
        ids = [r.rule_id for r in self._rules]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"Duplicate constitutional rule ids: {ids}")

    def rules(self) -> list[ConstitutionalRule]:
        return list(self._rules)

    def violations(self, proposal: Proposal, upstream: Decision) -> list[dict[str, str]]:
        found = []
        for rule in self._rules:
            message = _check(rule, proposal, upstream)
            if message is not None:
                found.append({"rule_id": rule.rule_id, "kind": rule.kind.value, "message": message})
        return found

    def review(
        self,
        proposal: Proposal,
        upstream: Decision,
        stage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        if upstream.outcome != Outcome.ALLOW:
            return upstream

        found = self.violations(proposal, upstream)
        if not found:
            return upstream

        logger.warning(
            "Arbiter vetoed %s: %s",
            proposal.id, ", ".join(v["rule_id"] for v in found),
        )
        return Decision(
            proposal_id=proposal.id,
            stage=upstream.stage + 1 if stage is None else stage,
            stage_name="arbiter",
            outcome=Outcome.DENY,
            reason=Reason.CONSTITUTIONAL_VIOLATION.value,
            decided_at=now or utcnow(),
            detail={
                "violations": found,
                "overridden_stage": upstream.stage_name,
            },
        )
