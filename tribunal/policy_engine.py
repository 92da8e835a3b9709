"""
Deterministic Policy Engine
First-pass classification of a proposal: ALLOW, DENY, NEEDS_APPROVAL or
NEEDS_COUNCIL.

Rules are plain data (``PolicyRule``) interpreted by a fixed evaluator, so
the decision path stays auditable. Evaluation order is descending
specificity, then declaration order; the first matching rule wins. No
match falls back to NEEDS_APPROVAL.

The engine is side-effect-free: it does not write to the audit log.
Callers record the returned Decision.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Iterable, Mapping, Optional

from tribunal.errors import ValidationError
from tribunal.models import Decision, Outcome, Proposal, Reason, utcnow, validate_proposal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rule descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyRule:
    name: str
    outcome: Outcome
    reason: str = ""
    action_types: frozenset[str] = field(default_factory=frozenset)  # empty = any
    min_risk: Optional[float] = None     # inclusive
    max_risk: Optional[float] = None     # exclusive
    content_pattern: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.outcome, Outcome):
            raise ValidationError(f"Rule {self.name}: outcome must be an Outcome")
        if (
            self.min_risk is not None and self.max_risk is not None
            and self.min_risk >= self.max_risk
        ):
            raise ValidationError(
                f"Rule {self.name}: empty risk band [{self.min_risk}, {self.max_risk})"
            )
        if self.content_pattern is not None:
            try:
                _compiled(self.content_pattern)
            except re.error as exc:
                raise ValidationError(f"Rule {self.name}: bad content_pattern: {exc}") from exc
        object.__setattr__(self, "action_types", frozenset(t.lower() for t in self.action_types))

    @property
    def specificity(self) -> int:
        """Action type outweighs a risk band or content pattern."""
        score = 0
        if self.action_types:
            score += 2
        if self.min_risk is not None or self.max_risk is not None:
            score += 1
        if self.content_pattern is not None:
            score += 1
        return score

    def matches(self, proposal: Proposal) -> bool:
        if self.action_types and proposal.action.type.lower() not in self.action_types:
            return False
        if self.min_risk is not None and proposal.risk_score < self.min_risk:
            return False
        if self.max_risk is not None and proposal.risk_score >= self.max_risk:
            return False
        if self.content_pattern is not None:
            if not _compiled(self.content_pattern).search(proposal.action.content):
                return False
        return True


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern:
    return re.compile(pattern)


@dataclass(frozen=True)
class RiskThresholds:
    """Per-action-type risk bands. Each bound is inclusive on its lower edge."""
    approval_at: Optional[float] = None
    council_at: Optional[float] = None
    deny_at: Optional[float] = None


def rules_from_thresholds(thresholds: Mapping[str, RiskThresholds]) -> list[PolicyRule]:
    """
    Compile risk thresholds into band rules.

    ``"*"`` applies to every action type (lower specificity than a named
    type). Scores below the first configured threshold are ALLOWed.
    """
    rules: list[PolicyRule] = []
    for action_type, t in thresholds.items():
        types = frozenset() if action_type == "*" else frozenset({action_type})
        bands = [
            (t.deny_at, None, Outcome.DENY),
            (t.council_at, t.deny_at, Outcome.NEEDS_COUNCIL),
            (t.approval_at, t.council_at if t.council_at is not None else t.deny_at,
             Outcome.NEEDS_APPROVAL),
        ]
        lowest: Optional[float] = None
        for lower, upper, outcome in bands:
            if lower is None:
                continue
            rules.append(PolicyRule(
                name=f"{action_type}:{outcome.value.lower()}",
                outcome=outcome,
                reason=f"risk >= {lower} for action type '{action_type}'",
                action_types=types,
                min_risk=lower,
                max_risk=upper,
            ))
            lowest = lower if lowest is None else min(lowest, lower)
        if lowest is not None and lowest > 0.0:
            rules.append(PolicyRule(
                name=f"{action_type}:allow",
                outcome=Outcome.ALLOW,
                reason=f"risk below {lowest} for action type '{action_type}'",
                action_types=types,
                min_risk=0.0,
                max_risk=lowest,
            ))
    return rules


# ---------------------------------------------------------------------------
# Sample rule set
# ---------------------------------------------------------------------------

SHELL_ACTION_TYPES = frozenset({"bash", "shell", "command", "exec", "terminal"})

CONTENT_RULES: list[PolicyRule] = [
    PolicyRule("forbid_sudo", Outcome.DENY, "Use of 'sudo' is prohibited",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\bsudo\b"),
    PolicyRule("forbid_chmod_777", Outcome.DENY, "chmod 777 is prohibited",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\bchmod\s+777\b"),
    PolicyRule("forbid_rm_rf", Outcome.DENY, "Destructive 'rm -rf' is prohibited",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\brm\s+-rf\s+[/*]"),
    PolicyRule("forbid_mkfs", Outcome.DENY, "Filesystem format command is prohibited",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\bmkfs\b"),
    PolicyRule("forbid_raw_disk_write", Outcome.DENY, "Raw disk write via dd is prohibited",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\bdd\s+.+of=/dev/"),
    PolicyRule("unproxied_network", Outcome.NEEDS_APPROVAL,
               "External network access requires operator approval",
               action_types=SHELL_ACTION_TYPES, content_pattern=r"\b(curl|wget)\b"),
]

# Generic risk bands; replaced by configured per-type thresholds
DEFAULT_RULES: list[PolicyRule] = CONTENT_RULES + [
    PolicyRule("high_risk", Outcome.NEEDS_COUNCIL, "High-risk proposals go to council",
               min_risk=0.7),
    PolicyRule("low_risk", Outcome.ALLOW, "Low-risk proposal", max_risk=0.3),
]


# ---------------------------------------------------------------------------
# PolicyEngine
# ---------------------------------------------------------------------------

class PolicyEngine:
    """Pure classifier over a fixed, ordered rule set."""

    def __init__(self, rules: Iterable[PolicyRule] = DEFAULT_RULES):
        indexed = list(enumerate(rules))
        names = [r.name for _, r in indexed]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValidationError(f"Duplicate policy rule names: {sorted(duplicates)}")
        self._rules = [r for _, r in sorted(indexed, key=lambda p: (-p[1].specificity, p[0]))]

    @property
    def rules(self) -> list[PolicyRule]:
        """Rules in evaluation order."""
        return list(self._rules)

    def match(self, proposal: Proposal) -> Optional[PolicyRule]:
        for rule in self._rules:
            if rule.matches(proposal):
                return rule
        return None

    def evaluate(
        self,
        proposal: Proposal,
        stage: int = 0,
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Classify ``proposal``.

        Raises ValidationError for a malformed proposal before any rule runs.
        """
        validate_proposal(proposal)

        rule = self.match(proposal)
        if rule is None:
            return Decision(
                proposal_id=proposal.id,
                stage=stage,
                stage_name="policy",
                outcome=Outcome.NEEDS_APPROVAL,
                reason="no_matching_rule",
                decided_at=now or utcnow(),
                detail={"rule": None},
            )

        reason = Reason.POLICY_DENIED.value if rule.outcome == Outcome.DENY else rule.name
        logger.debug("Proposal %s matched rule %s -> %s", proposal.id, rule.name, rule.outcome.value)
        return Decision(
            proposal_id=proposal.id,
            stage=stage,
            stage_name="policy",
            outcome=rule.outcome,
            reason=reason,
            decided_at=now or utcnow(),
            detail={
                "rule": rule.name,
                "specificity": rule.specificity,
                "explanation": rule.reason,
            },
        )
