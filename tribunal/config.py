"""
Governance Configuration
Every tunable of the governance core, read from ``TRIBUNAL_*`` environment
variables.

    TRIBUNAL_COUNCIL_MEMBERS        comma-separated member ids
    TRIBUNAL_QUORUM_FRACTION        default 0.5 (quorum = ceil(N * f))
    TRIBUNAL_MAJORITY_FRACTION      default 0.5 (strict majority)
    TRIBUNAL_COUNCIL_TTL_SECONDS    default 86400
    TRIBUNAL_RISK_THRESHOLDS        JSON: {"<action type>|*": {"approval_at": .., ...}}
    TRIBUNAL_BUDGET_LIMIT           per billing period, default 1000
    TRIBUNAL_BUDGET_COOLDOWN_SECONDS   default 900
    TRIBUNAL_BUDGET_FAULT_THRESHOLD    default 3
    TRIBUNAL_BILLING_CYCLE_START_DAY   default 1
    TRIBUNAL_APPROVAL_TTL_SECONDS   default 3600
    TRIBUNAL_RETRY_ATTEMPTS         default 3
    TRIBUNAL_BACKOFF_BASE_SECONDS   default 0.5
    TRIBUNAL_BACKOFF_MULTIPLIER     default 2.0
    TRIBUNAL_MAX_WORKERS            default 4
    TRIBUNAL_SWEEP_INTERVAL_SECONDS default 30
    TRIBUNAL_CHECKPOINT_INTERVAL    default 100 (0 disables)
    TRIBUNAL_CHECKPOINT_KEY         HMAC key for audit checkpoints
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from tribunal.errors import ValidationError
from tribunal.policy_engine import RiskThresholds

_DEFAULT_MEMBERS = "council-1,council-2,council-3,council-4,council-5"


def parse_risk_thresholds(raw: str) -> dict[str, RiskThresholds]:
    """Parse the TRIBUNAL_RISK_THRESHOLDS JSON document."""
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"TRIBUNAL_RISK_THRESHOLDS is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("TRIBUNAL_RISK_THRESHOLDS must be a JSON object")
    result = {}
    for action_type, bands in data.items():
        if not isinstance(bands, dict):
            raise ValidationError(f"Risk thresholds for '{action_type}' must be an object")
        unknown = set(bands) - {"approval_at", "council_at", "deny_at"}
        if unknown:
            raise ValidationError(f"Unknown risk threshold keys for '{action_type}': {sorted(unknown)}")
        result[action_type] = RiskThresholds(**bands)
    return result


@dataclass
class GovernanceConfig:
    members: list[str] = field(default_factory=lambda: _DEFAULT_MEMBERS.split(","))
    quorum_fraction: float = 0.5
    majority_fraction: float = 0.5
    council_ttl_seconds: int = 86400

    risk_thresholds: dict[str, RiskThresholds] = field(default_factory=dict)

    budget_limit: float = 1000.0
    budget_cooldown_seconds: int = 900
    budget_fault_threshold: int = 3
    billing_cycle_start_day: int = 1
    budget_warning_fraction: float = 0.70
    budget_critical_fraction: float = 0.90

    approval_ttl_seconds: int = 3600

    retry_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_workers: int = 4

    sweep_interval_seconds: float = 30.0
    checkpoint_interval: int = 100
    checkpoint_key: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GovernanceConfig":
        env = os.environ if environ is None else environ
        try:
            config = cls(
                members=[
                    m.strip()
                    for m in env.get("TRIBUNAL_COUNCIL_MEMBERS", _DEFAULT_MEMBERS).split(",")
                    if m.strip()
                ],
                quorum_fraction=float(env.get("TRIBUNAL_QUORUM_FRACTION", "0.5")),
                majority_fraction=float(env.get("TRIBUNAL_MAJORITY_FRACTION", "0.5")),
                council_ttl_seconds=int(env.get("TRIBUNAL_COUNCIL_TTL_SECONDS", "86400")),
                risk_thresholds=parse_risk_thresholds(env.get("TRIBUNAL_RISK_THRESHOLDS", "")),
                budget_limit=float(env.get("TRIBUNAL_BUDGET_LIMIT", "1000")),
                budget_cooldown_seconds=int(env.get("TRIBUNAL_BUDGET_COOLDOWN_SECONDS", "900")),
                budget_fault_threshold=int(env.get("TRIBUNAL_BUDGET_FAULT_THRESHOLD", "3")),
                billing_cycle_start_day=int(env.get("TRIBUNAL_BILLING_CYCLE_START_DAY", "1")),
                budget_warning_fraction=float(env.get("TRIBUNAL_BUDGET_WARNING_FRACTION", "0.7")),
                budget_critical_fraction=float(env.get("TRIBUNAL_BUDGET_CRITICAL_FRACTION", "0.9")),
                approval_ttl_seconds=int(env.get("TRIBUNAL_APPROVAL_TTL_SECONDS", "3600")),
                retry_attempts=int(env.get("TRIBUNAL_RETRY_ATTEMPTS", "3")),
                backoff_base_seconds=float(env.get("TRIBUNAL_BACKOFF_BASE_SECONDS", "0.5")),
                backoff_multiplier=float(env.get("TRIBUNAL_BACKOFF_MULTIPLIER", "2.0")),
                max_workers=int(env.get("TRIBUNAL_MAX_WORKERS", "4")),
                sweep_interval_seconds=float(env.get("TRIBUNAL_SWEEP_INTERVAL_SECONDS", "30")),
                checkpoint_interval=int(env.get("TRIBUNAL_CHECKPOINT_INTERVAL", "100")),
                checkpoint_key=env.get("TRIBUNAL_CHECKPOINT_KEY") or None,
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid governance configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        """Reject values no component could run with."""
        problems = []
        if not self.members:
            problems.append("at least one council member is required")
        if len(set(self.members)) != len(self.members):
            problems.append("council members must be unique")
        if not 0.0 < self.quorum_fraction <= 1.0:
            problems.append("quorum_fraction must be in (0, 1]")
        if not 0.0 <= self.majority_fraction < 1.0:
            problems.append("majority_fraction must be in [0, 1)")
        if self.council_ttl_seconds <= 0:
            problems.append("council_ttl_seconds must be positive")
        if self.budget_limit <= 0:
            problems.append("budget_limit must be positive")
        if self.budget_cooldown_seconds < 0:
            problems.append("budget_cooldown_seconds must be non-negative")
        if self.budget_fault_threshold < 1:
            problems.append("budget_fault_threshold must be >= 1")
        if not 1 <= self.billing_cycle_start_day <= 28:
            problems.append("billing_cycle_start_day must be between 1 and 28")
        if not 0.0 < self.budget_warning_fraction <= self.budget_critical_fraction <= 1.0:
            problems.append("budget alert fractions must satisfy 0 < warning <= critical <= 1")
        if self.approval_ttl_seconds <= 0:
            problems.append("approval_ttl_seconds must be positive")
        if self.retry_attempts < 1:
            problems.append("retry_attempts must be >= 1")
        if self.backoff_base_seconds < 0 or self.backoff_multiplier < 1:
            problems.append("backoff base must be >= 0 and multiplier >= 1")
        if self.max_workers < 1:
            problems.append("max_workers must be >= 1")
        if self.sweep_interval_seconds <= 0:
            problems.append("sweep_interval_seconds must be positive")
        if self.checkpoint_interval < 0:
            problems.append("checkpoint_interval must be >= 0")
        for action_type, t in self.risk_thresholds.items():
            bounds = [b for b in (t.approval_at, t.council_at, t.deny_at) if b is not None]
            if any(not 0.0 <= b <= 1.0 for b in bounds) or bounds != sorted(bounds):
                problems.append(
                    f"risk thresholds for '{action_type}' must be ascending within [0, 1]"
                )
        if problems:
            raise ValidationError("Invalid governance configuration: " + "; ".join(problems))

    @property
    def approval_ttl(self) -> timedelta:
        return timedelta(seconds=self.approval_ttl_seconds)

    @property
    def council_ttl(self) -> timedelta:
        return timedelta(seconds=self.council_ttl_seconds)

    @property
    def budget_cooldown(self) -> timedelta:
        return timedelta(seconds=self.budget_cooldown_seconds)
