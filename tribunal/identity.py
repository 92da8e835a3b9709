"""
Operator Identity
Who may resolve approvals and cast council votes through the gateway.

Operators are loaded from a JSON file (``TRIBUNAL_OPERATORS_PATH``):

    {"operators": {
        "alice": {"role": "approver", "status": "active",
                  "key_fingerprint": "sha256:<hex>"},
        "council-1": {"role": "council", "status": "active",
                      "key_fingerprint": "sha256:<hex>"}
    }}

Only key fingerprints are stored; raw API keys never touch disk.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

APPROVER_ROLES = frozenset({"approver", "admin"})
COUNCIL_ROLES = frozenset({"council", "admin"})


@dataclass
class Operator:
    actor_id: str
    role: str
    status: str = "active"
    key_fingerprint: Optional[str] = None


def hash_api_key(raw_key: str) -> str:
    """Return ``sha256:<hex>`` fingerprint of a raw API key."""
    digest = hashlib.sha256(raw_key.encode()).hexdigest()
    return f"sha256:{digest}"


class OperatorRegistry:

    def __init__(self, operators: Iterable[Operator] = ()):
        self._operators = {op.actor_id: op for op in operators}

    @classmethod
    def from_mapping(cls, data: Mapping) -> "OperatorRegistry":
        return cls(
            Operator(
                actor_id=actor_id,
                role=info["role"],
                status=info.get("status", "active"),
                key_fingerprint=info.get("key_fingerprint"),
            )
            for actor_id, info in data.get("operators", {}).items()
        )

    @classmethod
    def from_file(cls, path: str) -> "OperatorRegistry":
        with open(path, "r") as f:
            return cls.from_mapping(json.load(f))

    @classmethod
    def from_env(cls) -> "OperatorRegistry":
        """Load from TRIBUNAL_OPERATORS_PATH; an unset path yields an empty registry."""
        path = os.environ.get("TRIBUNAL_OPERATORS_PATH")
        if not path:
            return cls()
        return cls.from_file(path)

    def __len__(self) -> int:
        return len(self._operators)

    def get(self, actor_id: str) -> Optional[Operator]:
        return self._operators.get(actor_id)

    def authenticate(self, bearer_token: str, roles: Optional[frozenset[str]] = None) -> Operator:
        """Resolve a Bearer token to an active operator.

        The token's fingerprint is compared timing-safe against every
        registered fingerprint. Raises ``ValueError`` on no match, an
        inactive operator, or a role outside ``roles``.
        """
        token_fp = hash_api_key(bearer_token)
        for operator in self._operators.values():
            if operator.key_fingerprint is None:
                continue
            if hmac.compare_digest(token_fp, operator.key_fingerprint):
                if operator.status != "active":
                    raise ValueError(f"Operator {operator.actor_id} is {operator.status}")
                if roles is not None and operator.role not in roles:
                    raise ValueError(
                        f"Operator {operator.actor_id} ({operator.role}) is not permitted here"
                    )
                return operator
        raise ValueError("Invalid API key: no matching operator")
