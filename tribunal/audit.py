"""
Audit Log
Tamper-evident, append-only record of every governance decision.

Each entry is chained to its predecessor:

    payload_hash = SHA256(canonical_bytes(decision))
    entry_hash   = SHA256(prev_hash | canonical_bytes({timestamp, actor_id,
                                                      decision, payload_hash}))

canonical_bytes is JSON with sorted keys, no whitespace, ASCII-only
output; datetimes are rendered as ``YYYY-MM-DDTHH:MM:SS.ffffffZ`` (UTC),
enums by value, tuples/sets as lists. The genesis prev_hash is 64 zeros.
These rules are fixed: any change breaks independent verification of
previously exported chains.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from tribunal.errors import ChainIntegrityError
from tribunal.models import utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
DEFAULT_CHECKPOINT_INTERVAL = 100


# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------

def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    if hasattr(value, "to_record"):
        return value.to_record()
    raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def canonical_bytes(obj: Any) -> bytes:
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
        default=_canonical_default,
    ).encode("utf-8")


def canonical_record(decision: Any) -> dict[str, Any]:
    """Normalize a decision (object with to_record, or mapping) to plain JSON types."""
    if hasattr(decision, "to_record"):
        decision = decision.to_record()
    if not isinstance(decision, Mapping):
        raise TypeError(f"Decision must be a mapping or expose to_record(), got {type(decision).__name__}")
    return json.loads(canonical_bytes(dict(decision)))


def compute_payload_hash(decision: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonical_bytes(dict(decision))).hexdigest()


def compute_entry_hash(
    prev_hash: str,
    timestamp: datetime,
    actor_id: str,
    decision: Mapping[str, Any],
    payload_hash: str,
) -> str:
    """Recompute an entry hash from its stored fields and the previous hash."""
    material = canonical_bytes({
        "timestamp": timestamp,
        "actor_id": actor_id,
        "decision": dict(decision),
        "payload_hash": payload_hash,
    })
    return hashlib.sha256(prev_hash.encode("ascii") + b"|" + material).hexdigest()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single immutable link of the chain."""
    model_config = ConfigDict(frozen=True)

    index: int
    timestamp: datetime
    actor_id: str
    decision: dict[str, Any]
    payload_hash: str
    prev_hash: str
    entry_hash: str


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    broken_at_index: Optional[int] = None
    details: str = ""


@dataclass(frozen=True)
class AuditCheckpoint:
    """HMAC-signed snapshot of the chain head.

    Detects wholesale replacement of the chain with a different but
    internally consistent one.
    """
    id: str
    timestamp: str
    entry_count: int
    head_hash: str
    genesis_hash: str
    signature: str


class AuditSink(Protocol):
    def append(self, entry: AuditEntry) -> None: ...


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_entries(entries: Iterable[AuditEntry]) -> VerifyResult:
    """Replay the chain and report the first entry whose fields do not recompute."""
    expected_prev = GENESIS_HASH
    count = 0
    for position, entry in enumerate(entries):
        count += 1
        if entry.index != position:
            return VerifyResult(
                False, position,
                f"Chain broken at entry {position}: index mismatch (stored {entry.index})",
            )
        if entry.prev_hash != expected_prev:
            return VerifyResult(
                False, position,
                f"Chain broken at entry {position}: prev_hash does not match predecessor",
            )
        if compute_payload_hash(entry.decision) != entry.payload_hash:
            return VerifyResult(
                False, position,
                f"Chain broken at entry {position}: payload_hash mismatch",
            )
        recomputed = compute_entry_hash(
            entry.prev_hash, entry.timestamp, entry.actor_id,
            entry.decision, entry.payload_hash,
        )
        if recomputed != entry.entry_hash:
            return VerifyResult(
                False, position,
                f"Chain broken at entry {position}: entry_hash mismatch",
            )
        expected_prev = entry.entry_hash

    return VerifyResult(True, None, f"Chain integrity verified: {count} entries")


def _anchors(checkpoint: AuditCheckpoint, entries: list[AuditEntry]) -> bool:
    """True if ``checkpoint`` still describes a prefix of ``entries``."""
    return (
        len(entries) >= checkpoint.entry_count
        and entries[checkpoint.entry_count - 1].entry_hash == checkpoint.head_hash
        and entries[0].entry_hash == checkpoint.genesis_hash
    )


# ---------------------------------------------------------------------------
# AuditLog
# ---------------------------------------------------------------------------

class AuditLog:
    """
    Append-only, hash-chained decision log.

    ``append`` is the single global serialization point of the governance
    core: one lock orders every entry, so indices are gapless and each
    entry sees its predecessor's hash. An optional sink (e.g. the
    PostgreSQL store) receives entries inside the same lock.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        signing_key: Optional[bytes] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._entries: list[AuditEntry] = []
        self._checkpoints: list[AuditCheckpoint] = []
        self._lock = threading.Lock()
        self._sink = sink
        self._clock = clock
        self._checkpoint_interval = checkpoint_interval
        self._signing_key = signing_key or secrets.token_bytes(32)
        self._since_checkpoint = 0
        self._compromised: Optional[VerifyResult] = None

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]], **kwargs) -> "AuditLog":
        """Load an exported chain as-is (no verification) for independent auditing."""
        log = cls(**kwargs)
        log._entries = [AuditEntry.model_validate(dict(r)) for r in records]
        return log

    # -- writing ------------------------------------------------------------

    def append(self, actor_id: str, decision: Any) -> AuditEntry:
        """Chain ``decision`` onto the tail and return the stored entry."""
        record = canonical_record(decision)
        payload_hash = compute_payload_hash(record)

        with self._lock:
            if self._compromised is not None:
                raise ChainIntegrityError(
                    f"Audit chain is compromised ({self._compromised.details}); "
                    "refusing to append until reconciled",
                    self._compromised.broken_at_index,
                )
            prev_hash = self._entries[-1].entry_hash if self._entries else GENESIS_HASH
            timestamp = self._clock()
            entry = AuditEntry(
                index=len(self._entries),
                timestamp=timestamp,
                actor_id=actor_id,
                decision=record,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
                entry_hash=compute_entry_hash(
                    prev_hash, timestamp, actor_id, record, payload_hash,
                ),
            )
            if self._sink is not None:
                self._sink.append(entry)
            self._entries.append(entry)

            self._since_checkpoint += 1
            if self._checkpoint_interval > 0 and self._since_checkpoint >= self._checkpoint_interval:
                self._checkpoint_locked()

        return entry

    # -- reading ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def head_hash(self) -> str:
        with self._lock:
            return self._entries[-1].entry_hash if self._entries else GENESIS_HASH

    def entries(self, start: int = 0, end: Optional[int] = None) -> list[AuditEntry]:
        """Entries with ``start <= index < end`` in chain order."""
        if start < 0 or (end is not None and end < start):
            raise ValueError(f"Invalid audit range [{start}, {end})")
        with self._lock:
            return list(self._entries[start:end])

    def records(self) -> list[dict[str, Any]]:
        """Export the chain as an ordered list of JSON-ready dicts."""
        return [e.model_dump(mode="json") for e in self.entries()]

    # -- integrity ----------------------------------------------------------

    @property
    def compromised(self) -> bool:
        return self._compromised is not None

    def verify(self) -> VerifyResult:
        """Recompute every hash. A failure marks the log compromised."""
        result = verify_entries(self.entries())
        if not result.valid:
            logger.error("AUDIT CHAIN INTEGRITY FAILURE: %s", result.details)
            with self._lock:
                self._compromised = result
        return result

    def ensure_intact(self) -> None:
        """Raise ChainIntegrityError if a previous verification failed."""
        if self._compromised is not None:
            raise ChainIntegrityError(
                f"Audit chain is compromised: {self._compromised.details}",
                self._compromised.broken_at_index,
            )

    def restore(self, records: Iterable[Mapping[str, Any]]) -> VerifyResult:
        """
        Manual reconciliation: replace the chain with a verified export.

        Checkpoints that no longer describe the restored chain are dropped
        and the reconciled head is re-anchored with a fresh checkpoint.
        """
        entries = [AuditEntry.model_validate(dict(r)) for r in records]
        result = verify_entries(entries)
        if not result.valid:
            raise ChainIntegrityError(
                f"Refusing to restore an invalid chain: {result.details}",
                result.broken_at_index,
            )
        with self._lock:
            self._entries = entries
            self._compromised = None
            kept = [cp for cp in self._checkpoints if _anchors(cp, entries)]
            dropped = len(self._checkpoints) - len(kept)
            self._checkpoints = kept
            self._since_checkpoint = 0
            if self._checkpoint_interval > 0 and not any(cp.entry_count == len(entries) for cp in kept):
                self._checkpoint_locked()
        if dropped:
            logger.warning("Dropped %d checkpoints that do not match the restored chain", dropped)
        logger.warning("Audit chain restored from %d reconciled entries", len(entries))
        return result

    # -- checkpoints --------------------------------------------------------

    def _sign(self, entry_count: int, head_hash: str, genesis_hash: str) -> str:
        material = canonical_bytes({
            "entry_count": entry_count,
            "head_hash": head_hash,
            "genesis_hash": genesis_hash,
        })
        return hmac.new(self._signing_key, material, hashlib.sha256).hexdigest()

    def _checkpoint_locked(self) -> Optional[AuditCheckpoint]:
        if not self._entries:
            return None
        head = self._entries[-1].entry_hash
        genesis = self._entries[0].entry_hash
        checkpoint = AuditCheckpoint(
            id=str(uuid4()),
            timestamp=format_timestamp(self._clock()),
            entry_count=len(self._entries),
            head_hash=head,
            genesis_hash=genesis,
            signature=self._sign(len(self._entries), head, genesis),
        )
        self._checkpoints.append(checkpoint)
        self._since_checkpoint = 0
        return checkpoint

    def checkpoint(self) -> Optional[AuditCheckpoint]:
        with self._lock:
            return self._checkpoint_locked()

    def checkpoints(self) -> list[AuditCheckpoint]:
        with self._lock:
            return list(self._checkpoints)

    def verify_checkpoints(self) -> dict[str, Any]:
        """Check the current chain against every recorded checkpoint."""
        mismatches: list[dict[str, str]] = []
        with self._lock:
            entries = list(self._entries)
            checkpoints = list(self._checkpoints)

        for cp in checkpoints:
            if len(entries) < cp.entry_count:
                mismatches.append({
                    "checkpoint_id": cp.id, "field": "entry_count",
                    "expected": str(cp.entry_count), "actual": str(len(entries)),
                })
                continue
            actual_head = entries[cp.entry_count - 1].entry_hash
            if actual_head != cp.head_hash:
                mismatches.append({
                    "checkpoint_id": cp.id, "field": "head_hash",
                    "expected": cp.head_hash, "actual": actual_head,
                })
            if entries[0].entry_hash != cp.genesis_hash:
                mismatches.append({
                    "checkpoint_id": cp.id, "field": "genesis_hash",
                    "expected": cp.genesis_hash, "actual": entries[0].entry_hash,
                })
            expected_sig = self._sign(cp.entry_count, cp.head_hash, cp.genesis_hash)
            if not hmac.compare_digest(expected_sig, cp.signature):
                mismatches.append({
                    "checkpoint_id": cp.id, "field": "signature",
                    "expected": expected_sig, "actual": cp.signature,
                })

        return {
            "valid": not mismatches,
            "checked": len(checkpoints),
            "mismatches": mismatches,
        }

    def checkpoint_records(self) -> list[dict[str, Any]]:
        return [asdict(cp) for cp in self.checkpoints()]
