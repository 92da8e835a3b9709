"""
Audit Chain Verifier
Independently walks an exported audit chain, recomputes every SHA-256
hash from the stored fields, and confirms nothing was altered.

Usage:
    python scripts/verify_chain.py                 # read the PostgreSQL store
    python scripts/verify_chain.py export.json     # read a JSON export (GET /audit)
"""

from __future__ import annotations

import json
import os
import sys

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tribunal.audit import (
    GENESIS_HASH,
    AuditEntry,
    compute_entry_hash,
    compute_payload_hash,
)
from tribunal.audit_store import PostgresAuditStore


def load_export(path: str) -> list[AuditEntry]:
    with open(path, "r") as f:
        data = json.load(f)
    records = data["entries"] if isinstance(data, dict) else data
    return [AuditEntry.model_validate(r) for r in records]


def verify(entries: list[AuditEntry]) -> bool:
    if not entries:
        print("Audit chain is empty, nothing to verify.")
        return True

    print(f"Verifying chain of {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}...\n")

    all_valid = True
    expected_prev = GENESIS_HASH
    for position, entry in enumerate(entries):
        problems = []
        if entry.index != position:
            problems.append(f"index {entry.index} != position {position}")
        if entry.prev_hash != expected_prev:
            problems.append("prev_hash does not match predecessor")
        if compute_payload_hash(entry.decision) != entry.payload_hash:
            problems.append("payload_hash mismatch")
        expected_hash = compute_entry_hash(
            entry.prev_hash, entry.timestamp, entry.actor_id,
            entry.decision, entry.payload_hash,
        )
        if expected_hash != entry.entry_hash:
            problems.append("entry_hash mismatch")

        status = "TAMPERED" if problems else "OK"
        if problems:
            all_valid = False

        stage = entry.decision.get("stage_name", "?")
        outcome = entry.decision.get("outcome") or entry.decision.get("status", "?")
        print(f"  [{status}] Entry {position}: {stage} -> {outcome}")
        print(f"         Actor:    {entry.actor_id}")
        print(f"         Hash:     {entry.entry_hash[:32]}...")
        print(f"         PrevHash: {entry.prev_hash[:32]}...")
        for problem in problems:
            print(f"         PROBLEM:  {problem}")
        print()
        expected_prev = entry.entry_hash

    if all_valid:
        print(f"CHAIN INTEGRITY: VALID, all {len(entries)} entries verified.")
    else:
        print("CHAIN INTEGRITY: BROKEN, tampering detected!")
    return all_valid


if __name__ == "__main__":
    if len(sys.argv) > 1:
        chain = load_export(sys.argv[1])
    else:
        chain = PostgresAuditStore().load()
    sys.exit(0 if verify(chain) else 1)
