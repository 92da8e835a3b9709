#!/usr/bin/env python3
"""
Tribunal Operator Key Generator

Issues a new operator API key with a `trb_` prefix and prints:
  - The raw key (hand to the operator once; it is never stored)
  - The SHA-256 fingerprint
  - A ready-to-paste entry for the operators file (TRIBUNAL_OPERATORS_PATH)

Usage:  python scripts/keygen.py [actor_id] [role]
        actor_id defaults to "operator", role to "approver"
        role is one of: approver, council, admin
"""

from __future__ import annotations

import json
import os
import secrets
import sys

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from tribunal.identity import APPROVER_ROLES, COUNCIL_ROLES, hash_api_key

ROLES = sorted(APPROVER_ROLES | COUNCIL_ROLES)


def generate_key() -> str:
    """Return a `trb_` prefixed key with 32 bytes of URL-safe randomness."""
    return "trb_" + secrets.token_urlsafe(32)


def operator_entry(actor_id: str, role: str, raw_key: str) -> dict:
    if role not in ROLES:
        raise ValueError(f"Unknown role '{role}' (expected one of {', '.join(ROLES)})")
    return {actor_id: {"role": role, "status": "active", "key_fingerprint": hash_api_key(raw_key)}}


def main():
    actor_id = sys.argv[1] if len(sys.argv) > 1 else "operator"
    role = sys.argv[2] if len(sys.argv) > 2 else "approver"
    raw = generate_key()
    try:
        entry = operator_entry(actor_id, role, raw)
    except ValueError as exc:
        print(f"ERROR: {exc}")
        sys.exit(2)

    print()
    print("=== Tribunal Operator Key ===")
    print()
    print(f"  Actor ID:    {actor_id}")
    print(f"  Role:        {role}")
    print(f"  Raw Key:     {raw}")
    print(f"  Fingerprint: {entry[actor_id]['key_fingerprint']}")
    print()
    print("--- Paste into the operators file under \"operators\" ---")
    print(json.dumps(entry, indent=2))
    print()


if __name__ == "__main__":
    main()
