"""
Audit Store (PostgreSQL)
Durable sink for the audit chain.

Entries are written in chain order from inside AuditLog.append, so the
table mirrors the in-memory total order. The table enforces uniqueness
of both ``idx`` and ``prev_hash``: a second writer racing for the same
position is rejected by the database, not silently forked.

    CREATE TABLE audit_entries (
        idx          BIGINT PRIMARY KEY,
        created_at   TEXT   NOT NULL,
        actor_id     TEXT   NOT NULL,
        decision     JSONB  NOT NULL,
        payload_hash TEXT   NOT NULL,
        prev_hash    TEXT   NOT NULL UNIQUE,
        entry_hash   TEXT   NOT NULL UNIQUE
    );
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

import psycopg2
import psycopg2.errors

from tribunal.audit import AuditEntry, format_timestamp

logger = logging.getLogger(__name__)

DB_CONFIG = {
    "host": os.environ.get("TRIBUNAL_DB_HOST", "localhost"),
    "port": int(os.environ.get("TRIBUNAL_DB_PORT", "5433")),
    "dbname": os.environ.get("TRIBUNAL_DB_NAME", "governance_control_plane"),
    "user": os.environ.get("TRIBUNAL_DB_USER", "admin"),
    "password": os.environ.get("TRIBUNAL_DB_PASSWORD", ""),
}

_COLUMNS = "idx, created_at, actor_id, decision, payload_hash, prev_hash, entry_hash"


class PostgresAuditStore:
    """
    Append-only writer/reader for the audit_entries table.

    Opens one connection per call, like every other database touchpoint
    in the gateway.
    """

    def __init__(self, db_config: dict | None = None, max_retries: int = 3):
        self._db_config = db_config or DB_CONFIG
        self._max_retries = max_retries

    def _connect(self):
        return psycopg2.connect(**self._db_config)

    def append(self, entry: AuditEntry) -> None:
        """
        Persist one entry. Retries transient deadlocks. A UniqueViolation
        means another writer already owns this index or predecessor: that
        is a chain fork and is re-raised at once.
        """
        for attempt in range(self._max_retries):
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    f"INSERT INTO audit_entries ({_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s)",
                    (
                        entry.index,
                        format_timestamp(entry.timestamp),
                        entry.actor_id,
                        json.dumps(entry.decision, sort_keys=True),
                        entry.payload_hash,
                        entry.prev_hash,
                        entry.entry_hash,
                    ),
                )
                conn.commit()
                cur.close()
                return
            except psycopg2.errors.UniqueViolation:
                conn.rollback()
                logger.error("audit_entries already holds idx=%d: chain fork", entry.index)
                raise
            except psycopg2.errors.DeadlockDetected:
                conn.rollback()
                if attempt < self._max_retries - 1:
                    logger.warning(
                        "audit_entries insert for idx=%d deadlocked (attempt %d), retrying",
                        entry.index, attempt + 1,
                    )
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            finally:
                conn.close()

    def load(self) -> list[AuditEntry]:
        """Read the full chain ordered by index. SELECT-only."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM audit_entries ORDER BY idx ASC")
            rows = cur.fetchall()
            cur.close()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def count(self) -> int:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM audit_entries")
            (n,) = cur.fetchone()
            cur.close()
            return int(n)
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row: tuple[Any, ...]) -> AuditEntry:
        idx, created_at, actor_id, decision, payload_hash, prev_hash, entry_hash = row
        if isinstance(decision, str):
            decision = json.loads(decision)
        return AuditEntry(
            index=idx,
            timestamp=created_at,
            actor_id=actor_id,
            decision=decision,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
        )
