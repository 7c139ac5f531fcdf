"""
Casework — Immutable Audit Trail

Append-only event store recording every case lifecycle action for
clinical governance review. Kept in its own SQLite database, separate
from the case store, so audit writes never contend with transitions.

Features:
  - Append-only: no UPDATE, no DELETE exposed
  - SHA-256 hash chain: each event includes the hash of the previous event
  - Tamper detection: verify chain integrity on demand
  - Query by case_id for a full lifecycle reconstruction

Usage:
    trail = AuditTrail("audit.db")
    trail.record("CASE_SUBMIT", actor_id="u1", case_id="c1",
                 details={"previous_status": "draft", "new_status": "submitted"})

    events = trail.get_trail("c1")
    ok, message = trail.verify_chain()
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("casework.audit")


@dataclass
class AuditEvent:
    """A single audit trail entry."""
    id: int
    case_id: str
    action: str
    actor_id: str
    timestamp: float
    details: dict[str, Any]
    event_hash: str
    previous_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "details": self.details,
            "event_hash": self.event_hash,
            "previous_hash": self.previous_hash,
        }


GENESIS_HASH = "0" * 64


def compute_event_hash(
    previous_hash: str,
    case_id: str,
    action: str,
    actor_id: str,
    timestamp: float,
    details_json: str,
) -> str:
    """Compute SHA-256 hash for an audit event."""
    content = f"{previous_hash}|{case_id}|{action}|{actor_id}|{timestamp}|{details_json}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class AuditTrail:
    """
    Append-only audit event store with hash chain integrity.

    Implements the AuditRecorder port consumed by the workflow engine.
    """

    def __init__(self, db_path: str = "audit_trail.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                details TEXT NOT NULL,
                event_hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_case
                ON audit_events(case_id);
            CREATE INDEX IF NOT EXISTS idx_audit_action
                ON audit_events(action);
        """)
        self._conn.commit()

    def _get_last_hash(self) -> str:
        row = self._conn.execute(
            "SELECT event_hash FROM audit_events ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row[0] if row else GENESIS_HASH

    def record(
        self,
        action: str,
        actor_id: str,
        case_id: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Append a single event to the audit trail."""
        details = details or {}
        with self._lock:
            timestamp = time.time()
            details_json = json.dumps(details, sort_keys=True, default=str)
            previous_hash = self._get_last_hash()
            event_hash = compute_event_hash(
                previous_hash, case_id, action, actor_id, timestamp, details_json
            )
            cursor = self._conn.execute(
                """INSERT INTO audit_events
                   (case_id, action, actor_id, timestamp, details, event_hash, previous_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (case_id, action, actor_id, timestamp, details_json, event_hash, previous_hash),
            )
            self._conn.commit()

        return AuditEvent(
            id=cursor.lastrowid,
            case_id=case_id,
            action=action,
            actor_id=actor_id,
            timestamp=timestamp,
            details=details,
            event_hash=event_hash,
            previous_hash=previous_hash,
        )

    # ── Query Methods ───────────────────────────────────────────

    def _rows_to_events(self, rows) -> list[AuditEvent]:
        return [
            AuditEvent(
                id=r[0], case_id=r[1], action=r[2], actor_id=r[3],
                timestamp=r[4], details=json.loads(r[5]),
                event_hash=r[6], previous_hash=r[7],
            )
            for r in rows
        ]

    def get_trail(self, case_id: str) -> list[AuditEvent]:
        """Full audit trail for one case, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, case_id, action, actor_id, timestamp, details,
                          event_hash, previous_hash
                   FROM audit_events WHERE case_id = ? ORDER BY id ASC""",
                (case_id,),
            ).fetchall()
        return self._rows_to_events(rows)

    def get_events_by_action(self, action: str, limit: int = 100) -> list[AuditEvent]:
        """Most recent events of one action type."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, case_id, action, actor_id, timestamp, details,
                          event_hash, previous_hash
                   FROM audit_events WHERE action = ? ORDER BY id DESC LIMIT ?""",
                (action, limit),
            ).fetchall()
        return self._rows_to_events(rows)

    def count_events(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM audit_events").fetchone()[0]

    # ── Integrity Verification ──────────────────────────────────

    def verify_chain(self) -> tuple[bool, str]:
        """
        Verify the hash chain integrity of the entire audit trail.

        Returns (is_valid, message).
        """
        with self._lock:
            rows = self._conn.execute(
                """SELECT id, case_id, action, actor_id, timestamp, details,
                          event_hash, previous_hash
                   FROM audit_events ORDER BY id ASC"""
            ).fetchall()
        if not rows:
            return True, "Empty trail, nothing to verify"

        expected_prev = GENESIS_HASH
        for event_id, case_id, action, actor_id, timestamp, details_json, stored_hash, stored_prev in rows:
            if stored_prev != expected_prev:
                return False, (
                    f"Chain broken at event {event_id}: "
                    f"expected previous_hash={expected_prev[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )
            computed = compute_event_hash(
                stored_prev, case_id, action, actor_id, timestamp, details_json
            )
            if computed != stored_hash:
                return False, (
                    f"Tampered event {event_id}: "
                    f"computed hash={computed[:16]}..., "
                    f"stored hash={stored_hash[:16]}..."
                )
            expected_prev = stored_hash

        return True, f"Chain intact ({len(rows)} events)"

    def close(self):
        self._conn.close()
