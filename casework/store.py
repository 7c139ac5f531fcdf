"""
Casework — Case Store

SQLite-backed persistence for cases, consensus reports and (for
single-process deployments) meetings.

Concurrency contract:
  - Every engine transition runs inside store.transaction(), which on
    SQLite is BEGIN IMMEDIATE: the read-validate-write unit holds the
    database write lock.
  - update_case() is additionally conditioned on the case's version, so
    a writer that read a stale row fails with ConcurrentModification
    instead of overwriting.
  - consensus_reports.case_id is UNIQUE. A second insert for the same
    case surfaces as AlreadyExists no matter how the callers raced.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import date
from typing import Any

from casework.errors import AlreadyExists, ConcurrentModification, NotFound
from casework.types import (
    Case,
    CaseStatus,
    ConsensusReport,
    Meeting,
    MeetingStatus,
    PatientContext,
)
from services.db import DatabaseBackend, create_backend


class CaseStore:
    """Case and consensus persistence over a DatabaseBackend."""

    def __init__(self, db: DatabaseBackend | None = None, db_path: str = ":memory:"):
        self.db = db or create_backend("sqlite", path=db_path)
        self._create_tables()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                case = store.get_case(case_id)
                ...
                store.update_case(case)
        """
        return self.db.transaction()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS cases (
                case_id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'draft',
                created_by_id TEXT NOT NULL,
                presenting_department_id TEXT NOT NULL,
                assigned_meeting_id TEXT,
                patient TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                submitted_at REAL,
                reviewed_at REAL,
                archived_at REAL,
                version INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS consensus_reports (
                report_id TEXT PRIMARY KEY,
                case_id TEXT NOT NULL UNIQUE REFERENCES cases(case_id),
                final_diagnosis TEXT NOT NULL,
                mdt_consensus TEXT NOT NULL,
                meeting_date TEXT NOT NULL,
                remarks TEXT,
                created_by_id TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meetings (
                meeting_id TEXT PRIMARY KEY,
                date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'scheduled',
                description TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_cases_status ON cases(status);
            CREATE INDEX IF NOT EXISTS idx_cases_meeting ON cases(assigned_meeting_id);
            CREATE INDEX IF NOT EXISTS idx_cases_department ON cases(presenting_department_id);
            CREATE INDEX IF NOT EXISTS idx_meetings_date ON meetings(date);
        """)

    # ─── Case CRUD ───────────────────────────────────────────────────

    def insert_case(self, case: Case) -> None:
        self.db.execute("""
            INSERT INTO cases
            (case_id, status, created_by_id, presenting_department_id,
             assigned_meeting_id, patient, created_at, updated_at,
             submitted_at, reviewed_at, archived_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            case.case_id, case.status.value, case.created_by_id,
            case.presenting_department_id, case.assigned_meeting_id,
            json.dumps(case.patient.to_dict()),
            case.created_at, case.updated_at,
            case.submitted_at, case.reviewed_at, case.archived_at,
            case.version,
        ))

    def get_case(self, case_id: str) -> Case | None:
        row = self.db.fetchone("SELECT * FROM cases WHERE case_id = ?", (case_id,))
        if not row:
            return None
        return self._row_to_case(row)

    def require_case(self, case_id: str) -> Case:
        case = self.get_case(case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")
        return case

    def update_case(self, case: Case) -> Case:
        """
        Write a mutated case back, conditioned on the version it was read
        at. Bumps case.version on success.
        """
        self.db.execute("""
            UPDATE cases SET
                status = ?, presenting_department_id = ?, assigned_meeting_id = ?,
                patient = ?, updated_at = ?, submitted_at = ?, reviewed_at = ?,
                archived_at = ?, version = version + 1
            WHERE case_id = ? AND version = ?
        """, (
            case.status.value, case.presenting_department_id, case.assigned_meeting_id,
            json.dumps(case.patient.to_dict()), case.updated_at,
            case.submitted_at, case.reviewed_at, case.archived_at,
            case.case_id, case.version,
        ))
        if self.db.rowcount != 1:
            raise ConcurrentModification(
                f"Case {case.case_id} was modified concurrently (expected version {case.version})"
            )
        case.version += 1
        return case

    def list_cases(
        self,
        status: CaseStatus | None = None,
        department_id: str | None = None,
        meeting_id: str | None = None,
        created_by_id: str | None = None,
        limit: int = 500,
        offset: int = 0,
    ) -> list[Case]:
        query = "SELECT * FROM cases WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if department_id:
            query += " AND presenting_department_id = ?"
            params.append(department_id)
        if meeting_id:
            query += " AND assigned_meeting_id = ?"
            params.append(meeting_id)
        if created_by_id:
            query += " AND created_by_id = ?"
            params.append(created_by_id)
        query += " ORDER BY created_at DESC, case_id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [self._row_to_case(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_case(self, row) -> Case:
        return Case(
            case_id=row["case_id"],
            status=CaseStatus(row["status"]),
            created_by_id=row["created_by_id"],
            presenting_department_id=row["presenting_department_id"],
            assigned_meeting_id=row["assigned_meeting_id"],
            patient=PatientContext.from_dict(json.loads(row["patient"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            submitted_at=row["submitted_at"],
            reviewed_at=row["reviewed_at"],
            archived_at=row["archived_at"],
            version=row["version"],
        )

    # ─── Consensus Reports ───────────────────────────────────────────

    def insert_report(self, report: ConsensusReport) -> None:
        """Insert a report; the UNIQUE(case_id) constraint decides races."""
        try:
            self.db.execute("""
                INSERT INTO consensus_reports
                (report_id, case_id, final_diagnosis, mdt_consensus,
                 meeting_date, remarks, created_by_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                report.report_id, report.case_id, report.final_diagnosis,
                report.mdt_consensus, report.meeting_date.isoformat(),
                report.remarks, report.created_by_id,
                report.created_at, report.updated_at,
            ))
        except sqlite3.IntegrityError as e:
            raise AlreadyExists(
                f"A consensus report already exists for case {report.case_id}"
            ) from e

    def get_report(self, case_id: str) -> ConsensusReport | None:
        row = self.db.fetchone(
            "SELECT * FROM consensus_reports WHERE case_id = ?", (case_id,)
        )
        if not row:
            return None
        return ConsensusReport(
            report_id=row["report_id"],
            case_id=row["case_id"],
            final_diagnosis=row["final_diagnosis"],
            mdt_consensus=row["mdt_consensus"],
            meeting_date=date.fromisoformat(row["meeting_date"]),
            remarks=row["remarks"],
            created_by_id=row["created_by_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def update_report(self, report: ConsensusReport) -> None:
        self.db.execute("""
            UPDATE consensus_reports SET
                final_diagnosis = ?, mdt_consensus = ?, meeting_date = ?,
                remarks = ?, updated_at = ?
            WHERE case_id = ?
        """, (
            report.final_diagnosis, report.mdt_consensus,
            report.meeting_date.isoformat(), report.remarks,
            report.updated_at, report.case_id,
        ))
        if self.db.rowcount != 1:
            raise NotFound(f"No consensus report for case {report.case_id}")

    def count_reports(self, case_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS cnt FROM consensus_reports WHERE case_id = ?", (case_id,)
        )
        return row["cnt"]

    # ─── Reconciliation ──────────────────────────────────────────────

    def find_stale_candidates(self) -> list[tuple[str, str]]:
        """
        (case_id, meeting_id) for SUBMITTED cases with a meeting and no
        consensus report. Meeting dates are checked by the caller, since
        meetings may live outside this database.
        """
        rows = self.db.fetchall("""
            SELECT c.case_id, c.assigned_meeting_id
            FROM cases c
            WHERE c.status = 'submitted'
              AND c.assigned_meeting_id IS NOT NULL
              AND NOT EXISTS (
                  SELECT 1 FROM consensus_reports r WHERE r.case_id = c.case_id
              )
        """)
        return [(r["case_id"], r["assigned_meeting_id"]) for r in rows]

    def demote_to_pending(self, meeting_id: str, case_ids: list[str], now: float) -> int:
        """
        Move the given cases to PENDING, re-checking the selection
        predicate at write time. Rows that changed since selection are
        skipped. Returns the number of rows demoted.
        """
        if not case_ids:
            return 0
        placeholders = ",".join("?" for _ in case_ids)
        self.db.execute(f"""
            UPDATE cases SET status = 'pending', updated_at = ?, version = version + 1
            WHERE case_id IN ({placeholders})
              AND status = 'submitted'
              AND assigned_meeting_id = ?
              AND NOT EXISTS (
                  SELECT 1 FROM consensus_reports r WHERE r.case_id = cases.case_id
              )
        """, (now, *case_ids, meeting_id))
        return self.db.rowcount

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        """Counts by case status plus consensus report total."""
        cases = self.db.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM cases GROUP BY status"
        )
        reports = self.db.fetchone("SELECT COUNT(*) AS cnt FROM consensus_reports")
        return {
            "cases": {r["status"]: r["cnt"] for r in cases},
            "consensus_reports": reports["cnt"],
        }

    def close(self):
        self.db.close()


class SQLiteMeetingRepository:
    """
    MeetingRepository backed by the store's meetings table, for
    deployments where meetings are managed in the same database.
    """

    def __init__(self, store: CaseStore):
        self.db = store.db

    def save(self, meeting: Meeting) -> Meeting:
        self.db.execute("""
            INSERT OR REPLACE INTO meetings (meeting_id, date, status, description)
            VALUES (?, ?, ?, ?)
        """, (
            meeting.meeting_id, meeting.date.isoformat(),
            meeting.status.value, meeting.description,
        ))
        return meeting

    def get(self, meeting_id: str) -> Meeting | None:
        row = self.db.fetchone("SELECT * FROM meetings WHERE meeting_id = ?", (meeting_id,))
        return self._row_to_meeting(row) if row else None

    def list_meetings(self) -> list[Meeting]:
        rows = self.db.fetchall("SELECT * FROM meetings ORDER BY date")
        return [self._row_to_meeting(r) for r in rows]

    def _row_to_meeting(self, row) -> Meeting:
        return Meeting(
            meeting_id=row["meeting_id"],
            date=date.fromisoformat(row["date"]),
            status=MeetingStatus(row["status"]),
            description=row["description"] or "",
        )
