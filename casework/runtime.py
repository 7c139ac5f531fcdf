"""
Casework — Workflow Engine Runtime

The public facade. Wires the permission evaluator, meeting coordinator,
consensus manager, state machine and sweep around one CaseStore, and
exposes every operation with an explicit actor.

Usage:
    from casework.runtime import CaseWorkflowEngine

    engine = CaseWorkflowEngine.from_config(load_config("config/casework.yaml"))
    case = engine.create_case(actor, patient, department_id="onc")
    engine.submit_case(actor, case.case_id, meeting_id="mtg_1")
"""

from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any, Callable

from casework.consensus import ConsensusReportManager
from casework.errors import NotFound
from casework.machine import CaseStateMachine
from casework.meetings import MeetingAssignmentCoordinator
from casework.permissions import Action, PermissionEvaluator, PermissionRequest
from casework.ports import (
    AuditRecorder,
    InMemoryUserDirectory,
    MeetingRepository,
    NotificationDispatcher,
    NullAuditRecorder,
    RecordingDispatcher,
    UserDirectory,
)
from casework.store import CaseStore, SQLiteMeetingRepository
from casework.sweep import ReconciliationSweep, SweepResult, SweepScheduler
from casework.types import (
    Actor,
    Case,
    CaseStatus,
    ConsensusReport,
    Meeting,
    PatientContext,
)
from services.config import get_config_value
from services.db import create_backend
from services.logging import TransitionLogger, generate_trace_id

logger = logging.getLogger("casework.runtime")

# Rows read per store page when filtering a listing by visibility
LIST_PAGE_SIZE = 200


class CaseWorkflowEngine:
    """Case lifecycle and consensus workflow engine."""

    def __init__(
        self,
        store: CaseStore,
        meetings: MeetingRepository,
        users: UserDirectory | None = None,
        dispatcher: NotificationDispatcher | None = None,
        audit: AuditRecorder | None = None,
        permissions: PermissionEvaluator | None = None,
        clock: Callable[[], float] = time.time,
        sweep_on_read: bool = False,
        sweep_interval_seconds: float = 300.0,
    ):
        self.store = store
        self.meeting_repository = meetings
        self.users = users or InMemoryUserDirectory()
        self.dispatcher = dispatcher or RecordingDispatcher()
        self.audit = audit or NullAuditRecorder()
        self.permissions = permissions or PermissionEvaluator()
        self.clock = clock
        self.sweep_on_read = sweep_on_read
        self.sweep_interval_seconds = sweep_interval_seconds

        trace_id = generate_trace_id()
        self.meetings = MeetingAssignmentCoordinator(self.permissions, meetings)
        self.consensus = ConsensusReportManager(self.permissions, store, self.users)
        self.machine = CaseStateMachine(
            store=store,
            meetings=self.meetings,
            consensus=self.consensus,
            permissions=self.permissions,
            users=self.users,
            audit=self.audit,
            dispatcher=self.dispatcher,
            clock=clock,
            tlog=TransitionLogger(component="state_machine", trace_id=trace_id),
        )
        self.sweep = ReconciliationSweep(
            store, meetings, clock=clock,
            tlog=TransitionLogger(component="sweep", trace_id=trace_id),
        )
        self._scheduler: SweepScheduler | None = None

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        meetings: MeetingRepository | None = None,
        users: UserDirectory | None = None,
        dispatcher: NotificationDispatcher | None = None,
        audit: AuditRecorder | None = None,
    ) -> CaseWorkflowEngine:
        """
        Build an engine from a loaded config dict (see services.config).
        Collaborators passed explicitly win over configured ones.
        """
        db_path = get_config_value("database.path", config, ":memory:")
        store = CaseStore(create_backend(
            get_config_value("database.backend", config, "sqlite"),
            path=db_path,
            busy_timeout=int(get_config_value("database.busy_timeout_ms", config, 5000)),
        ))

        if meetings is None:
            meetings = SQLiteMeetingRepository(store)
        if users is None:
            users = InMemoryUserDirectory(
                get_config_value("directory.consultants", config, {}) or {}
            )
        if dispatcher is None:
            from services.notifications import WebhookDispatcher
            dispatcher = WebhookDispatcher.from_config(
                get_config_value("notifications", config, {})
            )
        if audit is None:
            audit_path = get_config_value("audit.path", config, "")
            if audit_path:
                from services.audit import AuditTrail
                audit = AuditTrail(audit_path)
            else:
                audit = NullAuditRecorder()

        permissions = PermissionEvaluator.from_config(
            get_config_value("permissions.overrides", config, {})
        )
        engine = cls(
            store=store,
            meetings=meetings,
            users=users,
            dispatcher=dispatcher,
            audit=audit,
            permissions=permissions,
            sweep_on_read=bool(get_config_value("sweep.on_read", config, False)),
            sweep_interval_seconds=float(
                get_config_value("sweep.interval_seconds", config, 300)
            ),
        )
        logger.info(
            "Engine configured: db=%s audit=%s sweep_on_read=%s",
            db_path, type(audit).__name__, engine.sweep_on_read,
        )
        return engine

    # ─── Case operations ─────────────────────────────────────────────

    def create_case(
        self,
        actor: Actor,
        patient: PatientContext,
        department_id: str,
    ) -> Case:
        return self.machine.create(actor, patient, department_id)

    def update_case_details(self, actor: Actor, case_id: str, fields: dict[str, Any]) -> Case:
        return self.machine.update_details(actor, case_id, fields)

    def submit_case(self, actor: Actor, case_id: str, meeting_id: str) -> Case:
        return self.machine.submit(actor, case_id, meeting_id)

    def assign_meeting(self, actor: Actor, case_id: str, meeting_id: str) -> Case:
        return self.machine.assign_meeting(actor, case_id, meeting_id)

    def unassign_meeting(self, actor: Actor, case_id: str) -> Case:
        return self.machine.unassign_meeting(actor, case_id)

    def reassign_meeting(self, actor: Actor, case_id: str, meeting_id: str | None) -> Case:
        return self.machine.reassign_meeting(actor, case_id, meeting_id)

    def resubmit_case(self, actor: Actor, case_id: str, meeting_id: str | None = None) -> Case:
        return self.machine.resubmit(actor, case_id, meeting_id)

    def archive_case(self, actor: Actor, case_id: str) -> Case:
        return self.machine.archive(actor, case_id)

    def create_consensus(
        self, actor: Actor, case_id: str, fields: dict[str, Any],
    ) -> ConsensusReport:
        return self.machine.create_consensus(actor, case_id, fields)

    def update_consensus(
        self, actor: Actor, case_id: str, fields: dict[str, Any],
    ) -> ConsensusReport:
        return self.machine.update_consensus(actor, case_id, fields)

    def relocate_meeting_cases(
        self,
        actor: Actor,
        meeting_id: str,
        reassignments: dict[str, str | None],
    ) -> list[Case]:
        return self.machine.relocate_meeting_cases(actor, meeting_id, reassignments)

    # ─── Reads ───────────────────────────────────────────────────────

    def _visible_case(self, actor: Actor, case_id: str) -> Case:
        case = self.store.get_case(case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")
        self.permissions.check_case(actor, Action.VIEW, case)
        return case

    def get_case(self, actor: Actor, case_id: str) -> Case:
        return self._visible_case(actor, case_id)

    def get_consensus(self, actor: Actor, case_id: str) -> ConsensusReport:
        self._visible_case(actor, case_id)
        report = self.store.get_report(case_id)
        if report is None:
            raise NotFound(f"No consensus report for case {case_id}")
        return report

    def list_cases(
        self,
        actor: Actor,
        status: CaseStatus | None = None,
        department_id: str | None = None,
        meeting_id: str | None = None,
        limit: int = 500,
    ) -> list[Case]:
        """
        Cases the actor may view, newest first.

        The VIEW rule is applied per row, so the store is read in pages
        until ``limit`` visible cases are collected or rows run out.
        """
        if self.sweep_on_read:
            self.run_reconciliation_sweep()
        page_size = max(limit, LIST_PAGE_SIZE)
        visible: list[Case] = []
        offset = 0
        while len(visible) < limit:
            page = self.store.list_cases(
                status=status,
                department_id=department_id,
                meeting_id=meeting_id,
                limit=page_size,
                offset=offset,
            )
            visible.extend(
                c for c in page
                if self.permissions.is_allowed(PermissionRequest.for_case(actor, Action.VIEW, c))
            )
            if len(page) < page_size:
                break
            offset += page_size
        return visible[:limit]

    def capabilities(self, actor: Actor, case_id: str) -> dict[str, bool]:
        """What the actor may do with one case, for UIs."""
        case = self._visible_case(actor, case_id)
        caps = self.permissions.capabilities(actor, case)
        # Detail edits past DRAFT are reserved to coordinators
        if case.status != CaseStatus.DRAFT and not actor.is_coordinator:
            caps[Action.EDIT.value] = False
        return caps

    def candidate_meetings(
        self,
        today: date | None = None,
        upcoming_only: bool = True,
    ) -> list[Meeting]:
        return self.meetings.candidate_meetings(
            today or date.fromtimestamp(self.clock()), upcoming_only,
        )

    def stats(self) -> dict[str, Any]:
        return self.store.stats()

    # ─── Reconciliation ──────────────────────────────────────────────

    def run_reconciliation_sweep(self) -> SweepResult:
        return self.sweep.run()

    def start_scheduler(self) -> SweepScheduler:
        if self._scheduler is None:
            self._scheduler = SweepScheduler(self.sweep, self.sweep_interval_seconds)
        self._scheduler.start()
        return self._scheduler

    def close(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
        self.store.close()
        close_audit = getattr(self.audit, "close", None)
        if close_audit is not None:
            close_audit()

