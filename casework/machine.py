"""
Casework — Case State Machine

Owns case status transitions. Every operation is one atomic unit:

    load (NotFound) → permission (Forbidden) → precondition
    (InvalidTransition) → write status + timestamps + linkage together

inside a single store transaction, with the case row update conditioned
on its version. Audit records and lifecycle events are handed to the
collaborators only after commit; their failures are logged, never
raised.

    DRAFT ──submit──▶ SUBMITTED ──sweep──▶ PENDING
      │                  │  ▲                 │
      │                  │  └───assign────────┘
      └────consensus─────┴──────┬─────────────┘
                                ▼
                            REVIEWED ──resubmit──▶ RESUBMITTED
                                ▲                      │
                                └──consensus update────┘

    ARCHIVED is reachable from every other state and is terminal.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from casework.consensus import ConsensusReportManager, case_stakeholders
from casework.errors import (
    CaseworkError,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from casework.meetings import MeetingAssignmentCoordinator, MeetingChange
from casework.permissions import Action, PermissionEvaluator, PermissionRequest
from casework.ports import AuditRecorder, NotificationDispatcher, UserDirectory
from casework.store import CaseStore
from casework.types import (
    AUDIENCE_ALL,
    Actor,
    AuditAction,
    Case,
    CaseStatus,
    ConsensusReport,
    EventType,
    LifecycleEvent,
    PatientContext,
)
from services.logging import TransitionLogger

logger = logging.getLogger("casework.machine")


_CASE_TRANSITIONS: dict[CaseStatus, set[CaseStatus]] = {
    CaseStatus.DRAFT:       {CaseStatus.SUBMITTED, CaseStatus.REVIEWED, CaseStatus.ARCHIVED},
    CaseStatus.SUBMITTED:   {CaseStatus.PENDING, CaseStatus.REVIEWED, CaseStatus.ARCHIVED},
    CaseStatus.PENDING:     {CaseStatus.SUBMITTED, CaseStatus.REVIEWED, CaseStatus.ARCHIVED},
    CaseStatus.REVIEWED:    {CaseStatus.RESUBMITTED, CaseStatus.ARCHIVED},
    CaseStatus.RESUBMITTED: {CaseStatus.SUBMITTED, CaseStatus.REVIEWED, CaseStatus.ARCHIVED},
    CaseStatus.ARCHIVED:    set(),
}

_TERMINAL_STATES = {CaseStatus.ARCHIVED}


@dataclass
class Outcome:
    """Post-state of one operation plus the side effects to publish."""
    case: Case
    from_status: CaseStatus
    report: ConsensusReport | None = None
    audit: list[tuple[AuditAction, dict[str, Any]]] = field(default_factory=list)
    events: list[LifecycleEvent] = field(default_factory=list)


def apply_status(case: Case, to: CaseStatus, now: float) -> None:
    """
    Move a case to a new status and stamp its timestamps.

    Staying in the same status is allowed (consensus updates re-assert
    REVIEWED) except for terminal states. submitted_at is set once;
    reviewed_at is refreshed on every entry to REVIEWED.
    """
    if case.status in _TERMINAL_STATES:
        raise InvalidTransition(f"Case {case.case_id} is {case.status.value}")
    if to != case.status:
        allowed = _CASE_TRANSITIONS.get(case.status, set())
        if to not in allowed:
            raise InvalidTransition(
                f"Case {case.case_id}: {case.status.value} → {to.value} is not allowed. "
                f"Valid transitions: {sorted(s.value for s in allowed)}"
            )
    case.status = to
    if to == CaseStatus.SUBMITTED and case.submitted_at is None:
        case.submitted_at = now
    elif to == CaseStatus.REVIEWED:
        case.reviewed_at = now
    elif to == CaseStatus.ARCHIVED:
        case.archived_at = now
    case.updated_at = now


def require_status(case: Case, allowed: set[CaseStatus], operation: str) -> None:
    if case.status not in allowed:
        raise InvalidTransition(
            f"Cannot {operation} case {case.case_id} in status {case.status.value}; "
            f"expected one of {sorted(s.value for s in allowed)}"
        )


class CaseStateMachine:
    """Transactional case transitions with post-commit audit and notification."""

    def __init__(
        self,
        store: CaseStore,
        meetings: MeetingAssignmentCoordinator,
        consensus: ConsensusReportManager,
        permissions: PermissionEvaluator,
        users: UserDirectory,
        audit: AuditRecorder,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], float] = time.time,
        tlog: TransitionLogger | None = None,
    ):
        self.store = store
        self.meetings = meetings
        self.consensus = consensus
        self.permissions = permissions
        self.users = users
        self.audit = audit
        self.dispatcher = dispatcher
        self.clock = clock
        self.tlog = tlog or TransitionLogger(component="state_machine")

    # ─── Execution ───────────────────────────────────────────────────

    def _run(
        self,
        operation: str,
        actor: Actor,
        case_id: str,
        apply: Callable[[Case, float], Outcome],
    ) -> Outcome:
        now = self.clock()
        try:
            with self.store.transaction():
                case = self.store.get_case(case_id)
                if case is None:
                    raise NotFound(f"Case {case_id} not found")
                outcome = apply(case, now)
        except CaseworkError as e:
            self.tlog.on_rejected(
                operation, e.code, case_id=case_id,
                actor_id=actor.user_id, message=e.message,
            )
            raise
        self._committed(operation, actor, outcome)
        return outcome

    def _committed(self, operation: str, actor: Actor, outcome: Outcome) -> None:
        case = outcome.case
        self.tlog.on_transition(
            case.case_id, operation,
            outcome.from_status.value, case.status.value,
            actor_id=actor.user_id,
        )
        self.tlog.on_post_state(case.case_id, case.to_dict())
        self.publish(actor.user_id, case.case_id, outcome.audit, outcome.events)

    def publish(
        self,
        actor_id: str,
        case_id: str,
        audit: list[tuple[AuditAction, dict[str, Any]]],
        events: list[LifecycleEvent],
    ) -> None:
        """Hand committed facts to the audit and notification collaborators."""
        for action, details in audit:
            try:
                self.audit.record(action.value, actor_id, case_id, details)
            except Exception as e:
                logger.error("Audit record %s for %s failed: %s", action.value, case_id, e)
                self.tlog.on_dispatch_failed("audit", case_id, str(e))
        for event in events:
            try:
                self.dispatcher.notify(event)
            except Exception as e:
                logger.warning(
                    "Notification %s for %s failed: %s", event.event_type.value, case_id, e,
                )
                self.tlog.on_dispatch_failed("notification", case_id, str(e))

    def _write(self, case: Case, to: CaseStatus, now: float) -> None:
        apply_status(case, to, now)
        self.store.update_case(case)

    # ─── Creation & edits ────────────────────────────────────────────

    def create(self, actor: Actor, patient: PatientContext, department_id: str) -> Case:
        errors = patient.validate() if isinstance(patient, PatientContext) else [
            "patient must be a PatientContext"
        ]
        if not department_id:
            errors.append("presenting_department_id is required")
        if errors:
            self.tlog.on_rejected("create", ValidationFailed.code, actor_id=actor.user_id)
            raise ValidationFailed(errors=errors)
        self.permissions.check(PermissionRequest(
            actor=actor, action=Action.CREATE, target_department_id=department_id,
        ))

        case = Case.create(actor.user_id, department_id, patient, now=self.clock())
        with self.store.transaction():
            self.store.insert_case(case)
        outcome = Outcome(
            case, CaseStatus.DRAFT,
            audit=[(AuditAction.CASE_CREATE, {"department_id": department_id})],
        )
        self._committed("create", actor, outcome)
        return case

    def update_details(self, actor: Actor, case_id: str, fields: dict[str, Any]) -> Case:
        """
        Edit patient fields. DRAFT cases follow the EDIT rule; once
        submitted only Coordinator/Admin may edit.
        """
        def apply(case: Case, now: float) -> Outcome:
            self.permissions.check_case(actor, Action.EDIT, case)
            if case.status != CaseStatus.DRAFT and not actor.is_coordinator:
                raise Forbidden()
            if case.status == CaseStatus.ARCHIVED:
                raise InvalidTransition(f"Case {case.case_id} is archived")

            unknown = sorted(set(fields) - set(PatientContext.EDITABLE))
            if unknown or not fields:
                raise ValidationFailed(errors=[
                    f"unknown fields: {', '.join(unknown)}" if unknown else "No fields to update"
                ])
            merged = PatientContext.from_dict({**case.patient.to_dict(), **fields})
            errors = merged.validate()
            if errors:
                raise ValidationFailed(errors=errors)

            case.patient = merged
            case.updated_at = now
            self.store.update_case(case)
            return Outcome(
                case, case.status,
                audit=[(AuditAction.CASE_UPDATE, {"fields": sorted(fields)})],
            )

        return self._run("update_details", actor, case_id, apply).case

    # ─── Submission ──────────────────────────────────────────────────

    def submit(self, actor: Actor, case_id: str, meeting_id: str) -> Case:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            self.permissions.check_case(actor, Action.SUBMIT, case)
            require_status(case, {CaseStatus.DRAFT}, "submit")
            change = self.meetings.link(case, meeting_id)
            self._write(case, CaseStatus.SUBMITTED, now)
            return Outcome(
                case, from_status,
                audit=[(AuditAction.CASE_SUBMIT, {"meeting_id": change.meeting.meeting_id})],
                events=[self._broadcast(EventType.CASE_SUBMITTED, actor, case, change)],
            )

        return self._run("submit", actor, case_id, apply).case

    def resubmit(self, actor: Actor, case_id: str, meeting_id: str | None = None) -> Case:
        """REVIEWED → RESUBMITTED; the consensus report is kept."""
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            self.permissions.check_case(actor, Action.RESUBMIT, case)
            require_status(case, {CaseStatus.REVIEWED}, "resubmit")
            change = self.meetings.link(case, meeting_id) if meeting_id else None
            self._write(case, CaseStatus.RESUBMITTED, now)

            outcome = Outcome(
                case, from_status,
                audit=[(AuditAction.CASE_RESUBMIT, {"meeting_id": case.assigned_meeting_id})],
            )
            if change is not None:
                outcome.events.append(
                    self._broadcast(EventType.CASE_RESUBMITTED, actor, case, change)
                )
            return outcome

        return self._run("resubmit", actor, case_id, apply).case

    # ─── Meeting linkage ─────────────────────────────────────────────

    def assign_meeting(self, actor: Actor, case_id: str, meeting_id: str) -> Case:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            change = self.meetings.assign(actor, case, meeting_id)
            self._write(case, change.next_status, now)
            return Outcome(
                case, from_status,
                audit=[(AuditAction.MEETING_ASSIGN, {"meeting_id": meeting_id})],
            )

        return self._run("assign_meeting", actor, case_id, apply).case

    def reassign_meeting(self, actor: Actor, case_id: str, meeting_id: str | None) -> Case:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            change = self.meetings.reassign(actor, case, meeting_id)
            self._write(case, change.next_status, now)
            return self._linkage_outcome(actor, case, from_status, change)

        return self._run("reassign_meeting", actor, case_id, apply).case

    def unassign_meeting(self, actor: Actor, case_id: str) -> Case:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            change = self.meetings.unassign(actor, case)
            self._write(case, change.next_status, now)
            return self._linkage_outcome(actor, case, from_status, change)

        return self._run("unassign_meeting", actor, case_id, apply).case

    def _linkage_outcome(
        self,
        actor: Actor,
        case: Case,
        from_status: CaseStatus,
        change: MeetingChange,
    ) -> Outcome:
        if change.meeting is None:
            return Outcome(
                case, from_status,
                audit=[(AuditAction.MEETING_UNASSIGN,
                        {"previous_meeting_id": change.previous_meeting_id})],
            )
        outcome = Outcome(
            case, from_status,
            audit=[(AuditAction.MEETING_REASSIGN, {
                "previous_meeting_id": change.previous_meeting_id,
                "meeting_id": change.meeting.meeting_id,
            })],
        )
        if change.moved:
            outcome.events.append(self._rescheduled(actor, case, change))
        return outcome

    def relocate_meeting_cases(
        self,
        actor: Actor,
        meeting_id: str,
        reassignments: dict[str, str | None],
    ) -> list[Case]:
        """
        Move every SUBMITTED/PENDING case off a meeting that is about to
        be cancelled, all in one transaction.
        """
        now = self.clock()
        outcomes: list[Outcome] = []
        try:
            with self.store.transaction():
                affected = [
                    c for c in self.store.list_cases(meeting_id=meeting_id, limit=100000)
                    if c.status in (CaseStatus.SUBMITTED, CaseStatus.PENDING)
                ]
                targets = self.meetings.check_relocation(actor, meeting_id, affected, reassignments)
                previous = self.meetings.meetings.get(meeting_id)
                for case in affected:
                    from_status = case.status
                    target = targets[case.case_id]
                    if target is None:
                        case.assigned_meeting_id = None
                        change = MeetingChange(meeting_id, None, CaseStatus.SUBMITTED)
                    else:
                        case.assigned_meeting_id = target.meeting_id
                        change = MeetingChange(meeting_id, target, case.status, previous)
                    self._write(case, change.next_status, now)
                    outcomes.append(self._linkage_outcome(actor, case, from_status, change))
        except CaseworkError as e:
            self.tlog.on_rejected(
                "relocate_meeting_cases", e.code,
                actor_id=actor.user_id, message=e.message,
            )
            raise

        for outcome in outcomes:
            self._committed("relocate_meeting_cases", actor, outcome)
        logger.info("Relocated %d cases off meeting %s", len(outcomes), meeting_id)
        return [o.case for o in outcomes]

    # ─── Consensus ───────────────────────────────────────────────────

    def create_consensus(
        self, actor: Actor, case_id: str, fields: dict[str, Any],
    ) -> ConsensusReport:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            report = self.consensus.create(actor, case, fields, now)
            self._write(case, CaseStatus.REVIEWED, now)
            return Outcome(
                case, from_status, report=report,
                audit=[(AuditAction.CONSENSUS_CREATE, {"report_id": report.report_id})],
                events=[self.consensus.review_completed_event(actor, case, report)],
            )

        return self._run("create_consensus", actor, case_id, apply).report

    def update_consensus(
        self, actor: Actor, case_id: str, fields: dict[str, Any],
    ) -> ConsensusReport:
        """Also the path back to REVIEWED for RESUBMITTED cases."""
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            report = self.consensus.update(actor, case, fields, now)
            self._write(case, CaseStatus.REVIEWED, now)
            return Outcome(
                case, from_status, report=report,
                audit=[(AuditAction.CONSENSUS_EDIT, {"fields": sorted(fields)})],
            )

        return self._run("update_consensus", actor, case_id, apply).report

    # ─── Archive ─────────────────────────────────────────────────────

    def archive(self, actor: Actor, case_id: str) -> Case:
        def apply(case: Case, now: float) -> Outcome:
            from_status = case.status
            self.permissions.check_case(actor, Action.ARCHIVE, case)
            if case.status == CaseStatus.ARCHIVED:
                raise InvalidTransition(f"Case {case.case_id} is already archived")
            self._write(case, CaseStatus.ARCHIVED, now)
            return Outcome(case, from_status, audit=[(AuditAction.CASE_ARCHIVE, {})])

        return self._run("archive", actor, case_id, apply).case

    # ─── Events ──────────────────────────────────────────────────────

    def _broadcast(
        self,
        event_type: EventType,
        actor: Actor,
        case: Case,
        change: MeetingChange,
    ) -> LifecycleEvent:
        verb = "resubmitted" if event_type == EventType.CASE_RESUBMITTED else "submitted"
        meeting = change.meeting
        return LifecycleEvent(
            event_type=event_type,
            case_id=case.case_id,
            actor_id=actor.user_id,
            title=f"Case {verb}",
            message=(
                f"Case for {case.patient.patient_name} {verb} "
                f"for the MDT meeting on {meeting.date.isoformat()}"
            ),
            recipients=[AUDIENCE_ALL],
            meeting_id=meeting.meeting_id,
            details={"meeting_date": meeting.date.isoformat()},
            occurred_at=case.updated_at,
        )

    def _rescheduled(self, actor: Actor, case: Case, change: MeetingChange) -> LifecycleEvent:
        direction = change.direction or "rescheduled"
        return LifecycleEvent(
            event_type=EventType.CASE_RESCHEDULED,
            case_id=case.case_id,
            actor_id=actor.user_id,
            title=f"Case {direction}",
            message=(
                f"Case for {case.patient.patient_name} moved to the MDT meeting "
                f"on {change.meeting.date.isoformat()}"
            ),
            recipients=case_stakeholders(case, self.users),
            meeting_id=change.meeting.meeting_id,
            details={
                "direction": direction,
                "previous_meeting_id": change.previous_meeting_id,
                "meeting_date": change.meeting.date.isoformat(),
            },
            occurred_at=case.updated_at,
        )
