"""
Casework — Meeting Assignment Coordinator

Validates and applies changes to a case's target meeting. The
coordinator decides the meeting link and the status the case must move
to; the state machine applies the status, timestamps and persistence.

Rules:
  assign     case has no meeting; DRAFT/PENDING → SUBMITTED,
             SUBMITTED/RESUBMITTED keep their status
  reassign   status ∈ {SUBMITTED, PENDING}; None behaves as unassign,
             a concrete id switches the target without a status change
  unassign   meeting set, status not REVIEWED/ARCHIVED; resets to SUBMITTED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Mapping

from casework.errors import InvalidTransition, MeetingUnavailable, ValidationFailed
from casework.permissions import Action, PermissionEvaluator, PermissionRequest
from casework.ports import MeetingRepository
from casework.types import Actor, Case, CaseStatus, Meeting

logger = logging.getLogger("casework.meetings")


_REASSIGNABLE = {CaseStatus.SUBMITTED, CaseStatus.PENDING}
_UNASSIGN_BLOCKED = {CaseStatus.REVIEWED, CaseStatus.ARCHIVED}


@dataclass
class MeetingChange:
    """Outcome of a linkage change, consumed by the state machine."""
    previous_meeting_id: str | None
    meeting: Meeting | None
    next_status: CaseStatus
    previous_meeting: Meeting | None = None

    @property
    def moved(self) -> bool:
        return (
            self.meeting is not None
            and self.previous_meeting_id is not None
            and self.meeting.meeting_id != self.previous_meeting_id
        )

    @property
    def direction(self) -> str | None:
        """postponed / preponed relative to the previous meeting date."""
        if not self.moved or self.previous_meeting is None:
            return None
        if self.meeting.date > self.previous_meeting.date:
            return "postponed"
        if self.meeting.date < self.previous_meeting.date:
            return "preponed"
        return None


class MeetingAssignmentCoordinator:
    """Meeting linkage rules for cases."""

    def __init__(self, permissions: PermissionEvaluator, meetings: MeetingRepository):
        self.permissions = permissions
        self.meetings = meetings

    # ─── Validation ──────────────────────────────────────────────────

    def validate_meeting(self, meeting_id: str | None) -> Meeting:
        """Return the meeting if cases may be linked to it."""
        if not meeting_id:
            raise MeetingUnavailable("A meeting id is required")
        meeting = self.meetings.get(meeting_id)
        if meeting is None:
            raise MeetingUnavailable(f"Meeting {meeting_id} does not exist")
        if not meeting.is_available:
            raise MeetingUnavailable(
                f"Meeting {meeting_id} is {meeting.status.value}",
                meeting_id=meeting_id,
                meeting_status=meeting.status.value,
            )
        return meeting

    def link(self, case: Case, meeting_id: str) -> MeetingChange:
        """
        Point the case at a validated meeting. No permission or status
        checks; callers that own those (submit, resubmit) use this.
        """
        meeting = self.validate_meeting(meeting_id)
        previous_id = case.assigned_meeting_id
        previous = self.meetings.get(previous_id) if previous_id else None
        case.assigned_meeting_id = meeting.meeting_id
        return MeetingChange(previous_id, meeting, case.status, previous)

    # ─── Operations ──────────────────────────────────────────────────

    def assign(self, actor: Actor, case: Case, meeting_id: str) -> MeetingChange:
        self.permissions.check_case(actor, Action.ASSIGN_MEETING, case)
        if case.assigned_meeting_id:
            raise InvalidTransition(
                f"Case {case.case_id} already has meeting {case.assigned_meeting_id}; "
                "use reassign instead"
            )
        if case.status in (CaseStatus.REVIEWED, CaseStatus.ARCHIVED):
            raise InvalidTransition(
                f"Cannot assign a meeting to a {case.status.value} case"
            )
        change = self.link(case, meeting_id)
        if case.status in (CaseStatus.DRAFT, CaseStatus.PENDING):
            change.next_status = CaseStatus.SUBMITTED
        return change

    def reassign(self, actor: Actor, case: Case, meeting_id: str | None) -> MeetingChange:
        self.permissions.check_case(actor, Action.REASSIGN_MEETING, case)
        if case.status not in _REASSIGNABLE:
            raise InvalidTransition(
                f"Cannot reassign a {case.status.value} case; "
                f"expected one of {sorted(s.value for s in _REASSIGNABLE)}"
            )
        if meeting_id is None:
            return self._detach(case)
        return self.link(case, meeting_id)

    def unassign(self, actor: Actor, case: Case) -> MeetingChange:
        self.permissions.check_case(actor, Action.UNASSIGN_MEETING, case)
        return self._detach(case)

    def _detach(self, case: Case) -> MeetingChange:
        if not case.assigned_meeting_id:
            raise InvalidTransition(f"Case {case.case_id} has no assigned meeting")
        if case.status in _UNASSIGN_BLOCKED:
            raise InvalidTransition(
                f"Cannot unassign the meeting of a {case.status.value} case"
            )
        previous_id = case.assigned_meeting_id
        case.assigned_meeting_id = None
        return MeetingChange(previous_id, None, CaseStatus.SUBMITTED)

    # ─── Meeting cancellation ────────────────────────────────────────

    def check_relocation(
        self,
        actor: Actor,
        meeting_id: str,
        affected: list[Case],
        reassignments: Mapping[str, str | None],
    ) -> dict[str, Meeting | None]:
        """
        Validate a relocation plan for the cases on a meeting about to be
        cancelled. Every SUBMITTED/PENDING case must be covered exactly
        once, and each target must be None or a different available
        meeting. Returns case_id → target meeting.
        """
        self.permissions.check(
            PermissionRequest(actor=actor, action=Action.RELOCATE_MEETING_CASES)
        )
        affected_ids = {c.case_id for c in affected}
        errors = []
        missing = sorted(affected_ids - set(reassignments))
        extra = sorted(set(reassignments) - affected_ids)
        if missing:
            errors.append(f"cases without a reassignment: {', '.join(missing)}")
        if extra:
            errors.append(f"cases not on meeting {meeting_id}: {', '.join(extra)}")

        targets: dict[str, Meeting | None] = {}
        for case_id, target_id in reassignments.items():
            if case_id not in affected_ids:
                continue
            if target_id is None:
                targets[case_id] = None
            elif target_id == meeting_id:
                errors.append(f"{case_id}: cannot reassign to the meeting being cancelled")
            else:
                try:
                    targets[case_id] = self.validate_meeting(target_id)
                except MeetingUnavailable as e:
                    errors.append(f"{case_id}: {e.message}")

        if errors:
            raise ValidationFailed("Invalid meeting relocation", errors=errors)
        return targets

    # ─── Candidate selection ─────────────────────────────────────────

    def candidate_meetings(
        self,
        today: date | None = None,
        upcoming_only: bool = True,
    ) -> list[Meeting]:
        """Available meetings by ascending date; upcoming excludes dates before today."""
        today = today or date.today()
        meetings = [m for m in self.meetings.list_meetings() if m.is_available]
        if upcoming_only:
            meetings = [m for m in meetings if m.date >= today]
        return sorted(meetings, key=lambda m: (m.date, m.meeting_id))

    def next_meeting(self, today: date | None = None) -> Meeting | None:
        candidates = self.candidate_meetings(today, upcoming_only=True)
        return candidates[0] if candidates else None
