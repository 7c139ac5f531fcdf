"""
Casework — Consensus Report Manager

Owns the single consensus report per case. Creation is race-safe
through the UNIQUE(case_id) constraint in the store; the pre-check here
only produces a friendlier error on the common path.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from casework.errors import AlreadyExists, InvalidTransition, NotFound, ValidationFailed
from casework.permissions import Action, PermissionEvaluator
from casework.ports import UserDirectory
from casework.store import CaseStore
from casework.types import (
    Actor,
    Case,
    CaseStatus,
    ConsensusReport,
    EventType,
    LifecycleEvent,
    new_id,
    parse_date,
)

logger = logging.getLogger("casework.consensus")


REQUIRED_FIELDS = ("final_diagnosis", "mdt_consensus", "meeting_date")
REPORT_FIELDS = REQUIRED_FIELDS + ("remarks",)


def case_stakeholders(case: Case, users: UserDirectory) -> list[str]:
    """Case creator plus consultants of the presenting department, deduplicated."""
    recipients = [case.created_by_id]
    for user_id in users.consultants_in_department(case.presenting_department_id):
        if user_id not in recipients:
            recipients.append(user_id)
    return recipients


def _normalize(fields: dict[str, Any], partial: bool) -> dict[str, Any]:
    if not isinstance(fields, dict):
        raise ValidationFailed(errors=["consensus fields must be an object"])

    errors = []
    unknown = sorted(set(fields) - set(REPORT_FIELDS))
    if unknown:
        errors.append(f"unknown fields: {', '.join(unknown)}")
    if partial and not fields:
        errors.append("No fields to update")

    clean: dict[str, Any] = {}
    for name in ("final_diagnosis", "mdt_consensus"):
        if name not in fields:
            if not partial:
                errors.append(f"{name} is required")
            continue
        value = fields[name]
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{name} must be a non-empty string")
        else:
            clean[name] = value.strip()

    if "meeting_date" in fields:
        try:
            clean["meeting_date"] = parse_date(fields["meeting_date"])
        except (TypeError, ValueError):
            errors.append("meeting_date must be an ISO-8601 date")
    elif not partial:
        errors.append("meeting_date is required")

    if "remarks" in fields:
        remarks = fields["remarks"]
        if remarks is not None and not isinstance(remarks, str):
            errors.append("remarks must be a string or null")
        else:
            clean["remarks"] = remarks

    if errors:
        raise ValidationFailed(errors=errors)
    return clean


class ConsensusReportManager:
    """Creates and updates consensus reports; emits review-completed events."""

    def __init__(
        self,
        permissions: PermissionEvaluator,
        store: CaseStore,
        users: UserDirectory,
    ):
        self.permissions = permissions
        self.store = store
        self.users = users

    def _guard(self, actor: Actor, case: Case) -> None:
        self.permissions.check_case(actor, Action.RECORD_CONSENSUS, case)
        if case.status == CaseStatus.ARCHIVED:
            raise InvalidTransition(f"Case {case.case_id} is archived")

    def create(
        self,
        actor: Actor,
        case: Case,
        fields: dict[str, Any],
        now: float | None = None,
    ) -> ConsensusReport:
        self._guard(actor, case)
        clean = _normalize(fields, partial=False)
        if self.store.get_report(case.case_id) is not None:
            raise AlreadyExists(
                f"A consensus report already exists for case {case.case_id}"
            )

        now = now or time.time()
        report = ConsensusReport(
            report_id=new_id("rpt"),
            case_id=case.case_id,
            final_diagnosis=clean["final_diagnosis"],
            mdt_consensus=clean["mdt_consensus"],
            meeting_date=clean["meeting_date"],
            remarks=clean.get("remarks"),
            created_by_id=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_report(report)
        logger.info("Consensus recorded for %s by %s", case.case_id, actor.user_id)
        return report

    def update(
        self,
        actor: Actor,
        case: Case,
        fields: dict[str, Any],
        now: float | None = None,
    ) -> ConsensusReport:
        """Partial update: only supplied fields change."""
        self._guard(actor, case)
        clean = _normalize(fields, partial=True)
        report = self.store.get_report(case.case_id)
        if report is None:
            raise NotFound(f"No consensus report for case {case.case_id}")

        for name, value in clean.items():
            setattr(report, name, value)
        report.updated_at = now or time.time()
        self.store.update_report(report)
        return report

    def review_completed_event(
        self,
        actor: Actor,
        case: Case,
        report: ConsensusReport,
    ) -> LifecycleEvent:
        """One event per case; fan-out to recipients is the dispatcher's job."""
        return LifecycleEvent(
            event_type=EventType.REVIEW_COMPLETED,
            case_id=case.case_id,
            actor_id=actor.user_id,
            title="MDT review completed",
            message=(
                f"Consensus recorded for {case.patient.patient_name}: "
                f"{report.final_diagnosis}"
            ),
            recipients=case_stakeholders(case, self.users),
            meeting_id=case.assigned_meeting_id,
            details={
                "report_id": report.report_id,
                "meeting_date": report.meeting_date.isoformat(),
            },
            occurred_at=report.created_at,
        )
