"""
Casework — Type Definitions

Data structures for cases, consensus reports, meetings, actors and the
lifecycle events the engine hands to its notification and audit
collaborators.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any


# ─── Enumerations ───────────────────────────────────────────────────

class CaseStatus(str, enum.Enum):
    """Lifecycle states for an MDT case."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESUBMITTED = "resubmitted"
    ARCHIVED = "archived"


class MeetingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(str, enum.Enum):
    ADMIN = "Admin"
    COORDINATOR = "Coordinator"
    CONSULTANT = "Consultant"
    VIEWER = "Viewer"


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class EventType(str, enum.Enum):
    """Lifecycle events delivered to the NotificationDispatcher."""
    CASE_SUBMITTED = "case_submitted"
    CASE_RESUBMITTED = "case_resubmitted"
    CASE_RESCHEDULED = "case_rescheduled"
    REVIEW_COMPLETED = "review_completed"


class AuditAction(str, enum.Enum):
    """Action names handed to the AuditRecorder."""
    CASE_CREATE = "CASE_CREATE"
    CASE_UPDATE = "CASE_UPDATE"
    CASE_SUBMIT = "CASE_SUBMIT"
    CASE_RESUBMIT = "CASE_RESUBMIT"
    CASE_ARCHIVE = "CASE_ARCHIVE"
    MEETING_ASSIGN = "MEETING_ASSIGN"
    MEETING_REASSIGN = "MEETING_REASSIGN"
    MEETING_UNASSIGN = "MEETING_UNASSIGN"
    CONSENSUS_CREATE = "CONSENSUS_CREATE"
    CONSENSUS_EDIT = "CONSENSUS_EDIT"


# Broadcast audience marker for events that go to every user
AUDIENCE_ALL = "all"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def parse_date(value: Any) -> date:
    """
    Accept a date or an ISO-8601 string (date or datetime form).
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text).date()
    raise ValueError(f"not a date: {value!r}")


# ─── Actors & Meetings ──────────────────────────────────────────────

@dataclass(frozen=True)
class Actor:
    """The authenticated principal invoking an engine operation."""
    user_id: str
    role: Role
    department_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_coordinator(self) -> bool:
        """Coordinator rights; Admin holds them too."""
        return self.role in (Role.COORDINATOR, Role.ADMIN)


@dataclass
class Meeting:
    """An MDT meeting. Owned outside the engine; read for validation."""
    meeting_id: str
    date: date
    status: MeetingStatus = MeetingStatus.SCHEDULED
    description: str = ""

    @property
    def is_available(self) -> bool:
        """Whether cases may be linked to this meeting."""
        return self.status == MeetingStatus.SCHEDULED


# ─── Cases ──────────────────────────────────────────────────────────

@dataclass
class PatientContext:
    """Patient and discussion details carried by a case."""
    patient_name: str
    age: int
    diagnosis_stage: str
    question: str
    gender: Gender = Gender.OTHER
    mrn: str = ""
    treatment_plan: str = ""
    clinical_details: dict[str, Any] = field(default_factory=dict)

    EDITABLE = (
        "patient_name", "age", "diagnosis_stage", "question",
        "gender", "mrn", "treatment_plan", "clinical_details",
    )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not isinstance(self.patient_name, str) or not self.patient_name.strip():
            errors.append("patient_name is required")
        if isinstance(self.age, bool) or not isinstance(self.age, int) or self.age <= 0:
            errors.append("age must be a positive integer")
        if not isinstance(self.diagnosis_stage, str) or not self.diagnosis_stage.strip():
            errors.append("diagnosis_stage is required")
        if not isinstance(self.question, str) or not self.question.strip():
            errors.append("question is required")
        if not isinstance(self.gender, Gender):
            errors.append("gender must be one of MALE, FEMALE, OTHER")
        if not isinstance(self.clinical_details, dict):
            errors.append("clinical_details must be an object")
        return errors

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["gender"] = self.gender.value if isinstance(self.gender, Gender) else self.gender
        return d

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PatientContext:
        gender = data.get("gender", Gender.OTHER)
        try:
            gender = Gender(gender)
        except ValueError:
            pass  # left as-is so validate() reports it
        return PatientContext(
            patient_name=data.get("patient_name", ""),
            age=data.get("age", 0),
            diagnosis_stage=data.get("diagnosis_stage", ""),
            question=data.get("question", ""),
            gender=gender,
            mrn=data.get("mrn") or "",
            treatment_plan=data.get("treatment_plan") or "",
            clinical_details=data.get("clinical_details") or {},
        )


@dataclass
class Case:
    """The unit of work moving through MDT review."""
    case_id: str
    status: CaseStatus
    created_by_id: str
    presenting_department_id: str
    patient: PatientContext
    created_at: float
    updated_at: float

    assigned_meeting_id: str | None = None

    # Set once; only explicit reset transitions touch them
    submitted_at: float | None = None
    reviewed_at: float | None = None
    archived_at: float | None = None

    # Optimistic concurrency counter, bumped on every write
    version: int = 1

    @staticmethod
    def create(
        created_by_id: str,
        presenting_department_id: str,
        patient: PatientContext,
        now: float | None = None,
    ) -> Case:
        now = now or time.time()
        return Case(
            case_id=new_id("case"),
            status=CaseStatus.DRAFT,
            created_by_id=created_by_id,
            presenting_department_id=presenting_department_id,
            patient=patient,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "case_id": self.case_id,
            "status": self.status.value,
            "created_by_id": self.created_by_id,
            "presenting_department_id": self.presenting_department_id,
            "assigned_meeting_id": self.assigned_meeting_id,
            "patient": self.patient.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "submitted_at": self.submitted_at,
            "reviewed_at": self.reviewed_at,
            "archived_at": self.archived_at,
            "version": self.version,
        }


# ─── Consensus ──────────────────────────────────────────────────────

@dataclass
class ConsensusReport:
    """The MDT's recorded decision. Exactly one per case."""
    report_id: str
    case_id: str
    final_diagnosis: str
    mdt_consensus: str
    meeting_date: date
    created_by_id: str
    created_at: float
    updated_at: float
    remarks: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "case_id": self.case_id,
            "final_diagnosis": self.final_diagnosis,
            "mdt_consensus": self.mdt_consensus,
            "meeting_date": self.meeting_date.isoformat(),
            "remarks": self.remarks,
            "created_by_id": self.created_by_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ─── Lifecycle Events ───────────────────────────────────────────────

@dataclass
class LifecycleEvent:
    """
    What happened, fully formed for the NotificationDispatcher.

    recipients is either a list of user ids or [AUDIENCE_ALL] for a
    broadcast; fan-out to individual users is the dispatcher's job.
    """
    event_type: EventType
    case_id: str
    actor_id: str
    title: str
    message: str
    recipients: list[str] = field(default_factory=list)
    meeting_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: new_id("evt"))
    occurred_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "case_id": self.case_id,
            "actor_id": self.actor_id,
            "title": self.title,
            "message": self.message,
            "recipients": list(self.recipients),
            "meeting_id": self.meeting_id,
            "details": dict(self.details),
            "occurred_at": self.occurred_at,
        }
