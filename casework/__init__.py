"""
Casework — MDT Case Lifecycle & Consensus Workflow Engine

Coordinates a clinical case through multi-disciplinary review:
creation, submission to a meeting, demotion when the meeting lapses,
consensus recording, resubmission and archival.

Usage:
    from casework.runtime import CaseWorkflowEngine

    engine = CaseWorkflowEngine.from_config(load_config())
    case = engine.create_case(actor, patient, department_id="onc")
    engine.submit_case(actor, case.case_id, meeting_id="mtg_1")
"""

from casework.types import (
    Actor,
    AuditAction,
    Case,
    CaseStatus,
    ConsensusReport,
    EventType,
    Gender,
    LifecycleEvent,
    Meeting,
    MeetingStatus,
    PatientContext,
    Role,
)
from casework.errors import (
    CaseworkError,
    Forbidden,
    NotFound,
    InvalidTransition,
    ConcurrentModification,
    AlreadyExists,
    MeetingUnavailable,
    ValidationFailed,
)
from casework.permissions import Action, PermissionEvaluator, Scope
