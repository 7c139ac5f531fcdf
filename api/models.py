"""
Casework — API Models

Request dataclasses for the HTTP adapter. No FastAPI dependency, so
the server, the CLI and the tests share them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from casework.types import Actor, PatientContext, Role


ACTOR_ID_HEADER = "x-actor-id"
ACTOR_ROLE_HEADER = "x-actor-role"
ACTOR_DEPARTMENT_HEADER = "x-actor-department"

_UNSET = object()


@dataclass
class ActorHeaders:
    """Identity forwarded by the authenticating gateway."""
    user_id: str
    role: str
    department_id: str | None = None

    @staticmethod
    def from_headers(headers: Mapping[str, str]) -> ActorHeaders:
        return ActorHeaders(
            user_id=headers.get(ACTOR_ID_HEADER, ""),
            role=headers.get(ACTOR_ROLE_HEADER, ""),
            department_id=headers.get(ACTOR_DEPARTMENT_HEADER) or None,
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.user_id:
            errors.append("X-Actor-Id header is required")
        if self.role not in {r.value for r in Role}:
            errors.append(
                f"X-Actor-Role must be one of {', '.join(r.value for r in Role)}"
            )
        return errors

    def to_actor(self) -> Actor:
        return Actor(
            user_id=self.user_id,
            role=Role(self.role),
            department_id=self.department_id,
        )


@dataclass
class CaseCreateRequest:
    """POST /v1/cases request body."""
    presenting_department_id: str
    patient: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_body(body: dict[str, Any]) -> CaseCreateRequest:
        return CaseCreateRequest(
            presenting_department_id=body.get("presenting_department_id", ""),
            patient=body.get("patient", {}),
        )

    def validate(self) -> list[str]:
        """Shape checks only; field rules live in PatientContext.validate()."""
        errors = []
        if not self.presenting_department_id or not isinstance(self.presenting_department_id, str):
            errors.append("presenting_department_id is required and must be a string")
        if not isinstance(self.patient, dict):
            errors.append("patient is required and must be an object")
        return errors

    def to_patient(self) -> PatientContext:
        return PatientContext.from_dict(self.patient)


@dataclass
class MeetingTarget:
    """
    Body of submit / assign / reassign / resubmit.

    meeting_id is _UNSET when the key is absent, so reassign can tell
    an explicit null (unassign) from a missing field.
    """
    meeting_id: Any = _UNSET

    @staticmethod
    def from_body(body: dict[str, Any]) -> MeetingTarget:
        return MeetingTarget(meeting_id=body.get("meeting_id", _UNSET))

    @property
    def provided(self) -> bool:
        return self.meeting_id is not _UNSET

    def validate(self, required: bool = True, nullable: bool = False) -> list[str]:
        if not self.provided:
            return ["meeting_id is required"] if required else []
        if self.meeting_id is None:
            return [] if nullable else ["meeting_id must not be null"]
        if not isinstance(self.meeting_id, str) or not self.meeting_id:
            return ["meeting_id must be a non-empty string"]
        return []

    @property
    def value(self) -> str | None:
        return self.meeting_id if self.provided else None


@dataclass
class RelocationRequest:
    """POST /v1/meetings/{id}/relocate request body."""
    reassignments: dict[str, str | None] = field(default_factory=dict)

    @staticmethod
    def from_body(body: dict[str, Any]) -> RelocationRequest:
        return RelocationRequest(reassignments=body.get("reassignments", {}))

    def validate(self) -> list[str]:
        if not isinstance(self.reassignments, dict):
            return ["reassignments must be an object of case_id → meeting_id | null"]
        errors = []
        for case_id, target in self.reassignments.items():
            if target is not None and not isinstance(target, str):
                errors.append(f"{case_id}: target must be a meeting id or null")
        return errors
