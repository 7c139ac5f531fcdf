"""
Casework — Permission Evaluator

Single capability check guarding every engine operation. Purely
deterministic, no I/O: the caller supplies the actor and the handful of
case attributes the rules look at.

Rules are data, not a role hierarchy. Each role maps each action to a
Scope, and each Scope is one predicate over the request. Deployments
can override individual entries from configuration:

    permissions:
      overrides:
        Consultant:
          archive: none
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from casework.errors import Forbidden
from casework.types import Actor, Case, Role

logger = logging.getLogger("casework.permissions")


class Action(str, enum.Enum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    ASSIGN_MEETING = "assign_meeting"
    REASSIGN_MEETING = "reassign_meeting"
    UNASSIGN_MEETING = "unassign_meeting"
    RECORD_CONSENSUS = "record_consensus"
    ARCHIVE = "archive"
    RELOCATE_MEETING_CASES = "relocate_meeting_cases"


class Scope(str, enum.Enum):
    ANY = "any"
    NONE = "none"
    # Target department must equal the actor's department, if the actor has one
    OWN_DEPARTMENT = "own_department"
    # Actor created the case, and the case sits in the actor's department if the actor has one
    CREATOR_IN_DEPARTMENT = "creator_in_department"
    # Case is on a meeting agenda, in the actor's department, or created by the actor
    VISIBLE = "visible"


_CONSULTANT_OWNED = {
    Action.EDIT, Action.SUBMIT, Action.RESUBMIT,
    Action.ASSIGN_MEETING, Action.REASSIGN_MEETING, Action.UNASSIGN_MEETING,
}

DEFAULT_RULES: dict[Role, dict[Action, Scope]] = {
    Role.ADMIN: {a: Scope.ANY for a in Action},
    Role.COORDINATOR: {
        **{a: Scope.ANY for a in Action},
        Action.CREATE: Scope.OWN_DEPARTMENT,
    },
    Role.CONSULTANT: {
        **{a: Scope.NONE for a in Action},
        Action.VIEW: Scope.VISIBLE,
        Action.CREATE: Scope.OWN_DEPARTMENT,
        **{a: Scope.CREATOR_IN_DEPARTMENT for a in _CONSULTANT_OWNED},
    },
    Role.VIEWER: {
        **{a: Scope.NONE for a in Action},
        Action.VIEW: Scope.ANY,
    },
}


@dataclass(frozen=True)
class PermissionRequest:
    """Everything a rule may look at."""
    actor: Actor
    action: Action
    case_created_by_id: str | None = None
    case_department_id: str | None = None
    case_assigned_meeting_id: str | None = None
    # For CREATE: the department the new case would belong to
    target_department_id: str | None = None

    @staticmethod
    def for_case(actor: Actor, action: Action, case: Case) -> PermissionRequest:
        return PermissionRequest(
            actor=actor,
            action=action,
            case_created_by_id=case.created_by_id,
            case_department_id=case.presenting_department_id,
            case_assigned_meeting_id=case.assigned_meeting_id,
        )


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    scope: Scope
    reason: str = ""


class PermissionEvaluator:
    """Evaluates PermissionRequests against the rule table."""

    def __init__(self, rules: dict[Role, dict[Action, Scope]] | None = None):
        self.rules = {role: dict(actions) for role, actions in (rules or DEFAULT_RULES).items()}

    @classmethod
    def from_config(cls, overrides: dict[str, dict[str, str]] | None) -> PermissionEvaluator:
        """
        Build an evaluator from DEFAULT_RULES plus config overrides
        (role name → action name → scope name). Unknown names raise
        ValueError so a typo cannot silently widen access.
        """
        rules = {role: dict(actions) for role, actions in DEFAULT_RULES.items()}
        for role_name, actions in (overrides or {}).items():
            role = Role(role_name)
            for action_name, scope_name in (actions or {}).items():
                rules[role][Action(action_name)] = Scope(scope_name)
        return cls(rules)

    def evaluate(self, request: PermissionRequest) -> PermissionDecision:
        actor = request.actor
        scope = self.rules.get(actor.role, {}).get(request.action, Scope.NONE)

        if scope == Scope.ANY:
            return PermissionDecision(True, scope)
        if scope == Scope.NONE:
            return PermissionDecision(
                False, scope, f"{actor.role.value} may not {request.action.value}"
            )

        if scope == Scope.OWN_DEPARTMENT:
            target = request.target_department_id or request.case_department_id
            if actor.department_id and target != actor.department_id:
                return PermissionDecision(False, scope, "department mismatch")
            return PermissionDecision(True, scope)

        if scope == Scope.CREATOR_IN_DEPARTMENT:
            if request.case_created_by_id != actor.user_id:
                return PermissionDecision(False, scope, "not the case creator")
            if actor.department_id and request.case_department_id != actor.department_id:
                return PermissionDecision(False, scope, "department mismatch")
            return PermissionDecision(True, scope)

        if scope == Scope.VISIBLE:
            if request.case_assigned_meeting_id:
                return PermissionDecision(True, scope)
            if request.case_created_by_id == actor.user_id:
                return PermissionDecision(True, scope)
            if actor.department_id and request.case_department_id == actor.department_id:
                return PermissionDecision(True, scope)
            return PermissionDecision(False, scope, "case not visible to actor")

        return PermissionDecision(False, scope, f"unknown scope {scope!r}")

    def is_allowed(self, request: PermissionRequest) -> bool:
        return self.evaluate(request).allowed

    def check(self, request: PermissionRequest) -> None:
        """Raise Forbidden unless the request is allowed."""
        decision = self.evaluate(request)
        if not decision.allowed:
            logger.debug(
                "Denied %s for %s (%s): %s",
                request.action.value, request.actor.user_id,
                request.actor.role.value, decision.reason,
            )
            raise Forbidden()

    def check_case(self, actor: Actor, action: Action, case: Case) -> None:
        self.check(PermissionRequest.for_case(actor, action, case))

    def capabilities(self, actor: Actor, case: Case) -> dict[str, Any]:
        """Action name → allowed, for every case-level action."""
        return {
            action.value: self.is_allowed(PermissionRequest.for_case(actor, action, case))
            for action in Action
            if action not in (Action.CREATE, Action.RELOCATE_MEETING_CASES)
        }
