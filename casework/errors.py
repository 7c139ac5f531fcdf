"""
Casework — Error Taxonomy

Every engine failure is a rejected operation on otherwise-healthy
state. Each error carries a stable code and the HTTP status the API
adapter maps it to.
"""

from __future__ import annotations


class CaseworkError(Exception):
    """Base exception for all engine errors."""
    code: str = "error"
    status_code: int = 400

    def __init__(self, message: str = "", **kwargs):
        self.message = message or self.__class__.__doc__ or self.code
        self.detail = kwargs
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class Forbidden(CaseworkError):
    """Operation not permitted."""
    code = "forbidden"
    status_code = 403

    def __init__(self, message: str = "Operation not permitted", **kwargs):
        super().__init__(message, **kwargs)


class NotFound(CaseworkError):
    """Case, report or meeting does not exist."""
    code = "not_found"
    status_code = 404


class InvalidTransition(CaseworkError):
    """Current case status does not satisfy the operation's precondition."""
    code = "invalid_transition"
    status_code = 409


class ConcurrentModification(InvalidTransition):
    """The case changed between read and write."""
    code = "concurrent_modification"


class AlreadyExists(CaseworkError):
    """A consensus report already exists for this case."""
    code = "already_exists"
    status_code = 409


class MeetingUnavailable(CaseworkError):
    """Target meeting is absent, cancelled or completed."""
    code = "meeting_unavailable"
    status_code = 422


class ValidationFailed(CaseworkError):
    """Malformed input fields."""
    code = "validation_failed"
    status_code = 400

    def __init__(self, message: str = "Validation failed", errors: list[str] | None = None):
        self.errors = list(errors or [])
        super().__init__(message, errors=self.errors)
