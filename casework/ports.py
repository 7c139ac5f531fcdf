"""
Casework — External Collaborator Interfaces

The engine reads meetings and users and emits audit records and
lifecycle events through these protocols. Production deployments plug
in their own implementations; the in-memory versions here serve tests,
the CLI and single-process setups.
"""

from __future__ import annotations

import threading
from typing import Any, Protocol

from casework.types import LifecycleEvent, Meeting, MeetingStatus


class MeetingRepository(Protocol):
    def get(self, meeting_id: str) -> Meeting | None: ...

    def list_meetings(self) -> list[Meeting]: ...


class UserDirectory(Protocol):
    def consultants_in_department(self, department_id: str) -> list[str]: ...


class NotificationDispatcher(Protocol):
    def notify(self, event: LifecycleEvent) -> None: ...


class AuditRecorder(Protocol):
    def record(
        self,
        action: str,
        actor_id: str,
        case_id: str,
        details: dict[str, Any] | None = None,
    ) -> Any: ...


# ─── In-memory implementations ──────────────────────────────────────

class InMemoryMeetingRepository:
    """Dict-backed meeting lookup."""

    def __init__(self, meetings: list[Meeting] | None = None):
        self._meetings: dict[str, Meeting] = {}
        self._lock = threading.Lock()
        for m in meetings or []:
            self.add(m)

    def add(self, meeting: Meeting) -> Meeting:
        with self._lock:
            self._meetings[meeting.meeting_id] = meeting
        return meeting

    def set_status(self, meeting_id: str, status: MeetingStatus) -> None:
        with self._lock:
            self._meetings[meeting_id].status = status

    def get(self, meeting_id: str) -> Meeting | None:
        with self._lock:
            return self._meetings.get(meeting_id)

    def list_meetings(self) -> list[Meeting]:
        with self._lock:
            return list(self._meetings.values())


class InMemoryUserDirectory:
    """Department → consultant ids."""

    def __init__(self, consultants: dict[str, list[str]] | None = None):
        self._consultants = {k: list(v) for k, v in (consultants or {}).items()}

    def add_consultant(self, department_id: str, user_id: str) -> None:
        self._consultants.setdefault(department_id, []).append(user_id)

    def consultants_in_department(self, department_id: str) -> list[str]:
        return list(self._consultants.get(department_id, []))


class RecordingDispatcher:
    """Keeps every event in memory. Useful for tests and dry runs."""

    def __init__(self):
        self.events: list[LifecycleEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: LifecycleEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type) -> list[LifecycleEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class NullAuditRecorder:
    """Discards audit records."""

    def record(self, action, actor_id, case_id, details=None):
        return None
