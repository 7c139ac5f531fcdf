"""
Casework — Structured Logging with Trace IDs

Emits one JSON object per log line for every lifecycle event the
workflow engine produces. Field names follow OpenTelemetry semantic
conventions (trace_id, service.name) so the output can be shipped to
any OTel-aware collector without reshaping.

Log levels:
  - DEBUG: full post-state of every transition
  - INFO: transitions, sweep summaries
  - WARNING: rejected operations, failed collaborator calls

Usage:
    from services.logging import TransitionLogger, configure_logging

    configure_logging(level="INFO")
    tlog = TransitionLogger(component="engine")
    tlog.on_transition("case_1", "submit", "draft", "submitted", actor_id="u1")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Structured fields attached to a record under ``record.structured``
    are merged into the top-level object.
    """

    def __init__(self, service_name: str = "casework"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("MDT_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "casework",
) -> logging.Logger:
    """
    Configure the ``casework`` logger namespace with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name stamped on every entry

    Returns:
        The configured ``casework`` logger
    """
    logger = logging.getLogger("casework")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Reconfiguring must not stack handlers
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("casework."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure_logging_from_config(
    config: dict[str, Any],
    default_level: str = "INFO",
    stream: Any = None,
) -> logging.Logger:
    """Apply the ``logging`` section (level, service_name) of a loaded config."""
    section = config.get("logging") or {}
    return configure_logging(
        level=section.get("level") or default_level,
        stream=stream,
        service_name=section.get("service_name") or "casework",
    )


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the casework namespace."""
    if name:
        return logging.getLogger(f"casework.{name}")
    return logging.getLogger("casework")


def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Transition Logger
# ═══════════════════════════════════════════════════════════════════

class TransitionLogger:
    """
    Structured event logger for the workflow engine.

    Every entry carries the logger's trace_id and component so that one
    engine instance's activity can be filtered out of a shared stream.
    """

    def __init__(self, component: str = "engine", trace_id: str | None = None):
        self.component = component
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("events")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "trace_id": self.trace_id,
            "component": self.component,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_transition(
        self,
        case_id: str,
        operation: str,
        from_status: str,
        to_status: str,
        actor_id: str = "",
        **extra: Any,
    ) -> None:
        self._emit(
            logging.INFO, "transition",
            case_id=case_id,
            operation=operation,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            **extra,
        )

    def on_post_state(self, case_id: str, state: dict[str, Any]) -> None:
        """Full case snapshot, DEBUG only."""
        self._emit(logging.DEBUG, "post_state", case_id=case_id, state=state)

    def on_rejected(
        self,
        operation: str,
        error_code: str,
        case_id: str = "",
        actor_id: str = "",
        message: str = "",
    ) -> None:
        self._emit(
            logging.WARNING, "rejected",
            operation=operation,
            error_code=error_code,
            case_id=case_id,
            actor_id=actor_id,
            message=message[:500],
        )

    def on_sweep(self, demoted: int, scanned: int, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "sweep",
            demoted=demoted,
            scanned=scanned,
            elapsed_ms=round(elapsed_s * 1000, 1),
        )

    def on_dispatch_failed(self, target: str, case_id: str, error: str) -> None:
        self._emit(
            logging.WARNING, "dispatch_failed",
            target=target,
            case_id=case_id,
            error=error[:500],
        )
