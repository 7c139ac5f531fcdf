"""
Casework — Webhook Notification Dispatcher

Implements the NotificationDispatcher port by POSTing lifecycle events
to configured webhook targets: Teams incoming webhook, Slack, or a
custom HTTP endpoint.

Features:
  - Fire-and-forget delivery (background threads, never blocks the engine)
  - Per-target event filtering
  - Retry with exponential backoff
  - Delivery records for diagnostics
  - Case links when a base_url is configured

Usage:
    from services.notifications import WebhookDispatcher, WebhookConfig

    dispatcher = WebhookDispatcher(configs=[
        WebhookConfig(url="https://teams.webhook.office.com/...", format="teams"),
    ])
    engine = CaseWorkflowEngine(..., dispatcher=dispatcher)
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from casework.types import AUDIENCE_ALL, EventType, LifecycleEvent

logger = logging.getLogger("casework.notifications")

# Delivery history kept in memory for the deliveries property
MAX_DELIVERY_RECORDS = 100


@dataclass
class WebhookConfig:
    """Configuration for a single webhook target."""
    url: str
    format: str = "generic"     # generic, teams, slack
    enabled: bool = True
    events: list[str] | None = None     # None = all event types
    max_retries: int = 2
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WebhookConfig:
        return WebhookConfig(
            url=data["url"],
            format=data.get("format", "generic"),
            enabled=data.get("enabled", True),
            events=data.get("events"),
            max_retries=int(data.get("max_retries", 2)),
            timeout_seconds=float(data.get("timeout_seconds", 10.0)),
            headers=dict(data.get("headers") or {}),
        )


@dataclass
class DeliveryRecord:
    """Record of a webhook delivery attempt."""
    delivery_id: str
    webhook_url: str
    case_id: str
    event_type: str
    status: str         # pending, delivered, failed
    attempts: int = 0
    last_attempt_at: float = 0.0
    error: str = ""
    created_at: float = 0.0


class WebhookDispatcher:
    """
    Non-blocking lifecycle event sender.

    One background thread per (event, target). Targets are filtered by
    event type.
    """

    def __init__(
        self,
        configs: list[WebhookConfig] | None = None,
        http_client: Callable | None = None,
        base_url: str = "",
        backoff_cap_seconds: float = 10.0,
    ):
        self.configs = configs or []
        self._http_client = http_client or _default_http_client
        self.base_url = base_url.rstrip("/")
        self.backoff_cap_seconds = backoff_cap_seconds
        self._deliveries: deque[DeliveryRecord] = deque(maxlen=MAX_DELIVERY_RECORDS)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, section: dict[str, Any] | None) -> WebhookDispatcher:
        section = section or {}
        configs = [WebhookConfig.from_dict(w) for w in section.get("webhooks") or []]
        return cls(configs=configs, base_url=section.get("base_url", ""))

    def notify(self, event: LifecycleEvent) -> None:
        """Dispatch to every matching target. Returns immediately."""
        case_url = f"{self.base_url}/cases/{event.case_id}" if self.base_url else ""

        for config in self.configs:
            if not config.enabled:
                continue
            if config.events and event.event_type.value not in config.events:
                continue

            payload = _format_payload(config.format, event, case_url)
            record = DeliveryRecord(
                delivery_id=f"dlv_{uuid.uuid4().hex[:12]}",
                webhook_url=config.url,
                case_id=event.case_id,
                event_type=event.event_type.value,
                status="pending",
                created_at=time.time(),
            )
            thread = threading.Thread(
                target=self._deliver,
                args=(config, payload, record),
                daemon=True,
            )
            with self._lock:
                self._deliveries.append(record)
                self._threads = [t for t in self._threads if t.is_alive()]
                self._threads.append(thread)
            thread.start()

    def _deliver(self, config: WebhookConfig, payload: dict, record: DeliveryRecord):
        """Deliver a webhook with retry."""
        attempts = max(1, config.max_retries)
        for attempt in range(1, attempts + 1):
            record.attempts = attempt
            record.last_attempt_at = time.time()

            try:
                response = self._http_client(
                    url=config.url,
                    payload=payload,
                    headers=config.headers,
                    timeout=config.timeout_seconds,
                )
                if response.get("success"):
                    record.status = "delivered"
                    logger.info(
                        "Webhook delivered: %s → %s (attempt %d)",
                        record.delivery_id, config.url[:50], attempt,
                    )
                    return
                record.error = response.get("error", "unknown error")
                logger.warning(
                    "Webhook failed: %s → %s: %s (attempt %d/%d)",
                    record.delivery_id, config.url[:50], record.error,
                    attempt, attempts,
                )
            except Exception as e:
                record.error = str(e)[:200]
                logger.warning(
                    "Webhook error: %s → %s: %s (attempt %d/%d)",
                    record.delivery_id, config.url[:50], e,
                    attempt, attempts,
                )

            if attempt < attempts:
                time.sleep(min(2 ** attempt, self.backoff_cap_seconds))

        record.status = "failed"
        logger.error(
            "Webhook exhausted retries: %s → %s after %d attempts",
            record.delivery_id, config.url[:50], attempts,
        )

    def flush(self, timeout: float = 30.0) -> None:
        """Wait for in-flight deliveries. For shutdown and tests."""
        deadline = time.time() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(max(0.0, deadline - time.time()))

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        """Most recent delivery records, oldest first."""
        with self._lock:
            return [
                {
                    "delivery_id": d.delivery_id,
                    "webhook_url": d.webhook_url[:50],
                    "case_id": d.case_id,
                    "event_type": d.event_type,
                    "status": d.status,
                    "attempts": d.attempts,
                    "error": d.error,
                }
                for d in self._deliveries
            ]


# ═══════════════════════════════════════════════════════════════════
# Payload Formatters
# ═══════════════════════════════════════════════════════════════════

_THEME = {
    EventType.CASE_SUBMITTED: "0078D7",
    EventType.CASE_RESUBMITTED: "0078D7",
    EventType.CASE_RESCHEDULED: "D63B00",
    EventType.REVIEW_COMPLETED: "2DC72D",
}


def _format_payload(fmt: str, event: LifecycleEvent, case_url: str = "") -> dict[str, Any]:
    """Format webhook payload for the target platform."""
    if fmt == "teams":
        return _format_teams(event, case_url)
    if fmt == "slack":
        return _format_slack(event, case_url)
    return _format_generic(event, case_url)


def _audience(event: LifecycleEvent) -> str:
    if event.recipients == [AUDIENCE_ALL]:
        return "All users"
    return f"{len(event.recipients)} recipients"


def _format_generic(event: LifecycleEvent, case_url: str) -> dict[str, Any]:
    payload = event.to_dict()
    if case_url:
        payload["case_url"] = case_url
    return payload


def _format_teams(event: LifecycleEvent, case_url: str) -> dict[str, Any]:
    """Microsoft Teams MessageCard format."""
    title = f"MDT: {event.title}"
    facts = [
        {"name": "Case", "value": event.case_id},
        {"name": "Audience", "value": _audience(event)},
    ]
    if event.meeting_id:
        facts.append({"name": "Meeting", "value": event.meeting_id})
    if event.details.get("meeting_date"):
        facts.append({"name": "Meeting date", "value": event.details["meeting_date"]})

    card = {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "summary": title,
        "themeColor": _THEME.get(event.event_type, "808080"),
        "title": title,
        "text": event.message,
        "sections": [{"facts": facts}],
    }
    if case_url:
        card["potentialAction"] = [{
            "@type": "OpenUri",
            "name": "Open case",
            "targets": [{"os": "default", "uri": case_url}],
        }]
    return card


def _format_slack(event: LifecycleEvent, case_url: str) -> dict[str, Any]:
    """Slack Block Kit format."""
    fields = [
        {"type": "mrkdwn", "text": f"*Case:* {event.case_id}"},
        {"type": "mrkdwn", "text": f"*Audience:* {_audience(event)}"},
    ]
    if event.meeting_id:
        fields.append({"type": "mrkdwn", "text": f"*Meeting:* {event.meeting_id}"})

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"MDT: {event.title}"},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": event.message},
        },
        {"type": "section", "fields": fields},
    ]
    if case_url:
        blocks.append({
            "type": "actions",
            "elements": [{
                "type": "button",
                "text": {"type": "plain_text", "text": "Open case"},
                "url": case_url,
            }],
        })
    return {"blocks": blocks}


# ═══════════════════════════════════════════════════════════════════
# Default HTTP Client
# ═══════════════════════════════════════════════════════════════════

def _default_http_client(
    url: str,
    payload: dict,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """
    Default HTTP POST client using urllib.
    Returns {"success": bool, "status_code": int, "error": str}.
    """
    import urllib.error
    import urllib.request

    data = json.dumps(payload, default=str).encode("utf-8")
    all_headers = {"Content-Type": "application/json"}
    if headers:
        all_headers.update(headers)

    req = urllib.request.Request(url, data=data, headers=all_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return {"success": resp.status < 400, "status_code": resp.status}
    except urllib.error.HTTPError as e:
        return {"success": False, "status_code": e.code, "error": str(e)}
    except Exception as e:
        return {"success": False, "status_code": 0, "error": str(e)}
