from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from chat_gateway.core.models import AlertRequest, AlertSeverity, AlertType

SEVERITY_COLORS = {
    AlertSeverity.INFO: "#36a64f",
    AlertSeverity.WARNING: "#ffa500",
    AlertSeverity.ERROR: "#ff6b6b",
    AlertSeverity.CRITICAL: "#d00000",
}


@dataclass(frozen=True)
class AlertTemplate:
    subject: str
    title: str
    color: str | None
    # (label, key) pairs; keys are looked up in the alert details
    fields: tuple[tuple[str, str], ...] = ()


TEMPLATES: dict[AlertType, AlertTemplate] = {
    AlertType.HEALTH_ISSUE: AlertTemplate(
        subject="Health alert: {title}",
        title="{title}",
        color=None,
        fields=(("Failing services", "failing_services"), ("Overall health", "overall")),
    ),
    AlertType.RATE_LIMIT_WARNING: AlertTemplate(
        subject="Rate limit warning: {connection_id}",
        title="Rate limit warning",
        color="#ffa500",
        fields=(("Connection", "connection_id"), ("Messages in window", "message_count"), ("Daily limit", "daily_limit")),
    ),
    AlertType.CONNECTION_ISSUE: AlertTemplate(
        subject="Connection issue: {connection_id}",
        title="Connection issue",
        color="#ff6b6b",
        fields=(("Connection", "connection_id"), ("Status", "status"), ("Error", "error")),
    ),
    AlertType.QUEUE_ISSUE: AlertTemplate(
        subject="Queue processing issue: {connection_id}",
        title="Queue processing issue",
        color="#ff6b6b",
        fields=(("Connection", "connection_id"), ("Job", "job_id"), ("Error", "error")),
    ),
    AlertType.TEST: AlertTemplate(
        subject="Test alert",
        title="Test alert",
        color="#36a64f",
        fields=(("Channel", "channel"),),
    ),
    AlertType.GENERAL: AlertTemplate(subject="{title}", title="{title}", color=None),
}


@dataclass
class RenderedAlert:
    subject: str
    text: str
    body: dict[str, Any] = field(default_factory=dict)


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def _fields(template: AlertTemplate, details: dict[str, Any]) -> list[tuple[str, str]]:
    rows: list[tuple[str, str]] = []
    for label, key in template.fields:
        value = details.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple, set)):
            value = ", ".join(str(v) for v in value)
        rows.append((label, str(value)))
    return rows


def render(alert: AlertRequest, channel: str, *, timestamp: datetime, app_name: str = "Chat Gateway") -> RenderedAlert:
    """Build the payload one channel sends for one alert."""
    template = TEMPLATES.get(alert.type, TEMPLATES[AlertType.GENERAL])
    values = _SafeDict(alert.details)
    values.update(title=alert.title, message=alert.message, severity=alert.severity.value)
    subject = template.subject.format_map(values)
    title = template.title.format_map(values)
    color = template.color or SEVERITY_COLORS[alert.severity]
    rows = _fields(template, alert.details)
    stamp = timestamp.isoformat()

    lines = [alert.message, "", f"Severity: {alert.severity.value}", f"Time: {stamp}"]
    lines.extend(f"{label}: {value}" for label, value in rows)
    text = "\n".join(lines)

    if channel == "slack":
        body: dict[str, Any] = {
            "attachments": [
                {
                    "color": color,
                    "title": title,
                    "text": alert.message,
                    "fields": [{"title": "Severity", "value": alert.severity.value, "short": True}]
                    + [{"title": label, "value": value, "short": True} for label, value in rows],
                    "footer": app_name,
                    "ts": int(timestamp.timestamp()),
                }
            ]
        }
    elif channel == "discord":
        body = {
            "embeds": [
                {
                    "title": title,
                    "description": alert.message,
                    "color": int(color.lstrip("#"), 16),
                    "fields": [{"name": "Severity", "value": alert.severity.value, "inline": True}]
                    + [{"name": label, "value": value, "inline": True} for label, value in rows],
                    "timestamp": stamp,
                    "footer": {"text": app_name},
                }
            ]
        }
    elif channel == "webhook":
        body = {
            "type": alert.type.value,
            "severity": alert.severity.value,
            "title": title,
            "message": alert.message,
            "details": alert.details,
            "timestamp": stamp,
        }
    else:
        body = {}
    return RenderedAlert(subject=subject, text=text, body=body)
