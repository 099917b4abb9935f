from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from chat_gateway.alerts.channels import ChannelSendResult, NotificationDispatcher
from chat_gateway.alerts.store import AlertStore
from chat_gateway.alerts.templates import render
from chat_gateway.core.errors import ConfigurationError
from chat_gateway.core.models import (
    AlertDispatchResult,
    AlertDispatchStatus,
    AlertLogEntry,
    AlertRequest,
    AlertSeverity,
    AlertStats,
    AlertType,
    ChannelOutcome,
)

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWNS: dict[AlertType, int] = {
    AlertType.HEALTH_ISSUE: 300,
    AlertType.RATE_LIMIT_WARNING: 600,
    AlertType.CONNECTION_ISSUE: 300,
    AlertType.QUEUE_ISSUE: 120,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertService:
    """Deduplicated multi-channel alerting.

    An alert's dedupe key is its type plus the connection id, job id and service name
    found in its details. A key that was successfully sent within the type's cooldown
    is suppressed. Channels are independent: each runs in its own thread and its
    failure is recorded without affecting the others. Every attempt lands in the
    dispatch log.
    """

    def __init__(
        self,
        *,
        store: AlertStore,
        dispatcher: NotificationDispatcher,
        default_channels: list[str] | None = None,
        cooldowns: dict[AlertType, int] | None = None,
        retention_days: int = 7,
        app_name: str = "Chat Gateway",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.default_channels = list(default_channels or ["email", "slack"])
        self.cooldowns = dict(DEFAULT_COOLDOWNS)
        self.cooldowns.update(cooldowns or {})
        self.retention = timedelta(days=max(1, retention_days))
        self.app_name = app_name
        self._clock = clock or _utcnow
        # Per-key locks, dropped once no caller holds or awaits them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @staticmethod
    def dedupe_key(alert: AlertRequest) -> str:
        details = alert.details
        parts = [alert.type.value]
        for name in ("connection_id", "job_id", "service"):
            value = details.get(name)
            parts.append(str(value) if value not in (None, "") else "-")
        return "|".join(parts)

    async def send_alert(self, alert: AlertRequest) -> AlertDispatchResult:
        key = self.dedupe_key(alert)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._send_locked(alert, key)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _send_locked(self, alert: AlertRequest, key: str) -> AlertDispatchResult:
        now = self._clock()
        if alert.cooldown and self._in_cooldown(alert, key, now):
            logger.debug("alert %s suppressed by cooldown", key)
            self.store.record_attempt(key, alert.type, now, sent=False)
            self._log(alert, key, now, AlertDispatchStatus.SUPPRESSED, [])
            return AlertDispatchResult(
                dedupe_key=key,
                alert_type=alert.type,
                status=AlertDispatchStatus.SUPPRESSED,
                attempted_at=now,
            )

        channels = [c.strip().lower() for c in (alert.channels or self.default_channels) if c.strip()]
        outcomes = list(await asyncio.gather(*(self._dispatch(channel, alert, now) for channel in channels)))
        sent = any(o.success for o in outcomes)
        status = AlertDispatchStatus.SENT if sent else AlertDispatchStatus.FAILED
        self.store.record_attempt(key, alert.type, now, sent=sent)
        self._log(alert, key, now, status, outcomes)
        if sent:
            logger.info("alert %s sent via %s", key, ", ".join(o.channel for o in outcomes if o.success))
        else:
            logger.error(
                "alert %s failed on every channel: %s",
                key,
                "; ".join(f"{o.channel}: {o.error_message}" for o in outcomes) or "no channels",
            )
        return AlertDispatchResult(
            dedupe_key=key,
            alert_type=alert.type,
            status=status,
            outcomes=outcomes,
            attempted_at=now,
        )

    async def send_health_alert(self, failing: list[str], overall: str, details: dict[str, Any]) -> AlertDispatchResult:
        services = sorted(set(failing))
        return await self.send_alert(
            AlertRequest(
                type=AlertType.HEALTH_ISSUE,
                severity=AlertSeverity.CRITICAL,
                title="System health issues detected",
                message=f"Unhealthy services: {', '.join(services)}",
                details={"service": ",".join(services), "failing_services": services, "overall": overall, **details},
            )
        )

    async def send_rate_limit_alert(self, connection_id: str, count: int, capacity: int, plan: str) -> AlertDispatchResult:
        return await self.send_alert(
            AlertRequest(
                type=AlertType.RATE_LIMIT_WARNING,
                severity=AlertSeverity.WARNING,
                title="Rate limit warning",
                message=f"Connection {connection_id} has sent {count} of {capacity} messages allowed in its window",
                details={"connection_id": connection_id, "message_count": count, "daily_limit": capacity, "plan": plan},
            )
        )

    async def send_connection_alert(
        self,
        connection_id: str,
        status: str,
        error: str,
        details: dict[str, Any] | None = None,
    ) -> AlertDispatchResult:
        return await self.send_alert(
            AlertRequest(
                type=AlertType.CONNECTION_ISSUE,
                severity=AlertSeverity.ERROR,
                title="Connection issue",
                message=f"Connection {connection_id} is {status}: {error}",
                details={**(details or {}), "connection_id": connection_id, "status": status, "error": error},
            )
        )

    async def send_queue_alert(self, connection_id: str, job_id: str, state: str, error: str) -> AlertDispatchResult:
        return await self.send_alert(
            AlertRequest(
                type=AlertType.QUEUE_ISSUE,
                severity=AlertSeverity.ERROR,
                title="Queue processing issue",
                message=f"Job {job_id} ended {state}: {error}",
                details={"connection_id": connection_id, "job_id": job_id, "state": state, "error": error},
            )
        )

    async def test_alert(self, channel: str) -> AlertDispatchResult:
        return await self.send_alert(
            AlertRequest(
                type=AlertType.TEST,
                severity=AlertSeverity.INFO,
                title="Test alert",
                message=f"Test alert from {self.app_name}",
                details={"channel": channel},
                channels=[channel],
                cooldown=False,
            )
        )

    def history(self, limit: int = 100, alert_type: AlertType | None = None) -> list[AlertLogEntry]:
        return self.store.list_log(limit=limit, alert_type=alert_type)

    def stats(self) -> AlertStats:
        now = self._clock()
        return AlertStats(
            total=self.store.count_sent_since(None),
            last_hour=self.store.count_sent_since(now - timedelta(hours=1)),
            last_day=self.store.count_sent_since(now - timedelta(days=1)),
            channels=self.dispatcher.configured_channels(),
        )

    def prune(self) -> tuple[int, int]:
        records, logs = self.store.prune(self._clock() - self.retention)
        if records or logs:
            logger.info("pruned %d alert records and %d log rows", records, logs)
        return records, logs

    def _in_cooldown(self, alert: AlertRequest, key: str, now: datetime) -> bool:
        window = alert.cooldown_seconds if alert.cooldown_seconds is not None else self.cooldowns.get(alert.type, 0)
        if window <= 0:
            return False
        record = self.store.get_record(key)
        if record is None or record.last_sent_at is None:
            return False
        return (now - record.last_sent_at).total_seconds() < window

    async def _dispatch(self, channel: str, alert: AlertRequest, now: datetime) -> ChannelOutcome:
        rendered = render(alert, channel, timestamp=now, app_name=self.app_name)
        try:
            result: ChannelSendResult = await asyncio.to_thread(self.dispatcher.send, channel=channel, rendered=rendered)
        except ConfigurationError as exc:
            logger.warning("alert channel %s not configured: %s", channel, exc.message)
            return ChannelOutcome(channel=channel, success=False, error_message=f"{exc.code}: {exc.message}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("alert channel %s crashed", channel)
            return ChannelOutcome(channel=channel, success=False, error_message=str(exc))
        if not result.success:
            logger.warning("alert channel %s failed: %s", channel, result.error_message)
        return ChannelOutcome(
            channel=channel,
            success=result.success,
            error_message=result.error_message,
            provider_status=result.provider_status,
        )

    def _log(
        self,
        alert: AlertRequest,
        key: str,
        now: datetime,
        status: AlertDispatchStatus,
        outcomes: list[ChannelOutcome],
    ) -> None:
        self.store.log_dispatch(
            at=now,
            dedupe_key=key,
            alert_type=alert.type,
            severity=alert.severity,
            title=alert.title,
            status=status,
            outcomes=outcomes,
        )
