from __future__ import annotations

import asyncio
from pathlib import Path

from chat_gateway.alerts.channels import ChannelSendResult, RealAlertDispatcher
from chat_gateway.alerts.service import AlertService
from chat_gateway.alerts.store import AlertStore
from chat_gateway.alerts.templates import render
from chat_gateway.core.errors import ConfigurationError
from chat_gateway.core.models import (
    AlertDispatchStatus,
    AlertRequest,
    AlertSeverity,
    AlertType,
)


class FakeDispatcher:
    def __init__(self, failing: dict[str, Exception | str] | None = None) -> None:
        self.failing = failing or {}
        self.calls: list[tuple[str, str]] = []

    def send(self, *, channel, rendered):
        self.calls.append((channel, rendered.subject))
        failure = self.failing.get(channel)
        if isinstance(failure, Exception):
            raise failure
        if failure:
            return ChannelSendResult(success=False, error_message=failure)
        return ChannelSendResult(success=True, provider_status="ok")

    def configured_channels(self) -> list[str]:
        return ["email", "slack"]


def _service(tmp_path: Path, clock, dispatcher, channels=("email",)) -> AlertService:
    return AlertService(
        store=AlertStore(str(tmp_path / "alerts.db")),
        dispatcher=dispatcher,
        default_channels=list(channels),
        retention_days=7,
        clock=clock,
    )


def test_same_key_is_suppressed_within_cooldown(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        first = await service.send_connection_alert("conn-0001", "error", "auth failed")
        second = await service.send_connection_alert("conn-0001", "error", "auth failed")
        assert first.status == AlertDispatchStatus.SENT
        assert second.status == AlertDispatchStatus.SUPPRESSED
        assert first.dedupe_key == "connection_issue|conn-0001|-|-"

        clock.advance(301)
        third = await service.send_connection_alert("conn-0001", "error", "auth failed")
        assert third.status == AlertDispatchStatus.SENT

    asyncio.run(_run())
    assert len(dispatcher.calls) == 2
    assert [entry.status for entry in service.history()] == [
        AlertDispatchStatus.SENT,
        AlertDispatchStatus.SUPPRESSED,
        AlertDispatchStatus.SENT,
    ]


def test_different_subjects_do_not_share_cooldown(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        a = await service.send_connection_alert("conn-0001", "error", "down")
        b = await service.send_connection_alert("conn-0002", "error", "down")
        c = await service.send_queue_alert("conn-0001", "job-1", "failed", "boom")
        assert {a.status, b.status, c.status} == {AlertDispatchStatus.SENT}

    asyncio.run(_run())
    assert len(dispatcher.calls) == 3


def test_channel_failures_are_isolated(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher(
        failing={
            "slack": RuntimeError("socket closed"),
            "discord": ConfigurationError("discord webhook url is not configured"),
            "webhook": "webhook status=500",
        }
    )
    service = _service(tmp_path, clock, dispatcher, channels=("email", "slack", "discord", "webhook"))

    result = asyncio.run(service.send_rate_limit_alert("conn-0001", 800, 1000, "basic"))
    assert result.status == AlertDispatchStatus.SENT
    outcomes = {o.channel: o for o in result.outcomes}
    assert outcomes["email"].success is True
    assert outcomes["slack"].error_message == "socket closed"
    assert outcomes["discord"].error_message.startswith("configuration_error")
    assert outcomes["webhook"].success is False
    assert len(dispatcher.calls) == 4


def test_failed_dispatch_does_not_start_cooldown(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher(failing={"email": "smtp refused"})
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        first = await service.send_health_alert(["storage"], "unhealthy", {})
        second = await service.send_health_alert(["storage"], "unhealthy", {})
        assert first.status == AlertDispatchStatus.FAILED
        assert second.status == AlertDispatchStatus.FAILED

    asyncio.run(_run())
    assert len(dispatcher.calls) == 2
    record = service.store.get_record("health_issue|-|-|storage")
    assert record is not None
    assert record.last_sent_at is None
    assert record.attempts == 2


def test_health_alert_key_ignores_service_order(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        first = await service.send_health_alert(["queue", "storage"], "unhealthy", {})
        second = await service.send_health_alert(["storage", "queue"], "unhealthy", {})
        assert first.dedupe_key == second.dedupe_key == "health_issue|-|-|queue,storage"
        assert second.status == AlertDispatchStatus.SUPPRESSED

    asyncio.run(_run())


def test_concurrent_duplicates_dispatch_once(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run():
        return await asyncio.gather(
            *(service.send_queue_alert("conn-0001", "job-9", "failed", "boom") for _ in range(5))
        )

    results = asyncio.run(_run())
    assert sorted(r.status.value for r in results) == ["sent"] + ["suppressed"] * 4
    assert len(dispatcher.calls) == 1
    assert service._locks == {}


def test_key_locks_are_released_after_dispatch(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        for index in range(50):
            await service.send_queue_alert("conn-0001", f"job-{index}", "failed", "boom")

    asyncio.run(_run())
    assert len(dispatcher.calls) == 50
    assert service._locks == {}
    assert service._lock_users == {}


def test_test_alert_bypasses_cooldown(tmp_path: Path, clock) -> None:
    dispatcher = FakeDispatcher()
    service = _service(tmp_path, clock, dispatcher)

    async def _run() -> None:
        for _ in range(2):
            result = await service.test_alert("slack")
            assert result.status == AlertDispatchStatus.SENT

    asyncio.run(_run())
    assert dispatcher.calls == [("slack", "Test alert"), ("slack", "Test alert")]
    stats = service.stats()
    assert stats.total == 2
    assert stats.last_hour == 2
    assert stats.channels == ["email", "slack"]


def test_prune_drops_records_past_retention(tmp_path: Path, clock) -> None:
    service = _service(tmp_path, clock, FakeDispatcher())
    asyncio.run(service.send_connection_alert("conn-0001", "error", "down"))
    assert service.prune() == (0, 0)

    clock.advance(8 * 86400)
    assert service.prune() == (1, 1)
    assert service.history() == []
    assert service.store.get_record("connection_issue|conn-0001|-|-") is None


def test_unconfigured_real_channels_report_configuration_error(tmp_path: Path, clock, make_settings) -> None:
    settings = make_settings(alert_default_channels="email,webhook")
    dispatcher = RealAlertDispatcher(settings)
    assert dispatcher.configured_channels() == []
    service = _service(tmp_path, clock, dispatcher, channels=settings.default_channel_list)

    result = asyncio.run(service.send_connection_alert("conn-0001", "error", "down"))
    assert result.status == AlertDispatchStatus.FAILED
    assert all(o.error_message.startswith("configuration_error") for o in result.outcomes)


def test_render_per_channel(clock) -> None:
    alert = AlertRequest(
        type=AlertType.CONNECTION_ISSUE,
        severity=AlertSeverity.ERROR,
        title="Connection issue",
        message="Connection conn-0001 is error: auth failed",
        details={"connection_id": "conn-0001", "status": "error", "error": "auth failed"},
    )
    slack = render(alert, "slack", timestamp=clock())
    assert slack.subject == "Connection issue: conn-0001"
    attachment = slack.body["attachments"][0]
    assert attachment["color"] == "#ff6b6b"
    assert {"title": "Error", "value": "auth failed", "short": True} in attachment["fields"]

    discord = render(alert, "discord", timestamp=clock())
    assert discord.body["embeds"][0]["color"] == 0xFF6B6B

    email = render(alert, "email", timestamp=clock())
    assert email.body == {}
    assert "Status: error" in email.text

    webhook = render(alert, "webhook", timestamp=clock())
    assert webhook.body["type"] == "connection_issue"
    assert webhook.body["details"]["connection_id"] == "conn-0001"
