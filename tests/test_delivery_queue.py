from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.connections.store import ConnectionStore
from chat_gateway.core.errors import (
    ConnectionNotReady,
    InvalidRecipients,
    NotFoundError,
    PermanentSendError,
    QueuePaused,
    RateLimitExceeded,
    TransientSendError,
)
from chat_gateway.core.models import (
    BulkEnqueueRequest,
    BulkMessageItem,
    ClientEvent,
    ClientEventType,
    ConnectionCreateRequest,
    ConnectionSettings,
    EnqueueRequest,
    JobPriority,
    JobState,
    MessagePayload,
    RecipientState,
    SendReceipt,
)
from chat_gateway.delivery.job_store import JobStore
from chat_gateway.delivery.queue import DeliveryQueue, priority_delay
from chat_gateway.delivery.rate_limiter import RateLimiter
from chat_gateway.delivery.recipients import normalize_recipient, split_recipients
from chat_gateway.delivery.retry import FailureKind, RetryPolicy, classify
from chat_gateway.delivery.worker import DeliveryWorker

CID = "conn-0001"
R1 = "+972501111111"
R2 = "+972502222222"
R3 = "+972503333333"


class ScriptedClient:
    """Answers each send with the next scripted outcome; None means delivered."""

    def __init__(self, connection_id, emit, script, default_error) -> None:
        self.connection_id = connection_id
        self.emit = emit
        self.script = script
        self.default_error = default_error
        self.calls: list[str] = []

    async def initialize(self) -> None:
        self.emit(ClientEvent(type=ClientEventType.READY))

    async def send(self, recipient, payload):
        self.calls.append(recipient)
        outcome = self.script.pop(0) if self.script else self.default_error
        if outcome is not None:
            raise outcome
        return SendReceipt(
            message_id=f"m-{len(self.calls)}",
            recipient=recipient,
            connection_id=self.connection_id,
            timestamp=datetime.now(timezone.utc),
        )

    async def destroy(self) -> None:
        return None


class FakeAlerts:
    def __init__(self) -> None:
        self.queue_alerts: list[tuple[str, str, str]] = []

    async def send_queue_alert(self, connection_id, job_id, state, error):
        self.queue_alerts.append((connection_id, job_id, state))

    async def send_rate_limit_alert(self, connection_id, count, capacity, plan):
        return None

    async def send_connection_alert(self, connection_id, status, error, details=None):
        return None


@dataclass
class _Stack:
    registry: ConnectionRegistry
    limiter: RateLimiter
    queue: DeliveryQueue
    worker: DeliveryWorker
    alerts: FakeAlerts
    clients: dict = field(default_factory=dict)
    sleeps: list = field(default_factory=list)

    @property
    def client(self) -> ScriptedClient:
        return self.clients[CID]


async def _stack(tmp_path: Path, clock, *, script=(), default_error=None, daily_cap: int = 1000) -> _Stack:
    clients: dict[str, ScriptedClient] = {}
    sleeps: list[float] = []

    def factory(connection_id, emit):
        clients[connection_id] = ScriptedClient(connection_id, emit, list(script), default_error)
        return clients[connection_id]

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    alerts = FakeAlerts()
    registry = ConnectionRegistry(
        ConnectionStore(str(tmp_path / "connections.db")),
        factory,
        alerts=alerts,
        restore_on_start=False,
        clock=clock,
    )
    limiter = RateLimiter({"basic": daily_cap}, jitter_seconds=0.0, clock=clock)
    queue = DeliveryQueue(JobStore(str(tmp_path / "jobs.db")), registry, limiter, base_delay_seconds=1.0, clock=clock)
    worker = DeliveryWorker(
        queue,
        registry,
        limiter,
        RetryPolicy([0.0, 0.0, 0.0]),
        alerts=alerts,
        clock=clock,
        sleep=fake_sleep,
    )
    await registry.create(
        ConnectionCreateRequest(
            tenant_id="tenant-a",
            connection_id=CID,
            settings=ConnectionSettings(message_retry_attempts=3),
        )
    )
    await registry.wait_idle(CID)
    return _Stack(registry, limiter, queue, worker, alerts, clients, sleeps)


def _request(*recipients: str, priority: JobPriority = JobPriority.NORMAL, connection_id: str = CID) -> EnqueueRequest:
    return EnqueueRequest(
        connection_id=connection_id,
        payload=MessagePayload(text="Shipment update"),
        recipients=list(recipients),
        priority=priority,
    )


async def _add_connection(stack: _Stack, connection_id: str) -> None:
    await stack.registry.create(
        ConnectionCreateRequest(
            tenant_id="tenant-a",
            connection_id=connection_id,
            settings=ConnectionSettings(message_retry_attempts=3),
        )
    )
    await stack.registry.wait_idle(connection_id)


async def _drain(worker: DeliveryWorker, rounds: int = 10) -> None:
    for _ in range(rounds):
        started = await worker.run_once()
        await worker.wait_idle()
        if not started:
            return


def test_estimate_for_empty_queue_is_now(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        first = stack.queue.enqueue(_request(R1, R2))
        assert first.estimated_send_time == clock.now
        assert first.accepted_recipients == [R1, R2]

        second = stack.queue.enqueue(_request(R3))
        assert second.estimated_send_time == clock.now + timedelta(seconds=2)
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_paused_queue_rejects_until_resumed(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        status = stack.queue.pause(CID)
        assert status.is_paused is True
        with pytest.raises(QueuePaused):
            stack.queue.enqueue(_request(R1))

        stack.queue.resume(CID)
        result = stack.queue.enqueue(_request(R1))
        assert stack.queue.get_job(result.job_id).state == JobState.QUEUED
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_worker_skips_paused_connections(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        result = stack.queue.enqueue(_request(R1))
        stack.queue.pause(CID)
        assert await stack.worker.run_once() == 0
        stack.queue.resume(CID)
        await _drain(stack.worker)
        assert stack.queue.get_job(result.job_id).state == JobState.COMPLETED
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_backlog_on_paused_connection_does_not_hold_up_others(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        for _ in range(120):
            stack.queue.enqueue(_request(R1))
        stack.queue.pause(CID)

        await _add_connection(stack, "conn-0002")
        other = stack.queue.enqueue(_request(R2, connection_id="conn-0002"))

        assert await stack.worker.run_once() == 1
        await stack.worker.wait_idle()
        assert stack.queue.get_job(other.job_id).state == JobState.COMPLETED
        assert stack.queue.status(CID).waiting == 120
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_busy_connection_backlog_does_not_hold_up_others(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        await _add_connection(stack, "conn-0002")
        for _ in range(120):
            stack.queue.enqueue(_request(R1))
        other = stack.queue.enqueue(_request(R2, connection_id="conn-0002"))

        claimed = stack.queue.store.claim_due(clock(), 5, exclude_connections={CID})
        assert [job.job_id for job in claimed] == [other.job_id]
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_clear_failed_only_touches_that_connection(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, default_error=TransientSendError("gateway timeout"))
        await _add_connection(stack, "conn-0002")
        mine = stack.queue.enqueue(_request(R1))
        theirs = stack.queue.enqueue(_request(R2, connection_id="conn-0002"))
        await _drain(stack.worker)
        assert stack.queue.get_job(mine.job_id).state == JobState.FAILED
        assert stack.queue.get_job(theirs.job_id).state == JobState.FAILED

        assert stack.queue.clear_failed(CID) == 1
        assert stack.queue.status(CID).failed == 0
        assert stack.queue.status("conn-0002").failed == 1
        assert stack.queue.get_job(theirs.job_id).state == JobState.FAILED
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_status_of_unknown_connection_is_not_found(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        for call in (stack.queue.status, stack.queue.pause, stack.queue.resume):
            with pytest.raises(NotFoundError):
                call("conn-missing")
        assert "conn-missing" not in stack.limiter._windows
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_transient_failures_exhaust_after_max_attempts(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, default_error=TransientSendError("gateway timeout"))
        result = stack.queue.enqueue(_request(R1))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.FAILED
        assert job.attempts == 3
        assert "after 3 attempts" in (job.last_error or "")
        assert job.deliveries[0].state == RecipientState.FAILED
        assert stack.client.calls == [R1, R1, R1]
        assert stack.alerts.queue_alerts == [(CID, result.job_id, "failed")]
        assert stack.registry.get(CID).stats.messages_failed == 3

        assert await stack.worker.run_once() == 0
        assert stack.queue.clear_failed(CID) == 1
        assert stack.queue.status(CID).failed == 0
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_retry_resends_only_pending_recipients(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, script=[None, TransientSendError("socket reset"), None])
        result = stack.queue.enqueue(_request(R1, R2))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts == 2
        assert stack.client.calls == [R1, R2, R2]
        assert [d.state for d in job.deliveries] == [RecipientState.DELIVERED, RecipientState.DELIVERED]
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_invalid_recipient_fails_only_that_recipient(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, script=[None, PermanentSendError("not on network"), None])
        result = stack.queue.enqueue(_request(R1, R2, R3))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1
        assert [d.state for d in job.deliveries] == [
            RecipientState.DELIVERED,
            RecipientState.FAILED,
            RecipientState.DELIVERED,
        ]
        assert job.deliveries[1].error == "not on network"
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_blocked_account_moves_job_to_blocked(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, script=[PermanentSendError("account banned", blocked=True)])
        result = stack.queue.enqueue(_request(R1, R2))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.BLOCKED
        assert job.attempts == 1
        assert all(d.state == RecipientState.FAILED for d in job.deliveries)
        assert stack.client.calls == [R1]
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_connection_not_ready_fails_without_retry(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        await stack.registry.disconnect(CID)
        result = stack.queue.enqueue(_request(R1))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.FAILED
        assert job.attempts == 1
        assert "ConnectionNotReady" in (job.last_error or "")

    asyncio.run(_run())


def test_rate_limit_stops_job_mid_way(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock, daily_cap=1)
        result = stack.queue.enqueue(_request(R1, R2))
        await _drain(stack.worker)

        job = stack.queue.get_job(result.job_id)
        assert job.state == JobState.FAILED
        assert [d.state for d in job.deliveries] == [RecipientState.DELIVERED, RecipientState.FAILED]
        assert "RateLimitExceeded" in (job.last_error or "")
        assert stack.client.calls == [R1]
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_priority_sets_pause_between_recipients(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        stack.queue.enqueue(_request(R1, R2, R3, priority=JobPriority.HIGH))
        await _drain(stack.worker)
        assert stack.sleeps == [0.5, 0.5]

        stack.sleeps.clear()
        stack.queue.enqueue(_request(R1, R2, R3, priority=JobPriority.LOW))
        await _drain(stack.worker)
        assert stack.sleeps == [2.0, 2.0]
        await stack.registry.shutdown()

    asyncio.run(_run())
    assert priority_delay(JobPriority.HIGH) < priority_delay(JobPriority.NORMAL) < priority_delay(JobPriority.LOW)


def test_one_job_per_connection_runs_at_a_time(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        first = stack.queue.enqueue(_request(R1))
        second = stack.queue.enqueue(_request(R2))
        assert await stack.worker.run_once() == 1
        assert await stack.worker.run_once() == 0
        assert stack.worker.running_jobs == 1
        await stack.worker.wait_idle()

        assert await stack.worker.run_once() == 1
        await stack.worker.wait_idle()
        assert stack.queue.get_job(first.job_id).state == JobState.COMPLETED
        assert stack.queue.get_job(second.job_id).state == JobState.COMPLETED
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_enqueue_validates_recipients_and_connection(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        with pytest.raises(InvalidRecipients):
            stack.queue.enqueue(_request("hello", "abc"))

        result = stack.queue.enqueue(_request("hello", "050-111-1111", "+972501111111"))
        assert result.accepted_recipients == [R1]
        assert result.rejected_recipients == ["hello"]

        with pytest.raises(NotFoundError):
            stack.queue.enqueue(
                EnqueueRequest(connection_id="conn-missing", payload=MessagePayload(text="x"), recipients=[R1])
            )
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_bulk_enqueue_is_all_or_nothing(tmp_path: Path, clock) -> None:
    async def _run() -> None:
        stack = await _stack(tmp_path, clock)
        bad = BulkEnqueueRequest(
            connection_id=CID,
            messages=[
                BulkMessageItem(payload=MessagePayload(text="a"), recipients=[R1]),
                BulkMessageItem(payload=MessagePayload(text="b"), recipients=["nope"]),
            ],
        )
        with pytest.raises(InvalidRecipients):
            stack.queue.enqueue_bulk(bad)
        assert stack.queue.status(CID).waiting == 0

        good = BulkEnqueueRequest(
            connection_id=CID,
            messages=[
                BulkMessageItem(payload=MessagePayload(text="a"), recipients=[R1]),
                BulkMessageItem(payload=MessagePayload(text="b"), recipients=[R2], priority=JobPriority.HIGH),
            ],
        )
        results = stack.queue.enqueue_bulk(good)
        assert [r.priority for r in results] == [JobPriority.NORMAL, JobPriority.HIGH]
        assert stack.queue.status(CID).waiting == 2
        await stack.registry.shutdown()

    asyncio.run(_run())


def test_normalize_recipient() -> None:
    assert normalize_recipient("050-123-4567") == "+972501234567"
    assert normalize_recipient("501234567") == "+972501234567"
    assert normalize_recipient("972501234567") == "+972501234567"
    assert normalize_recipient("+1 (415) 555-2671") == "+14155552671"
    assert normalize_recipient("0501234567", default_country_code="44") == "+44501234567"
    assert normalize_recipient("12036304@G.US") == "12036304@g.us"
    assert normalize_recipient("hello") is None
    assert normalize_recipient("   ") is None
    assert normalize_recipient("bob@example.com") is None

    accepted, rejected = split_recipients(["0501234567", "+972501234567", "x"])
    assert accepted == ["+972501234567"]
    assert rejected == ["x"]


def test_failure_classification_and_retry_delays() -> None:
    assert classify(TransientSendError("timeout")) == FailureKind.TRANSIENT
    assert classify(TimeoutError()) == FailureKind.TRANSIENT
    assert classify(PermanentSendError("bad number")) == FailureKind.RECIPIENT
    assert classify(PermanentSendError("banned", blocked=True)) == FailureKind.BLOCKED
    assert classify(RateLimitExceeded("cap")) == FailureKind.CONNECTION
    assert classify(ConnectionNotReady("down")) == FailureKind.CONNECTION

    policy = RetryPolicy([5.0, 15.0, 30.0])
    assert [policy.base_delay(n) for n in (1, 2, 3, 7)] == [5.0, 15.0, 30.0, 30.0]
    assert RetryPolicy.should_retry(FailureKind.TRANSIENT, 2, 3) is True
    assert RetryPolicy.should_retry(FailureKind.TRANSIENT, 3, 3) is False
    assert RetryPolicy.should_retry(FailureKind.RECIPIENT, 1, 3) is False

    jittered = RetryPolicy([5.0], jitter=lambda d: d + 1.5)
    assert jittered.delay(1) == 6.5
