from __future__ import annotations

import asyncio
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Callable

from chat_gateway.connections.client import AutomationClient, ClientFactory, EventSink
from chat_gateway.connections.state import EXTERNAL_COMMAND_STATES, check_transition, reconnect_delay
from chat_gateway.connections.store import ConnectionStore
from chat_gateway.core.errors import (
    AutomationClientError,
    ConcurrentUpdateError,
    ConnectionNotReady,
    CredentialExpired,
    IllegalTransition,
    NotFoundError,
    PermanentSendError,
    ValidationError,
)
from chat_gateway.core.models import (
    ClientEvent,
    ClientEventType,
    ConnectionCreateRequest,
    ConnectionHealth,
    ConnectionRecord,
    ConnectionRuntimeInfo,
    ConnectionServiceStats,
    ConnectionStatus,
    ConnectionStatusView,
    ConnectionUpdateRequest,
    CredentialView,
    MessagePayload,
    SendReceipt,
    StateChange,
)
from chat_gateway.delivery.recipients import E164_RE

if TYPE_CHECKING:
    from chat_gateway.alerts.service import AlertService

logger = logging.getLogger(__name__)

_MAX_WRITE_RETRIES = 3
MAX_RECONNECT_EXCEEDED = "max reconnection attempts exceeded"
RECONNECT_HISTORY = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Runtime:
    connection_id: str
    inbox: asyncio.Queue
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    client: AutomationClient | None = None
    actor: asyncio.Task | None = None
    init_task: asyncio.Task | None = None
    reconnect_task: asyncio.Task | None = None
    reconnect_attempts: int = 0
    last_reconnect_attempt: datetime | None = None
    is_connecting: bool = False
    scheduled_delays: deque[float] = field(default_factory=lambda: deque(maxlen=RECONNECT_HISTORY))


class ConnectionRegistry:
    """Owns connection records and the single automation client per connection.

    Each live connection runs as an actor: client events land in its inbox and are
    applied one at a time under the connection's lock, so lifecycle transitions for a
    connection never interleave. Reconnects are cancellable tasks kept on the runtime.
    """

    def __init__(
        self,
        store: ConnectionStore,
        client_factory: ClientFactory,
        *,
        alerts: AlertService | None = None,
        default_plan: str = "basic",
        credential_ttl_seconds: int = 300,
        heartbeat_stale_seconds: int = 300,
        reconnect_max_delay_seconds: float = 300.0,
        stale_reconnect_enabled: bool = True,
        restore_on_start: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.alerts = alerts
        self.default_plan = default_plan
        self.credential_ttl = timedelta(seconds=max(1, credential_ttl_seconds))
        self.heartbeat_stale = timedelta(seconds=max(1, heartbeat_stale_seconds))
        self.reconnect_max_delay_seconds = reconnect_max_delay_seconds
        self.stale_reconnect_enabled = stale_reconnect_enabled
        self.restore_on_start = restore_on_start
        self._clock = clock or _utcnow
        self._runtimes: dict[str, _Runtime] = {}
        self._subscribers: list[asyncio.Queue] = []

    # lifecycle

    async def start(self) -> None:
        if self.restore_on_start:
            restored = await self.restore_active()
            logger.info("connection registry started, restored %d connections", restored)

    async def shutdown(self) -> None:
        for connection_id in list(self._runtimes):
            try:
                await self._teardown(connection_id)
            except Exception:  # noqa: BLE001
                logger.exception("failed to tear down connection %s during shutdown", connection_id)
        logger.info("connection registry shut down")

    async def restore_active(self) -> int:
        restored = 0
        for record in self.store.list_all(active_only=True):
            if record.connection_id in self._runtimes:
                continue
            if record.status in {ConnectionStatus.CONNECTING, ConnectionStatus.AUTHENTICATING}:
                self._transition(record.connection_id, ConnectionStatus.DISCONNECTED, "process restarted")
                continue
            if record.status != ConnectionStatus.AUTHENTICATED:
                continue
            try:
                self._transition(record.connection_id, ConnectionStatus.DISCONNECTED, "restoring session")
                self._start_runtime(record.connection_id)
                restored += 1
            except Exception:  # noqa: BLE001
                logger.exception("failed to restore connection %s", record.connection_id)
        return restored

    # commands

    async def create(self, req: ConnectionCreateRequest) -> ConnectionRecord:
        if req.phone_number and not E164_RE.match(req.phone_number.replace(" ", "")):
            raise ValidationError("phone_number is not a valid international number")
        now = self._clock()
        record = ConnectionRecord(
            connection_id=req.connection_id,
            tenant_id=req.tenant_id,
            name=req.name or f"Connection {req.connection_id}",
            phone_number=req.phone_number,
            plan=(req.plan or self.default_plan).strip().lower(),
            settings=req.settings,
            last_heartbeat=now,
            created_at=now,
            updated_at=now,
        )
        self.store.create(record)
        if req.is_default or not any(c.is_default for c in self.store.list_by_tenant(req.tenant_id)):
            self.store.set_default(req.tenant_id, req.connection_id)
        try:
            self._start_runtime(req.connection_id)
        except Exception as exc:
            self._transition(req.connection_id, ConnectionStatus.ERROR, f"client creation failed: {exc}")
            raise AutomationClientError(f"cannot create automation client: {exc}") from exc
        logger.info("connection created: %s (tenant %s)", req.connection_id, req.tenant_id)
        return self.store.require(req.connection_id)

    def list(self, tenant_id: str, include_inactive: bool = False, limit: int = 100) -> list[ConnectionRecord]:
        return self.store.list_by_tenant(tenant_id, include_inactive=include_inactive, limit=limit)

    def get(self, connection_id: str) -> ConnectionRecord:
        return self.store.require(connection_id)

    def update(self, connection_id: str, req: ConnectionUpdateRequest) -> ConnectionRecord:
        if req.phone_number and not E164_RE.match(req.phone_number.replace(" ", "")):
            raise ValidationError("phone_number is not a valid international number")
        changes = req.model_dump(exclude_none=True, exclude={"settings"})
        if "plan" in changes:
            changes["plan"] = str(changes["plan"]).strip().lower()
        if req.settings is not None:
            changes["settings"] = req.settings
        _, after = self._mutate(connection_id, lambda rec: rec.model_copy(update=changes))
        return after

    async def disconnect(self, connection_id: str, reason: str = "manual disconnect") -> ConnectionRecord:
        self.store.require(connection_id)
        await self._teardown(connection_id)
        record = self._transition(connection_id, ConnectionStatus.DISCONNECTED, reason)
        logger.info("connection disconnected: %s", connection_id)
        return record

    async def delete(self, connection_id: str) -> None:
        await self.disconnect(connection_id, reason="deleted")
        self.store.delete(connection_id)
        logger.info("connection deleted: %s", connection_id)

    async def reconnect(self, connection_id: str) -> ConnectionRecord:
        record = self.store.require(connection_id)
        if not record.is_active:
            raise NotFoundError(f"connection '{connection_id}' not found", connection_id=connection_id)
        check_transition(record.status, ConnectionStatus.CONNECTING)
        await self._teardown(connection_id)
        self._start_runtime(connection_id)
        return self.store.require(connection_id)

    async def set_status(self, connection_id: str, status: ConnectionStatus, reason: str | None = None) -> ConnectionRecord:
        if status not in EXTERNAL_COMMAND_STATES:
            raise ValidationError(f"status '{status.value}' cannot be set by command")
        record = self.store.require(connection_id)
        if record.status not in {ConnectionStatus.AUTHENTICATED, ConnectionStatus.CONNECTING}:
            raise IllegalTransition(
                f"illegal status transition {record.status.value} -> {status.value}",
                current=record.status.value,
                target=status.value,
            )
        runtime = self._runtimes.get(connection_id)
        if runtime is not None:
            async with runtime.lock:
                self._cancel_reconnect(runtime)
                return self._transition(connection_id, status, reason)
        return self._transition(connection_id, status, reason)

    def set_default(self, tenant_id: str, connection_id: str) -> ConnectionRecord:
        record = self.store.require(connection_id)
        if record.tenant_id != tenant_id:
            raise NotFoundError(f"connection '{connection_id}' not found", connection_id=connection_id)
        self.store.set_default(tenant_id, connection_id)
        return self.store.require(connection_id)

    async def send(self, connection_id: str, recipient: str, payload: MessagePayload) -> SendReceipt:
        """Send through the connection's client; client exceptions reach the caller."""
        record = self.store.require(connection_id)
        if record.status == ConnectionStatus.BLOCKED:
            raise PermanentSendError(f"connection {connection_id} is blocked", blocked=True)
        runtime = self._runtimes.get(connection_id)
        if not record.can_send_messages or runtime is None or runtime.client is None:
            raise ConnectionNotReady(
                f"connection {connection_id} is not ready to send messages",
                status=record.status.value,
            )
        try:
            receipt = await runtime.client.send(recipient, payload)
        except Exception:
            self.increment_counter(connection_id, "failed")
            raise
        now = self._clock()
        self._mutate(
            connection_id,
            lambda rec: rec.model_copy(
                update={
                    "stats": rec.stats.model_copy(update={"messages_sent": rec.stats.messages_sent + 1}),
                    "last_message_sent": now,
                    "last_heartbeat": now,
                }
            ),
        )
        return receipt

    # queries

    def health_of(self, record: ConnectionRecord) -> ConnectionHealth:
        age: float | None = None
        healthy = False
        if record.last_heartbeat is not None:
            age = max(0.0, (self._clock() - record.last_heartbeat).total_seconds())
            healthy = age < self.heartbeat_stale.total_seconds()
        return ConnectionHealth(
            is_healthy=healthy,
            heartbeat_age_seconds=age,
            last_heartbeat=record.last_heartbeat,
            status=record.status,
            is_active=record.is_active,
            can_send_messages=record.can_send_messages,
        )

    def get_status(self, connection_id: str) -> ConnectionStatusView:
        record = self.store.require(connection_id)
        runtime = self._runtimes.get(connection_id)
        info = ConnectionRuntimeInfo()
        if runtime is not None:
            info = ConnectionRuntimeInfo(
                has_client=runtime.client is not None,
                reconnect_attempts=runtime.reconnect_attempts,
                last_reconnect_attempt=runtime.last_reconnect_attempt,
                reconnect_pending=runtime.reconnect_task is not None and not runtime.reconnect_task.done(),
                is_connecting=runtime.is_connecting,
            )
        return ConnectionStatusView(
            connection_id=record.connection_id,
            tenant_id=record.tenant_id,
            name=record.name,
            status=record.status,
            status_reason=record.status_reason,
            is_active=record.is_active,
            is_default=record.is_default,
            can_send_messages=record.can_send_messages,
            last_heartbeat=record.last_heartbeat,
            last_message_sent=record.last_message_sent,
            last_message_received=record.last_message_received,
            stats=record.stats,
            settings=record.settings,
            health=self.health_of(record),
            runtime=info,
        )

    def get_credential(self, connection_id: str) -> CredentialView:
        record = self.store.require(connection_id)
        if not record.credential_blob or record.credential_expires_at is None:
            raise NotFoundError(f"no credential challenge pending for {connection_id}", connection_id=connection_id)
        if record.credential_expires_at <= self._clock():
            raise CredentialExpired(f"credential for {connection_id} has expired", connection_id=connection_id)
        return CredentialView(
            connection_id=connection_id,
            credential=record.credential_blob,
            expires_at=record.credential_expires_at,
        )

    def clear_credential(self, connection_id: str) -> ConnectionRecord:
        _, after = self._mutate(
            connection_id,
            lambda rec: rec.model_copy(update={"credential_blob": None, "credential_expires_at": None}),
        )
        return after

    def increment_counter(self, connection_id: str, kind: str) -> ConnectionRecord:
        field_name = {
            "sent": "messages_sent",
            "received": "messages_received",
            "delivered": "messages_delivered",
            "failed": "messages_failed",
        }.get(kind)
        if field_name is None:
            raise ValidationError(f"unknown message counter: {kind}")
        now = self._clock()

        def _bump(rec: ConnectionRecord) -> ConnectionRecord:
            update: dict[str, object] = {
                "stats": rec.stats.model_copy(update={field_name: getattr(rec.stats, field_name) + 1})
            }
            if kind == "sent":
                update["last_message_sent"] = now
            elif kind == "received":
                update["last_message_received"] = now
            return rec.model_copy(update=update)

        _, after = self._mutate(connection_id, _bump)
        return after

    def service_stats(self) -> ConnectionServiceStats:
        records = self.store.list_all(active_only=True)
        return ConnectionServiceStats(
            total_connections=len(self.store.list_all()),
            active_connections=len(records),
            connected_connections=sum(1 for r in records if r.status == ConnectionStatus.AUTHENTICATED),
            error_connections=sum(1 for r in records if r.status == ConnectionStatus.ERROR),
            live_clients=sum(1 for r in self._runtimes.values() if r.client is not None),
            total_messages_sent=sum(r.stats.messages_sent for r in records),
            total_messages_received=sum(r.stats.messages_received for r in records),
            total_messages_delivered=sum(r.stats.messages_delivered for r in records),
            total_messages_failed=sum(r.stats.messages_failed for r in records),
            total_reconnects=sum(r.stats.reconnect_count for r in records),
            total_errors=sum(r.stats.error_count for r in records),
        )

    def reconnect_delays(self, connection_id: str) -> list[float]:
        runtime = self._runtimes.get(connection_id)
        return list(runtime.scheduled_delays) if runtime else []

    def has_client(self, connection_id: str) -> bool:
        runtime = self._runtimes.get(connection_id)
        return runtime is not None and runtime.client is not None

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with suppress(ValueError):
            self._subscribers.remove(queue)

    async def wait_idle(self, connection_id: str) -> None:
        """Wait until pending initialization and queued client events are processed."""
        runtime = self._runtimes.get(connection_id)
        if runtime is None:
            return
        if runtime.init_task is not None and not runtime.init_task.done():
            with suppress(asyncio.CancelledError):
                await asyncio.shield(runtime.init_task)
        await runtime.inbox.join()

    async def sweep_stale(self) -> list[str]:
        stale: list[str] = []
        for record in self.store.list_all(active_only=True, statuses=[ConnectionStatus.AUTHENTICATED]):
            health = self.health_of(record)
            if health.is_healthy:
                continue
            stale.append(record.connection_id)
            logger.warning(
                "stale connection %s, heartbeat age %.0fs",
                record.connection_id,
                health.heartbeat_age_seconds or -1,
            )
            await self._alert(record.connection_id, record.status, "heartbeat stale", {"heartbeat_age": health.heartbeat_age_seconds})
            runtime = self._runtimes.get(record.connection_id)
            if runtime is None or not record.settings.auto_reconnect or not self.stale_reconnect_enabled:
                continue
            async with runtime.lock:
                current = self._transition(record.connection_id, ConnectionStatus.DISCONNECTED, "heartbeat stale")
                await self._after_disconnect(runtime, current)
        return stale

    # internals

    def _make_sink(self, runtime: _Runtime) -> EventSink:
        loop = asyncio.get_running_loop()

        def emit(event: ClientEvent) -> None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                runtime.inbox.put_nowait(event)
            else:
                loop.call_soon_threadsafe(runtime.inbox.put_nowait, event)

        return emit

    def _start_runtime(self, connection_id: str) -> _Runtime:
        if connection_id in self._runtimes:
            raise ValidationError(f"connection {connection_id} already has a live client")
        runtime = _Runtime(connection_id=connection_id, inbox=asyncio.Queue())
        runtime.client = self.client_factory(connection_id, self._make_sink(runtime))
        self._runtimes[connection_id] = runtime
        runtime.actor = asyncio.create_task(self._run_actor(runtime), name=f"connection-actor-{connection_id}")
        runtime.is_connecting = True
        runtime.init_task = asyncio.create_task(self._initialize(runtime), name=f"connection-init-{connection_id}")
        return runtime

    async def _teardown(self, connection_id: str) -> None:
        runtime = self._runtimes.pop(connection_id, None)
        if runtime is None:
            return
        self._cancel_reconnect(runtime)
        for task in (runtime.reconnect_task, runtime.init_task, runtime.actor):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if runtime.client is not None:
            try:
                await runtime.client.destroy()
            except Exception:  # noqa: BLE001
                logger.exception("failed to destroy automation client for %s", connection_id)
            runtime.client = None

    def _cancel_reconnect(self, runtime: _Runtime) -> None:
        task = runtime.reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        runtime.is_connecting = False

    async def _run_actor(self, runtime: _Runtime) -> None:
        while True:
            event: ClientEvent = await runtime.inbox.get()
            try:
                async with runtime.lock:
                    await self._handle_event(runtime, event)
            except IllegalTransition as exc:
                logger.warning("ignored %s event for %s: %s", event.type.value, runtime.connection_id, exc)
            except Exception:  # noqa: BLE001
                logger.exception("failed to handle %s event for %s", event.type.value, runtime.connection_id)
            finally:
                runtime.inbox.task_done()

    async def _handle_event(self, runtime: _Runtime, event: ClientEvent) -> None:
        connection_id = runtime.connection_id
        now = self._clock()
        if event.type == ClientEventType.CREDENTIAL_CHALLENGE:
            credential = str(event.data.get("credential") or "")
            self._transition(
                connection_id,
                ConnectionStatus.AUTHENTICATING,
                "awaiting credential scan",
                credential_blob=credential,
                credential_expires_at=now + self.credential_ttl,
                last_heartbeat=now,
            )
            logger.info("credential challenge issued for %s", connection_id)
        elif event.type == ClientEventType.READY:
            self._transition(
                connection_id,
                ConnectionStatus.AUTHENTICATED,
                None,
                credential_blob=None,
                credential_expires_at=None,
                last_connected_at=now,
                last_heartbeat=now,
            )
            runtime.reconnect_attempts = 0
            runtime.last_reconnect_attempt = None
            runtime.is_connecting = False
            logger.info("connection ready: %s", connection_id)
        elif event.type == ClientEventType.AUTH_FAILURE:
            reason = f"authentication failed: {event.data.get('message', 'unknown')}"
            self._transition(connection_id, ConnectionStatus.ERROR, reason, last_heartbeat=now)
            logger.error("authentication failed for %s", connection_id)
            await self._alert(connection_id, ConnectionStatus.ERROR, reason)
        elif event.type == ClientEventType.DISCONNECTED:
            reason = f"disconnected: {event.data.get('reason', 'unknown')}"
            record = self._transition(connection_id, ConnectionStatus.DISCONNECTED, reason, last_heartbeat=now)
            logger.warning("connection %s disconnected (%s)", connection_id, reason)
            await self._after_disconnect(runtime, record)
        elif event.type == ClientEventType.MESSAGE_RECEIVED:
            self._mutate(
                connection_id,
                lambda rec: rec.model_copy(
                    update={
                        "stats": rec.stats.model_copy(update={"messages_received": rec.stats.messages_received + 1}),
                        "last_message_received": now,
                        "last_heartbeat": now,
                    }
                ),
            )
        elif event.type == ClientEventType.MESSAGE_ACK:
            delivered = str(event.data.get("ack", "")).lower() in {"delivered", "2"}

            def _ack(rec: ConnectionRecord) -> ConnectionRecord:
                stats = rec.stats
                if delivered:
                    stats = stats.model_copy(update={"messages_delivered": stats.messages_delivered + 1})
                return rec.model_copy(update={"stats": stats, "last_heartbeat": now})

            self._mutate(connection_id, _ack)

    async def _initialize(self, runtime: _Runtime) -> None:
        connection_id = runtime.connection_id
        async with runtime.lock:
            record = self.store.get(connection_id)
            if record is None or not record.is_active:
                return
            self._transition(connection_id, ConnectionStatus.CONNECTING, None)
        client = runtime.client
        if client is None:
            return
        try:
            await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("automation client initialization failed for %s: %s", connection_id, exc)
            async with runtime.lock:
                record = self._transition(
                    connection_id,
                    ConnectionStatus.DISCONNECTED,
                    f"initialization failed: {exc}",
                )
                await self._after_disconnect(runtime, record)

    async def _after_disconnect(self, runtime: _Runtime, record: ConnectionRecord) -> None:
        settings = record.settings
        if not settings.auto_reconnect or not record.is_active:
            runtime.is_connecting = False
            return
        if runtime.reconnect_attempts < settings.max_reconnect_attempts:
            self._schedule_reconnect(runtime, record)
            return
        runtime.is_connecting = False
        self._transition(record.connection_id, ConnectionStatus.ERROR, MAX_RECONNECT_EXCEEDED)
        logger.error("max reconnection attempts exceeded for %s", record.connection_id)
        await self._alert(
            record.connection_id,
            ConnectionStatus.ERROR,
            MAX_RECONNECT_EXCEEDED,
            {"attempts": runtime.reconnect_attempts},
        )

    def _schedule_reconnect(self, runtime: _Runtime, record: ConnectionRecord) -> float:
        runtime.reconnect_attempts += 1
        runtime.last_reconnect_attempt = self._clock()
        runtime.is_connecting = True
        delay = reconnect_delay(
            record.settings.reconnect_interval_seconds,
            runtime.reconnect_attempts,
            self.reconnect_max_delay_seconds,
        )
        self._cancel_reconnect(runtime)
        runtime.is_connecting = True
        runtime.scheduled_delays.append(delay)
        runtime.reconnect_task = asyncio.create_task(
            self._reconnect_after(runtime, delay),
            name=f"connection-reconnect-{runtime.connection_id}",
        )
        self._mutate(
            record.connection_id,
            lambda rec: rec.model_copy(
                update={"stats": rec.stats.model_copy(update={"reconnect_count": rec.stats.reconnect_count + 1})}
            ),
        )
        logger.info(
            "scheduled reconnect for %s: attempt %d/%d in %.1fs",
            record.connection_id,
            runtime.reconnect_attempts,
            record.settings.max_reconnect_attempts,
            delay,
        )
        return delay

    async def _reconnect_after(self, runtime: _Runtime, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._runtimes.get(runtime.connection_id) is not runtime:
            return
        await self._initialize(runtime)

    def _mutate(
        self,
        connection_id: str,
        change: Callable[[ConnectionRecord], ConnectionRecord],
    ) -> tuple[ConnectionRecord, ConnectionRecord]:
        for attempt in range(1, _MAX_WRITE_RETRIES + 1):
            before = self.store.require(connection_id)
            try:
                return before, self.store.save(change(before))
            except ConcurrentUpdateError:
                if attempt >= _MAX_WRITE_RETRIES:
                    raise
                logger.debug("retrying concurrent update of %s (attempt %d)", connection_id, attempt)
        raise AssertionError("unreachable")

    def _transition(
        self,
        connection_id: str,
        target: ConnectionStatus,
        reason: str | None,
        **changes: object,
    ) -> ConnectionRecord:
        now = self._clock()

        def _apply(rec: ConnectionRecord) -> ConnectionRecord:
            check_transition(rec.status, target)
            update: dict[str, object] = dict(changes)
            update["status"] = target
            update["status_reason"] = reason
            stats = rec.stats
            leaving_live = rec.status == ConnectionStatus.AUTHENTICATED and target != ConnectionStatus.AUTHENTICATED
            if leaving_live and rec.last_connected_at is not None:
                elapsed = max(0.0, (now - rec.last_connected_at).total_seconds())
                stats = stats.model_copy(update={"uptime_seconds": stats.uptime_seconds + elapsed})
            if target == ConnectionStatus.ERROR and rec.status != ConnectionStatus.ERROR:
                stats = stats.model_copy(update={"error_count": stats.error_count + 1})
            update["stats"] = stats
            return rec.model_copy(update=update)

        before, after = self._mutate(connection_id, _apply)
        if before.status != after.status:
            logger.info(
                "connection %s status %s -> %s%s",
                connection_id,
                before.status.value,
                after.status.value,
                f" ({reason})" if reason else "",
            )
            change = StateChange(
                connection_id=connection_id,
                tenant_id=after.tenant_id,
                old_status=before.status,
                new_status=after.status,
                reason=reason,
                changed_at=now,
            )
            for queue in self._subscribers:
                queue.put_nowait(change)
        return after

    async def _alert(
        self,
        connection_id: str,
        status: ConnectionStatus,
        error: str,
        details: dict | None = None,
    ) -> None:
        if self.alerts is None:
            return
        try:
            await self.alerts.send_connection_alert(connection_id, status.value, error, details or {})
        except Exception:  # noqa: BLE001
            logger.exception("failed to dispatch connection alert for %s", connection_id)
