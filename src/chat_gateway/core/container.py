from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime
import logging
from typing import Callable

from chat_gateway.alerts.channels import NotificationDispatcher, RealAlertDispatcher
from chat_gateway.alerts.service import AlertService
from chat_gateway.alerts.store import AlertStore
from chat_gateway.connections.client import ClientFactory, build_client_factory
from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.connections.store import ConnectionStore
from chat_gateway.core.config import Settings
from chat_gateway.delivery.job_store import JobStore
from chat_gateway.delivery.queue import DeliveryQueue
from chat_gateway.delivery.rate_limiter import RateLimiter
from chat_gateway.delivery.retry import RetryPolicy
from chat_gateway.delivery.worker import DeliveryWorker
from chat_gateway.health.monitor import HealthMonitor
from chat_gateway.health.probe_worker import HealthProbeWorker

logger = logging.getLogger(__name__)


class GatewayContainer:
    """Builds every service from one ``Settings`` and owns their lifecycle.

    Consumers receive the container (or a service taken from it) explicitly; nothing
    here is cached at module level.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
        memory_percent: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.connection_store = ConnectionStore(settings.connection_db_path)
        self.job_store = JobStore(settings.job_db_path)
        self.alert_store = AlertStore(settings.alert_db_path)

        self.alerts = AlertService(
            store=self.alert_store,
            dispatcher=dispatcher or RealAlertDispatcher(settings),
            default_channels=settings.default_channel_list,
            retention_days=settings.alert_retention_days,
            app_name=settings.app_name,
            clock=clock,
        )
        self.registry = ConnectionRegistry(
            self.connection_store,
            client_factory or build_client_factory(settings.automation_client),
            alerts=self.alerts,
            default_plan=settings.rate_limit_default_plan,
            credential_ttl_seconds=settings.credential_ttl_seconds,
            heartbeat_stale_seconds=settings.heartbeat_stale_seconds,
            reconnect_max_delay_seconds=settings.reconnect_max_delay_seconds,
            stale_reconnect_enabled=settings.stale_reconnect_enabled,
            restore_on_start=settings.restore_connections_on_start,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            settings.plan_daily_limits,
            default_plan=settings.rate_limit_default_plan,
            window_seconds=settings.rate_limit_window_seconds,
            warning_ratio=settings.rate_limit_warning_ratio,
            jitter_seconds=settings.retry_jitter_seconds,
            alerts=self.alerts,
            clock=clock,
        )
        self.queue = DeliveryQueue(
            self.job_store,
            self.registry,
            self.rate_limiter,
            base_delay_seconds=settings.message_base_delay_seconds,
            default_country_code=settings.default_country_code,
            clock=clock,
        )
        self.worker = DeliveryWorker(
            self.queue,
            self.registry,
            self.rate_limiter,
            RetryPolicy(settings.retry_delay_table, jitter=self.rate_limiter.jitter),
            alerts=self.alerts,
            concurrency=settings.queue_concurrency,
            poll_seconds=settings.queue_poll_seconds,
            clock=clock,
        )
        self.monitor = HealthMonitor(
            stores={
                "connections": self.connection_store,
                "jobs": self.job_store,
                "alerts": self.alert_store,
            },
            job_store=self.job_store,
            registry=self.registry,
            alerts=self.alerts,
            storage_threshold_ms=settings.health_storage_threshold_ms,
            queue_latency_threshold_ms=settings.health_queue_latency_threshold_ms,
            connection_score_threshold=settings.health_connection_score_threshold,
            memory_threshold_percent=settings.health_memory_threshold_percent,
            history_size=settings.health_history_size,
            memory_percent=memory_percent,
            clock=clock,
        )
        self.probe_worker = HealthProbeWorker(
            self.monitor,
            self.registry,
            self.rate_limiter,
            self.alerts,
            interval_seconds=settings.health_check_interval_seconds,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self, *, background: bool = True) -> None:
        await self.registry.start()
        if not background:
            return
        self._tasks.append(asyncio.create_task(self.worker.run_forever(), name="delivery-worker"))
        if self.settings.health_probe_enabled:
            self._tasks.append(asyncio.create_task(self.probe_worker.run_forever(), name="health-probe"))
        logger.info("gateway started (%d background tasks)", len(self._tasks))

    async def shutdown(self) -> None:
        await self.probe_worker.stop()
        await self.worker.stop()
        for task in self._tasks:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        await self.registry.shutdown()
        logger.info("gateway stopped")
