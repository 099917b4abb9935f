from __future__ import annotations

import asyncio
import logging

from chat_gateway.alerts.service import AlertService
from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.delivery.rate_limiter import RateLimiter
from chat_gateway.health.monitor import HealthMonitor

logger = logging.getLogger(__name__)


class HealthProbeWorker:
    def __init__(
        self,
        monitor: HealthMonitor,
        registry: ConnectionRegistry,
        rate_limiter: RateLimiter,
        alerts: AlertService,
        *,
        interval_seconds: int = 60,
    ) -> None:
        self.monitor = monitor
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.alerts = alerts
        self.interval_seconds = max(5, interval_seconds)
        self._running = False

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    async def stop(self) -> None:
        self._running = False

    async def run_once(self) -> None:
        try:
            snapshot = await self.monitor.run()
            logger.debug("health probe: %s in %.1fms", snapshot.overall.value, snapshot.response_time_ms)
        except Exception:  # noqa: BLE001
            logger.exception("health probe failed")
        try:
            stale = await self.registry.sweep_stale()
            if stale:
                logger.warning("stale connections: %s", ", ".join(stale))
        except Exception:  # noqa: BLE001
            logger.exception("stale connection sweep failed")
        try:
            self.rate_limiter.cleanup()
            self.alerts.prune()
        except Exception:  # noqa: BLE001
            logger.exception("periodic cleanup failed")
