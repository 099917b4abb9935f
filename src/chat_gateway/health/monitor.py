from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
import logging
import os
import time
from typing import TYPE_CHECKING, Awaitable, Callable

import numpy as np
import psutil

from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.core.errors import NotFoundError
from chat_gateway.core.models import (
    CheckResult,
    ConnectionStatus,
    DetailedHealthReport,
    HealthDashboard,
    HealthSnapshot,
    HealthStatus,
    JobState,
    PerformanceMetrics,
)
from chat_gateway.core.sqlite import SQLiteStore
from chat_gateway.delivery.job_store import JobStore

if TYPE_CHECKING:
    from chat_gateway.alerts.service import AlertService

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[CheckResult]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _process_memory_percent() -> float:
    return float(psutil.Process(os.getpid()).memory_percent())


class HealthMonitor:
    """Aggregate probe over storage, queue, connection fleet and process resources.

    Overall status is unhealthy exactly when one sub-check is unhealthy. A run started
    while another is in flight awaits the in-flight result instead of probing again.
    """

    def __init__(
        self,
        *,
        stores: dict[str, SQLiteStore],
        job_store: JobStore,
        registry: ConnectionRegistry,
        alerts: AlertService | None = None,
        storage_threshold_ms: float = 1000.0,
        queue_latency_threshold_ms: float = 60000.0,
        connection_score_threshold: float = 0.7,
        memory_threshold_percent: float = 90.0,
        history_size: int = 100,
        memory_percent: Callable[[], float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.stores = stores
        self.job_store = job_store
        self.registry = registry
        self.alerts = alerts
        self.storage_threshold_ms = storage_threshold_ms
        self.queue_latency_threshold_ms = queue_latency_threshold_ms
        self.connection_score_threshold = connection_score_threshold
        self.memory_threshold_percent = memory_threshold_percent
        self._memory_percent = memory_percent or _process_memory_percent
        self._clock = clock or _utcnow
        self._history: deque[HealthSnapshot] = deque(maxlen=max(1, history_size))
        self._in_flight: asyncio.Task | None = None
        self.total_checks = 0
        self.failed_checks = 0
        self.started_at = self._clock()
        self.checks: dict[str, HealthCheck] = {
            "storage": self.check_storage,
            "queue": self.check_queue,
            "connections": self.check_connections,
            "system": self.check_system,
        }

    async def run(self) -> HealthSnapshot:
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.ensure_future(self._run_all())
        return await asyncio.shield(self._in_flight)

    async def run_check(self, name: str) -> CheckResult:
        check = self.checks.get(name)
        if check is None:
            raise NotFoundError(f"unknown health check '{name}'", check=name)
        return await self._timed(name, check)

    def history(self, limit: int | None = None) -> list[HealthSnapshot]:
        items = list(self._history)
        if limit is not None:
            items = items[-max(1, limit):]
        return items

    @property
    def last_snapshot(self) -> HealthSnapshot | None:
        return self._history[-1] if self._history else None

    def performance(self) -> PerformanceMetrics:
        times = np.array([s.response_time_ms for s in self._history], dtype=float)
        uptime = max(0.0, (self._clock() - self.started_at).total_seconds())
        success = 1.0 - (self.failed_checks / self.total_checks) if self.total_checks else 1.0
        if times.size == 0:
            return PerformanceMetrics(
                uptime_seconds=uptime,
                success_rate=success,
                total_checks=self.total_checks,
                failed_checks=self.failed_checks,
            )
        return PerformanceMetrics(
            sample_size=int(times.size),
            avg_response_time_ms=float(np.mean(times)),
            p95_response_time_ms=float(np.percentile(times, 95)),
            p99_response_time_ms=float(np.percentile(times, 99)),
            success_rate=success,
            uptime_seconds=uptime,
            total_checks=self.total_checks,
            failed_checks=self.failed_checks,
        )

    async def detailed(self) -> DetailedHealthReport:
        snapshot = await self.run()
        counts = self.job_store.count_by_state()
        finished = counts[JobState.COMPLETED.value] + counts[JobState.FAILED.value] + counts[JobState.BLOCKED.value]
        failed = counts[JobState.FAILED.value] + counts[JobState.BLOCKED.value]
        return DetailedHealthReport(
            snapshot=snapshot,
            performance=self.performance(),
            connections={
                "by_status": self.registry.store.count_by_status(),
                "top_tenants": self.registry.store.top_tenants(),
                "service": self.registry.service_stats().model_dump(),
            },
            queue={
                "counts": counts,
                "load": counts[JobState.QUEUED.value] + counts[JobState.ACTIVE.value],
                "error_rate": (failed / finished) if finished else 0.0,
            },
            system=snapshot.checks["system"].details if "system" in snapshot.checks else {},
        )

    async def dashboard(self) -> HealthDashboard:
        snapshot = self.last_snapshot or await self.run()
        stats = self.registry.service_stats()
        counts = self.job_store.count_by_state()
        finished = counts[JobState.COMPLETED.value] + counts[JobState.FAILED.value]
        return HealthDashboard(
            health=snapshot.overall,
            connections={
                "total": stats.total_connections,
                "active": stats.active_connections,
                "connected": stats.connected_connections,
                "errors": stats.error_connections,
            },
            queue={
                "waiting": float(counts[JobState.QUEUED.value]),
                "active": float(counts[JobState.ACTIVE.value]),
                "completed": float(counts[JobState.COMPLETED.value]),
                "failed": float(counts[JobState.FAILED.value]),
                "error_rate": (counts[JobState.FAILED.value] / finished) if finished else 0.0,
            },
            system={
                "memory_percent": round(self._memory_percent(), 2),
                "uptime_seconds": round((self._clock() - self.started_at).total_seconds(), 1),
            },
            last_updated=snapshot.timestamp,
        )

    # sub-checks

    async def check_storage(self) -> CheckResult:
        latencies: dict[str, float] = {}
        for name, store in self.stores.items():
            latencies[name] = round(store.ping(), 3)
        worst = max(latencies.values(), default=0.0)
        if worst > self.storage_threshold_ms:
            status = HealthStatus.UNHEALTHY
        elif worst > self.storage_threshold_ms / 2:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        return CheckResult(
            name="storage",
            status=status,
            details={"latency_ms": latencies, "threshold_ms": self.storage_threshold_ms},
        )

    async def check_queue(self) -> CheckResult:
        ages = self.job_store.open_job_ages_ms(self._clock())
        average = float(np.mean(ages)) if ages else 0.0
        status = HealthStatus.UNHEALTHY if average > self.queue_latency_threshold_ms else HealthStatus.HEALTHY
        return CheckResult(
            name="queue",
            status=status,
            details={
                "open_jobs": len(ages),
                "avg_latency_ms": round(average, 1),
                "threshold_ms": self.queue_latency_threshold_ms,
            },
        )

    async def check_connections(self) -> CheckResult:
        records = self.registry.store.list_all(active_only=True)
        active = len(records)
        connected = sum(1 for r in records if r.status == ConnectionStatus.AUTHENTICATED)
        errors = sum(1 for r in records if r.status == ConnectionStatus.ERROR)
        score = (connected / active) * (1 - errors / active) if active else 0.0
        unhealthy = active > 0 and score < self.connection_score_threshold
        return CheckResult(
            name="connections",
            status=HealthStatus.UNHEALTHY if unhealthy else HealthStatus.HEALTHY,
            details={
                "active": active,
                "connected": connected,
                "errors": errors,
                "health_score": round(score, 4),
                "threshold": self.connection_score_threshold,
            },
        )

    async def check_system(self) -> CheckResult:
        usage = self._memory_percent()
        details: dict[str, object] = {
            "memory_percent": round(usage, 2),
            "threshold_percent": self.memory_threshold_percent,
        }
        try:
            process = psutil.Process(os.getpid())
            details["rss_mb"] = round(process.memory_info().rss / (1024 * 1024), 1)
            details["threads"] = process.num_threads()
            details["system_memory_percent"] = psutil.virtual_memory().percent
        except psutil.Error as exc:
            details["process_error"] = str(exc)
        return CheckResult(
            name="system",
            status=HealthStatus.UNHEALTHY if usage > self.memory_threshold_percent else HealthStatus.HEALTHY,
            details=details,
        )

    # internals

    async def _timed(self, name: str, check: HealthCheck) -> CheckResult:
        started = time.perf_counter()
        try:
            result = await check()
        except Exception as exc:  # noqa: BLE001
            logger.error("health check %s failed: %s", name, exc)
            result = CheckResult(name=name, status=HealthStatus.UNHEALTHY, error=str(exc))
        elapsed = (time.perf_counter() - started) * 1000.0
        return result.model_copy(update={"name": name, "response_time_ms": round(elapsed, 3)})

    async def _run_all(self) -> HealthSnapshot:
        started = time.perf_counter()
        names = list(self.checks)
        results = await asyncio.gather(*(self._timed(name, self.checks[name]) for name in names))
        checks = dict(zip(names, results))
        failing = [name for name, result in checks.items() if result.status == HealthStatus.UNHEALTHY]
        snapshot = HealthSnapshot(
            timestamp=self._clock(),
            overall=HealthStatus.UNHEALTHY if failing else HealthStatus.HEALTHY,
            checks=checks,
            response_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        self._history.append(snapshot)
        self.total_checks += 1
        if failing:
            self.failed_checks += 1
            logger.warning("health check unhealthy: %s", ", ".join(failing))
            await self._alert(failing, snapshot)
        return snapshot

    async def _alert(self, failing: list[str], snapshot: HealthSnapshot) -> None:
        if self.alerts is None:
            return
        errors = {name: snapshot.checks[name].error or snapshot.checks[name].details for name in failing}
        try:
            await self.alerts.send_health_alert(failing, snapshot.overall.value, {"checks": errors})
        except Exception:  # noqa: BLE001
            logger.exception("failed to dispatch health alert")
