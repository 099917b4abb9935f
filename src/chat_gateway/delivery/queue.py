from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Callable
from uuid import uuid4

from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.core.errors import InvalidRecipients, NotFoundError, QueuePaused
from chat_gateway.core.models import (
    BulkEnqueueRequest,
    DeliveryJob,
    EnqueueRequest,
    EnqueueResult,
    JobPriority,
    JobState,
    MessagePayload,
    QueueStats,
    QueueStatus,
    RecipientDelivery,
)
from chat_gateway.delivery.job_store import PRIORITY_RANK, JobStore
from chat_gateway.delivery.rate_limiter import RateLimiter
from chat_gateway.delivery.recipients import split_recipients

logger = logging.getLogger(__name__)

PRIORITY_DELAY_FACTORS = {
    JobPriority.HIGH: 0.5,
    JobPriority.NORMAL: 1.0,
    JobPriority.LOW: 2.0,
}


def priority_delay(priority: JobPriority, base_seconds: float = 1.0) -> float:
    """Pause between two recipients of one job."""
    return PRIORITY_DELAY_FACTORS[priority] * max(0.0, base_seconds)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryQueue:
    def __init__(
        self,
        store: JobStore,
        registry: ConnectionRegistry,
        rate_limiter: RateLimiter,
        *,
        base_delay_seconds: float = 1.0,
        default_country_code: str = "972",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.base_delay_seconds = base_delay_seconds
        self.default_country_code = default_country_code
        self._clock = clock or _utcnow
        self._paused: set[str] = set()

    def enqueue(self, req: EnqueueRequest) -> EnqueueResult:
        record = self.registry.get(req.connection_id)
        if not record.is_active:
            raise NotFoundError(f"connection '{req.connection_id}' not found", connection_id=req.connection_id)
        self._ensure_not_paused(req.connection_id)
        accepted, rejected = split_recipients(req.recipients, self.default_country_code)
        if not accepted:
            raise InvalidRecipients("no valid recipients", rejected=rejected)
        self.rate_limiter.assign_plan(req.connection_id, record.plan)

        scheduled_at = self._schedule_time(req.send_at, req.delay_seconds)
        job = self._new_job(
            req.connection_id,
            req.payload,
            accepted,
            req.priority,
            scheduled_at,
            record.settings.message_retry_attempts,
            req.metadata,
        )
        estimated = self._estimate(req.connection_id, req.priority, scheduled_at)
        self.store.add(job)
        if rejected:
            logger.warning("job %s dropped %d invalid recipients", job.job_id, len(rejected))
        logger.info(
            "job %s queued for %s: %d recipients, priority %s",
            job.job_id,
            req.connection_id,
            len(accepted),
            req.priority.value,
        )
        return EnqueueResult(
            job_id=job.job_id,
            connection_id=req.connection_id,
            priority=req.priority,
            estimated_send_time=estimated,
            accepted_recipients=accepted,
            rejected_recipients=rejected,
        )

    def enqueue_bulk(self, req: BulkEnqueueRequest) -> list[EnqueueResult]:
        """One job per message; nothing is queued unless every message has a valid recipient."""
        record = self.registry.get(req.connection_id)
        if not record.is_active:
            raise NotFoundError(f"connection '{req.connection_id}' not found", connection_id=req.connection_id)
        self._ensure_not_paused(req.connection_id)
        split = [split_recipients(item.recipients, self.default_country_code) for item in req.messages]
        empty = [index for index, (accepted, _) in enumerate(split) if not accepted]
        if empty:
            raise InvalidRecipients(f"messages without valid recipients: {empty}", messages=empty)
        self.rate_limiter.assign_plan(req.connection_id, record.plan)

        scheduled_at = self._schedule_time(req.send_at, None)
        results: list[EnqueueResult] = []
        for item, (accepted, rejected) in zip(req.messages, split):
            priority = item.priority or req.priority
            estimated = self._estimate(req.connection_id, priority, scheduled_at)
            job = self._new_job(
                req.connection_id,
                item.payload,
                accepted,
                priority,
                scheduled_at,
                record.settings.message_retry_attempts,
                {"bulk": True},
            )
            self.store.add(job)
            results.append(
                EnqueueResult(
                    job_id=job.job_id,
                    connection_id=req.connection_id,
                    priority=priority,
                    estimated_send_time=estimated,
                    accepted_recipients=accepted,
                    rejected_recipients=rejected,
                )
            )
        logger.info("bulk enqueue for %s: %d jobs", req.connection_id, len(results))
        return results

    def pause(self, connection_id: str) -> QueueStatus:
        self.registry.get(connection_id)
        if connection_id not in self._paused:
            self._paused.add(connection_id)
            logger.info("queue paused for %s", connection_id)
        return self.status(connection_id)

    def resume(self, connection_id: str) -> QueueStatus:
        self.registry.get(connection_id)
        if connection_id in self._paused:
            self._paused.discard(connection_id)
            logger.info("queue resumed for %s", connection_id)
        self.rate_limiter.resume(connection_id)
        return self.status(connection_id)

    def is_paused(self, connection_id: str) -> bool:
        return connection_id in self._paused

    def paused_connections(self) -> list[str]:
        return sorted(self._paused)

    def status(self, connection_id: str) -> QueueStatus:
        self.registry.get(connection_id)
        counts = self.store.count_by_state(connection_id)
        return QueueStatus(
            connection_id=connection_id,
            waiting=counts[JobState.QUEUED.value],
            active=counts[JobState.ACTIVE.value],
            completed=counts[JobState.COMPLETED.value],
            failed=counts[JobState.FAILED.value],
            blocked=counts[JobState.BLOCKED.value],
            is_paused=self.is_paused(connection_id),
            rate_limit=self.rate_limiter.snapshot(connection_id),
        )

    def clear_failed(self, connection_id: str) -> int:
        removed = self.store.remove_failed(connection_id)
        logger.info("cleared %d failed jobs for %s", removed, connection_id)
        return removed

    def get_job(self, job_id: str) -> DeliveryJob:
        return self.store.require(job_id)

    def stats(self, *, concurrency: int = 0, running_jobs: int = 0, worker_running: bool = False) -> QueueStats:
        return QueueStats(
            counts=self.store.count_by_state(),
            paused_connections=self.paused_connections(),
            concurrency=concurrency,
            running_jobs=running_jobs,
            worker_running=worker_running,
        )

    def inter_message_delay(self, priority: JobPriority) -> float:
        return priority_delay(priority, self.base_delay_seconds)

    def _ensure_not_paused(self, connection_id: str) -> None:
        if self.is_paused(connection_id):
            raise QueuePaused(f"queue for connection {connection_id} is paused", connection_id=connection_id)

    def _schedule_time(self, send_at: datetime | None, delay_seconds: float | None) -> datetime:
        now = self._clock()
        if send_at is not None:
            if send_at.tzinfo is None:
                send_at = send_at.replace(tzinfo=timezone.utc)
            return max(now, send_at.astimezone(timezone.utc))
        if delay_seconds:
            return now + timedelta(seconds=delay_seconds)
        return now

    def _estimate(self, connection_id: str, priority: JobPriority, scheduled_at: datetime) -> datetime:
        """Scheduled time plus pacing for the recipients queued ahead of this job."""
        rank = PRIORITY_RANK[priority]
        ahead = 0
        for job in self.store.list_by_state(connection_id, [JobState.QUEUED, JobState.ACTIVE], limit=5000):
            if job.state == JobState.ACTIVE or (PRIORITY_RANK[job.priority] <= rank and job.scheduled_at <= scheduled_at):
                ahead += len(job.pending)
        return scheduled_at + timedelta(seconds=ahead * self.inter_message_delay(priority))

    def _new_job(
        self,
        connection_id: str,
        payload: MessagePayload,
        recipients: list[str],
        priority: JobPriority,
        scheduled_at: datetime,
        max_attempts: int,
        metadata: dict,
    ) -> DeliveryJob:
        now = self._clock()
        return DeliveryJob(
            job_id=uuid4().hex,
            connection_id=connection_id,
            payload=payload,
            deliveries=[RecipientDelivery(recipient=r) for r in recipients],
            priority=priority,
            state=JobState.QUEUED,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata),
        )
