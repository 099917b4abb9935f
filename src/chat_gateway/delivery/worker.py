from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.core.errors import IllegalTransition, RateLimitExceeded
from chat_gateway.core.models import DeliveryJob, JobState, RecipientState
from chat_gateway.delivery.queue import DeliveryQueue
from chat_gateway.delivery.rate_limiter import RateLimiter
from chat_gateway.delivery.retry import FailureKind, RetryPolicy, classify

if TYPE_CHECKING:
    from chat_gateway.alerts.service import AlertService

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryWorker:
    """Bounded pool that pulls due jobs and sends them recipient by recipient.

    At most one job per connection runs at a time, so a connection's sends are paced
    by a single loop and checked against the rate limiter in order. Transient failures
    put the job back in the queue with a later ``scheduled_at``; nothing sleeps on retry.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        registry: ConnectionRegistry,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        *,
        alerts: AlertService | None = None,
        concurrency: int = 5,
        poll_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.alerts = alerts
        self.concurrency = max(1, concurrency)
        self.poll_seconds = max(0.01, poll_seconds)
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self._running = False
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def running_jobs(self) -> int:
        return len(self._in_flight)

    async def run_forever(self) -> None:
        self._running = True
        requeued = self.queue.store.requeue_active()
        if requeued:
            logger.info("requeued %d jobs left active by a previous run", requeued)
        while self._running:
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("delivery worker tick failed")
            await asyncio.sleep(self.poll_seconds)

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_once(self) -> int:
        """Start due jobs up to the free pool capacity; returns how many were started."""
        free = self.concurrency - len(self._in_flight)
        if free <= 0:
            return 0
        busy = set(self._in_flight) | set(self.queue.paused_connections())
        jobs = self.queue.store.claim_due(self._clock(), free, exclude_connections=busy)
        for job in jobs:
            task = asyncio.create_task(self._run_job(job), name=f"delivery-job-{job.job_id}")
            self._in_flight[job.connection_id] = task
            task.add_done_callback(lambda _t, cid=job.connection_id: self._in_flight.pop(cid, None))
        return len(jobs)

    async def wait_idle(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _run_job(self, job: DeliveryJob) -> None:
        try:
            await self.process(job)
        except asyncio.CancelledError:
            self._requeue_cancelled(job.job_id)
            raise
        except Exception:  # noqa: BLE001
            logger.exception("job %s crashed", job.job_id)

    async def process(self, job: DeliveryJob) -> DeliveryJob:
        """Run one attempt of an active job and persist where it ended up."""
        if job.attempts >= job.max_attempts:
            return await self._terminate(job, JobState.FAILED, job.last_error or "retries exhausted")
        job = job.model_copy(update={"attempts": job.attempts + 1, "state": JobState.ACTIVE})
        job = self.queue.store.save(job)
        delay = self.queue.inter_message_delay(job.priority)
        failure: tuple[FailureKind, BaseException] | None = None
        first = True

        pending = [i for i, d in enumerate(job.deliveries) if d.state == RecipientState.PENDING]
        for index in pending:
            delivery = job.deliveries[index]
            if not first:
                await self._sleep(delay)
            first = False
            try:
                if not await self.rate_limiter.acquire(job.connection_id):
                    raise RateLimitExceeded(f"rate limit exceeded for {job.connection_id}")
                receipt = await self.registry.send(job.connection_id, delivery.recipient, job.payload)
            except Exception as exc:  # noqa: BLE001
                kind = classify(exc)
                if kind == FailureKind.RECIPIENT:
                    delivery.state = RecipientState.FAILED
                    delivery.error = str(exc)
                    logger.warning("job %s: recipient %s rejected: %s", job.job_id, delivery.recipient, exc)
                    job = self.queue.store.save(job)
                    continue
                failure = (kind, exc)
                break
            delivery.state = RecipientState.DELIVERED
            delivery.message_id = receipt.message_id
            delivery.delivered_at = receipt.timestamp
            job = self.queue.store.save(job)

        if failure is None:
            return await self._finish(job)
        return await self._handle_failure(job, *failure)

    async def _finish(self, job: DeliveryJob) -> DeliveryJob:
        delivered = sum(1 for d in job.deliveries if d.state == RecipientState.DELIVERED)
        if delivered:
            job = job.model_copy(update={"state": JobState.COMPLETED, "finished_at": self._clock(), "last_error": None})
            job = self.queue.store.save(job)
            logger.info("job %s completed: %d/%d delivered", job.job_id, delivered, len(job.deliveries))
            return job
        return await self._terminate(job, JobState.FAILED, "no recipient accepted the message")

    async def _handle_failure(self, job: DeliveryJob, kind: FailureKind, exc: BaseException) -> DeliveryJob:
        error = f"{type(exc).__name__}: {exc}"
        if RetryPolicy.should_retry(kind, job.attempts, job.max_attempts):
            wait = self.retry_policy.delay(job.attempts)
            job = job.model_copy(
                update={
                    "state": JobState.QUEUED,
                    "scheduled_at": self._clock() + timedelta(seconds=wait),
                    "last_error": error,
                }
            )
            job = self.queue.store.save(job)
            logger.warning(
                "job %s attempt %d/%d failed (%s), retrying in %.1fs",
                job.job_id,
                job.attempts,
                job.max_attempts,
                error,
                wait,
            )
            return job
        if kind == FailureKind.BLOCKED:
            return await self._terminate(job, JobState.BLOCKED, error)
        if kind == FailureKind.TRANSIENT:
            error = f"{error} (after {job.attempts} attempts)"
        return await self._terminate(job, JobState.FAILED, error)

    async def _terminate(self, job: DeliveryJob, state: JobState, error: str) -> DeliveryJob:
        for delivery in job.pending:
            delivery.state = RecipientState.FAILED
            delivery.error = error
        job = job.model_copy(update={"state": state, "finished_at": self._clock(), "last_error": error})
        try:
            job = self.queue.store.save(job)
        except IllegalTransition:
            logger.warning("job %s was already terminal", job.job_id)
            return job
        logger.error("job %s %s: %s", job.job_id, state.value, error)
        if self.alerts is not None:
            try:
                await self.alerts.send_queue_alert(job.connection_id, job.job_id, state.value, error)
            except Exception:  # noqa: BLE001
                logger.exception("failed to dispatch queue alert for job %s", job.job_id)
        return job

    def _requeue_cancelled(self, job_id: str) -> None:
        job = self.queue.store.get(job_id)
        if job is None or job.state != JobState.ACTIVE:
            return
        try:
            self.queue.store.save(job.model_copy(update={"state": JobState.QUEUED}))
        except Exception:  # noqa: BLE001
            logger.exception("failed to requeue cancelled job %s", job_id)
