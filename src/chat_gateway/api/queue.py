from __future__ import annotations

from fastapi import APIRouter, Depends

from chat_gateway.api.deps import get_queue, get_worker
from chat_gateway.core.models import QueueStats, QueueStatus
from chat_gateway.core.security import READ_ROLES, WRITE_ROLES, AuthContext, require_roles
from chat_gateway.delivery.queue import DeliveryQueue
from chat_gateway.delivery.worker import DeliveryWorker

router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/stats", response_model=QueueStats)
def queue_stats(
    queue: DeliveryQueue = Depends(get_queue),
    worker: DeliveryWorker = Depends(get_worker),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> QueueStats:
    return queue.stats(
        concurrency=worker.concurrency,
        running_jobs=worker.running_jobs,
        worker_running=worker.running,
    )


@router.get("/{connection_id}", response_model=QueueStatus)
def queue_status(
    connection_id: str,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> QueueStatus:
    return queue.status(connection_id)


@router.post("/{connection_id}/pause", response_model=QueueStatus)
def pause_queue(
    connection_id: str,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> QueueStatus:
    return queue.pause(connection_id)


@router.post("/{connection_id}/resume", response_model=QueueStatus)
def resume_queue(
    connection_id: str,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> QueueStatus:
    return queue.resume(connection_id)


@router.delete("/{connection_id}/failed", response_model=dict[str, int])
def clear_failed(
    connection_id: str,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> dict[str, int]:
    return {"removed": queue.clear_failed(connection_id)}
