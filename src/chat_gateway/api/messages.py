from __future__ import annotations

from fastapi import APIRouter, Depends, status

from chat_gateway.api.deps import get_queue
from chat_gateway.core.models import BulkEnqueueRequest, EnqueueRequest, EnqueueResult
from chat_gateway.core.security import WRITE_ROLES, AuthContext, require_roles
from chat_gateway.delivery.queue import DeliveryQueue

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/send", response_model=EnqueueResult, status_code=status.HTTP_202_ACCEPTED)
def send_message(
    req: EnqueueRequest,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> EnqueueResult:
    return queue.enqueue(req)


@router.post("/send-bulk", response_model=list[EnqueueResult], status_code=status.HTTP_202_ACCEPTED)
def send_bulk(
    req: BulkEnqueueRequest,
    queue: DeliveryQueue = Depends(get_queue),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> list[EnqueueResult]:
    return queue.enqueue_bulk(req)
