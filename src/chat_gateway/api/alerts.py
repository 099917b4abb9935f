from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from chat_gateway.alerts.channels import SUPPORTED_CHANNELS
from chat_gateway.alerts.service import AlertService
from chat_gateway.api.deps import get_alert_service
from chat_gateway.core.errors import ValidationError
from chat_gateway.core.models import (
    AlertDispatchResult,
    AlertLogEntry,
    AlertStats,
    AlertTestRequest,
    AlertType,
)
from chat_gateway.core.security import READ_ROLES, AuthContext, UserRole, require_roles

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/history", response_model=list[AlertLogEntry])
def alert_history(
    limit: int = Query(default=100, ge=1, le=1000),
    alert_type: AlertType | None = Query(default=None),
    service: AlertService = Depends(get_alert_service),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> list[AlertLogEntry]:
    return service.history(limit=limit, alert_type=alert_type)


@router.get("/stats", response_model=AlertStats)
def alert_stats(
    service: AlertService = Depends(get_alert_service),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> AlertStats:
    return service.stats()


@router.post("/test", response_model=AlertDispatchResult)
async def test_alert(
    req: AlertTestRequest,
    service: AlertService = Depends(get_alert_service),
    _auth: AuthContext = Depends(require_roles(UserRole.ADMIN)),
) -> AlertDispatchResult:
    channel = req.channel.strip().lower()
    if channel not in SUPPORTED_CHANNELS:
        raise ValidationError(f"unsupported alert channel: {req.channel}", channel=req.channel)
    return await service.test_alert(channel)
