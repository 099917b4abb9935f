from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from chat_gateway.api.deps import get_monitor
from chat_gateway.core.models import (
    CheckResult,
    DetailedHealthReport,
    HealthDashboard,
    HealthSnapshot,
    HealthStatus,
)
from chat_gateway.core.security import READ_ROLES, WRITE_ROLES, AuthContext, UserRole, require_roles
from chat_gateway.health.monitor import HealthMonitor

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_model=HealthSnapshot)
async def health(monitor: HealthMonitor = Depends(get_monitor)) -> JSONResponse:
    snapshot = await monitor.run()
    code = 503 if snapshot.overall == HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=code, content=snapshot.model_dump(mode="json"))


@router.get("/detailed", response_model=DetailedHealthReport)
async def health_detailed(
    monitor: HealthMonitor = Depends(get_monitor),
    _auth: AuthContext = Depends(require_roles(UserRole.ADMIN)),
) -> DetailedHealthReport:
    return await monitor.detailed()


@router.get("/checks/{name}", response_model=CheckResult)
async def health_check(
    name: str,
    monitor: HealthMonitor = Depends(get_monitor),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> CheckResult:
    return await monitor.run_check(name)


@router.get("/dashboard", response_model=HealthDashboard)
async def health_dashboard(
    monitor: HealthMonitor = Depends(get_monitor),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> HealthDashboard:
    return await monitor.dashboard()


@router.get("/history", response_model=list[HealthSnapshot])
def health_history(
    limit: int = Query(default=20, ge=1, le=1000),
    monitor: HealthMonitor = Depends(get_monitor),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> list[HealthSnapshot]:
    return monitor.history(limit)


@router.post("/check", response_model=HealthSnapshot)
async def trigger_check(
    monitor: HealthMonitor = Depends(get_monitor),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> HealthSnapshot:
    return await monitor.run()
