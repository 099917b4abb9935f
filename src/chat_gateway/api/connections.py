from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from chat_gateway.api.deps import get_registry
from chat_gateway.connections.registry import ConnectionRegistry
from chat_gateway.core.models import (
    ConnectionCreateRequest,
    ConnectionRecord,
    ConnectionStateCommand,
    ConnectionStatusView,
    ConnectionUpdateRequest,
    CredentialView,
)
from chat_gateway.core.security import READ_ROLES, WRITE_ROLES, AuthContext, require_roles

router = APIRouter(prefix="/connections", tags=["connections"])


@router.post("", response_model=ConnectionRecord, status_code=status.HTTP_201_CREATED)
async def create_connection(
    req: ConnectionCreateRequest,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return await registry.create(req)


@router.get("", response_model=list[ConnectionRecord])
def list_connections(
    tenant_id: str = Query(..., min_length=1),
    include_inactive: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> list[ConnectionRecord]:
    return registry.list(tenant_id, include_inactive=include_inactive, limit=limit)


@router.get("/{connection_id}", response_model=ConnectionRecord)
def get_connection(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> ConnectionRecord:
    return registry.get(connection_id)


@router.patch("/{connection_id}", response_model=ConnectionRecord)
def update_connection(
    connection_id: str,
    req: ConnectionUpdateRequest,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return registry.update(connection_id, req)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> None:
    await registry.delete(connection_id)


@router.get("/{connection_id}/credential", response_model=CredentialView)
def get_credential(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> CredentialView:
    return registry.get_credential(connection_id)


@router.get("/{connection_id}/status", response_model=ConnectionStatusView)
def get_status(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*READ_ROLES)),
) -> ConnectionStatusView:
    return registry.get_status(connection_id)


@router.post("/{connection_id}/default", response_model=ConnectionRecord)
def set_default(
    connection_id: str,
    tenant_id: str = Query(..., min_length=1),
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return registry.set_default(tenant_id, connection_id)


@router.post("/{connection_id}/disconnect", response_model=ConnectionRecord)
async def disconnect(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return await registry.disconnect(connection_id)


@router.post("/{connection_id}/reconnect", response_model=ConnectionRecord)
async def reconnect(
    connection_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return await registry.reconnect(connection_id)


@router.post("/{connection_id}/state", response_model=ConnectionRecord)
async def set_state(
    connection_id: str,
    req: ConnectionStateCommand,
    registry: ConnectionRegistry = Depends(get_registry),
    _auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
) -> ConnectionRecord:
    return await registry.set_status(connection_id, req.status, req.reason)
