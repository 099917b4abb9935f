from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from chat_gateway.api.alerts import router as alerts_router
from chat_gateway.api.connections import router as connections_router
from chat_gateway.api.errors import install_error_handlers
from chat_gateway.api.health import router as health_router
from chat_gateway.api.messages import router as messages_router
from chat_gateway.api.queue import router as queue_router
from chat_gateway.core.config import Settings, get_settings
from chat_gateway.core.container import GatewayContainer
from chat_gateway.core.logging import setup_logging


def create_app(
    settings: Settings | None = None,
    *,
    container: GatewayContainer | None = None,
    background: bool = True,
) -> FastAPI:
    settings = settings or (container.settings if container is not None else get_settings())

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        gateway = container or GatewayContainer(settings)
        app.state.container = gateway
        await gateway.start(background=background)
        try:
            yield
        finally:
            await gateway.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Multi-tenant outbound messaging gateway: connections, paced delivery, health and alerts.",
        lifespan=_lifespan,
    )
    install_error_handlers(app, expose_details=settings.expose_error_details)
    app.include_router(health_router)
    app.include_router(connections_router)
    app.include_router(messages_router)
    app.include_router(queue_router)
    app.include_router(alerts_router)

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": f"{settings.app_name} is running."}

    return app


def build_default_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)
    return create_app(settings)
