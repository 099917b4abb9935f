from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chat_gateway.core.errors import GatewayError, StorageError

logger = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI, *, expose_details: bool = False) -> None:
    @app.exception_handler(GatewayError)
    async def _gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        if isinstance(exc, StorageError):
            logger.error("storage failure: %s", exc.message)
        body: dict[str, object] = {"code": exc.code, "message": exc.message}
        if expose_details:
            body["type"] = type(exc).__name__
            body["context"] = {k: str(v) for k, v in exc.context.items()}
        return JSONResponse(status_code=exc.status_code, content={"error": body})
