"""FastAPI application factory for the NetGuard API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from netguard.api.routes import create_routes
from netguard.api.websocket import WebSocketManager
from netguard.core.errors import (
    ConfigurationError,
    DeviceNotFoundError,
    InvalidTargetError,
    RegistryError,
)
from netguard.main import NetGuard

logger = logging.getLogger(__name__)

_STATUS_FOR_ERROR: list[tuple[type[Exception], int]] = [
    (InvalidTargetError, 422),
    (DeviceNotFoundError, 404),
    (ConfigurationError, 400),
    (RegistryError, 503),
]


def create_app(services: NetGuard) -> FastAPI:
    """Create and configure the FastAPI application."""
    ws_manager = WebSocketManager(services.bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await ws_manager.start()
        try:
            yield
        finally:
            await ws_manager.stop()

    app = FastAPI(
        title="NetGuard API",
        description="Network discovery, diagnostics and device risk monitoring API",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: allow all origins for local use
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_type, status in _STATUS_FOR_ERROR:
        async def _handler(request: Request, exc: Exception, status: int = status) -> JSONResponse:
            if status >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return JSONResponse(status_code=status, content={"detail": str(exc)})

        app.add_exception_handler(exc_type, _handler)

    app.include_router(create_routes(services))

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await ws_manager.connect(websocket)
        try:
            while True:
                # Keep connection alive; handle pings from client
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            ws_manager.disconnect(websocket)

    return app
