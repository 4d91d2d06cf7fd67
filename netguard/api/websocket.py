"""WebSocket connection manager for real-time event broadcasting."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

from netguard.core.events import EventBus
from netguard.core.models import DeviceEvent

logger = logging.getLogger(__name__)


def serialize_event(event: DeviceEvent) -> str:
    """Serialize a DeviceEvent to JSON for WebSocket transmission."""
    data: dict[str, Any] = {
        "event": event.event_type.value,
        "account_id": event.account_id,
        "timestamp": event.timestamp.isoformat(),
    }
    if event.device:
        data["device"] = event.device.model_dump(mode="json")
        data["device"]["display_name"] = event.device.display_name
        data["device"]["risk_level"] = event.device.risk_level.value
    if event.details:
        data["details"] = event.details
    return json.dumps(data, default=str)


class WebSocketManager:
    """Manages WebSocket connections and broadcasts events from the event bus."""

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._connections: list[WebSocket] = []
        self._queue: asyncio.Queue[DeviceEvent] | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start listening to the event bus and broadcasting to clients."""
        self._queue = self._event_bus.subscribe()
        self._task = asyncio.create_task(self._broadcast_loop(self._queue))
        logger.info("WebSocket manager started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._queue is not None:
            self._event_bus.unsubscribe(self._queue)
            self._queue = None
        logger.info("WebSocket manager stopped")

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.append(websocket)
        logger.info("WebSocket client connected (total: %d)", len(self._connections))

    def disconnect(self, websocket: WebSocket) -> None:
        try:
            self._connections.remove(websocket)
        except ValueError:
            pass
        logger.info("WebSocket client disconnected (total: %d)", len(self._connections))

    async def _broadcast_loop(self, queue: asyncio.Queue[DeviceEvent]) -> None:
        """Continuously read events from the bus and send to all clients."""
        while True:
            event = await queue.get()
            await self._broadcast(serialize_event(event))

    async def _broadcast(self, message: str) -> None:
        dead: list[WebSocket] = []
        for ws in self._connections:
            try:
                await ws.send_text(message)
            except Exception as exc:
                logger.debug("Dropping WebSocket client: %s", exc)
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)
