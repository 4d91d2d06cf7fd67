"""In-memory async event bus for device and alert state changes."""

from __future__ import annotations

import asyncio
import logging

from netguard.core.models import DeviceEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async pub/sub event bus using per-subscriber queues.

    Subscribers receive DeviceEvent objects via asyncio.Queue. A subscriber
    that falls behind loses its oldest events rather than blocking the
    publisher.
    """

    def __init__(self, max_history: int = 500) -> None:
        self._subscribers: list[asyncio.Queue[DeviceEvent]] = []
        self._history: list[DeviceEvent] = []
        self._max_history = max_history

    def subscribe(self) -> asyncio.Queue[DeviceEvent]:
        """Create a new subscription queue and return it."""
        queue: asyncio.Queue[DeviceEvent] = asyncio.Queue(maxsize=256)
        self._subscribers.append(queue)
        logger.debug("New event subscriber (total: %d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[DeviceEvent]) -> None:
        try:
            self._subscribers.remove(queue)
            logger.debug("Subscriber removed (total: %d)", len(self._subscribers))
        except ValueError:
            pass

    async def publish(self, event: DeviceEvent) -> None:
        """Publish an event to all subscribers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        logger.debug(
            "Event: %s | account=%s device=%s",
            event.event_type.value,
            event.account_id,
            event.device.mac if event.device else "N/A",
        )

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Drop oldest event to make room
                queue.get_nowait()
                queue.put_nowait(event)

    def recent_events(self, account_id: int | None = None, limit: int = 100) -> list[DeviceEvent]:
        """Most recent events (newest first), optionally for one account."""
        events = reversed(self._history)
        if account_id is not None:
            events = (e for e in events if e.account_id == account_id)
        return list(events)[:limit]
