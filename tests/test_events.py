"""Tests for the in-process event bus."""

import pytest

from netguard.core.events import EventBus
from netguard.core.models import DeviceEvent, EventType


def event(kind=EventType.DEVICE_NEW, account_id=1, **details):
    return DeviceEvent(event_type=kind, account_id=account_id, details=details)


@pytest.mark.asyncio
async def test_fan_out_to_every_subscriber():
    bus = EventBus()
    first, second = bus.subscribe(), bus.subscribe()
    await bus.publish(event())
    assert first.get_nowait().event_type == EventType.DEVICE_NEW
    assert second.get_nowait().event_type == EventType.DEVICE_NEW


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    queue = bus.subscribe()
    bus.unsubscribe(queue)
    bus.unsubscribe(queue)
    await bus.publish(event())
    assert queue.empty()


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest():
    bus = EventBus()
    queue = bus.subscribe()
    for i in range(queue.maxsize + 3):
        await bus.publish(event(seq=i))
    assert queue.qsize() == queue.maxsize
    assert queue.get_nowait().details["seq"] == 3


@pytest.mark.asyncio
async def test_recent_events_newest_first_and_filtered():
    bus = EventBus(max_history=3)
    await bus.publish(event(seq=0))
    await bus.publish(event(account_id=2, seq=1))
    await bus.publish(event(seq=2))
    await bus.publish(event(kind=EventType.SCAN_COMPLETE, seq=3))

    assert [e.details["seq"] for e in bus.recent_events()] == [3, 2, 1]
    assert [e.details["seq"] for e in bus.recent_events(account_id=1)] == [3, 2]
    assert len(bus.recent_events(limit=1)) == 1
