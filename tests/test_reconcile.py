"""Tests for merging observed device sets into the registry."""

import pytest

from netguard.core.events import EventBus
from netguard.core.models import (
    EventType,
    HistoryEventType,
    RiskLevel,
    RouterType,
    UnifiedDevice,
)
from netguard.core.reconcile import ReconciliationService
from netguard.core.risk import RiskEngine

from conftest import make_device, make_raw


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def service(registry, bus):
    return ReconciliationService(registry, RiskEngine(), bus)


def history_kinds(events):
    return [e.event_type for e in events]


class TestReconcile:
    @pytest.mark.asyncio
    async def test_new_unknown_vendor_device(self, service, registry):
        """An unseen device with an unresolved vendor scores 20 + 15 and lands in 'low'."""
        raw = make_raw(mac="AA:BB:CC:DD:EE:FF", ip="192.168.1.50", vendor=None, device_type="Laptop")
        summary = await service.reconcile(1, [raw])

        assert summary.new_count == 1
        device = await registry.get_by_mac("AA:BB:CC:DD:EE:FF")
        assert device.is_online is True
        assert device.risk_score == 35
        assert device.risk_level == RiskLevel.LOW

        events = await registry.list_history(device.id)
        assert history_kinds(events) == [HistoryEventType.CONNECTED]
        assert events[0].risk_score == 35
        assert events[0].details == "New device discovered on network sweep"

    @pytest.mark.asyncio
    async def test_router_source_in_history(self, service, registry):
        raw = UnifiedDevice(
            ip="192.168.8.10", mac="B8:27:EB:00:00:01",
            router_type=RouterType.HUAWEI, router_ip="192.168.8.1",
        )
        await service.reconcile(1, [raw])
        device = await registry.get_by_mac("B8:27:EB:00:00:01")
        assert device.vendor == "Raspberry Pi"
        (event,) = await registry.list_history(device.id)
        assert event.details == "New device discovered on huawei router"

    @pytest.mark.asyncio
    async def test_idempotent(self, service, registry):
        observed = [make_raw(mac="AA:BB:CC:DD:EE:01"), make_raw(mac="AA:BB:CC:DD:EE:02", ip="192.168.1.11")]
        await service.reconcile(1, observed)
        before = {d.mac: d for d in await registry.list_by_account(1)}

        summary = await service.reconcile(1, observed)
        after = {d.mac: d for d in await registry.list_by_account(1)}

        assert summary.new_count == 0
        assert summary.went_offline_count == 0
        assert set(before) == set(after)
        for mac, device in after.items():
            previous = before[mac]
            assert device.model_dump(exclude={"last_seen"}) == previous.model_dump(exclude={"last_seen"})
            assert device.last_seen >= previous.last_seen
            assert len(await registry.list_history(device.id)) == 1

    @pytest.mark.asyncio
    async def test_set_reconciliation(self, service, registry):
        a, b, c = "AA:BB:CC:DD:EE:0A", "AA:BB:CC:DD:EE:0B", "AA:BB:CC:DD:EE:0C"
        await service.reconcile(1, [make_raw(mac=a), make_raw(mac=b, ip="192.168.1.11")])

        summary = await service.reconcile(1, [make_raw(mac=b, ip="192.168.1.11"), make_raw(mac=c, ip="192.168.1.12")])

        assert summary.new_count == 1
        assert summary.updated_count == 1
        assert summary.went_offline_count == 1
        devices = {d.mac: d for d in await registry.list_by_account(1)}
        assert devices[a].is_online is False
        assert devices[b].is_online is True
        assert devices[c].is_online is True
        assert history_kinds(await registry.list_history(devices[a].id)) == [
            HistoryEventType.DISCONNECTED, HistoryEventType.CONNECTED,
        ]
        assert {d.mac for d in summary.affected_devices} == {a, b, c}

    @pytest.mark.asyncio
    async def test_offline_recorded_once(self, service, registry):
        await service.reconcile(1, [make_raw()])
        await service.reconcile(1, [])
        summary = await service.reconcile(1, [])

        assert summary.went_offline_count == 0
        device = await registry.get_by_mac("AA:BB:CC:DD:EE:01")
        kinds = history_kinds(await registry.list_history(device.id))
        assert kinds.count(HistoryEventType.DISCONNECTED) == 1

    @pytest.mark.asyncio
    async def test_empty_observation_marks_everything_offline(self, service, registry):
        await service.reconcile(1, [make_raw(mac="AA:BB:CC:DD:EE:01"), make_raw(mac="AA:BB:CC:DD:EE:02")])
        summary = await service.reconcile(1, [])
        assert summary.went_offline_count == 2
        assert await registry.list_by_account(1, online_only=True) == []

    @pytest.mark.asyncio
    async def test_reconnect_and_ip_change_publish_events(self, service, registry, bus):
        queue = bus.subscribe()
        await service.reconcile(1, [make_raw(ip="192.168.1.10")])
        await service.reconcile(1, [])
        await service.reconcile(1, [make_raw(ip="192.168.1.10")])
        await service.reconcile(1, [make_raw(ip="192.168.1.77")])

        published = []
        while not queue.empty():
            published.append(queue.get_nowait())
        kinds = [e.event_type for e in published]
        assert kinds == [
            EventType.DEVICE_NEW,
            EventType.DEVICE_OFFLINE,
            EventType.DEVICE_ONLINE,
            EventType.DEVICE_IP_CHANGED,
        ]
        assert published[-1].details == {"old_ip": "192.168.1.10", "new_ip": "192.168.1.77"}

        device = await registry.get_by_mac("AA:BB:CC:DD:EE:01")
        assert device.ip == "192.168.1.77"
        # reconnects and address changes are not history kinds
        assert history_kinds(await registry.list_history(device.id)) == [
            HistoryEventType.DISCONNECTED, HistoryEventType.CONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_mac_spelling_does_not_create_duplicates(self, service, registry):
        await service.reconcile(1, [make_raw(mac="aa-bb-cc-dd-ee-01")])
        summary = await service.reconcile(1, [make_raw(mac="AA:BB:CC:DD:EE:01")])
        assert summary.new_count == 0
        assert len(await registry.list_by_account(1)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_rows_last_wins(self, service, registry):
        await service.reconcile(1, [
            make_raw(mac="AA:BB:CC:DD:EE:01", ip="192.168.1.10"),
            make_raw(mac="aa:bb:cc:dd:ee:01", ip="192.168.1.20"),
        ])
        devices = await registry.list_by_account(1)
        assert len(devices) == 1
        assert devices[0].ip == "192.168.1.20"

    @pytest.mark.asyncio
    async def test_rows_reported_offline_count_as_unobserved(self, service, registry):
        await service.reconcile(1, [make_raw()])
        summary = await service.reconcile(1, [make_raw(is_online=False)])
        assert summary.went_offline_count == 1
        assert summary.new_count == 0

    @pytest.mark.asyncio
    async def test_other_accounts_device_is_untouched(self, service, registry):
        await registry.create(make_device(account_id=2, ip="10.0.0.2"))
        summary = await service.reconcile(1, [make_raw(ip="192.168.1.10")])
        assert summary.new_count == 0
        assert summary.updated_count == 0
        device = await registry.get_by_mac("AA:BB:CC:DD:EE:01")
        assert device.account_id == 2
        assert device.ip == "10.0.0.2"

    @pytest.mark.asyncio
    async def test_refresh_fills_unresolved_vendor(self, service, registry):
        await service.reconcile(1, [make_raw(vendor=None)])
        await service.reconcile(1, [make_raw(vendor="Lenovo", hostname="thinkpad")])
        device = await registry.get_by_mac("AA:BB:CC:DD:EE:01")
        assert device.vendor == "Lenovo"
        assert device.hostname == "thinkpad"
