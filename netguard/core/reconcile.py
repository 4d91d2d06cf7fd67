"""Merge a freshly observed device set into the persistent registry.

observed - known  -> create (online, "connected" history event)
observed & known  -> refresh address, online flag and last-seen
known - observed  -> mark offline ("disconnected" history event, once)

Running the same observed set twice leaves the registry unchanged apart
from last-seen timestamps.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from netguard.core.db import DeviceRegistry
from netguard.core.events import EventBus
from netguard.core.fingerprint import canonical_mac, enrich_device_info
from netguard.core.models import (
    Device,
    DeviceEvent,
    DeviceHistoryEvent,
    EventType,
    HistoryEventType,
    RawDevice,
    ReconcileSummary,
    UnifiedDevice,
)
from netguard.core.risk import RiskEngine, vendor_unresolved

logger = logging.getLogger(__name__)


def _source_label(raw: RawDevice) -> str:
    if isinstance(raw, UnifiedDevice):
        return f"{raw.router_type.value} router"
    return "network sweep"


class ReconciliationService:
    def __init__(
        self,
        registry: DeviceRegistry,
        risk_engine: RiskEngine,
        bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.risk_engine = risk_engine
        self.bus = bus

    async def _publish(
        self, event_type: EventType, account_id: int, device: Device, **details: object
    ) -> None:
        if self.bus is not None:
            await self.bus.publish(DeviceEvent(
                event_type=event_type, account_id=account_id, device=device, details=details,
            ))

    async def reconcile(self, account_id: int, observed: Iterable[RawDevice]) -> ReconcileSummary:
        # Later rows for the same MAC win; rows reported offline count as unobserved
        batch: dict[str, RawDevice] = {}
        for raw in observed:
            if raw.is_online:
                batch[canonical_mac(raw.mac)] = raw

        now = datetime.now().astimezone()
        summary = ReconcileSummary()

        for mac, raw in batch.items():
            existing = await self.registry.get_by_mac(mac)
            if existing is None:
                device = await self._create(account_id, mac, raw, now)
                summary.new_count += 1
                summary.new_devices.append(device)
                summary.affected_devices.append(device)
            elif existing.account_id != account_id:
                logger.warning(
                    "Skipping %s: registered to account %d, observed by account %d",
                    mac, existing.account_id, account_id,
                )
            else:
                device = await self._refresh(existing, raw, now)
                summary.updated_count += 1
                summary.affected_devices.append(device)

        for device in await self.registry.list_by_account(account_id):
            if device.mac in batch or not device.is_online:
                continue
            offline = await self._mark_offline(device, now)
            summary.went_offline_count += 1
            summary.affected_devices.append(offline)

        logger.info(
            "Reconciled account %d: %d new, %d updated, %d went offline",
            account_id, summary.new_count, summary.updated_count, summary.went_offline_count,
        )
        return summary

    async def _create(self, account_id: int, mac: str, raw: RawDevice, now: datetime) -> Device:
        info = enrich_device_info(mac, raw.vendor)
        candidate = Device(
            account_id=account_id,
            mac=mac,
            ip=raw.ip,
            vendor=info["vendor"],
            device_type=raw.device_type or info["device_type"],
            hostname=raw.hostname,
            is_online=True,
            first_seen=now,
            last_seen=now,
        )
        candidate.risk_score = self.risk_engine.score(candidate, [], is_newly_observed=True)
        device = await self.registry.create(candidate)
        await self.registry.append_history(DeviceHistoryEvent(
            device_id=device.id,
            account_id=account_id,
            event_type=HistoryEventType.CONNECTED,
            risk_score=device.risk_score,
            details=f"New device discovered on {_source_label(raw)}",
            timestamp=now,
        ))
        logger.info(
            "New device %s (%s) at %s, risk %d", mac, device.vendor, raw.ip, device.risk_score,
        )
        await self._publish(EventType.DEVICE_NEW, account_id, device)
        return device

    async def _refresh(self, existing: Device, raw: RawDevice, now: datetime) -> Device:
        fields: dict[str, object] = {
            "ip": raw.ip,
            "is_online": True,
            "last_seen": max(now, existing.last_seen),
        }
        if raw.hostname and raw.hostname != existing.hostname:
            fields["hostname"] = raw.hostname
        if raw.vendor and vendor_unresolved(existing.vendor):
            fields["vendor"] = raw.vendor
        device = await self.registry.update(existing.id, **fields) or existing

        if not existing.is_online:
            logger.info("Device %s reconnected at %s", existing.mac, raw.ip)
            await self._publish(EventType.DEVICE_ONLINE, existing.account_id, device)
        elif existing.ip != raw.ip:
            logger.info("Device %s changed address %s -> %s", existing.mac, existing.ip, raw.ip)
            await self._publish(
                EventType.DEVICE_IP_CHANGED, existing.account_id, device,
                old_ip=existing.ip, new_ip=raw.ip,
            )
        return device

    async def _mark_offline(self, device: Device, now: datetime) -> Device:
        updated = await self.registry.update(
            device.id, is_online=False, last_seen=max(now, device.last_seen)
        ) or device
        await self.registry.append_history(DeviceHistoryEvent(
            device_id=device.id,
            account_id=device.account_id,
            event_type=HistoryEventType.DISCONNECTED,
            risk_score=device.risk_score,
            details="Device went offline",
            timestamp=now,
        ))
        logger.info("Device %s (%s) went offline", device.mac, device.ip)
        await self._publish(EventType.DEVICE_OFFLINE, device.account_id, updated)
        return updated
