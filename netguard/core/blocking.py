"""Manual and automatic device blocking.

The router is asked to block first; the registry is updated either way so
the operator's intent is recorded even when no router accepts the call.
Registry failures propagate to the caller.
"""

from __future__ import annotations

import logging

from netguard.core.db import AlertStore, DeviceRegistry
from netguard.core.errors import DeviceNotFoundError
from netguard.core.events import EventBus
from netguard.core.models import (
    AlertType,
    BlockResult,
    Device,
    DeviceEvent,
    DeviceHistoryEvent,
    EventType,
    HistoryEventType,
    RouterConfig,
    SecurityAlert,
    Severity,
)
from netguard.core.notify import NotificationSink, notify_device_blocked
from netguard.routers.manager import RouterManager

logger = logging.getLogger(__name__)


class BlockingService:
    def __init__(
        self,
        registry: DeviceRegistry,
        alerts: AlertStore,
        router_manager: RouterManager,
        routers: list[RouterConfig] | None = None,
        sink: NotificationSink | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.alerts = alerts
        self.router_manager = router_manager
        self.routers = list(routers or [])
        self.sink = sink
        self.bus = bus

    async def _get_owned(self, account_id: int, device_id: int) -> Device:
        device = await self.registry.get(device_id)
        if device is None or device.account_id != account_id:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        return device

    async def _apply_on_routers(self, mac: str, block: bool) -> bool:
        applied = False
        for config in self.routers:
            if block:
                ok = await self.router_manager.block_device(config, mac)
            else:
                ok = await self.router_manager.unblock_device(config, mac)
            applied = applied or ok
        return applied

    async def block(
        self,
        account_id: int,
        device_id: int,
        reason: str | None = None,
        automatic: bool = False,
    ) -> BlockResult:
        device = await self._get_owned(account_id, device_id)
        if device.is_blocked:
            return BlockResult(
                success=True, mac=device.mac, device=device, message="Device is already blocked",
            )

        router_applied = await self._apply_on_routers(device.mac, block=True)
        if not router_applied:
            logger.warning("No router accepted the block for %s; recording it only", device.mac)

        updated = await self.registry.update(device.id, is_blocked=True) or device
        origin = "Automatically blocked" if automatic else "Blocked by operator"
        await self.registry.append_history(DeviceHistoryEvent(
            device_id=device.id,
            account_id=account_id,
            event_type=HistoryEventType.BLOCKED,
            risk_score=device.risk_score,
            details=f"{origin}: {reason}" if reason else origin,
        ))
        alert = await self.alerts.create(SecurityAlert(
            account_id=account_id,
            device_id=device.id,
            alert_type=AlertType.DEVICE_BLOCKED,
            severity=Severity.MEDIUM,
            title=f"Device Blocked: {updated.display_name}",
            description=f"Device with MAC address {device.mac} has been blocked from network access."
            + (f" Reason: {reason}" if reason else ""),
        ))
        await notify_device_blocked(self.sink, updated)
        if self.bus is not None:
            await self.bus.publish(DeviceEvent(
                event_type=EventType.DEVICE_BLOCKED, account_id=account_id, device=updated,
                details={"automatic": automatic, "router_applied": router_applied, "alert_id": alert.id},
            ))
        logger.info("%s %s (router applied: %s)", origin, device.mac, router_applied)
        return BlockResult(
            success=True,
            mac=device.mac,
            router_applied=router_applied,
            device=updated,
            message=f"Device {device.mac} has been blocked",
        )

    async def unblock(self, account_id: int, device_id: int) -> BlockResult:
        device = await self._get_owned(account_id, device_id)
        if not device.is_blocked:
            return BlockResult(
                success=True, mac=device.mac, device=device, message="Device is not blocked",
            )

        router_applied = await self._apply_on_routers(device.mac, block=False)
        updated = await self.registry.update(device.id, is_blocked=False) or device
        await self.registry.append_history(DeviceHistoryEvent(
            device_id=device.id,
            account_id=account_id,
            event_type=HistoryEventType.UNBLOCKED,
            risk_score=device.risk_score,
            details="Unblocked by operator",
        ))
        if self.bus is not None:
            await self.bus.publish(DeviceEvent(
                event_type=EventType.DEVICE_UNBLOCKED, account_id=account_id, device=updated,
                details={"router_applied": router_applied},
            ))
        logger.info("Unblocked %s (router applied: %s)", device.mac, router_applied)
        return BlockResult(
            success=True,
            mac=device.mac,
            router_applied=router_applied,
            device=updated,
            message=f"Device {device.mac} has been unblocked",
        )
