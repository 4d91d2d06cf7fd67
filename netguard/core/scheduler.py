"""Per-account periodic scan driver.

One ScanScheduler per account. A cycle is single-flight per account: a tick
or forced scan that arrives while a cycle is running is skipped, not queued.
The registry hands every scheduler it builds for an account the same cycle
lock, so a replacement scheduler waits out a cycle its predecessor started. Nothing
raised inside a cycle escapes; the failure is recorded in ScanState.error
and the next interval tries again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from netguard.config import Settings
from netguard.core.blocking import BlockingService
from netguard.core.db import AlertStore, DeviceRegistry
from netguard.core.errors import ConfigurationError, NetGuardError
from netguard.core.events import EventBus
from netguard.core.models import (
    AlertType,
    Device,
    DeviceEvent,
    DeviceHistoryEvent,
    EventType,
    HistoryEventType,
    RawDevice,
    RiskLevel,
    RouterConfig,
    ScanState,
    SecurityAlert,
    Severity,
)
from netguard.core.notify import (
    NotificationSink,
    notify_anomaly,
    notify_high_risk_device,
    notify_new_device,
)
from netguard.core.reconcile import ReconciliationService
from netguard.core.risk import RiskEngine
from netguard.core.scanner import SubnetSweeper
from netguard.routers.manager import RouterManager

logger = logging.getLogger(__name__)


class ScannerConfig(BaseModel):
    account_id: int
    routers: list[RouterConfig] = Field(default_factory=list)
    subnet: str | None = None
    interval: int = Field(default=300, ge=5)
    enable_notifications: bool = True
    auto_block: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> ScannerConfig:
        return cls(
            account_id=settings.account_id,
            routers=settings.routers,
            subnet=settings.subnet,
            interval=settings.scan_interval,
            enable_notifications=settings.enable_notifications,
            auto_block=settings.auto_block,
        )


def _operator_unblocked(history: list[DeviceHistoryEvent]) -> bool:
    """True when the latest block-related event is a manual unblock."""
    for event in history:  # newest first
        if event.event_type == HistoryEventType.UNBLOCKED:
            return True
        if event.event_type == HistoryEventType.BLOCKED:
            return False
    return False


class ScanScheduler:
    def __init__(
        self,
        config: ScannerConfig,
        *,
        registry: DeviceRegistry,
        alerts: AlertStore,
        router_manager: RouterManager,
        risk_engine: RiskEngine,
        sweeper: SubnetSweeper | None = None,
        sink: NotificationSink | None = None,
        bus: EventBus | None = None,
        cycle_lock: asyncio.Lock | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.alerts = alerts
        self.router_manager = router_manager
        self.risk_engine = risk_engine
        self.sweeper = sweeper
        self.sink = sink
        self.bus = bus
        self.reconciler = ReconciliationService(registry, risk_engine, bus)
        self.blocking = BlockingService(
            registry, alerts, router_manager, config.routers, sink=sink, bus=bus,
        )
        self._state = ScanState()
        self.cycle_lock = cycle_lock or asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def account_id(self) -> int:
        return self.config.account_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Begin periodic scanning. A no-op if already running."""
        if self.is_running:
            logger.debug("Scheduler for account %d already running", self.account_id)
            return
        self._state.is_running = True
        self._task = asyncio.create_task(self._loop(), name=f"scan-account-{self.account_id}")
        logger.info(
            "Scheduler started for account %d (interval %ds)", self.account_id, self.config.interval,
        )

    async def stop(self) -> None:
        """Cancel the interval. A cycle already in flight runs to completion."""
        task, self._task = self._task, None
        self._state.is_running = False
        self._state.next_scan_time = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Scheduler stopped for account %d", self.account_id)

    async def _loop(self) -> None:
        while True:
            # Shielded so stop() cancels only the wait, never a running cycle
            await asyncio.shield(self._tick())
            interval = self.config.interval
            self._state.next_scan_time = datetime.now().astimezone() + timedelta(seconds=interval)
            await asyncio.sleep(interval)

    async def force_scan(self) -> bool:
        """Run a cycle now. Returns False if one was already in progress."""
        return await self._tick()

    def get_state(self) -> ScanState:
        return self._state.model_copy()

    def update_config(self, config: ScannerConfig) -> None:
        """Replace the configuration; takes effect from the next cycle."""
        if config.account_id != self.account_id:
            raise ConfigurationError("Cannot move a scheduler to a different account")
        self.config = config
        self.blocking.routers = list(config.routers)

    # -- cycle -------------------------------------------------------------

    async def _tick(self) -> bool:
        if self.cycle_lock.locked():
            logger.info("Scan already in progress for account %d, skipping", self.account_id)
            return False
        async with self.cycle_lock:
            await self._run_cycle()
        return True

    async def _run_cycle(self) -> None:
        state = self._state
        state.is_scanning = True
        state.error = None
        logger.info("Scan cycle started for account %d", self.account_id)
        try:
            observed = await self._discover()
            summary = await self.reconciler.reconcile(self.account_id, observed)

            for device in summary.new_devices:
                await self._new_device_side_effects(device)
            new_ids = {d.id for d in summary.new_devices}
            for device in summary.affected_devices:
                if device.is_online:
                    await self._evaluate(device, is_new=device.id in new_ids)

            state.devices_found = len(observed)
            state.new_devices = summary.new_count
            state.offline_devices = summary.went_offline_count
            if self.bus is not None:
                await self.bus.publish(DeviceEvent(
                    event_type=EventType.SCAN_COMPLETE,
                    account_id=self.account_id,
                    details={
                        "devices_found": len(observed),
                        "new": summary.new_count,
                        "updated": summary.updated_count,
                        "offline": summary.went_offline_count,
                    },
                ))
        except Exception as exc:
            logger.exception("Scan cycle failed for account %d", self.account_id)
            state.error = str(exc) or exc.__class__.__name__
        finally:
            state.is_scanning = False
            state.last_scan_time = datetime.now().astimezone()
        logger.info(
            "Scan cycle finished for account %d: %d found, %d new, %d offline",
            self.account_id, state.devices_found, state.new_devices, state.offline_devices,
        )

    async def _discover(self) -> list[RawDevice]:
        """Router fan-out, falling back to a subnet sweep."""
        errors: list[str] = []
        if self.config.routers:
            results = await self.router_manager.scan_routers(self.config.routers)
            succeeded = [r for r in results if r.success]
            errors = [f"{r.router_ip}: {r.error}" for r in results if not r.success]
            if succeeded:
                return [d for r in succeeded for d in r.devices]

        if self.config.subnet and self.sweeper is not None:
            if errors:
                logger.warning("All routers failed, falling back to subnet sweep: %s", "; ".join(errors))
            return await self.sweeper.sweep(self.config.subnet)

        if errors:
            raise NetGuardError("All routers failed: " + "; ".join(errors))
        raise ConfigurationError(
            f"Account {self.account_id} has no routers and no subnet configured"
        )

    # -- side effects ------------------------------------------------------

    async def _raise_alert(self, alert: SecurityAlert, dedupe: bool = True) -> SecurityAlert | None:
        """Store an alert unless an unresolved one of the same kind exists."""
        if dedupe and alert.device_id is not None and await self.alerts.has_open_alert(
            alert.account_id, alert.device_id, alert.alert_type
        ):
            return None
        stored = await self.alerts.create(alert)
        if self.bus is not None:
            await self.bus.publish(DeviceEvent(
                event_type=EventType.ALERT_CREATED,
                account_id=alert.account_id,
                details={"alert_id": stored.id, "title": stored.title, "severity": stored.severity.value},
            ))
        return stored

    async def _new_device_side_effects(self, device: Device) -> None:
        await self._raise_alert(SecurityAlert(
            account_id=self.account_id,
            device_id=device.id,
            alert_type=AlertType.NEW_DEVICE,
            severity=Severity(device.risk_level.value),
            title=f"New Device Detected: {device.display_name}",
            description=(
                f"A new device has connected to your network: "
                f"{device.display_name} ({device.vendor or 'Unknown'})"
            ),
        ))
        if self.config.enable_notifications:
            await notify_new_device(self.sink, device)

    async def _evaluate(self, device: Device, is_new: bool) -> None:
        history = await self.registry.list_history(device.id, limit=50)

        if not is_new:
            score = self.risk_engine.score(device, history, is_newly_observed=False)
            if score != device.risk_score:
                device = await self.registry.update(device.id, risk_score=score) or device
                await self.registry.append_history(DeviceHistoryEvent(
                    device_id=device.id,
                    account_id=self.account_id,
                    event_type=HistoryEventType.RISK_UPDATED,
                    risk_score=score,
                    details=f"Risk score updated to {score} ({device.risk_level.value})",
                ))

        anomaly = self.risk_engine.detect_anomaly(device, history)
        if anomaly.is_anomaly:
            created = await self._raise_alert(SecurityAlert(
                account_id=self.account_id,
                device_id=device.id,
                alert_type=AlertType.ANOMALY_DETECTED,
                severity=anomaly.severity,
                title=f"Anomaly Detected: {device.display_name}",
                description=anomaly.reason,
            ))
            if created is not None and self.config.enable_notifications:
                await notify_anomaly(self.sink, device, anomaly.reason)

        assessment = await self.risk_engine.assess(device, history)
        if assessment.threat_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            critical = assessment.threat_level is RiskLevel.CRITICAL
            created = await self._raise_alert(SecurityAlert(
                account_id=self.account_id,
                device_id=device.id,
                alert_type=AlertType.HIGH_RISK_DEVICE if critical else AlertType.SUSPICIOUS_ACTIVITY,
                severity=Severity(assessment.threat_level.value),
                title=f"Security Alert: {device.display_name}",
                description=assessment.summary,
            ))
            if created is not None and assessment.risk_score > 80 and self.config.enable_notifications:
                await notify_high_risk_device(self.sink, device, assessment.risk_score)

        if (
            self.config.auto_block
            and self.risk_engine.should_auto_block(assessment)
            and not device.is_blocked
        ):
            if _operator_unblocked(history):
                logger.info("Not auto-blocking %s: operator unblocked it", device.mac)
            else:
                await self.blocking.block(
                    self.account_id, device.id, reason=assessment.summary, automatic=True,
                )


# ---------------------------------------------------------------------------
# Registry of per-account schedulers
# ---------------------------------------------------------------------------

class SchedulerRegistry:
    """Schedulers keyed by account, owned by the process entry point."""

    def __init__(self, factory: Callable[[ScannerConfig], ScanScheduler]) -> None:
        self._factory = factory
        self._schedulers: dict[int, ScanScheduler] = {}
        # Outlive the schedulers: a cycle may still hold one after stop()
        self._cycle_locks: dict[int, asyncio.Lock] = {}

    def ensure(self, config: ScannerConfig) -> ScanScheduler:
        """Register (or reconfigure) the account's scheduler without starting it."""
        scheduler = self._schedulers.get(config.account_id)
        if scheduler is None:
            scheduler = self._factory(config)
            scheduler.cycle_lock = self._cycle_locks.setdefault(config.account_id, asyncio.Lock())
            self._schedulers[config.account_id] = scheduler
        else:
            scheduler.update_config(config)
        return scheduler

    async def start(self, config: ScannerConfig) -> ScanScheduler:
        scheduler = self.ensure(config)
        await scheduler.start()
        return scheduler

    async def stop(self, account_id: int) -> bool:
        scheduler = self._schedulers.pop(account_id, None)
        if scheduler is None:
            return False
        await scheduler.stop()
        return True

    def get(self, account_id: int) -> ScanScheduler | None:
        return self._schedulers.get(account_id)

    def states(self) -> dict[int, ScanState]:
        return {acct: s.get_state() for acct, s in self._schedulers.items()}

    async def force_scan(self, account_id: int) -> bool:
        scheduler = self._schedulers.get(account_id)
        if scheduler is None:
            raise ConfigurationError(f"No scheduler registered for account {account_id}")
        return await scheduler.force_scan()

    async def stop_all(self) -> None:
        for account_id in list(self._schedulers):
            await self.stop(account_id)
