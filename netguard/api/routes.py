"""REST API route definitions."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from netguard.api.schemas import (
    BlockRequest,
    BlockResponse,
    DeviceResponse,
    DnsRequest,
    EventResponse,
    PaginatedDevices,
    PingManyRequest,
    PingRequest,
    PortScanRequest,
    ScanTriggerResponse,
    StatsResponse,
    TracerouteRequest,
)
from netguard.core.errors import DeviceNotFoundError
from netguard.core.fingerprint import identify
from netguard.core.models import (
    BlockResult,
    Device,
    DeviceHistoryEvent,
    DevicePerformance,
    DnsLookupResult,
    Fingerprint,
    PingResult,
    PortScanResult,
    RouterConfig,
    ScanState,
    SecurityAlert,
    TracerouteResult,
)
from netguard.core.probe import classify_latency, ip_context, list_interfaces
from netguard.core.scanner import detect_gateway
from netguard.core.topology import NetworkTopology, build_topology
from netguard.main import NetGuard


def _block_response(result: BlockResult) -> BlockResponse:
    return BlockResponse(
        success=result.success,
        mac=result.mac,
        router_applied=result.router_applied,
        message=result.message,
        device=DeviceResponse.from_device(result.device) if result.device else None,
    )


def create_routes(services: NetGuard) -> APIRouter:
    """Create the API router with injected dependencies."""
    router = APIRouter(prefix="/api")
    default_account = services.settings.account_id

    async def _owned_device(account_id: int, device_id: int) -> Device:
        device = await services.registry.get(device_id)
        if device is None or device.account_id != account_id:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        return device

    # -- devices -----------------------------------------------------------

    @router.get("/devices", response_model=PaginatedDevices)
    async def list_devices(
        account_id: int = Query(default_account),
        online: bool | None = Query(None, description="Filter by online status"),
        page: int = Query(1, ge=1, description="Page number"),
        page_size: int = Query(50, ge=1, le=200, description="Items per page"),
    ) -> PaginatedDevices:
        devices = await services.registry.list_by_account(account_id, online_only=online is True)
        # If online=False explicitly requested, filter offline only
        if online is False:
            devices = [d for d in devices if not d.is_online]

        start = (page - 1) * page_size
        return PaginatedDevices(
            devices=[DeviceResponse.from_device(d) for d in devices[start:start + page_size]],
            total=len(devices),
            page=page,
            page_size=page_size,
        )

    @router.get("/devices/{device_id}", response_model=DeviceResponse)
    async def get_device(device_id: int, account_id: int = Query(default_account)) -> DeviceResponse:
        return DeviceResponse.from_device(await _owned_device(account_id, device_id))

    @router.get("/devices/{device_id}/history", response_model=list[DeviceHistoryEvent])
    async def get_device_history(
        device_id: int,
        account_id: int = Query(default_account),
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[DeviceHistoryEvent]:
        await _owned_device(account_id, device_id)
        return await services.registry.list_history(device_id, limit=limit)

    @router.get("/devices/{device_id}/latency")
    async def get_device_latency(
        device_id: int, account_id: int = Query(default_account)
    ) -> dict[str, Any]:
        device = await _owned_device(account_id, device_id)
        latency = await services.probe.measure_latency(device.ip) if device.ip else None
        return {
            "device_id": device_id,
            "ip": device.ip,
            "latency_ms": latency,
            "quality": classify_latency(latency).value,
        }

    @router.get("/devices/{device_id}/performance", response_model=DevicePerformance)
    async def get_device_performance(
        device_id: int, account_id: int = Query(default_account)
    ) -> DevicePerformance:
        device = await _owned_device(account_id, device_id)
        if not device.ip:
            raise HTTPException(status_code=409, detail=f"Device {device_id} has no known IP address")
        return await services.probe.device_performance(device.ip)

    @router.post("/devices/{device_id}/block", response_model=BlockResponse)
    async def block_device(
        device_id: int,
        body: BlockRequest | None = None,
        account_id: int = Query(default_account),
    ) -> BlockResponse:
        reason = body.reason if body else None
        return _block_response(await services.blocking.block(account_id, device_id, reason=reason))

    @router.post("/devices/{device_id}/unblock", response_model=BlockResponse)
    async def unblock_device(device_id: int, account_id: int = Query(default_account)) -> BlockResponse:
        return _block_response(await services.blocking.unblock(account_id, device_id))

    @router.get("/fingerprint/{mac}", response_model=Fingerprint)
    async def fingerprint(mac: str) -> Fingerprint:
        return identify(mac)

    @router.get("/stats", response_model=StatsResponse)
    async def get_stats(account_id: int = Query(default_account)) -> StatsResponse:
        return StatsResponse(**await services.registry.get_stats(account_id))

    @router.get("/topology", response_model=NetworkTopology)
    async def get_topology(account_id: int = Query(default_account)) -> NetworkTopology:
        devices = await services.registry.list_by_account(account_id)
        routers = services.settings.routers
        gateway = routers[0].ip if routers else await asyncio.to_thread(detect_gateway)
        return build_topology(devices, gateway)

    @router.get("/routers")
    async def router_status() -> list[dict[str, Any]]:
        """Status and bandwidth documents from every configured router."""

        async def _status(config: RouterConfig) -> dict[str, Any]:
            stats, bandwidth = await asyncio.gather(
                services.router_manager.get_stats(config),
                services.router_manager.get_bandwidth_usage(config),
            )
            return {
                "type": config.type.value,
                "ip": config.ip,
                "reachable": stats is not None,
                "stats": stats,
                "bandwidth": bandwidth,
            }

        return list(await asyncio.gather(*(_status(c) for c in services.settings.routers)))

    # -- diagnostic tools --------------------------------------------------

    @router.post("/tools/ping", response_model=PingResult)
    async def ping(body: PingRequest) -> PingResult:
        return await services.probe.ping(body.host, body.count)

    @router.post("/tools/ping-many", response_model=list[PingResult])
    async def ping_many(body: PingManyRequest) -> list[PingResult]:
        return await services.probe.ping_many(body.hosts, body.count)

    @router.post("/tools/traceroute", response_model=TracerouteResult)
    async def traceroute(body: TracerouteRequest) -> TracerouteResult:
        return await services.probe.traceroute(body.host, body.max_hops)

    @router.post("/tools/dns", response_model=DnsLookupResult)
    async def dns_lookup(body: DnsRequest) -> DnsLookupResult:
        return await services.probe.dns_lookup(body.domain, body.record_type)

    @router.post("/tools/ports", response_model=PortScanResult)
    async def scan_ports(body: PortScanRequest) -> PortScanResult:
        if body.mode == "custom":
            if not body.ports:
                raise HTTPException(status_code=422, detail="'ports' is required for a custom scan")
            return await services.probe.scan_ports(body.ip, body.ports)
        if body.mode == "full":
            return await services.probe.full_scan(body.ip, body.start, body.end)
        return await services.probe.quick_scan(body.ip)

    @router.get("/tools/ip-context/{ip}")
    async def address_context(ip: str) -> dict[str, Any]:
        return {"ip": ip, **ip_context(ip)}

    @router.get("/tools/interfaces")
    async def interfaces() -> list[dict[str, Any]]:
        return await asyncio.to_thread(list_interfaces)

    # -- scanning ----------------------------------------------------------

    @router.post("/scan", response_model=ScanTriggerResponse)
    async def scan_now(account_id: int = Query(default_account)) -> ScanTriggerResponse:
        scheduler = services.schedulers.get(account_id)
        if scheduler is None:
            scheduler = services.schedulers.ensure(services.scanner_config(account_id))
        ran = await scheduler.force_scan()
        return ScanTriggerResponse(
            status="completed" if ran else "skipped",
            message="Scan completed" if ran else "A scan is already in progress",
            state=scheduler.get_state(),
        )

    @router.get("/scheduler", response_model=ScanState)
    async def scheduler_state(account_id: int = Query(default_account)) -> ScanState:
        scheduler = services.schedulers.get(account_id)
        return scheduler.get_state() if scheduler else ScanState()

    @router.get("/schedulers", response_model=dict[int, ScanState])
    async def all_scheduler_states() -> dict[int, ScanState]:
        return services.schedulers.states()

    @router.post("/scheduler/start", response_model=ScanState)
    async def start_scheduler(account_id: int = Query(default_account)) -> ScanState:
        scheduler = await services.schedulers.start(services.scanner_config(account_id))
        return scheduler.get_state()

    @router.post("/scheduler/stop", response_model=ScanState)
    async def stop_scheduler(account_id: int = Query(default_account)) -> ScanState:
        scheduler = services.schedulers.get(account_id)
        if scheduler is None:
            return ScanState()
        await services.schedulers.stop(account_id)
        return scheduler.get_state()

    # -- alerts / events ---------------------------------------------------

    @router.get("/alerts", response_model=list[SecurityAlert])
    async def list_alerts(
        account_id: int = Query(default_account),
        unresolved: bool = Query(False, description="Only unresolved alerts"),
        limit: int = Query(50, ge=1, le=500),
    ) -> list[SecurityAlert]:
        return await services.alerts.list_by_account(account_id, limit=limit, unresolved_only=unresolved)

    @router.post("/alerts/{alert_id}/resolve")
    async def resolve_alert(alert_id: int, account_id: int = Query(default_account)) -> dict[str, Any]:
        if not await services.alerts.resolve(alert_id, account_id):
            raise HTTPException(status_code=404, detail="Alert not found")
        return {"status": "ok", "alert_id": alert_id}

    @router.get("/events", response_model=list[EventResponse])
    async def get_recent_events(
        account_id: int = Query(default_account),
        limit: int = Query(100, ge=1, le=500),
    ) -> list[EventResponse]:
        return [
            EventResponse(
                event_type=e.event_type.value,
                device_mac=e.device.mac if e.device else None,
                device_ip=e.device.ip if e.device else None,
                timestamp=e.timestamp.isoformat(),
                details=e.details,
            )
            for e in services.bus.recent_events(account_id, limit)
        ]

    return router
