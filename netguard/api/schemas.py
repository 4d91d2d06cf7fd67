"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from netguard.core.models import Device, RiskLevel, ScanState


class DeviceResponse(BaseModel):
    id: int
    mac: str
    ip: str | None = None
    vendor: str | None = None
    device_type: str | None = None
    hostname: str | None = None
    custom_name: str | None = None
    display_name: str
    is_online: bool = True
    is_blocked: bool = False
    risk_score: int
    risk_level: RiskLevel
    first_seen: datetime
    last_seen: datetime

    @classmethod
    def from_device(cls, device: Device) -> DeviceResponse:
        return cls(
            **device.model_dump(exclude={"account_id"}),
            display_name=device.display_name,
            risk_level=device.risk_level,
        )


class PaginatedDevices(BaseModel):
    devices: list[DeviceResponse]
    total: int
    page: int
    page_size: int


class PingRequest(BaseModel):
    host: str
    count: int = Field(default=4, ge=1, le=100)


class PingManyRequest(BaseModel):
    hosts: list[str] = Field(min_length=1, max_length=256)
    count: int = Field(default=3, ge=1, le=10)


class TracerouteRequest(BaseModel):
    host: str
    max_hops: int = Field(default=30, ge=1, le=64)


class DnsRequest(BaseModel):
    domain: str
    record_type: str = "A"


class PortScanRequest(BaseModel):
    ip: str
    mode: Literal["quick", "full", "custom"] = "quick"
    start: int = Field(default=1, ge=1, le=65535)
    end: int = Field(default=1024, ge=1, le=65535)
    ports: str | None = Field(default=None, description='e.g. "22,80,443" or "1-1024"')


class BlockRequest(BaseModel):
    reason: str | None = None


class BlockResponse(BaseModel):
    success: bool
    mac: str
    router_applied: bool
    message: str
    device: DeviceResponse | None = None


class ScanTriggerResponse(BaseModel):
    status: Literal["completed", "skipped"]
    message: str
    state: ScanState


class StatsResponse(BaseModel):
    total_devices: int
    online_count: int
    blocked_count: int
    new_today: int
    risk_breakdown: dict[str, int] = Field(default_factory=dict)


class EventResponse(BaseModel):
    event_type: str
    device_mac: str | None = None
    device_ip: str | None = None
    timestamp: str
    details: dict[str, Any] = Field(default_factory=dict)
