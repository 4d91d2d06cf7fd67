"""Device, alert and probe-result models for NetGuard."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HistoryEventType(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    RISK_UPDATED = "risk_updated"


class AlertType(str, Enum):
    NEW_DEVICE = "new_device"
    HIGH_RISK_DEVICE = "high_risk_device"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DEVICE_BLOCKED = "device_blocked"
    ANOMALY_DETECTED = "anomaly_detected"
    BANDWIDTH_SPIKE = "bandwidth_spike"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


class RouterType(str, Enum):
    HUAWEI = "huawei"
    RAIN101 = "rain101"
    GENERIC = "generic"


class DeviceCategory(str, Enum):
    COMPUTER = "computer"
    PHONE = "phone"
    TABLET = "tablet"
    ROUTER = "router"
    IOT = "iot"
    GAMING = "gaming"
    PRINTER = "printer"
    TV = "tv"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LatencyQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNREACHABLE = "unreachable"


class EventType(str, Enum):
    DEVICE_NEW = "device_new"
    DEVICE_ONLINE = "device_online"
    DEVICE_OFFLINE = "device_offline"
    DEVICE_IP_CHANGED = "device_ip_changed"
    DEVICE_BLOCKED = "device_blocked"
    DEVICE_UNBLOCKED = "device_unblocked"
    ALERT_CREATED = "alert_created"
    SCAN_COMPLETE = "scan_complete"


def _now() -> datetime:
    return datetime.now().astimezone()


def risk_level_for(score: int) -> RiskLevel:
    """Map a 0-100 risk score onto its four-bucket level."""
    if score >= 80:
        return RiskLevel.CRITICAL
    if score >= 60:
        return RiskLevel.HIGH
    if score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------

class Device(BaseModel):
    """A physical network endpoint, keyed by its hardware address."""

    id: int | None = None
    account_id: int
    mac: str  # Canonical uppercase colon-separated, never changes
    ip: str | None = None
    vendor: str | None = None
    device_type: str | None = None
    hostname: str | None = None
    custom_name: str | None = None
    is_online: bool = True
    is_blocked: bool = False
    risk_score: int = Field(default=0, ge=0, le=100)
    first_seen: datetime = Field(default_factory=_now)
    last_seen: datetime = Field(default_factory=_now)

    @property
    def risk_level(self) -> RiskLevel:
        return risk_level_for(self.risk_score)

    @property
    def display_name(self) -> str:
        """Best available name for display purposes."""
        return self.custom_name or self.hostname or self.ip or self.mac


class DeviceHistoryEvent(BaseModel):
    """Append-only log entry for a device."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    device_id: int
    account_id: int
    event_type: HistoryEventType
    risk_score: int | None = None
    details: str | None = None
    timestamp: datetime = Field(default_factory=_now)


class SecurityAlert(BaseModel):
    id: int | None = None
    account_id: int
    device_id: int | None = None
    alert_type: AlertType
    severity: Severity = Severity.MEDIUM
    title: str
    description: str | None = None
    is_resolved: bool = False
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Router discovery
# ---------------------------------------------------------------------------

class RouterConfig(BaseModel):
    type: RouterType
    ip: str
    username: str = "admin"
    password: str = ""


class RawDevice(BaseModel):
    """Vendor-neutral shape every router adapter normalizes into."""

    ip: str
    mac: str
    hostname: str | None = None
    device_type: str | None = None
    vendor: str | None = None
    is_online: bool = True
    last_seen: datetime = Field(default_factory=_now)
    signal: int | None = None
    bandwidth: float | None = None


class UnifiedDevice(RawDevice):
    router_type: RouterType
    router_ip: str


class RouterScanResult(BaseModel):
    success: bool
    router_type: RouterType
    router_ip: str
    devices_found: int = 0
    devices: list[UnifiedDevice] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0
    timestamp: datetime = Field(default_factory=_now)


class ScanState(BaseModel):
    """Per-account scheduler state, overwritten every cycle."""

    is_scanning: bool = False
    is_running: bool = False
    last_scan_time: datetime | None = None
    next_scan_time: datetime | None = None
    devices_found: int = 0
    new_devices: int = 0
    offline_devices: int = 0
    error: str | None = None


class BlockResult(BaseModel):
    success: bool
    mac: str
    router_applied: bool = False
    message: str = ""
    device: Device | None = None


class ReconcileSummary(BaseModel):
    new_count: int = 0
    updated_count: int = 0
    went_offline_count: int = 0
    new_devices: list[Device] = Field(default_factory=list)
    affected_devices: list[Device] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Probe results
# ---------------------------------------------------------------------------

class PingResult(BaseModel):
    host: str
    ip: str | None = None
    latency_ms: float | None = None
    min_latency: float | None = None
    max_latency: float | None = None
    avg_latency: float | None = None
    jitter: float | None = None
    packet_loss_percent: float = 100.0
    packets_sent: int = 0
    packets_received: int = 0
    reachable: bool = False
    timestamp: datetime = Field(default_factory=_now)


class DevicePerformance(BaseModel):
    ip: str
    latency_ms: float | None = None
    packet_loss_percent: float = 100.0
    reachable: bool = False
    quality: LatencyQuality = LatencyQuality.UNREACHABLE
    uptime_percent: int = 0
    last_checked: datetime = Field(default_factory=_now)


class TracerouteHop(BaseModel):
    hop_index: int
    ip: str | None = None
    hostname: str | None = None
    latency_ms: float | None = None
    timed_out: bool = False


class TracerouteResult(BaseModel):
    host: str
    hops: list[TracerouteHop] = Field(default_factory=list)
    total_hops: int = 0
    completed: bool = False
    timestamp: datetime = Field(default_factory=_now)


class DnsLookupResult(BaseModel):
    domain: str
    record_type: str
    addresses: list[str] = Field(default_factory=list)
    reverse_hostnames: list[str] | None = None
    timestamp: datetime = Field(default_factory=_now)


class PortInfo(BaseModel):
    port: int
    protocol: str = "tcp"
    state: str = "open"
    service: str = "unknown"


class PortScanResult(BaseModel):
    ip: str
    open_ports: list[PortInfo] = Field(default_factory=list)
    total_scanned: int = 0
    scan_duration_ms: int = 0
    timed_out: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    vulnerabilities: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Risk / fingerprint
# ---------------------------------------------------------------------------

class Fingerprint(BaseModel):
    model_config = ConfigDict(frozen=True)

    mac: str
    vendor: str
    device_type: str
    icon: str
    confidence: Confidence
    device_category: DeviceCategory


class ThreatAssessment(BaseModel):
    threat_level: RiskLevel = RiskLevel.MEDIUM
    risk_score: int = Field(default=0, ge=0, le=100)
    recommendations: list[str] = Field(default_factory=list)
    summary: str = ""
    should_block: bool = False
    is_fallback: bool = False


class AnomalyResult(BaseModel):
    is_anomaly: bool = False
    reason: str = "Device behavior appears normal"
    severity: Severity = Severity.LOW


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

class DeviceEvent(BaseModel):
    """An in-process notification about a device or alert state change."""

    event_type: EventType
    account_id: int | None = None
    device: Device | None = None
    timestamp: datetime = Field(default_factory=_now)
    details: dict[str, Any] = Field(default_factory=dict)
