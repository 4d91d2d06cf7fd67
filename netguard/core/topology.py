"""Star-shaped topology of the registry: the router in the middle, devices around it."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from netguard.core.fingerprint import categorize
from netguard.core.models import Device, DeviceCategory, RiskLevel


class TopologyNode(BaseModel):
    id: str
    type: Literal["router", "device"]
    ip: str | None = None
    mac: str | None = None
    name: str
    vendor: str | None = None
    category: DeviceCategory = DeviceCategory.UNKNOWN
    is_online: bool = True
    is_blocked: bool = False
    risk_level: RiskLevel | None = None


class TopologyEdge(BaseModel):
    id: str
    source: str
    target: str
    type: Literal["wired", "wireless", "unknown"] = "unknown"


class NetworkTopology(BaseModel):
    nodes: list[TopologyNode] = Field(default_factory=list)
    edges: list[TopologyEdge] = Field(default_factory=list)
    gateway: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now().astimezone())


def build_topology(devices: Iterable[Device], router_ip: str | None = None) -> NetworkTopology:
    """Nodes for every device, each linked to the router when one is known."""
    topology = NetworkTopology(gateway=router_ip)
    router_id = f"router-{router_ip}" if router_ip else None
    if router_id:
        topology.nodes.append(TopologyNode(
            id=router_id, type="router", ip=router_ip, name="Gateway/Router",
            category=DeviceCategory.ROUTER,
        ))

    for device in devices:
        if router_ip and device.ip == router_ip:
            continue
        node_id = f"device-{device.id if device.id is not None else device.mac}"
        topology.nodes.append(TopologyNode(
            id=node_id,
            type="device",
            ip=device.ip,
            mac=device.mac,
            name=device.display_name,
            vendor=device.vendor,
            category=categorize(device.device_type or ""),
            is_online=device.is_online,
            is_blocked=device.is_blocked,
            risk_level=device.risk_level,
        ))
        if router_id:
            topology.edges.append(TopologyEdge(
                id=f"edge-{router_id}-{node_id}", source=router_id, target=node_id,
            ))
    return topology
