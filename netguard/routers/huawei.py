"""Huawei home/LTE routers (B535, B715, B818 and similar firmware)."""

from __future__ import annotations

from typing import Any

from netguard.core.models import RouterType
from netguard.routers.base import AuthStrategy, RouterAdapter


class HuaweiAdapter(RouterAdapter):
    """Session-cookie authentication; block flag sent as 1/0."""

    router_type = RouterType.HUAWEI
    label = "Huawei"

    device_endpoints = (
        "/api/system/HostInfo",
        "/api/system/host_info",
        "/api/device/info",
        "/api/lan/host-list",
    )
    dhcp_endpoints = (
        "/api/system/dhcp_client",
        "/api/system/dhcp-clients",
        "/api/lan/dhcp-clients",
    )
    stats_endpoints = (
        "/api/system/status",
        "/api/system/router_status",
        "/api/device/status",
    )
    block_endpoints = (
        "/api/system/block_device",
        "/api/device/block",
        "/api/lan/block-device",
    )
    unblock_endpoints = (
        "/api/system/block_device",
        "/api/device/unblock",
        "/api/lan/unblock-device",
    )
    logout_endpoint = "/api/user/logout"

    def auth_strategies(self) -> list[AuthStrategy]:
        return [self._system_login, self._user_login]

    async def _session_login(self, path: str) -> bool:
        resp = await self._post(path, json={"username": self.username, "password": self.password})
        if resp is None or resp.status_code != 200:
            return False
        data = resp.json()
        session_id = data.get("sessionid") if isinstance(data, dict) else None
        if not session_id:
            return False
        self._session.token = str(session_id)
        self._client.headers["Cookie"] = f"sessionid={session_id}"
        return True

    async def _system_login(self) -> bool:
        return await self._session_login("/api/system/user_login")

    async def _user_login(self) -> bool:
        return await self._session_login("/api/user/login")

    def block_payload(self, mac: str, block: bool) -> dict[str, Any]:
        return {"mac": mac, "block": 1 if block else 0}
