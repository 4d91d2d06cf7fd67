"""RAIN 101 mobile routers."""

from __future__ import annotations

import base64
from typing import Any

from netguard.core.models import RouterType
from netguard.routers.base import AuthStrategy, RouterAdapter


class RainAdapter(RouterAdapter):
    """Bearer-token JSON login with a form-login fallback.

    Device rows from this firmware carry signal strength and bandwidth.
    """

    router_type = RouterType.RAIN101
    label = "RAIN 101"

    device_endpoints = (
        "/api/devices",
        "/api/network/devices",
        "/api/lan/devices",
        "/api/connected-devices",
        "/api/device/list",
    )
    dhcp_endpoints = (
        "/api/dhcp/clients",
        "/api/network/dhcp-clients",
        "/api/lan/dhcp",
    )
    stats_endpoints = (
        "/api/status",
        "/api/system/status",
        "/api/router/info",
    )
    bandwidth_endpoints = (
        "/api/bandwidth",
        "/api/network/bandwidth",
        "/api/usage",
    )
    block_endpoints = (
        "/api/device/block",
        "/api/network/block-device",
        "/api/block",
    )
    unblock_endpoints = (
        "/api/device/unblock",
        "/api/network/unblock-device",
        "/api/unblock",
    )
    logout_endpoint = "/api/auth/logout"

    def auth_strategies(self) -> list[AuthStrategy]:
        return [self._token_login, self._form_login]

    def _fallback_token(self) -> str:
        return base64.b64encode(f"{self.username}:{self.password}".encode()).decode()

    async def _token_login(self) -> bool:
        resp = await self._post(
            "/api/auth/login",
            json={"username": self.username, "password": self.password},
        )
        if resp is None or resp.status_code != 200:
            return False
        data = resp.json()
        if not isinstance(data, dict):
            return False
        if not (data.get("token") or data.get("sessionid") or data.get("success")):
            return False
        token = str(data.get("token") or data.get("sessionid") or self._fallback_token())
        self._session.token = token
        self._client.headers["Authorization"] = f"Bearer {token}"
        self._client.headers["X-Auth-Token"] = token
        return True

    async def _form_login(self) -> bool:
        resp = await self._post(
            "/login",
            data={"username": self.username, "password": self.password},
        )
        return resp is not None and resp.status_code == 200

    def block_payload(self, mac: str, block: bool) -> dict[str, Any]:
        return {"mac": mac, "action": "block" if block else "unblock"}

    async def get_bandwidth_usage(self) -> Any | None:
        """Raw bandwidth/usage document, if the firmware exposes one."""
        return await self._first_document(self.bandwidth_endpoints)
