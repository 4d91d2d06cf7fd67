"""Shared machinery for consumer-router management API adapters.

Router firmware exposes undocumented and unstable HTTP APIs, so every
capability is an ordered list of candidate endpoints. Candidates are tried
in sequence and the first structurally valid response wins; a 404 or an
unparseable body just moves on to the next candidate.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx

from netguard.core.errors import RouterAuthError
from netguard.core.fingerprint import canonical_mac
from netguard.core.models import RawDevice, RouterType

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Keys under which firmware wraps its device list
_LIST_KEYS = ("devices", "hosts", "dhcp_clients", "clients", "connected_devices")

AuthStrategy = Callable[[], Awaitable[bool]]


@dataclass
class RouterSession:
    """Authentication state for a single scan attempt. Never shared."""

    token: str | None = None
    authenticated: bool = False


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------

def _extract_rows(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        for key in _LIST_KEYS:
            if isinstance(payload.get(key), list):
                rows = payload[key]
                break
        else:
            return []
    else:
        return []
    return [row for row in rows if isinstance(row, dict)]


def _first(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _is_online(row: dict[str, Any]) -> bool:
    if row.get("online") is False or row.get("connected") is False:
        return False
    return str(row.get("status", "")).lower() != "offline"


def normalize_devices(payload: Any) -> list[RawDevice]:
    """Decode any of the known vendor response shapes into RawDevice rows.

    Accepts a bare list or an object wrapping the list under one of the
    known keys. Rows without both an address and a MAC are dropped, and
    anything unrecognized yields an empty list.
    """
    devices: list[RawDevice] = []
    for row in _extract_rows(payload):
        ip = _first(row, "ip", "ipaddr", "ipAddress")
        mac = _first(row, "mac", "macaddr", "macAddress", "hwaddr")
        if not ip or not mac:
            continue
        hostname = _first(row, "hostname", "name", "deviceName")
        device_type = _first(row, "type", "deviceType")
        vendor = _first(row, "vendor")
        devices.append(RawDevice(
            ip=str(ip),
            mac=canonical_mac(str(mac)),
            hostname=str(hostname) if hostname is not None else None,
            device_type=str(device_type) if device_type is not None else None,
            vendor=str(vendor) if vendor is not None else None,
            is_online=_is_online(row),
            signal=_as_int(_first(row, "signal", "rssi")),
            bandwidth=_as_float(_first(row, "bandwidth", "speed")),
        ))
    return devices


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------

class RouterAdapter(ABC):
    """One router family's management API.

    Use as an async context manager; leaving the block always logs out and
    closes the HTTP client, even when a step inside raised.
    """

    router_type: ClassVar[RouterType]
    label: ClassVar[str]

    device_endpoints: ClassVar[tuple[str, ...]] = ()
    dhcp_endpoints: ClassVar[tuple[str, ...]] = ()
    stats_endpoints: ClassVar[tuple[str, ...]] = ()
    block_endpoints: ClassVar[tuple[str, ...]] = ()
    unblock_endpoints: ClassVar[tuple[str, ...]] = ()
    logout_endpoint: ClassVar[str | None] = None

    def __init__(
        self,
        ip: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.ip = ip
        self.username = username
        self.password = password
        self._session = RouterSession()
        self._client = httpx.AsyncClient(
            base_url=f"http://{ip}",
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def __aenter__(self) -> RouterAdapter:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            await self.logout()
        finally:
            await self._client.aclose()

    @property
    def is_authenticated(self) -> bool:
        return self._session.authenticated

    # -- authentication ----------------------------------------------------

    @abstractmethod
    def auth_strategies(self) -> list[AuthStrategy]:
        """Login attempts to make, in order."""

    async def authenticate(self) -> bool:
        """Try each login strategy until one succeeds. Never raises."""
        logger.info("[%s] Attempting authentication on %s", self.label, self.ip)
        for strategy in self.auth_strategies():
            try:
                if await strategy():
                    self._session.authenticated = True
                    logger.info("[%s] Authenticated via %s", self.label, strategy.__name__)
                    return True
            except (httpx.HTTPError, ValueError) as exc:
                logger.debug("[%s] %s failed: %s", self.label, strategy.__name__, exc)
        logger.warning("[%s] Authentication failed on %s", self.label, self.ip)
        return False

    def _require_session(self) -> None:
        if not self._session.authenticated:
            raise RouterAuthError(f"{self.label} router {self.ip} is not authenticated")

    # -- HTTP helpers ------------------------------------------------------

    async def _get_json(self, path: str) -> Any | None:
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as exc:
            logger.debug("[%s] GET %s failed: %s", self.label, path, exc)
            return None
        if resp.status_code != 200:
            return None
        try:
            return resp.json()
        except ValueError:
            logger.debug("[%s] GET %s returned a non-JSON body", self.label, path)
            return None

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response | None:
        try:
            return await self._client.post(path, **kwargs)
        except httpx.HTTPError as exc:
            logger.debug("[%s] POST %s failed: %s", self.label, path, exc)
            return None

    async def _first_payload(
        self,
        paths: tuple[str, ...],
        decode: Callable[[Any], list[RawDevice]] = normalize_devices,
    ) -> list[RawDevice] | None:
        """Devices from the first candidate endpoint that yields any."""
        for path in paths:
            payload = await self._get_json(path)
            if payload is None:
                continue
            devices = decode(payload)
            if devices:
                logger.info("[%s] %d devices from %s", self.label, len(devices), path)
                return devices
        return None

    # -- capabilities ------------------------------------------------------

    async def list_devices(self) -> list[RawDevice]:
        """Connected devices, falling back to the DHCP lease table.

        An empty list means nothing was found, not that the router failed.
        """
        self._require_session()
        devices = await self._first_payload(self.device_endpoints)
        if devices is None:
            devices = await self._first_payload(self.dhcp_endpoints)
        if devices is None:
            logger.warning("[%s] No device endpoint returned data", self.label)
            return []
        return devices

    @abstractmethod
    def block_payload(self, mac: str, block: bool) -> dict[str, Any]:
        """Request body for a block/unblock call."""

    async def _set_blocked(self, mac: str, block: bool) -> bool:
        self._require_session()
        mac = canonical_mac(mac)
        paths = self.block_endpoints if block else self.unblock_endpoints
        for path in paths:
            resp = await self._post(path, json=self.block_payload(mac, block))
            if resp is not None and resp.status_code == 200:
                logger.info(
                    "[%s] %s %s via %s", self.label, "Blocked" if block else "Unblocked", mac, path
                )
                return True
        logger.warning("[%s] Could not %s %s", self.label, "block" if block else "unblock", mac)
        return False

    async def block_device(self, mac: str) -> bool:
        return await self._set_blocked(mac, True)

    async def unblock_device(self, mac: str) -> bool:
        return await self._set_blocked(mac, False)

    async def _first_document(self, paths: tuple[str, ...]) -> Any | None:
        self._require_session()
        for path in paths:
            payload = await self._get_json(path)
            if payload is not None:
                return payload
        return None

    async def get_stats(self) -> Any | None:
        """Raw status document from the first stats endpoint that answers."""
        return await self._first_document(self.stats_endpoints)

    async def logout(self) -> None:
        """End the router-side session. Safe to call at any time."""
        if not self._session.authenticated:
            return
        try:
            if self.logout_endpoint:
                await self._post(self.logout_endpoint)
            logger.info("[%s] Logged out of %s", self.label, self.ip)
        finally:
            self._session = RouterSession()
