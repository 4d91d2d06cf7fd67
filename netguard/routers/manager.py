"""Vendor-dispatch facade over the router adapters.

Every call runs authenticate -> operation -> logout on a fresh adapter and
reports failure in its return value; nothing raised by an adapter escapes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import httpx

from netguard.core.errors import ConfigurationError, RouterAuthError
from netguard.core.models import RouterConfig, RouterScanResult, RouterType, UnifiedDevice
from netguard.routers.base import RouterAdapter
from netguard.routers.huawei import HuaweiAdapter
from netguard.routers.rain import RainAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ADAPTERS: dict[RouterType, type[RouterAdapter]] = {
    RouterType.HUAWEI: HuaweiAdapter,
    RouterType.RAIN101: RainAdapter,
}


class RouterManager:
    def __init__(
        self,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport
        self._adapters: dict[RouterType, type[RouterAdapter]] = dict(DEFAULT_ADAPTERS)

    def register_adapter(self, router_type: RouterType, adapter_cls: type[RouterAdapter]) -> None:
        """Add or replace the adapter used for a router type."""
        self._adapters[router_type] = adapter_cls

    def create_adapter(self, config: RouterConfig) -> RouterAdapter:
        adapter_cls = self._adapters.get(config.type)
        if adapter_cls is None:
            raise ConfigurationError(f"Unsupported router type: {config.type.value}")
        return adapter_cls(
            config.ip,
            config.username,
            config.password,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _run(
        self,
        config: RouterConfig,
        operation: Callable[[RouterAdapter], Awaitable[T]],
    ) -> T:
        """Authenticate, run ``operation`` and always log out."""
        async with self.create_adapter(config) as adapter:
            if not await adapter.authenticate():
                raise RouterAuthError(f"Failed to authenticate with {adapter.label} router at {config.ip}")
            return await operation(adapter)

    # -- scanning ----------------------------------------------------------

    async def scan_router(self, config: RouterConfig) -> RouterScanResult:
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            raw = await self._run(config, lambda adapter: adapter.list_devices())
        except Exception as exc:
            logger.warning("Scan of %s router %s failed: %s", config.type.value, config.ip, exc)
            return RouterScanResult(
                success=False,
                router_type=config.type,
                router_ip=config.ip,
                error=str(exc) or exc.__class__.__name__,
                duration_ms=_elapsed(),
            )

        devices = [
            UnifiedDevice(**d.model_dump(), router_type=config.type, router_ip=config.ip)
            for d in raw
        ]
        logger.info(
            "Scanned %s router %s: %d devices in %dms",
            config.type.value, config.ip, len(devices), _elapsed(),
        )
        return RouterScanResult(
            success=True,
            router_type=config.type,
            router_ip=config.ip,
            devices_found=len(devices),
            devices=devices,
            duration_ms=_elapsed(),
        )

    async def scan_routers(self, configs: Iterable[RouterConfig]) -> list[RouterScanResult]:
        """Scan all routers concurrently; one failure never affects the others."""
        return list(await asyncio.gather(*(self.scan_router(c) for c in configs)))

    # -- blocking / stats --------------------------------------------------

    async def block_device(self, config: RouterConfig, mac: str) -> bool:
        try:
            return await self._run(config, lambda adapter: adapter.block_device(mac))
        except Exception as exc:
            logger.warning("Block of %s on %s failed: %s", mac, config.ip, exc)
            return False

    async def unblock_device(self, config: RouterConfig, mac: str) -> bool:
        try:
            return await self._run(config, lambda adapter: adapter.unblock_device(mac))
        except Exception as exc:
            logger.warning("Unblock of %s on %s failed: %s", mac, config.ip, exc)
            return False

    async def get_stats(self, config: RouterConfig) -> Any | None:
        try:
            return await self._run(config, lambda adapter: adapter.get_stats())
        except Exception as exc:
            logger.warning("Stats from %s failed: %s", config.ip, exc)
            return None

    async def get_bandwidth_usage(self, config: RouterConfig) -> Any | None:
        """Bandwidth document for routers whose firmware exposes one."""

        async def _usage(adapter: RouterAdapter) -> Any | None:
            reader = getattr(adapter, "get_bandwidth_usage", None)
            return await reader() if reader is not None else None

        try:
            return await self._run(config, _usage)
        except Exception as exc:
            logger.warning("Bandwidth usage from %s failed: %s", config.ip, exc)
            return None
