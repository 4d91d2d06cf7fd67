"""Best-effort owner notifications.

Every helper returns a bool and never raises: a failed notification is
logged and the caller carries on.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from netguard.core.models import Device

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, title: str, content: str) -> bool: ...


class LogNotificationSink:
    """Writes notifications to the log. Used when no webhook is configured."""

    async def notify(self, title: str, content: str) -> bool:
        logger.info("NOTIFY %s: %s", title, content)
        return True


class WebhookNotificationSink:
    """POSTs ``{"title", "content"}`` JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def notify(self, title: str, content: str) -> bool:
        resp = await self._client.post(self.url, json={"title": title, "content": content})
        return resp.is_success

    async def close(self) -> None:
        await self._client.aclose()


async def _send(sink: NotificationSink | None, title: str, content: str) -> bool:
    if sink is None:
        return False
    try:
        return await sink.notify(title, content)
    except Exception as exc:
        logger.warning("Notification %r failed: %s", title, exc)
        return False


async def notify_new_device(sink: NotificationSink | None, device: Device) -> bool:
    return await _send(
        sink,
        "New Device Detected",
        f"A new device has connected to your network: "
        f"{device.display_name} ({device.vendor or 'Unknown'})",
    )


async def notify_high_risk_device(
    sink: NotificationSink | None, device: Device, risk_score: int
) -> bool:
    return await _send(
        sink,
        "High-Risk Device Detected",
        f"A high-risk device has been detected on your network: {device.display_name} "
        f"with risk score {risk_score}/100. Immediate action may be required.",
    )


async def notify_anomaly(sink: NotificationSink | None, device: Device, reason: str) -> bool:
    return await _send(
        sink,
        "Network Anomaly Detected",
        f"An unusual pattern has been detected on {device.display_name}: {reason}",
    )


async def notify_device_blocked(sink: NotificationSink | None, device: Device) -> bool:
    return await _send(
        sink,
        "Device Blocked",
        f"Device {device.display_name} has been blocked from network access.",
    )
