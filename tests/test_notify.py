"""Tests for owner notifications."""

import json

import httpx
import pytest

from netguard.core.notify import (
    LogNotificationSink,
    WebhookNotificationSink,
    notify_anomaly,
    notify_device_blocked,
    notify_high_risk_device,
    notify_new_device,
)

from conftest import make_device


@pytest.mark.asyncio
async def test_webhook_posts_title_and_content():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    sink = WebhookNotificationSink("http://hooks.test/netguard", transport=httpx.MockTransport(handler))
    try:
        device = make_device(hostname="printer", vendor="HP")
        assert await notify_new_device(sink, device) is True
        assert await notify_high_risk_device(sink, device, 91) is True
    finally:
        await sink.close()

    assert received[0] == {
        "title": "New Device Detected",
        "content": "A new device has connected to your network: printer (HP)",
    }
    assert received[1]["title"] == "High-Risk Device Detected"
    assert "91/100" in received[1]["content"]


@pytest.mark.asyncio
async def test_webhook_rejection_returns_false():
    sink = WebhookNotificationSink(
        "http://hooks.test/netguard", transport=httpx.MockTransport(lambda r: httpx.Response(500)),
    )
    try:
        assert await notify_device_blocked(sink, make_device()) is False
    finally:
        await sink.close()


@pytest.mark.asyncio
async def test_transport_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    sink = WebhookNotificationSink("http://hooks.test/netguard", transport=httpx.MockTransport(handler))
    try:
        assert await notify_anomaly(sink, make_device(), "flapping") is False
    finally:
        await sink.close()


@pytest.mark.asyncio
async def test_no_sink():
    assert await notify_new_device(None, make_device()) is False


@pytest.mark.asyncio
async def test_log_sink(caplog):
    with caplog.at_level("INFO", logger="netguard.core.notify"):
        assert await notify_device_blocked(LogNotificationSink(), make_device(custom_name="tv")) is True
    assert "Device tv has been blocked" in caplog.text
