"""Tests for router adapters and the RouterManager facade.

Router firmware is simulated with httpx.MockTransport handlers.
"""

import json

import httpx
import pytest

from netguard.core.errors import ConfigurationError, RouterAuthError
from netguard.core.models import RouterConfig, RouterType
from netguard.routers.base import normalize_devices
from netguard.routers.huawei import HuaweiAdapter
from netguard.routers.manager import RouterManager
from netguard.routers.rain import RainAdapter


class FakeRouter:
    """Routes (method, path) pairs to canned responses and records traffic."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append((key, request))
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404)
        if callable(handler):
            return handler(request)
        # fresh copy so one canned response can answer repeated calls
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)

    def paths(self, method=None):
        return [path for (m, path), _ in self.calls if method is None or m == method]

    @property
    def transport(self):
        return httpx.MockTransport(self)


HUAWEI_HOSTS = {
    "devices": [
        {"ip": "192.168.8.10", "mac": "b8-27-eb-00-00-01", "hostname": "pi", "status": "online"},
        {"ipaddr": "192.168.8.11", "macaddr": "aa:bb:cc:dd:ee:02", "name": "tv", "online": False},
        {"ip": "192.168.8.12", "hostname": "no-mac"},
    ]
}


def huawei_login_ok():
    return httpx.Response(200, json={"sessionid": "abc123"})


# =============================================================================
# NORMALIZATION
# =============================================================================

class TestNormalizeDevices:
    def test_wrapped_list_with_aliases(self):
        devices = normalize_devices(HUAWEI_HOSTS)
        assert [d.mac for d in devices] == ["B8:27:EB:00:00:01", "AA:BB:CC:DD:EE:02"]
        assert devices[0].hostname == "pi"
        assert devices[0].is_online is True
        assert devices[1].is_online is False

    def test_bare_list_with_signal_and_speed(self):
        payload = [{"ipAddress": "10.0.0.2", "macAddress": "AA:BB:CC:DD:EE:03", "rssi": "-61", "speed": "12.5"}]
        (device,) = normalize_devices(payload)
        assert device.signal == -61
        assert device.bandwidth == 12.5

    @pytest.mark.parametrize("payload", [None, "html", 42, {"unexpected": []}, {"devices": "nope"}])
    def test_unrecognized_shapes_are_empty(self, payload):
        assert normalize_devices(payload) == []

    def test_offline_status_string(self):
        (device,) = normalize_devices([{"ip": "10.0.0.2", "mac": "AA:BB:CC:DD:EE:04", "status": "Offline"}])
        assert device.is_online is False


# =============================================================================
# HUAWEI
# =============================================================================

class TestHuaweiAdapter:
    @pytest.mark.asyncio
    async def test_login_then_list_devices(self):
        router = FakeRouter({
            ("POST", "/api/system/user_login"): huawei_login_ok(),
            ("GET", "/api/system/HostInfo"): httpx.Response(200, json=HUAWEI_HOSTS),
            ("POST", "/api/user/logout"): httpx.Response(200),
        })
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is True
            devices = await adapter.list_devices()

        assert len(devices) == 2
        host_call = next(req for (key, req) in router.calls if key == ("GET", "/api/system/HostInfo"))
        assert host_call.headers["cookie"] == "sessionid=abc123"
        assert "/api/user/logout" in router.paths("POST")

    @pytest.mark.asyncio
    async def test_falls_back_to_second_login(self):
        router = FakeRouter({
            ("POST", "/api/system/user_login"): httpx.Response(200, json={"error": "denied"}),
            ("POST", "/api/user/login"): huawei_login_ok(),
        })
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is True
        assert router.paths("POST")[:2] == ["/api/system/user_login", "/api/user/login"]

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        router = FakeRouter({})
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is False
            with pytest.raises(RouterAuthError):
                await adapter.list_devices()
        # no session, so no logout call
        assert "/api/user/logout" not in router.paths()

    @pytest.mark.asyncio
    async def test_dhcp_fallback_after_unusable_endpoints(self):
        router = FakeRouter({
            ("POST", "/api/system/user_login"): huawei_login_ok(),
            ("GET", "/api/system/HostInfo"): httpx.Response(200, text="<html>login</html>"),
            ("GET", "/api/system/host_info"): httpx.Response(200, json={"devices": []}),
            ("GET", "/api/system/dhcp_client"): httpx.Response(200, json={
                "dhcp_clients": [{"ip": "192.168.8.20", "mac": "AA:BB:CC:DD:EE:20"}],
            }),
        })
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            await adapter.authenticate()
            devices = await adapter.list_devices()
        assert [d.ip for d in devices] == ["192.168.8.20"]

    @pytest.mark.asyncio
    async def test_nothing_found_is_empty(self):
        router = FakeRouter({("POST", "/api/system/user_login"): huawei_login_ok()})
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            await adapter.authenticate()
            assert await adapter.list_devices() == []

    @pytest.mark.asyncio
    async def test_block_payload(self):
        bodies = []

        def capture(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        router = FakeRouter({
            ("POST", "/api/system/user_login"): huawei_login_ok(),
            ("POST", "/api/system/block_device"): capture,
        })
        async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
            await adapter.authenticate()
            assert await adapter.block_device("aa-bb-cc-dd-ee-ff") is True
            assert await adapter.unblock_device("aa-bb-cc-dd-ee-ff") is True
        assert bodies == [
            {"mac": "AA:BB:CC:DD:EE:FF", "block": 1},
            {"mac": "AA:BB:CC:DD:EE:FF", "block": 0},
        ]

    @pytest.mark.asyncio
    async def test_logout_runs_when_operation_raises(self):
        router = FakeRouter({
            ("POST", "/api/system/user_login"): huawei_login_ok(),
            ("POST", "/api/user/logout"): httpx.Response(200),
        })
        with pytest.raises(RuntimeError):
            async with HuaweiAdapter("192.168.8.1", "admin", "pw", transport=router.transport) as adapter:
                await adapter.authenticate()
                raise RuntimeError("boom")
        assert "/api/user/logout" in router.paths("POST")
        assert adapter.is_authenticated is False


# =============================================================================
# RAIN
# =============================================================================

class TestRainAdapter:
    @pytest.mark.asyncio
    async def test_token_login_sets_bearer(self):
        router = FakeRouter({
            ("POST", "/api/auth/login"): httpx.Response(200, json={"token": "tok-1"}),
            ("GET", "/api/devices"): httpx.Response(200, json=[
                {"ip": "10.0.0.5", "mac": "AA:BB:CC:DD:EE:05", "signal": -40, "bandwidth": 3.2},
            ]),
        })
        async with RainAdapter("10.0.0.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is True
            (device,) = await adapter.list_devices()

        assert device.signal == -40
        assert device.bandwidth == 3.2
        request = next(req for (key, req) in router.calls if key == ("GET", "/api/devices"))
        assert request.headers["authorization"] == "Bearer tok-1"
        assert request.headers["x-auth-token"] == "tok-1"
        assert "/api/auth/logout" in router.paths("POST")

    @pytest.mark.asyncio
    async def test_success_flag_without_token_uses_basic_token(self):
        router = FakeRouter({
            ("POST", "/api/auth/login"): httpx.Response(200, json={"success": True}),
        })
        async with RainAdapter("10.0.0.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is True
            assert adapter._session.token == "YWRtaW46cHc="

    @pytest.mark.asyncio
    async def test_form_login_fallback(self):
        router = FakeRouter({
            ("POST", "/api/auth/login"): httpx.Response(401),
            ("POST", "/login"): httpx.Response(200, text="ok"),
        })
        async with RainAdapter("10.0.0.1", "admin", "pw", transport=router.transport) as adapter:
            assert await adapter.authenticate() is True
        form = next(req for (key, req) in router.calls if key == ("POST", "/login"))
        assert b"username=admin" in form.content

    @pytest.mark.asyncio
    async def test_block_payload_and_bandwidth(self):
        bodies = []

        def capture(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        router = FakeRouter({
            ("POST", "/api/auth/login"): httpx.Response(200, json={"token": "t"}),
            ("POST", "/api/device/block"): capture,
            ("GET", "/api/usage"): httpx.Response(200, json={"rx": 10, "tx": 4}),
        })
        async with RainAdapter("10.0.0.1", "admin", "pw", transport=router.transport) as adapter:
            await adapter.authenticate()
            assert await adapter.block_device("AA:BB:CC:DD:EE:05") is True
            assert await adapter.get_bandwidth_usage() == {"rx": 10, "tx": 4}
        assert bodies == [{"mac": "AA:BB:CC:DD:EE:05", "action": "block"}]

    @pytest.mark.asyncio
    async def test_block_rejected_everywhere(self):
        router = FakeRouter({("POST", "/api/auth/login"): httpx.Response(200, json={"token": "t"})})
        async with RainAdapter("10.0.0.1", "admin", "pw", transport=router.transport) as adapter:
            await adapter.authenticate()
            assert await adapter.block_device("AA:BB:CC:DD:EE:05") is False


# =============================================================================
# MANAGER
# =============================================================================

class TestRouterManager:
    @pytest.mark.asyncio
    async def test_one_failing_router_does_not_affect_another(self):
        def handler(request: httpx.Request) -> httpx.Response:
            host, path = request.url.host, request.url.path
            if host == "10.0.0.1":
                if path == "/api/auth/login":
                    return httpx.Response(200, json={"token": "t"})
                if path == "/api/devices":
                    return httpx.Response(200, json={"devices": [
                        {"ip": "10.0.0.7", "mac": "AA:BB:CC:DD:EE:07"},
                    ]})
                return httpx.Response(200)
            raise httpx.ConnectError("unreachable", request=request)

        manager = RouterManager(transport=httpx.MockTransport(handler))
        good = RouterConfig(type=RouterType.RAIN101, ip="10.0.0.1")
        bad = RouterConfig(type=RouterType.HUAWEI, ip="10.0.0.99")
        results = await manager.scan_routers([good, bad])

        assert results[0].success is True
        assert results[0].devices_found == 1
        assert results[0].devices[0].router_type == RouterType.RAIN101
        assert results[0].devices[0].router_ip == "10.0.0.1"
        assert results[1].success is False
        assert "authenticate" in results[1].error

    @pytest.mark.asyncio
    async def test_unsupported_type_is_a_failed_result(self):
        manager = RouterManager()
        result = await manager.scan_router(RouterConfig(type=RouterType.GENERIC, ip="10.0.0.1"))
        assert result.success is False
        assert "Unsupported" in result.error

    def test_create_adapter_rejects_unknown_type(self):
        with pytest.raises(ConfigurationError):
            RouterManager().create_adapter(RouterConfig(type=RouterType.GENERIC, ip="10.0.0.1"))

    @pytest.mark.asyncio
    async def test_register_adapter(self):
        class GenericAdapter(RainAdapter):
            router_type = RouterType.GENERIC
            label = "Generic"

        router = FakeRouter({
            ("POST", "/api/auth/login"): httpx.Response(200, json={"token": "t"}),
            ("GET", "/api/devices"): httpx.Response(200, json=[{"ip": "10.0.0.8", "mac": "AA:BB:CC:DD:EE:08"}]),
        })
        manager = RouterManager(transport=router.transport)
        manager.register_adapter(RouterType.GENERIC, GenericAdapter)
        result = await manager.scan_router(RouterConfig(type=RouterType.GENERIC, ip="10.0.0.1"))
        assert result.success is True
        assert result.devices[0].router_type == RouterType.GENERIC

    @pytest.mark.asyncio
    async def test_block_and_stats_never_raise(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        manager = RouterManager(transport=httpx.MockTransport(handler))
        config = RouterConfig(type=RouterType.HUAWEI, ip="192.168.8.1")
        assert await manager.block_device(config, "AA:BB:CC:DD:EE:FF") is False
        assert await manager.unblock_device(config, "AA:BB:CC:DD:EE:FF") is False
        assert await manager.get_stats(config) is None
        assert await manager.get_bandwidth_usage(config) is None

    @pytest.mark.asyncio
    async def test_stats_document(self):
        router = FakeRouter({
            ("POST", "/api/system/user_login"): huawei_login_ok(),
            ("GET", "/api/system/status"): httpx.Response(200, json={"uptime": 1234}),
        })
        manager = RouterManager(transport=router.transport)
        config = RouterConfig(type=RouterType.HUAWEI, ip="192.168.8.1")
        assert await manager.get_stats(config) == {"uptime": 1234}
        # Huawei firmware has no bandwidth document
        assert await manager.get_bandwidth_usage(config) is None
