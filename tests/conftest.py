"""Shared fixtures: settings pointed at a temporary database, an open registry."""

import pytest
import pytest_asyncio

from netguard.config import Settings
from netguard.core.db import AlertStore, Database, DeviceRegistry
from netguard.core.models import Device, RawDevice


@pytest.fixture(autouse=True)
def no_yaml_config(monkeypatch):
    monkeypatch.setattr("netguard.config._load_yaml_config", lambda: {})


@pytest.fixture
def settings(tmp_path):
    return Settings(db_path=str(tmp_path / "netguard.db"), routers=[], subnet=None)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(tmp_path / "registry.db")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def registry(database):
    return DeviceRegistry(database)


@pytest.fixture
def alerts(database):
    return AlertStore(database)


def make_raw(mac="AA:BB:CC:DD:EE:01", ip="192.168.1.10", **kwargs) -> RawDevice:
    kwargs.setdefault("device_type", "Laptop")
    return RawDevice(ip=ip, mac=mac, **kwargs)


def make_device(mac="AA:BB:CC:DD:EE:01", ip="192.168.1.10", account_id=1, **kwargs) -> Device:
    return Device(account_id=account_id, mac=mac, ip=ip, **kwargs)
