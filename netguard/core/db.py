"""Async SQLite persistence: the device registry and the alert store."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from netguard.core.errors import RegistryError
from netguard.core.models import (
    AlertType,
    Device,
    DeviceHistoryEvent,
    HistoryEventType,
    SecurityAlert,
    Severity,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    mac TEXT NOT NULL UNIQUE,
    ip TEXT,
    vendor TEXT,
    device_type TEXT,
    hostname TEXT,
    custom_name TEXT,
    is_online INTEGER NOT NULL DEFAULT 1,
    is_blocked INTEGER NOT NULL DEFAULT 0,
    risk_score INTEGER NOT NULL DEFAULT 0,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_devices_account ON devices(account_id);

CREATE TABLE IF NOT EXISTS device_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id INTEGER NOT NULL,
    account_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    risk_score INTEGER,
    details TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE INDEX IF NOT EXISTS idx_history_device ON device_history(device_id);

CREATE TABLE IF NOT EXISTS security_alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    device_id INTEGER,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    is_resolved INTEGER NOT NULL DEFAULT 0,
    resolved_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (device_id) REFERENCES devices(id)
);

CREATE INDEX IF NOT EXISTS idx_alerts_account ON security_alerts(account_id);
"""

# Columns callers may change through DeviceRegistry.update
_MUTABLE_COLUMNS = frozenset({
    "ip", "vendor", "device_type", "hostname", "custom_name",
    "is_online", "is_blocked", "risk_score", "last_seen",
})


def _dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def _str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _to_column(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return _dt_to_str(value)
    return value


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except aiosqlite.IntegrityError as exc:
        raise RegistryError(f"{action}: {exc}") from exc
    except aiosqlite.Error as exc:
        logger.error("%s failed: %s", action, exc)
        raise RegistryError(f"{action}: {exc}") from exc


def _row_to_device(row: aiosqlite.Row) -> Device:
    return Device(
        id=row["id"],
        account_id=row["account_id"],
        mac=row["mac"],
        ip=row["ip"],
        vendor=row["vendor"],
        device_type=row["device_type"],
        hostname=row["hostname"],
        custom_name=row["custom_name"],
        is_online=bool(row["is_online"]),
        is_blocked=bool(row["is_blocked"]),
        risk_score=row["risk_score"],
        first_seen=_str_to_dt(row["first_seen"]),
        last_seen=_str_to_dt(row["last_seen"]),
    )


def _row_to_event(row: aiosqlite.Row) -> DeviceHistoryEvent:
    return DeviceHistoryEvent(
        id=row["id"],
        device_id=row["device_id"],
        account_id=row["account_id"],
        event_type=HistoryEventType(row["event_type"]),
        risk_score=row["risk_score"],
        details=row["details"],
        timestamp=_str_to_dt(row["timestamp"]),
    )


def _row_to_alert(row: aiosqlite.Row) -> SecurityAlert:
    return SecurityAlert(
        id=row["id"],
        account_id=row["account_id"],
        device_id=row["device_id"],
        alert_type=AlertType(row["alert_type"]),
        severity=Severity(row["severity"]),
        title=row["title"],
        description=row["description"],
        is_resolved=bool(row["is_resolved"]),
        resolved_at=_str_to_dt(row["resolved_at"]) if row["resolved_at"] else None,
        created_at=_str_to_dt(row["created_at"]),
    )


class Database:
    """Owns the aiosqlite connection shared by the registry and alert store."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create tables if needed."""
        with _storage_errors("Opening database"):
            if str(self._db_path) != ":memory:":
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self._db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(_CREATE_TABLES)

            async with self._db.execute("SELECT COUNT(*) FROM schema_version") as cursor:
                count = (await cursor.fetchone())[0]
            if count == 0:
                await self._db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (_SCHEMA_VERSION,)
                )
            await self._db.commit()
        logger.info("Database initialized at %s", self._db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RegistryError("Database is not open")
        return self._db


# ---------------------------------------------------------------------------
# Device registry
# ---------------------------------------------------------------------------

class DeviceRegistry:
    """CRUD over devices and their append-only history, keyed by unique MAC."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def list_by_account(self, account_id: int, online_only: bool = False) -> list[Device]:
        query = "SELECT * FROM devices WHERE account_id = ?"
        if online_only:
            query += " AND is_online = 1"
        query += " ORDER BY is_online DESC, ip ASC"
        with _storage_errors("Listing devices"):
            async with self._database.conn.execute(query, (account_id,)) as cursor:
                return [_row_to_device(row) for row in await cursor.fetchall()]

    async def get_by_mac(self, mac: str) -> Device | None:
        with _storage_errors("Looking up device"):
            async with self._database.conn.execute(
                "SELECT * FROM devices WHERE mac = ?", (mac.upper(),)
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_device(row) if row else None

    async def get(self, device_id: int) -> Device | None:
        with _storage_errors("Looking up device"):
            async with self._database.conn.execute(
                "SELECT * FROM devices WHERE id = ?", (device_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_device(row) if row else None

    async def create(self, device: Device) -> Device:
        """Insert a new device. A duplicate MAC raises RegistryError."""
        db = self._database.conn
        with _storage_errors(f"Creating device {device.mac}"):
            cursor = await db.execute(
                """
                INSERT INTO devices (
                    account_id, mac, ip, vendor, device_type, hostname, custom_name,
                    is_online, is_blocked, risk_score, first_seen, last_seen
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device.account_id,
                    device.mac.upper(),
                    device.ip,
                    device.vendor,
                    device.device_type,
                    device.hostname,
                    device.custom_name,
                    int(device.is_online),
                    int(device.is_blocked),
                    device.risk_score,
                    _dt_to_str(device.first_seen),
                    _dt_to_str(device.last_seen),
                ),
            )
            await db.commit()
        return device.model_copy(update={"id": cursor.lastrowid, "mac": device.mac.upper()})

    async def update(self, device_id: int, **fields: Any) -> Device | None:
        """Change mutable columns and return the stored device."""
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update device fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            params = [_to_column(v) for v in fields.values()] + [device_id]
            db = self._database.conn
            with _storage_errors(f"Updating device {device_id}"):
                await db.execute(f"UPDATE devices SET {assignments} WHERE id = ?", params)
                await db.commit()
        return await self.get(device_id)

    async def append_history(self, event: DeviceHistoryEvent) -> DeviceHistoryEvent:
        db = self._database.conn
        with _storage_errors("Appending history"):
            cursor = await db.execute(
                """
                INSERT INTO device_history (device_id, account_id, event_type, risk_score, details, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.device_id,
                    event.account_id,
                    event.event_type.value,
                    event.risk_score,
                    event.details,
                    _dt_to_str(event.timestamp),
                ),
            )
            await db.commit()
        return event.model_copy(update={"id": cursor.lastrowid})

    async def list_history(self, device_id: int, limit: int = 100) -> list[DeviceHistoryEvent]:
        """Most recent events first."""
        with _storage_errors("Listing history"):
            async with self._database.conn.execute(
                "SELECT * FROM device_history WHERE device_id = ? ORDER BY id DESC LIMIT ?",
                (device_id, limit),
            ) as cursor:
                return [_row_to_event(row) for row in await cursor.fetchall()]

    async def get_stats(self, account_id: int) -> dict[str, Any]:
        """Summary counts for dashboards."""
        devices = await self.list_by_account(account_id)
        today_start = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        levels: dict[str, int] = {}
        for d in devices:
            levels[d.risk_level.value] = levels.get(d.risk_level.value, 0) + 1
        return {
            "total_devices": len(devices),
            "online_count": sum(1 for d in devices if d.is_online),
            "blocked_count": sum(1 for d in devices if d.is_blocked),
            "new_today": sum(1 for d in devices if d.first_seen >= today_start),
            "risk_breakdown": levels,
        }


# ---------------------------------------------------------------------------
# Alert store
# ---------------------------------------------------------------------------

class AlertStore:
    def __init__(self, database: Database) -> None:
        self._database = database

    async def create(self, alert: SecurityAlert) -> SecurityAlert:
        db = self._database.conn
        with _storage_errors("Creating alert"):
            cursor = await db.execute(
                """
                INSERT INTO security_alerts (
                    account_id, device_id, alert_type, severity, title, description,
                    is_resolved, resolved_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.account_id,
                    alert.device_id,
                    alert.alert_type.value,
                    alert.severity.value,
                    alert.title,
                    alert.description,
                    int(alert.is_resolved),
                    _dt_to_str(alert.resolved_at) if alert.resolved_at else None,
                    _dt_to_str(alert.created_at),
                ),
            )
            await db.commit()
        return alert.model_copy(update={"id": cursor.lastrowid})

    async def get(self, alert_id: int) -> SecurityAlert | None:
        with _storage_errors("Looking up alert"):
            async with self._database.conn.execute(
                "SELECT * FROM security_alerts WHERE id = ?", (alert_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_alert(row) if row else None

    async def has_open_alert(self, account_id: int, device_id: int, alert_type: AlertType) -> bool:
        with _storage_errors("Looking up alert"):
            async with self._database.conn.execute(
                "SELECT 1 FROM security_alerts WHERE account_id = ? AND device_id = ? "
                "AND alert_type = ? AND is_resolved = 0 LIMIT 1",
                (account_id, device_id, alert_type.value),
            ) as cursor:
                return await cursor.fetchone() is not None

    async def list_by_account(
        self, account_id: int, limit: int = 50, unresolved_only: bool = False
    ) -> list[SecurityAlert]:
        """Newest first."""
        query = "SELECT * FROM security_alerts WHERE account_id = ?"
        if unresolved_only:
            query += " AND is_resolved = 0"
        query += " ORDER BY id DESC LIMIT ?"
        with _storage_errors("Listing alerts"):
            async with self._database.conn.execute(query, (account_id, limit)) as cursor:
                return [_row_to_alert(row) for row in await cursor.fetchall()]

    async def resolve(self, alert_id: int, account_id: int) -> bool:
        """Mark an alert resolved. Returns False if it belongs to another account."""
        db = self._database.conn
        with _storage_errors(f"Resolving alert {alert_id}"):
            cursor = await db.execute(
                "UPDATE security_alerts SET is_resolved = 1, resolved_at = ? "
                "WHERE id = ? AND account_id = ? AND is_resolved = 0",
                (_dt_to_str(datetime.now().astimezone()), alert_id, account_id),
            )
            await db.commit()
        if cursor.rowcount == 0:
            existing = await self.get(alert_id)
            # Already resolved by this account is still a success
            return existing is not None and existing.account_id == account_id
        return True
