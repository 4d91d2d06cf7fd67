"""TCP connect port scanning with a bounded worker pool and port-risk rules."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from collections.abc import Iterable

from netguard.core.errors import InvalidTargetError
from netguard.core.models import PortInfo, PortScanResult, RiskLevel

logger = logging.getLogger(__name__)

WELL_KNOWN_SERVICES: dict[int, str] = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    53: "DNS",
    80: "HTTP",
    110: "POP3",
    139: "NetBIOS",
    143: "IMAP",
    443: "HTTPS",
    445: "SMB",
    548: "AFP",
    631: "IPP",
    1883: "MQTT",
    3306: "MySQL",
    3389: "RDP",
    5432: "PostgreSQL",
    5900: "VNC",
    6379: "Redis",
    8080: "HTTP-Alt",
    8443: "HTTPS-Alt",
    9100: "JetDirect",
    27017: "MongoDB",
}

QUICK_SCAN_PORTS: list[int] = [
    21, 22, 23, 25, 53, 80, 110, 139, 143, 443,
    445, 548, 1883, 3306, 3389, 5432, 5900, 6379, 8080, 8443, 27017,
]

HIGH_RISK_PORTS = frozenset({21, 23, 445, 3389, 5900})
MEDIUM_RISK_PORTS = frozenset({22, 25, 110, 143, 3306, 5432, 6379, 27017})

_VULNERABILITY_NOTES: dict[int, str] = {
    21: "FTP (port 21) is open: unencrypted file transfer",
    22: "SSH (port 22) is open: ensure strong authentication",
    23: "Telnet (port 23) is open: unencrypted remote access",
    25: "SMTP (port 25) is open: check for open mail relay",
    110: "POP3 (port 110) is open: mail credentials may travel unencrypted",
    143: "IMAP (port 143) is open: mail credentials may travel unencrypted",
    445: "SMB (port 445) is open: potential ransomware vector",
    3306: "MySQL (port 3306) is exposed: database should not be public",
    3389: "RDP (port 3389) is open: remote desktop exposed",
    5432: "PostgreSQL (port 5432) is exposed: database should not be public",
    5900: "VNC (port 5900) is open: remote desktop exposed",
    6379: "Redis (port 6379) is exposed: often misconfigured without auth",
    27017: "MongoDB (port 27017) is exposed: check authentication",
}


def service_name(port: int) -> str:
    return WELL_KNOWN_SERVICES.get(port, "unknown")


def classify_port_risk(open_ports: Iterable[int]) -> tuple[RiskLevel, list[str]]:
    """Risk level and vulnerability notes for a set of open ports.

    Depends only on the set of ports: order and duplicates are ignored and
    notes are returned in ascending port order.
    """
    ports = sorted(set(open_ports))
    high = [p for p in ports if p in HIGH_RISK_PORTS]
    medium = [p for p in ports if p in MEDIUM_RISK_PORTS]

    if len(high) >= 2:
        level = RiskLevel.CRITICAL
    elif high:
        level = RiskLevel.HIGH
    elif medium:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW

    notes = [_VULNERABILITY_NOTES[p] for p in ports if p in _VULNERABILITY_NOTES]
    return level, notes


def parse_port_spec(spec: str | Iterable[int]) -> list[int]:
    """Expand ``"1-1024"``, ``"22,80,443"`` (or an iterable of ints) to a sorted port list."""
    ports: set[int] = set()
    if isinstance(spec, str):
        parts = [p.strip() for p in spec.split(",") if p.strip()]
        if not parts:
            raise InvalidTargetError("Empty port specification")
        for part in parts:
            lo_s, sep, hi_s = part.partition("-")
            try:
                lo = int(lo_s)
                hi = int(hi_s) if sep else lo
            except ValueError as exc:
                raise InvalidTargetError(f"Invalid port specification: {part!r}") from exc
            if lo > hi:
                raise InvalidTargetError(f"Invalid port range: {part}")
            if lo < 1 or hi > 65535:
                raise InvalidTargetError(f"Port out of range (1-65535): {part}")
            ports.update(range(lo, hi + 1))
    else:
        for p in spec:
            if isinstance(p, bool) or not isinstance(p, int):
                raise InvalidTargetError(f"Invalid port: {p!r}")
            ports.add(p)

    if not ports:
        raise InvalidTargetError("Empty port specification")
    bad = [p for p in ports if not 1 <= p <= 65535]
    if bad:
        raise InvalidTargetError(f"Port out of range (1-65535): {min(bad)}")
    return sorted(ports)


def validate_ip(ip: str) -> str:
    """Canonical form of an IPv4 or IPv6 address; anything else is rejected."""
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except (ValueError, AttributeError) as exc:
        raise InvalidTargetError(f"Invalid IP address: {ip!r}") from exc


async def _check_port(ip: str, port: int, timeout: float = 1.0) -> bool:
    """Check if a TCP port is open."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port),
            timeout=timeout,
        )
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    except (asyncio.TimeoutError, OSError):
        return False


class PortScanner:
    """TCP connect scanner.

    Ports are drained from a shared queue by a fixed number of workers, so
    at most ``workers`` sockets are open at once regardless of how many
    ports are requested. The whole scan is bounded by ``deadline``; on
    expiry the ports found so far are returned with ``timed_out=True``.
    """

    def __init__(
        self,
        workers: int = 100,
        connect_timeout: float = 1.0,
        deadline: float = 60.0,
    ) -> None:
        self.workers = max(1, workers)
        self.connect_timeout = connect_timeout
        self.deadline = deadline

    async def scan_ports(self, ip: str, ports: str | Iterable[int]) -> PortScanResult:
        ip = validate_ip(ip)
        port_list = parse_port_spec(ports)

        start = time.monotonic()
        queue: asyncio.Queue[int] = asyncio.Queue()
        for port in port_list:
            queue.put_nowait(port)
        found: list[int] = []

        async def _worker() -> None:
            while True:
                try:
                    port = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if await _check_port(ip, port, self.connect_timeout):
                    found.append(port)

        pool = [asyncio.create_task(_worker()) for _ in range(min(self.workers, len(port_list)))]
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.gather(*pool), timeout=self.deadline)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Port scan of %s hit its %.0fs deadline with %d ports unscanned",
                ip, self.deadline, queue.qsize(),
            )
        finally:
            for task in pool:
                if not task.done():
                    task.cancel()

        open_ports = sorted(found)
        risk_level, vulnerabilities = classify_port_risk(open_ports)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Port scan %s: %d/%d open in %dms (risk=%s)",
            ip, len(open_ports), len(port_list), duration_ms, risk_level.value,
        )
        return PortScanResult(
            ip=ip,
            open_ports=[PortInfo(port=p, service=service_name(p)) for p in open_ports],
            total_scanned=len(port_list),
            scan_duration_ms=duration_ms,
            timed_out=timed_out,
            risk_level=risk_level,
            vulnerabilities=vulnerabilities,
        )

    async def quick_scan(self, ip: str) -> PortScanResult:
        """Scan the fixed list of commonly exposed ports."""
        return await self.scan_ports(ip, QUICK_SCAN_PORTS)

    async def full_scan(self, ip: str, start: int = 1, end: int = 1024) -> PortScanResult:
        """Scan a contiguous numeric range (default 1-1024)."""
        return await self.scan_ports(ip, f"{start}-{end}")

    async def scan_many(self, ips: Iterable[str]) -> list[PortScanResult]:
        """Quick-scan several hosts one after another."""
        results: list[PortScanResult] = []
        for ip in ips:
            results.append(await self.quick_scan(ip))
        return results
