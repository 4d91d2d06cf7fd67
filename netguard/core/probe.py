"""Network diagnostics: ping, traceroute, DNS and port scans against one target.

Unreachable targets are results, not errors: a ping that gets no reply
comes back with ``reachable=False`` and 100% loss, a silent traceroute hop
with ``timed_out=True``. Only malformed input raises, and it does so before
anything is sent on the wire.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
import subprocess
import sys
from collections.abc import Iterable
from typing import Any

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import dns.reversename

from netguard.config import Settings
from netguard.core.errors import InvalidTargetError
from netguard.core.models import (
    DevicePerformance,
    DnsLookupResult,
    LatencyQuality,
    PingResult,
    PortScanResult,
    TracerouteHop,
    TracerouteResult,
)
from netguard.core.portscan import PortScanner, validate_ip

logger = logging.getLogger(__name__)

DNS_RECORD_TYPES = ("A", "AAAA", "MX", "TXT", "NS", "CNAME")
MAX_PING_COUNT = 100

_HOST_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def validate_host(host: str) -> str:
    """Return ``host`` stripped if it is an IP literal or a valid hostname."""
    if not isinstance(host, str) or not host.strip():
        raise InvalidTargetError("Host must be a non-empty string")
    host = host.strip()
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        pass

    name = host[:-1] if host.endswith(".") else host
    labels = name.split(".")
    if (
        len(name) > 253
        or not all(_HOST_LABEL_RE.match(label) for label in labels)
        # all-numeric dotted names are malformed addresses, not hostnames
        or all(label.isdigit() for label in labels)
    ):
        raise InvalidTargetError(f"Invalid host: {host!r}")
    return host


def ip_context(ip: str) -> dict[str, Any]:
    """Classify an address as private, loopback, link-local or public."""
    addr = ipaddress.ip_address(validate_ip(ip))
    if addr.is_loopback:
        return {"is_local": True, "network_type": "Loopback",
                "description": "Localhost / loopback address"}
    if addr.is_link_local:
        return {"is_local": True, "network_type": "Link-Local",
                "description": "Auto-configured link-local address"}
    if addr.is_private:
        return {"is_local": True, "network_type": "Private Network",
                "description": "Local network device (RFC 1918)"}
    return {"is_local": False, "network_type": "Public Network",
            "description": "External / public IP address"}


# ---------------------------------------------------------------------------
# Latency quality
# ---------------------------------------------------------------------------

# Upper bounds (exclusive, ms); anything slower is poor
_LATENCY_BANDS = (
    (10.0, LatencyQuality.EXCELLENT),
    (50.0, LatencyQuality.GOOD),
    (150.0, LatencyQuality.FAIR),
)


def classify_latency(latency_ms: float | None) -> LatencyQuality:
    if latency_ms is None:
        return LatencyQuality.UNREACHABLE
    for bound, quality in _LATENCY_BANDS:
        if latency_ms < bound:
            return quality
    return LatencyQuality.POOR


def uptime_percentage(online_checks: int, total_checks: int) -> int:
    """Share of checks that found the device online, rounded to a whole percent."""
    if total_checks <= 0:
        return 0
    return int(100 * online_checks / total_checks + 0.5)


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

_PING_HEADER_RE = re.compile(r"^PING\s+\S+\s+\(([0-9a-fA-F.:]+)\)", re.MULTILINE)
_PING_COUNTS_RE = re.compile(r"(\d+) packets transmitted, (\d+) (?:packets )?received")
_PING_RTT_RE = re.compile(
    r"(?:rtt|round-trip) min/avg/max/(?:mdev|stddev) = "
    r"([\d.]+)/([\d.]+)/([\d.]+)/([\d.]+) ms"
)
_PING_WIN_COUNTS_RE = re.compile(r"Sent = (\d+), Received = (\d+)")
_PING_WIN_RTT_RE = re.compile(r"Minimum = (\d+)ms, Maximum = (\d+)ms, Average = (\d+)ms")
_PING_WIN_HEADER_RE = re.compile(r"Pinging \S+ \[([0-9a-fA-F.:]+)\]")


def parse_ping_output(host: str, output: str, count: int) -> PingResult:
    """Build a PingResult from `ping` output (Linux, macOS or Windows)."""
    sent, received = count, 0
    counts = _PING_COUNTS_RE.search(output) or _PING_WIN_COUNTS_RE.search(output)
    if counts:
        sent, received = int(counts.group(1)), int(counts.group(2))
    loss = round(100.0 * (sent - received) / sent, 1) if sent else 100.0

    ip: str | None = None
    header = _PING_HEADER_RE.search(output) or _PING_WIN_HEADER_RE.search(output)
    if header:
        ip = header.group(1)
    else:
        try:
            ip = str(ipaddress.ip_address(host))
        except ValueError:
            ip = None

    min_l = avg_l = max_l = jitter = None
    rtt = _PING_RTT_RE.search(output)
    if rtt:
        min_l, avg_l, max_l, jitter = (float(g) for g in rtt.groups())
    else:
        win = _PING_WIN_RTT_RE.search(output)
        if win:
            min_l, max_l, avg_l = (float(g) for g in win.groups())
            jitter = max_l - min_l

    if received == 0:
        min_l = avg_l = max_l = jitter = None

    return PingResult(
        host=host,
        ip=ip,
        latency_ms=avg_l,
        min_latency=min_l,
        max_latency=max_l,
        avg_latency=avg_l,
        jitter=jitter,
        packet_loss_percent=loss,
        packets_sent=sent,
        packets_received=received,
        reachable=loss < 100,
    )


_TRACE_HEADER_RE = re.compile(r"^traceroute to \S+ \(([0-9a-fA-F.:]+)\)", re.MULTILINE)
_TRACE_HOP_RE = re.compile(r"^\s*(\d+)\s+(.*)$")
_TRACE_NAMED_RE = re.compile(r"^(\S+)\s+\(([0-9a-fA-F.:]+)\)")
_TRACE_BARE_RE = re.compile(r"^([0-9a-fA-F.:]+)\s")
_TRACE_LATENCY_RE = re.compile(r"([\d.]+)\s*ms")


def parse_traceroute_output(output: str) -> tuple[str | None, list[TracerouteHop]]:
    """Return (destination ip, hops) parsed from `traceroute` output."""
    header = _TRACE_HEADER_RE.search(output)
    destination = header.group(1) if header else None

    hops: list[TracerouteHop] = []
    for line in output.splitlines():
        if line.startswith("traceroute"):
            continue
        match = _TRACE_HOP_RE.match(line)
        if not match:
            continue
        index, rest = int(match.group(1)), match.group(2).strip()

        if rest.startswith("*"):
            hops.append(TracerouteHop(hop_index=index, timed_out=True))
            continue

        ip: str | None = None
        hostname: str | None = None
        named = _TRACE_NAMED_RE.match(rest)
        if named:
            hostname, ip = named.group(1), named.group(2)
            if hostname == ip:
                hostname = None
        else:
            bare = _TRACE_BARE_RE.match(rest + " ")
            if bare:
                ip = bare.group(1)
        latency = _TRACE_LATENCY_RE.search(rest)

        hops.append(TracerouteHop(
            hop_index=index,
            ip=ip,
            hostname=hostname,
            latency_ms=float(latency.group(1)) if latency else None,
            timed_out=ip is None,
        ))
    return destination, hops


# ---------------------------------------------------------------------------
# Subprocess helpers (run in worker threads)
# ---------------------------------------------------------------------------

def _run_command(cmd: list[str], timeout: float) -> str:
    """Run a command and return its output; partial output on timeout."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return result.stdout + result.stderr
    except subprocess.TimeoutExpired as exc:
        logger.debug("%s timed out after %.0fs", cmd[0], timeout)
        out = exc.stdout or b""
        return out.decode(errors="replace") if isinstance(out, bytes) else out
    except (FileNotFoundError, OSError) as exc:
        logger.warning("Cannot run %s: %s", cmd[0], exc)
        return ""


def _ping_command(host: str, count: int, per_probe_timeout: float) -> list[str]:
    if sys.platform == "win32":
        return ["ping", "-n", str(count), "-w", str(int(per_probe_timeout * 1000)), host]
    return ["ping", "-c", str(count), "-W", str(max(1, int(per_probe_timeout))), host]


def _traceroute_command(host: str, max_hops: int, hop_wait: float) -> list[str]:
    return ["traceroute", "-q", "1", "-m", str(max_hops), "-w", f"{hop_wait:g}", host]


def list_interfaces() -> list[dict[str, Any]]:
    """Parse `ip addr show` into name/ip/mac/state records."""
    output = _run_command(["ip", "addr", "show"], timeout=5)
    interfaces: list[dict[str, Any]] = []
    for block in re.split(r"\n(?=\d+:)", output):
        name = re.search(r"^\d+:\s+([^:\s]+):", block)
        if not name:
            continue
        ip = re.search(r"inet\s+(\d+\.\d+\.\d+\.\d+/\d+)", block)
        mac = re.search(r"link/ether\s+(\S+)", block)
        state = re.search(r"state\s+(\S+)", block)
        interfaces.append({
            "name": name.group(1),
            "ip": ip.group(1) if ip else None,
            "mac": mac.group(1) if mac else None,
            "state": state.group(1) if state else "UNKNOWN",
        })
    return interfaces


# ---------------------------------------------------------------------------
# ProbeEngine
# ---------------------------------------------------------------------------

class ProbeEngine:
    """Stateless diagnostic probes with explicit timeouts."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.port_scanner = PortScanner(
            workers=settings.port_scan_workers,
            connect_timeout=settings.connect_timeout,
            deadline=settings.port_scan_deadline,
        )

    async def ping(self, host: str, count: int = 4) -> PingResult:
        host = validate_host(host)
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= MAX_PING_COUNT:
            raise InvalidTargetError(f"Ping count must be between 1 and {MAX_PING_COUNT}")

        per_probe = self.settings.ping_timeout
        overall = count * per_probe + 5
        output = await asyncio.to_thread(
            _run_command, _ping_command(host, count, per_probe), overall
        )
        result = parse_ping_output(host, output, count)
        logger.debug(
            "Ping %s: loss=%.0f%% avg=%s", host, result.packet_loss_percent, result.avg_latency
        )
        return result

    async def measure_latency(self, ip: str) -> float | None:
        """Single-probe RTT, None when the host does not answer."""
        result = await self.ping(ip, count=1)
        return result.avg_latency

    async def ping_many(self, hosts: Iterable[str], count: int = 3) -> list[PingResult]:
        """Ping several hosts concurrently, at most ``ping_workers`` at a time.

        Every host is validated before any probe starts. Results keep the
        input order.
        """
        targets = [validate_host(h) for h in hosts]
        sem = asyncio.Semaphore(self.settings.ping_workers)

        async def _one(host: str) -> PingResult:
            async with sem:
                return await self.ping(host, count)

        return list(await asyncio.gather(*(_one(h) for h in targets)))

    async def device_performance(self, ip: str) -> DevicePerformance:
        """Latency, loss and quality band for one device from a five-probe ping."""
        result = await self.ping(validate_ip(ip), count=5)
        return DevicePerformance(
            ip=result.host,
            latency_ms=result.avg_latency,
            packet_loss_percent=result.packet_loss_percent,
            reachable=result.reachable,
            quality=classify_latency(result.avg_latency),
            # a single sample: up if it answered at all
            uptime_percent=uptime_percentage(int(result.reachable), 1),
        )

    async def traceroute(self, host: str, max_hops: int | None = None) -> TracerouteResult:
        host = validate_host(host)
        max_hops = max_hops or self.settings.traceroute_max_hops
        if not 1 <= max_hops <= 64:
            raise InvalidTargetError("max_hops must be between 1 and 64")

        deadline = self.settings.traceroute_deadline
        # Cap the per-hop wait so that a fully silent path still finishes in time
        hop_wait = min(self.settings.traceroute_hop_wait, deadline / max_hops)
        output = await asyncio.to_thread(
            _run_command, _traceroute_command(host, max_hops, hop_wait), deadline
        )
        destination, hops = parse_traceroute_output(output)

        completed = False
        if hops and not hops[-1].timed_out:
            last_ip = hops[-1].ip
            completed = last_ip is not None and (destination is None or last_ip == destination)

        return TracerouteResult(
            host=host,
            hops=hops,
            total_hops=len(hops),
            completed=completed,
        )

    def _resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        resolver.lifetime = self.settings.dns_timeout
        return resolver

    async def dns_lookup(self, domain: str, record_type: str = "A") -> DnsLookupResult:
        domain = validate_host(domain)
        record_type = record_type.upper()
        if record_type not in DNS_RECORD_TYPES:
            raise InvalidTargetError(
                f"Unsupported record type {record_type!r}; expected one of {', '.join(DNS_RECORD_TYPES)}"
            )

        addresses: list[str] = []
        try:
            if record_type == "A":
                addresses = await self._system_lookup(domain)
            else:
                answer = await self._resolver().resolve(domain, record_type)
                addresses = [_format_rdata(rdata) for rdata in answer]
        except (dns.exception.DNSException, socket.gaierror, asyncio.TimeoutError, OSError) as exc:
            logger.debug("DNS %s lookup for %s failed: %s", record_type, domain, exc)
            return DnsLookupResult(domain=domain, record_type=record_type)

        reverse: list[str] | None = None
        if record_type == "A" and addresses:
            names = await self.reverse_dns_lookup(addresses[0])
            reverse = names or None

        return DnsLookupResult(
            domain=domain,
            record_type=record_type,
            addresses=addresses,
            reverse_hostnames=reverse,
        )

    async def _system_lookup(self, domain: str) -> list[str]:
        loop = asyncio.get_running_loop()
        infos = await asyncio.wait_for(
            loop.getaddrinfo(domain, None, family=socket.AF_INET, type=socket.SOCK_STREAM),
            timeout=self.settings.dns_timeout,
        )
        seen: list[str] = []
        for info in infos:
            addr = info[4][0]
            if addr not in seen:
                seen.append(addr)
        return seen

    async def reverse_dns_lookup(self, ip: str) -> list[str]:
        ip = validate_ip(ip)
        try:
            answer = await self._resolver().resolve(dns.reversename.from_address(ip), "PTR")
        except dns.exception.DNSException as exc:
            logger.debug("No PTR record for %s: %s", ip, exc)
            return []
        return [str(rdata.target).rstrip(".") for rdata in answer]

    async def scan_ports(self, ip: str, ports: str | Iterable[int]) -> PortScanResult:
        return await self.port_scanner.scan_ports(ip, ports)

    async def quick_scan(self, ip: str) -> PortScanResult:
        return await self.port_scanner.quick_scan(ip)

    async def full_scan(self, ip: str, start: int = 1, end: int = 1024) -> PortScanResult:
        return await self.port_scanner.full_scan(ip, start, end)


def _format_rdata(rdata: Any) -> str:
    rdtype = rdata.rdtype
    if rdtype == dns.rdatatype.MX:
        return f"{rdata.preference} {str(rdata.exchange).rstrip('.')}"
    if rdtype == dns.rdatatype.TXT:
        return b"".join(rdata.strings).decode(errors="replace")
    if rdtype in (dns.rdatatype.NS, dns.rdatatype.CNAME):
        return str(rdata.target).rstrip(".")
    if rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return rdata.address
    return rdata.to_text()
