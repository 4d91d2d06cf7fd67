"""Probe-based subnet sweep, used when no router adapter can list devices.

Pings every host of the subnet in bounded batches to populate the OS ARP
table, then reads the table back. Works without raw-socket privileges.
"""

from __future__ import annotations

import asyncio
import ipaddress
import itertools
import logging
import re
import subprocess
import sys
import time

from netguard.config import Settings
from netguard.core.errors import ConfigurationError
from netguard.core.fingerprint import UNKNOWN_VENDOR, canonical_mac, identify
from netguard.core.models import RawDevice
from netguard.core.probe import ProbeEngine
from netguard.core.vendor import lookup_vendor

logger = logging.getLogger(__name__)

# Larger subnets would turn one scan cycle into thousands of pings
_MAX_SWEEP_HOSTS = 1024


# ---------------------------------------------------------------------------
# Gateway / subnet detection
# ---------------------------------------------------------------------------

def detect_gateway() -> str | None:
    """Detect the default gateway IP."""
    if sys.platform == "win32":
        return _detect_gateway_windows()
    return _detect_gateway_unix()


def _detect_gateway_windows() -> str | None:
    """Parse 'route print' on Windows to find default gateway."""
    try:
        result = subprocess.run(
            ["route", "print", "0.0.0.0"],
            capture_output=True, text=True, timeout=5,
        )
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 5 and parts[0] == "0.0.0.0" and parts[1] == "0.0.0.0":
                return parts[2]
    except (OSError, subprocess.TimeoutExpired):
        pass
    return None


def _detect_gateway_unix() -> str | None:
    """Parse 'ip route show default' to find default gateway."""
    try:
        result = subprocess.run(
            ["ip", "route", "show", "default"],
            capture_output=True, text=True, timeout=5,
        )
        # "default via 192.168.1.1 dev eth0 ..."
        match = re.search(r"default via (\d+\.\d+\.\d+\.\d+)", result.stdout)
        if match:
            return match.group(1)
    except (OSError, subprocess.TimeoutExpired):
        pass
    return None


def detect_subnet() -> str | None:
    """Detect the local IPv4 subnet using system commands."""
    if sys.platform == "win32":
        return _detect_subnet_windows()
    return _detect_subnet_unix()


def _detect_subnet_windows() -> str | None:
    """Parse ipconfig to find IP and subnet mask."""
    try:
        result = subprocess.run(
            ["ipconfig"], capture_output=True, text=True, timeout=5,
        )
        ip_addr = None
        for line in result.stdout.splitlines():
            line = line.strip()
            if "IPv4 Address" in line:
                match = re.search(r"(\d+\.\d+\.\d+\.\d+)", line)
                if match:
                    ip_addr = match.group(1)
            elif "Subnet Mask" in line and ip_addr:
                match = re.search(r"(\d+\.\d+\.\d+\.\d+)", line)
                if match:
                    net = ipaddress.IPv4Network(f"{ip_addr}/{match.group(1)}", strict=False)
                    return str(net)
    except (OSError, subprocess.TimeoutExpired, ValueError):
        pass
    return None


def _detect_subnet_unix() -> str | None:
    """Parse 'ip -4 addr show' to find subnet."""
    try:
        result = subprocess.run(
            ["ip", "-4", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith("inet ") and "127.0.0.1" not in line:
                # e.g. "inet 192.168.1.100/24 brd ..."
                match = re.search(r"inet (\d+\.\d+\.\d+\.\d+/\d+)", line)
                if match:
                    return str(ipaddress.IPv4Network(match.group(1), strict=False))
    except (OSError, subprocess.TimeoutExpired, ValueError):
        pass
    return None


# ---------------------------------------------------------------------------
# Ping sweep + ARP table parsing
# ---------------------------------------------------------------------------

def _ping_sweep(hosts: list[str], timeout: float, batch_size: int) -> None:
    """Ping hosts in batches of ``batch_size`` to populate the OS ARP table."""
    logger.info("Ping sweep: %d hosts (batch=%d)", len(hosts), batch_size)
    wait = max(1, int(timeout))
    for i in range(0, len(hosts), batch_size):
        procs: list[subprocess.Popen[bytes]] = []
        for host in hosts[i:i + batch_size]:
            if sys.platform == "win32":
                cmd = ["ping", "-n", "1", "-w", str(wait * 1000), host]
            else:
                cmd = ["ping", "-c", "1", "-W", str(wait), host]
            try:
                procs.append(subprocess.Popen(
                    cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                ))
            except OSError as exc:
                logger.warning("Cannot start ping for %s: %s", host, exc)
        for proc in procs:
            try:
                proc.wait(timeout=wait + 2)
            except subprocess.TimeoutExpired:
                proc.kill()


_MAC_PATTERN = re.compile(r"([0-9a-fA-F]{1,2}(?:[:-][0-9a-fA-F]{1,2}){5})")
_IP_PATTERN = re.compile(r"(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})")


def parse_arp_output(output: str, subnet: str | None = None) -> list[dict[str, str]]:
    """Extract (ip, mac) pairs from `arp -a` output.

    Windows: "  192.168.1.1          aa-bb-cc-dd-ee-ff     dynamic"
    Linux:   "? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0"
    macOS:   "? (192.168.1.1) at aa:bb:cc:dd:ee:ff on en0 ifscope [ethernet]"
    """
    network = ipaddress.IPv4Network(subnet, strict=False) if subnet else None
    entries: list[dict[str, str]] = []
    seen: set[str] = set()

    for line in output.splitlines():
        lower = line.lower()
        if "incomplete" in lower:
            continue
        ip_match = _IP_PATTERN.search(line)
        mac_match = _MAC_PATTERN.search(line)
        if not (ip_match and mac_match):
            continue

        ip = ip_match.group(1)
        mac = canonical_mac(mac_match.group(1))
        # Skip broadcast, multicast and empty entries
        if mac in ("FF:FF:FF:FF:FF:FF", "00:00:00:00:00:00") or mac.startswith("01:"):
            continue
        if network is not None:
            try:
                if ipaddress.IPv4Address(ip) not in network:
                    continue
            except ValueError:
                continue
        if mac in seen:
            continue
        seen.add(mac)
        entries.append({"ip": ip, "mac": mac})
    return entries


def _read_arp_table() -> str:
    try:
        result = subprocess.run(["arp", "-a"], capture_output=True, text=True, timeout=10)
        return result.stdout
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Failed to read ARP table: %s", exc)
        return ""


class SubnetSweeper:
    """Discovers devices on a subnet without help from the router."""

    def __init__(self, settings: Settings, probe: ProbeEngine | None = None) -> None:
        self.settings = settings
        self.probe = probe or ProbeEngine(settings)

    async def sweep(self, subnet: str | None = None) -> list[RawDevice]:
        subnet = subnet or self.settings.subnet or await asyncio.to_thread(detect_subnet)
        if not subnet:
            raise ConfigurationError(
                "No subnet configured or detected. "
                "Set NETGUARD_SUBNET or configure 'subnet' in config.yaml."
            )
        network = ipaddress.IPv4Network(subnet, strict=False)
        hosts = [str(h) for h in itertools.islice(network.hosts(), _MAX_SWEEP_HOSTS)]
        if network.num_addresses - 2 > _MAX_SWEEP_HOSTS:
            logger.warning(
                "Subnet %s has %d hosts, sweeping only the first %d",
                network, network.num_addresses - 2, _MAX_SWEEP_HOSTS,
            )

        start = time.monotonic()
        await asyncio.to_thread(
            _ping_sweep, hosts, self.settings.ping_timeout, self.settings.sweep_workers
        )
        # Small delay to let the ARP table populate
        await asyncio.sleep(0.5)
        output = await asyncio.to_thread(_read_arp_table)
        entries = parse_arp_output(output, str(network))
        logger.info("Sweep of %s: %d devices in %.1fs", network, len(entries), time.monotonic() - start)

        sem = asyncio.Semaphore(self.settings.sweep_workers)

        async def _enrich(entry: dict[str, str]) -> RawDevice:
            async with sem:
                fp = identify(entry["mac"])
                vendor = fp.vendor
                if vendor == UNKNOWN_VENDOR:
                    vendor = await lookup_vendor(
                        entry["mac"], timeout=self.settings.vendor_lookup_timeout,
                    ) or UNKNOWN_VENDOR
                hostnames = await self.probe.reverse_dns_lookup(entry["ip"])
                return RawDevice(
                    ip=entry["ip"],
                    mac=entry["mac"],
                    hostname=hostnames[0] if hostnames else None,
                    vendor=vendor,
                    device_type=fp.device_type,
                    is_online=True,
                )

        return list(await asyncio.gather(*[_enrich(e) for e in entries]))
