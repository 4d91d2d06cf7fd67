"""Tests for the subnet sweep and ARP table parsing."""

import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from netguard.core import scanner
from netguard.core.errors import ConfigurationError
from netguard.core.scanner import SubnetSweeper, detect_gateway, detect_subnet, parse_arp_output

LINUX_ARP = """\
? (192.168.1.1) at 9c:5a:44:22:33:44 [ether] on eth0
? (192.168.1.20) at b8:27:eb:aa:bb:cc [ether] on eth0
? (192.168.1.30) at <incomplete> on eth0
? (192.168.1.255) at ff:ff:ff:ff:ff:ff [ether] on eth0
? (10.0.0.5) at 52:54:00:12:34:56 [ether] on virbr0
"""

WINDOWS_ARP = """\
Interface: 192.168.1.100 --- 0x4
  Internet Address      Physical Address      Type
  192.168.1.1           9c-5a-44-22-33-44     dynamic
  192.168.1.20          b8-27-eb-aa-bb-cc     dynamic
  224.0.0.22            01-00-5e-00-00-16     static
  192.168.1.40          00-00-00-00-00-00     invalid
"""

MACOS_ARP = """\
? (192.168.1.1) at 9c:5a:44:22:33:44 on en0 ifscope [ethernet]
? (192.168.1.20) at b8:27:eb:aa:bb:cc on en0 ifscope [ethernet]
? (192.168.1.20) at b8:27:eb:aa:bb:cc on en0 ifscope [ethernet]
"""

EXPECTED = [
    {"ip": "192.168.1.1", "mac": "9C:5A:44:22:33:44"},
    {"ip": "192.168.1.20", "mac": "B8:27:EB:AA:BB:CC"},
]


# =============================================================================
# ARP PARSING
# =============================================================================

class TestParseArpOutput:
    def test_linux(self):
        assert parse_arp_output(LINUX_ARP, "192.168.1.0/24") == EXPECTED

    def test_windows(self):
        assert parse_arp_output(WINDOWS_ARP, "192.168.1.0/24") == EXPECTED

    def test_macos_dedupes(self):
        assert parse_arp_output(MACOS_ARP, "192.168.1.0/24") == EXPECTED

    def test_single_digit_octets_are_padded(self):
        output = "? (192.168.1.7) at 0:1b:2:3:4:5 on en0 ifscope [ethernet]"
        assert parse_arp_output(output) == [{"ip": "192.168.1.7", "mac": "00:1B:02:03:04:05"}]

    def test_without_subnet_keeps_other_networks(self):
        macs = {e["mac"] for e in parse_arp_output(LINUX_ARP)}
        assert "52:54:00:12:34:56" in macs
        assert "FF:FF:FF:FF:FF:FF" not in macs

    def test_empty(self):
        assert parse_arp_output("") == []


# =============================================================================
# DETECTION
# =============================================================================

class TestDetection:
    def test_gateway_from_ip_route(self, monkeypatch):
        monkeypatch.setattr(sys, "platform", "linux")
        result = MagicMock(stdout="default via 192.168.1.1 dev eth0 proto dhcp metric 100\n")
        with patch("netguard.core.scanner.subprocess.run", return_value=result):
            assert detect_gateway() == "192.168.1.1"

    def test_gateway_missing_command(self, monkeypatch):
        monkeypatch.setattr(sys, "platform", "linux")
        with patch("netguard.core.scanner.subprocess.run", side_effect=FileNotFoundError("ip")):
            assert detect_gateway() is None

    def test_subnet_skips_loopback(self, monkeypatch):
        monkeypatch.setattr(sys, "platform", "linux")
        stdout = (
            "1: lo: <LOOPBACK,UP>\n    inet 127.0.0.1/8 scope host lo\n"
            "2: eth0: <BROADCAST,UP>\n    inet 192.168.1.100/24 brd 192.168.1.255 scope global eth0\n"
        )
        with patch("netguard.core.scanner.subprocess.run", return_value=MagicMock(stdout=stdout)):
            assert detect_subnet() == "192.168.1.0/24"


# =============================================================================
# SWEEP
# =============================================================================

class TestSubnetSweeper:
    @pytest.mark.asyncio
    async def test_sweep_enriches_arp_entries(self, settings):
        probe = MagicMock()
        probe.reverse_dns_lookup = AsyncMock(side_effect=lambda ip: ["router.lan"] if ip.endswith(".1") else [])
        sweeper = SubnetSweeper(settings, probe=probe)

        with patch.object(scanner, "_ping_sweep") as ping_sweep, \
                patch.object(scanner, "_read_arp_table", return_value=LINUX_ARP), \
                patch.object(scanner, "lookup_vendor", AsyncMock(return_value="Acme Networks")) as lookup:
            devices = await sweeper.sweep("192.168.1.0/24")

        lookup.assert_awaited_once_with("9C:5A:44:22:33:44", timeout=settings.vendor_lookup_timeout)

        hosts = ping_sweep.call_args.args[0]
        assert len(hosts) == 254
        by_mac = {d.mac: d for d in devices}
        assert set(by_mac) == {"9C:5A:44:22:33:44", "B8:27:EB:AA:BB:CC"}
        assert by_mac["9C:5A:44:22:33:44"].hostname == "router.lan"
        assert by_mac["9C:5A:44:22:33:44"].vendor == "Acme Networks"
        assert by_mac["B8:27:EB:AA:BB:CC"].vendor == "Raspberry Pi"
        assert by_mac["B8:27:EB:AA:BB:CC"].hostname is None
        assert all(d.is_online for d in devices)

    @pytest.mark.asyncio
    async def test_no_subnet_configured_or_detected(self, settings):
        sweeper = SubnetSweeper(settings, probe=MagicMock())
        with patch.object(scanner, "detect_subnet", return_value=None):
            with pytest.raises(ConfigurationError):
                await sweeper.sweep()

    @pytest.mark.asyncio
    async def test_large_subnet_is_capped(self, settings, caplog):
        sweeper = SubnetSweeper(settings, probe=MagicMock())
        with caplog.at_level("WARNING", logger="netguard.core.scanner"), \
                patch.object(scanner, "_ping_sweep") as ping_sweep, \
                patch.object(scanner, "_read_arp_table", return_value=""):
            assert await sweeper.sweep("10.0.0.0/16") == []
        assert len(ping_sweep.call_args.args[0]) == scanner._MAX_SWEEP_HOSTS
        assert "sweeping only the first 1024" in caplog.text
