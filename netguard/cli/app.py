"""Typer CLI application for NetGuard."""

from __future__ import annotations

import typer

from netguard.cli.commands import (
    cmd_alerts,
    cmd_block,
    cmd_device,
    cmd_devices,
    cmd_dns,
    cmd_export,
    cmd_fingerprint,
    cmd_history,
    cmd_interfaces,
    cmd_latency,
    cmd_ping,
    cmd_ports,
    cmd_resolve,
    cmd_scan,
    cmd_serve,
    cmd_traceroute,
    cmd_unblock,
)

app = typer.Typer(
    name="netguard",
    help="NetGuard: network discovery, diagnostics and device risk monitoring.",
    no_args_is_help=True,
    add_completion=False,
)

# Diagnostics
app.command("ping", help="Ping a host and show latency statistics.")(cmd_ping)
app.command("latency", help="Ping several hosts at once and grade their latency.")(cmd_latency)
app.command("traceroute", help="Trace the route to a host.")(cmd_traceroute)
app.command("dns", help="Resolve DNS records for a domain.")(cmd_dns)
app.command("ports", help="TCP port scan with risk classification.")(cmd_ports)
app.command("fingerprint", help="Identify vendor and type from a MAC address.")(cmd_fingerprint)
app.command("interfaces", help="List local network interfaces.")(cmd_interfaces)

# Registry
app.command("scan", help="Run one scan cycle and print results.")(cmd_scan)
app.command("devices", help="List all known devices from the database.")(cmd_devices)
app.command("device", help="Show detailed info for a single device.")(cmd_device)
app.command("history", help="Show the event history of a device.")(cmd_history)
app.command("alerts", help="List security alerts.")(cmd_alerts)
app.command("resolve", help="Mark a security alert as resolved.")(cmd_resolve)
app.command("block", help="Block a device on the configured routers.")(cmd_block)
app.command("unblock", help="Unblock a previously blocked device.")(cmd_unblock)
app.command("export", help="Export the device database to CSV or JSON.")(cmd_export)
app.command("serve", help="Start the API server (optionally with background scanning).")(cmd_serve)


if __name__ == "__main__":
    app()
