"""CLI command implementations for NetGuard."""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from netguard.config import get_settings
from netguard.core.errors import NetGuardError
from netguard.core.fingerprint import identify
from netguard.core.models import Device, LatencyQuality, PortScanResult, RiskLevel
from netguard.core.probe import ProbeEngine, classify_latency, ip_context, list_interfaces
from netguard.main import NetGuard, setup_logging

console = Console()
logger = logging.getLogger(__name__)

T = TypeVar("T")

_RISK_STYLE: dict[RiskLevel, str] = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}

_QUALITY_STYLE: dict[LatencyQuality, str] = {
    LatencyQuality.EXCELLENT: "green",
    LatencyQuality.GOOD: "green",
    LatencyQuality.FAIR: "yellow",
    LatencyQuality.POOR: "red",
    LatencyQuality.UNREACHABLE: "dim",
}


def _run(coro: Awaitable[T]) -> T:
    """Run a coroutine, turning NetGuard errors into a clean exit."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except NetGuardError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc


def _with_services(fn: Callable[[NetGuard], Awaitable[T]]) -> T:
    async def _inner() -> T:
        async with NetGuard(get_settings()) as services:
            return await fn(services)

    return _run(_inner())


def _trunc(text: str, width: int) -> str:
    """Truncate text with ellipsis if too long."""
    if len(text) <= width:
        return text
    return text[: width - 1] + "…"


def _ip_sort_key(d: Device) -> tuple[int, tuple[int, ...]]:
    """Sort key: online first, then by IP address numerically."""
    try:
        ip_parts = tuple(int(p) for p in (d.ip or "0.0.0.0").split("."))
    except ValueError:
        ip_parts = (0,)
    return (0 if d.is_online else 1, ip_parts)


def _risk_text(device: Device) -> str:
    level = device.risk_level
    return f"[{_RISK_STYLE[level]}]{device.risk_score:>3} {level.value}[/]"


def _build_device_table(devices: list[Device], title: str = "Network Devices") -> Table:
    """Build a compact Rich table that adapts to terminal width."""
    wide = console.width >= 110  # enough room for all columns

    table = Table(
        title=title,
        show_lines=False,
        expand=True,
        padding=(0, 1),
        title_style="bold cyan",
        border_style="bright_black",
    )
    table.add_column("ID", width=4, justify="right", no_wrap=True)
    table.add_column("S", width=2, justify="center", no_wrap=True)
    table.add_column("IP Address", min_width=11, max_width=15, no_wrap=True)
    table.add_column("Name", no_wrap=True, ratio=2)
    table.add_column("MAC", width=17, no_wrap=True, style="dim")
    if wide:
        table.add_column("Vendor", no_wrap=True, ratio=1)
        table.add_column("Type", no_wrap=True, ratio=1)
    table.add_column("Risk", width=12, no_wrap=True)
    table.add_column("Seen", width=8, no_wrap=True, justify="right")

    for device in sorted(devices, key=_ip_sort_key):
        status = "[bold green]ON[/]" if device.is_online else "[red]--[/]"
        if device.is_blocked:
            status = "[bold red]BL[/]"
        row: list[str] = [
            str(device.id),
            status,
            device.ip or "-",
            _trunc(device.display_name, 32),
            device.mac,
        ]
        if wide:
            row.append(device.vendor or "Unknown")
            row.append(device.device_type or "-")
        row.extend([_risk_text(device), device.last_seen.strftime("%H:%M:%S")])
        table.add_row(*row, style="" if device.is_online else "dim")
    return table


# ---------------------------------------------------------------------------
# Diagnostic tools
# ---------------------------------------------------------------------------

def cmd_ping(
    host: str = typer.Argument(help="Hostname or IP address."),
    count: int = typer.Option(4, "--count", "-c", help="Number of echo probes (1-100)."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Ping a host and show latency statistics."""
    setup_logging(log_level)
    result = _run(ProbeEngine(get_settings()).ping(host, count))

    def _ms(value: float | None) -> str:
        return f"{value:.1f} ms" if value is not None else "-"

    state = "[bold green]reachable[/]" if result.reachable else "[bold red]unreachable[/]"
    network = ip_context(result.ip)["network_type"] if result.ip else "-"
    console.print(Panel(
        f"[bold]Address:[/]     {result.ip or 'unresolved'}\n"
        f"[bold]Network:[/]     {network}\n"
        f"[bold]Status:[/]      {state}\n"
        f"[bold]Packets:[/]     {result.packets_received}/{result.packets_sent} received "
        f"({result.packet_loss_percent:.0f}% loss)\n"
        f"[bold]Min/Avg/Max:[/] {_ms(result.min_latency)} / {_ms(result.avg_latency)} / {_ms(result.max_latency)}\n"
        f"[bold]Jitter:[/]      {_ms(result.jitter)}",
        title=f"ping {host}",
        border_style="cyan",
    ))


def cmd_latency(
    hosts: Optional[list[str]] = typer.Argument(None, help="Hosts to ping; defaults to every online device."),
    count: int = typer.Option(3, "--count", "-c", help="Echo probes per host."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Ping several hosts at once and grade their latency."""
    setup_logging(log_level)
    if hosts:
        results = _run(ProbeEngine(get_settings()).ping_many(hosts, count))
    else:
        async def _online(services: NetGuard):
            devices = await services.registry.list_by_account(
                services.settings.account_id, online_only=True
            )
            return await services.probe.ping_many([d.ip for d in devices if d.ip], count)

        results = _with_services(_online)

    if not results:
        console.print("[dim]No hosts to ping.[/]")
        return

    table = Table(title="Latency", title_style="bold cyan", border_style="bright_black")
    table.add_column("Host")
    table.add_column("Avg", justify="right")
    table.add_column("Loss", justify="right")
    table.add_column("Quality")
    for result in results:
        quality = classify_latency(result.avg_latency)
        avg = f"{result.avg_latency:.1f} ms" if result.avg_latency is not None else "-"
        style = _QUALITY_STYLE[quality]
        table.add_row(
            result.host, avg, f"{result.packet_loss_percent:.0f}%", f"[{style}]{quality.value}[/]",
        )
    console.print(table)


def cmd_traceroute(
    host: str = typer.Argument(help="Hostname or IP address."),
    max_hops: int = typer.Option(30, "--max-hops", "-m", help="Maximum TTL."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Trace the route to a host."""
    setup_logging(log_level)
    result = _run(ProbeEngine(get_settings()).traceroute(host, max_hops))

    table = Table(title=f"traceroute {host}", title_style="bold cyan", border_style="bright_black")
    table.add_column("#", justify="right")
    table.add_column("Address")
    table.add_column("Hostname")
    table.add_column("Latency", justify="right")
    for hop in result.hops:
        if hop.timed_out:
            table.add_row(str(hop.hop_index), "*", "", "[dim]timeout[/]")
        else:
            latency = f"{hop.latency_ms:.1f} ms" if hop.latency_ms is not None else "-"
            table.add_row(str(hop.hop_index), hop.ip or "-", hop.hostname or "", latency)
    console.print(table)
    verdict = "[green]reached destination[/]" if result.completed else "[yellow]did not complete[/]"
    console.print(f"\n  {result.total_hops} hops, {verdict}\n")


def cmd_dns(
    domain: str = typer.Argument(help="Domain name to resolve."),
    record_type: str = typer.Option("A", "--type", "-t", help="A, AAAA, MX, TXT, NS or CNAME."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Resolve DNS records for a domain."""
    setup_logging(log_level)
    result = _run(ProbeEngine(get_settings()).dns_lookup(domain, record_type))
    if not result.addresses:
        console.print(f"[yellow]No {result.record_type} records for {domain}.[/]")
        raise typer.Exit(0)
    for address in result.addresses:
        console.print(f"  {result.record_type:<6} {address}")
    if result.reverse_hostnames:
        console.print(f"  [dim]PTR    {', '.join(result.reverse_hostnames)}[/]")


def _print_port_scan(result: PortScanResult) -> None:
    table = Table(title=f"Open ports on {result.ip}", title_style="bold cyan", border_style="bright_black")
    table.add_column("Port", justify="right")
    table.add_column("Service")
    for info in result.open_ports:
        table.add_row(str(info.port), info.service)
    console.print(table)
    style = _RISK_STYLE[result.risk_level]
    console.print(
        f"\n  {len(result.open_ports)}/{result.total_scanned} open in {result.scan_duration_ms} ms, "
        f"risk [{style}]{result.risk_level.value}[/]"
        + (" [yellow](deadline reached)[/]" if result.timed_out else "")
    )
    for note in result.vulnerabilities:
        console.print(f"  [yellow]![/] {note}")
    console.print()


def cmd_ports(
    ips: list[str] = typer.Argument(help="One or more target IP addresses."),
    ports: Optional[str] = typer.Option(None, "--ports", "-p", help='e.g. "22,80,443" or "1-1024".'),
    full: bool = typer.Option(False, "--full", help="Scan ports 1-1024 instead of the quick list."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """TCP port scan with risk classification."""
    setup_logging(log_level)
    probe = ProbeEngine(get_settings())
    if len(ips) > 1 and not (ports or full):
        # Hosts are scanned one after another to keep the load on the network down
        results = _run(probe.port_scanner.scan_many(ips))
    elif ports:
        results = [_run(probe.scan_ports(ip, ports)) for ip in ips]
    elif full:
        results = [_run(probe.full_scan(ip)) for ip in ips]
    else:
        results = [_run(probe.quick_scan(ips[0]))]
    for result in results:
        _print_port_scan(result)


def cmd_interfaces() -> None:
    """List local network interfaces."""
    table = Table(title="Network Interfaces", title_style="bold cyan", border_style="bright_black")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("MAC", style="dim")
    table.add_column("State")
    for iface in list_interfaces():
        state = iface["state"]
        table.add_row(
            iface["name"],
            iface["ip"] or "-",
            iface["mac"] or "-",
            f"[green]{state}[/]" if state == "UP" else state,
        )
    console.print(table)


def cmd_fingerprint(
    mac: str = typer.Argument(help="MAC address to identify."),
) -> None:
    """Identify vendor and device type from a MAC address."""
    fp = identify(mac)
    console.print(Panel(
        f"[bold]Vendor:[/]     {fp.vendor}\n"
        f"[bold]Type:[/]       {fp.device_type}\n"
        f"[bold]Category:[/]   {fp.device_category.value}\n"
        f"[bold]Confidence:[/] {fp.confidence.value}",
        title=f"{fp.icon} {fp.mac}",
        border_style="cyan",
    ))


# ---------------------------------------------------------------------------
# Registry commands
# ---------------------------------------------------------------------------

def cmd_scan(
    subnet: Optional[str] = typer.Option(None, "--subnet", "-s", help="Subnet to sweep when no router answers."),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Run one scan cycle (routers, then subnet sweep) and print results."""
    setup_logging(log_level)

    async def _scan(services: NetGuard) -> tuple[list[Device], str | None]:
        config = services.scanner_config(account)
        if subnet:
            config = config.model_copy(update={"subnet": subnet})
        scheduler = services.schedulers.ensure(config)
        with console.status("Scanning..."):
            await scheduler.force_scan()
        state = scheduler.get_state()
        if state.error is None:
            console.print(
                f"Found [bold]{state.devices_found}[/] devices: "
                f"{state.new_devices} new, {state.offline_devices} went offline."
            )
        return await services.registry.list_by_account(config.account_id), state.error

    devices, error = _with_services(_scan)
    if error:
        console.print(f"[red]Scan failed:[/] {error}")
        raise typer.Exit(1)
    if devices:
        console.print(_build_device_table(devices))


def cmd_devices(
    online: bool = typer.Option(False, "--online", help="Show only online devices."),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """List all known devices from the database."""
    setup_logging(log_level)

    async def _list(services: NetGuard) -> list[Device]:
        account_id = account if account is not None else services.settings.account_id
        return await services.registry.list_by_account(account_id, online_only=online)

    devices = _with_services(_list)
    if not devices:
        console.print("[yellow]No devices in database. Run 'netguard scan' first.[/]")
        raise typer.Exit(0)

    console.print()
    console.print(_build_device_table(devices, title="Known Devices"))
    console.print(f"\n  [bold]{len(devices)}[/] devices total.\n")


def cmd_device(
    device_id: int = typer.Argument(help="Device id (see 'netguard devices')."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Show detailed info for a single device."""
    setup_logging(log_level)
    device = _with_services(lambda services: services.registry.get(device_id))
    if not device:
        console.print(f"[red]Device {device_id} not found.[/]")
        raise typer.Exit(1)

    fp = identify(device.mac)
    panel_text = (
        f"[bold]MAC:[/]         {device.mac}\n"
        f"[bold]IP:[/]          {device.ip or 'N/A'}\n"
        f"[bold]Vendor:[/]      {device.vendor or 'Unknown'}\n"
        f"[bold]Type:[/]        {device.device_type or 'Unknown'} ({fp.device_category.value})\n"
        f"[bold]Hostname:[/]    {device.hostname or 'N/A'}\n"
        f"[bold]Custom Name:[/] {device.custom_name or 'N/A'}\n"
        f"[bold]Risk:[/]        {_risk_text(device)}\n"
        f"[bold]Online:[/]      {'Yes' if device.is_online else 'No'}\n"
        f"[bold]Blocked:[/]     {'Yes' if device.is_blocked else 'No'}\n"
        f"[bold]First Seen:[/]  {device.first_seen.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"[bold]Last Seen:[/]   {device.last_seen.strftime('%Y-%m-%d %H:%M:%S')}"
    )
    console.print(Panel(panel_text, title=device.display_name, border_style="cyan"))


def cmd_history(
    device_id: int = typer.Argument(help="Device id."),
    limit: int = typer.Option(20, "--limit", "-n"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Show the event history of a device."""
    setup_logging(log_level)
    events = _with_services(lambda services: services.registry.list_history(device_id, limit))
    if not events:
        console.print("[yellow]No history for this device.[/]")
        raise typer.Exit(0)
    table = Table(title=f"History of device {device_id}", title_style="bold cyan", border_style="bright_black")
    table.add_column("When", no_wrap=True)
    table.add_column("Event")
    table.add_column("Risk", justify="right")
    table.add_column("Details")
    for event in events:
        table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type.value,
            str(event.risk_score) if event.risk_score is not None else "-",
            event.details or "",
        )
    console.print(table)


def cmd_alerts(
    unresolved: bool = typer.Option(False, "--unresolved", "-u", help="Only unresolved alerts."),
    limit: int = typer.Option(50, "--limit", "-n"),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """List security alerts."""
    setup_logging(log_level)

    async def _alerts(services: NetGuard):
        account_id = account if account is not None else services.settings.account_id
        return await services.alerts.list_by_account(account_id, limit=limit, unresolved_only=unresolved)

    alerts = _with_services(_alerts)
    if not alerts:
        console.print("[green]No alerts.[/]")
        raise typer.Exit(0)
    table = Table(title="Security Alerts", title_style="bold cyan", border_style="bright_black")
    table.add_column("ID", justify="right")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Created", no_wrap=True)
    table.add_column("Resolved", justify="center")
    for alert in alerts:
        style = _RISK_STYLE[RiskLevel(alert.severity.value)]
        table.add_row(
            str(alert.id),
            f"[{style}]{alert.severity.value}[/]",
            alert.alert_type.value,
            alert.title,
            alert.created_at.strftime("%Y-%m-%d %H:%M"),
            "yes" if alert.is_resolved else "",
        )
    console.print(table)


def cmd_resolve(
    alert_id: int = typer.Argument(help="Alert id."),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
) -> None:
    """Mark a security alert as resolved."""

    async def _resolve(services: NetGuard) -> bool:
        account_id = account if account is not None else services.settings.account_id
        return await services.alerts.resolve(alert_id, account_id)

    if _with_services(_resolve):
        console.print(f"[green]Alert {alert_id} resolved.[/]")
    else:
        console.print(f"[red]Alert {alert_id} not found.[/]")
        raise typer.Exit(1)


def cmd_block(
    device_id: int = typer.Argument(help="Device id."),
    reason: Optional[str] = typer.Option(None, "--reason", "-r"),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Block a device on the configured routers."""
    setup_logging(log_level)

    async def _block(services: NetGuard):
        account_id = account if account is not None else services.settings.account_id
        return await services.blocking.block(account_id, device_id, reason=reason)

    result = _with_services(_block)
    console.print(f"[green]{result.message}[/]")
    if not result.router_applied:
        console.print("[yellow]No router accepted the request; the block is recorded only.[/]")


def cmd_unblock(
    device_id: int = typer.Argument(help="Device id."),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Unblock a previously blocked device."""
    setup_logging(log_level)

    async def _unblock(services: NetGuard):
        account_id = account if account is not None else services.settings.account_id
        return await services.blocking.unblock(account_id, device_id)

    result = _with_services(_unblock)
    console.print(f"[green]{result.message}[/]")


def devices_to_csv(devices: list[Device]) -> str:
    buf = io.StringIO()
    fields = list(Device.model_fields) + ["risk_level"]
    writer = csv.DictWriter(buf, fieldnames=fields)
    writer.writeheader()
    for d in devices:
        row = d.model_dump(mode="json")
        row["risk_level"] = d.risk_level.value
        writer.writerow(row)
    return buf.getvalue()


def devices_to_json(devices: list[Device]) -> str:
    data = [{**d.model_dump(mode="json"), "risk_level": d.risk_level.value} for d in devices]
    return json.dumps(data, indent=2)


def cmd_export(
    format: str = typer.Option("json", "--format", "-f", help="Export format: json or csv."),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output file path."),
    account: Optional[int] = typer.Option(None, "--account", "-a", help="Account id."),
    log_level: str = typer.Option("WARNING", "--log-level", "-l"),
) -> None:
    """Export the device database to JSON or CSV."""
    setup_logging(log_level)
    if format.lower() not in ("json", "csv"):
        console.print(f"[red]Unsupported format: {format}. Use json or csv.[/]")
        raise typer.Exit(1)

    async def _export(services: NetGuard) -> list[Device]:
        account_id = account if account is not None else services.settings.account_id
        return await services.registry.list_by_account(account_id)

    devices = _with_services(_export)
    text = devices_to_json(devices) if format.lower() == "json" else devices_to_csv(devices)

    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"[green]Exported {len(devices)} devices to {output}[/]")
    else:
        console.print(text)


def cmd_serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="API server bind host."),
    port: int = typer.Option(8565, "--port", "-p", help="API server bind port."),
    with_scan: bool = typer.Option(False, "--with-scan", help="Enable background scanning."),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
) -> None:
    """Start the API server, optionally with background scanning."""
    setup_logging(log_level)

    from netguard.main import run_server

    asyncio.run(run_server(host=host, port=port, with_scan=with_scan))
