"""CLI command: tunwarden connect <PROFILE_ID> — run a session until Ctrl+C."""

from __future__ import annotations

import asyncio
import signal
import sys

import click
from rich.console import Console
from rich.table import Table

from tunwarden.config import AppConfig
from tunwarden.errors import ErrorKind
from tunwarden.profiles.loader import load_profiles, load_settings
from tunwarden.profiles.models import ProfileError, Settings
from tunwarden.profiles.store import ProfileStore
from tunwarden.session.manager import SessionManager
from tunwarden.session.models import (
    HealthWarning,
    LogLine,
    Notification,
    SessionState,
    StateChange,
    TrafficSample,
)

console = Console(stderr=True)

_LEVEL_STYLES = {"ERROR": "red", "WARNING": "yellow"}


def format_rate(bps: float) -> str:
    for unit in ("B/s", "KB/s", "MB/s"):
        if bps < 1024:
            return f"{bps:.1f} {unit}"
        bps /= 1024
    return f"{bps:.1f} GB/s"


def format_bytes(count: int) -> str:
    value = float(count)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@click.command()
@click.argument("profile_id")
@click.option("--show-traffic", is_flag=True, help="Print a throughput line every second.")
@click.pass_context
def connect(ctx: click.Context, profile_id: str, show_traffic: bool) -> None:
    """Connect using a configured profile and stay connected until Ctrl+C."""
    config: AppConfig = ctx.obj["config"]
    try:
        store = load_profiles(config.profiles_file)
        settings = load_settings(config.settings_file)
    except ProfileError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        sys.exit(1)

    profile = store.get(profile_id)
    if profile is None:
        console.print(f"[red]Unknown profile:[/red] {profile_id}")
        sys.exit(1)

    mode = "TUN" if settings.tun_mode else ("system proxy" if settings.set_system_proxy else "local proxy")
    console.print(
        f"[bold]Tunwarden[/bold] connecting to [cyan]{profile.name}[/cyan] "
        f"({profile.address}:{profile.port}, {type(profile).protocol.value})"
    )
    console.print(
        f"  Mode: {mode}, Kill switch: {'on' if settings.kill_switch else 'off'}, "
        f"SOCKS {settings.socks_port}, HTTP {settings.http_port}"
    )
    console.print("  Press Ctrl+C to disconnect.\n")

    exit_code = asyncio.run(_run_session(config, store, settings, profile_id, show_traffic))
    if exit_code:
        sys.exit(exit_code)


async def _run_session(
    config: AppConfig,
    store: ProfileStore,
    settings: Settings,
    profile_id: str,
    show_traffic: bool,
) -> int:
    manager = SessionManager(config, store, settings)
    stop = asyncio.Event()
    lost = False

    def on_state(change: StateChange) -> None:
        nonlocal lost
        color = "green" if change.current is SessionState.ACTIVE else "dim"
        console.print(f"  [{color}]● {change.current.value}[/{color}]")
        if change.current is SessionState.IDLE and change.previous is not SessionState.DISCONNECTING:
            # Reconnect gave up or the session failed for good
            lost = True
            stop.set()

    def on_line(line: LogLine) -> None:
        style = _LEVEL_STYLES.get(line.level, "dim")
        console.print(f"  [{style}]{line.source}: {line.message}[/{style}]", highlight=False)

    def on_traffic(sample: TrafficSample) -> None:
        if show_traffic:
            console.print(
                f"  [blue]↑ {format_rate(sample.upload_bps)}  "
                f"↓ {format_rate(sample.download_bps)}[/blue]"
            )

    def on_warning(warning: HealthWarning) -> None:
        console.print(f"  [yellow]⚠ {warning.message}[/yellow]")

    def on_notification(note: Notification) -> None:
        console.print(f"  [red]✖ {note.title}:[/red] {note.message}")

    manager.on_state_change(on_state)
    manager.on_log_line(on_line)
    manager.on_traffic_sample(on_traffic)
    manager.on_health_warning(on_warning)
    manager.on_notification(on_notification)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop.set))

    result = await manager.connect(profile_id)
    if not result.success:
        console.print(f"\n[red]Connection failed:[/red] {result.error or result.message}")
        if result.error_kind is ErrorKind.PRIVILEGE:
            console.print("  [dim]Restart tunwarden as root/Administrator.[/dim]")
        await manager.shutdown()
        return 1

    console.print(f"\n[green]{result.message}[/green]")
    await stop.wait()

    session = manager.get_session_state()
    stats = manager.stats
    uptime = session.uptime
    if not lost:
        console.print("\n[dim]Disconnecting...[/dim]")
        result = await manager.disconnect()
        if not result.success:
            console.print(f"[yellow]{result.error}[/yellow]")
    await manager.shutdown()

    _print_summary(session.id, profile_id, uptime, stats.uploaded, stats.downloaded)
    return 1 if lost else 0


def _print_summary(session_id: str, profile_id: str, uptime: float, up: int, down: int) -> None:
    console.print("\n[bold]Session Summary[/bold]")
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()

    table.add_row("Session ID", session_id)
    table.add_row("Profile", profile_id)
    table.add_row("Uptime", f"{uptime:.0f}s")
    table.add_row("Uploaded", format_bytes(up))
    table.add_row("Downloaded", format_bytes(down))
    console.print(table)
