"""CLI command: tunwarden server — serve the web API on the loopback interface."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console

from tunwarden.config import AppConfig
from tunwarden.net.commands import is_elevated
from tunwarden.profiles.loader import load_profiles, load_settings
from tunwarden.profiles.models import ProfileError

console = Console(stderr=True)


@click.command()
@click.option("--port", type=int, default=None, help="Port to listen on (default: 8471).")
@click.option(
    "--log-level",
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    default="info",
    show_default=True,
    help="uvicorn access/error log level.",
)
@click.pass_context
def server(ctx: click.Context, port: int | None, log_level: str) -> None:
    """Run the session manager behind the web API."""
    try:
        import uvicorn
    except ImportError:
        console.print(
            "[red]Web dependencies not installed.[/red]\n"
            "Install with: pip install tunwarden[web]"
        )
        raise SystemExit(1)

    config: AppConfig = ctx.obj["config"]
    if port is not None:
        config.web_port = port

    try:
        store = load_profiles(config.profiles_file)
        settings = load_settings(config.settings_file)
    except ProfileError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        sys.exit(1)

    url = f"http://{config.web_host}:{config.web_port}"
    console.print(f"[bold]Tunwarden[/bold] web API on [cyan]{url}[/cyan] ({len(store)} profiles)")
    if not config.engine_path.exists():
        console.print(f"  [yellow]Engine binary not found at {config.engine_path}[/yellow]")
    if (settings.tun_mode or settings.kill_switch) and not is_elevated():
        console.print("  [yellow]Not elevated: TUN mode and the kill switch will be refused[/yellow]")
    console.print(f"  [dim]API docs at {url}/api/docs[/dim]\n")

    from tunwarden.session.manager import SessionManager
    from tunwarden.web.app import create_app

    async def _serve() -> None:
        app = create_app(SessionManager(config, store, settings))
        await uvicorn.Server(
            uvicorn.Config(app, host=config.web_host, port=config.web_port, log_level=log_level)
        ).serve()

    asyncio.run(_serve())
