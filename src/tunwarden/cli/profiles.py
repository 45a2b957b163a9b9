"""CLI command: tunwarden profiles — list configured profiles."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from tunwarden.errors import ProbeTimeout
from tunwarden.net.resolve import tcp_probe
from tunwarden.profiles.loader import load_profiles
from tunwarden.profiles.models import ProfileError
from tunwarden.profiles.store import ProfileStore

console = Console()


@click.command()
@click.option("--probe", is_flag=True, help="Measure TCP latency to each server.")
@click.pass_context
def profiles(ctx: click.Context, probe: bool) -> None:
    """List the profiles in profiles.yaml."""
    config = ctx.obj["config"]
    try:
        store = load_profiles(config.profiles_file)
    except ProfileError as exc:
        console.print(f"[red]Invalid profiles file:[/red] {exc}")
        sys.exit(1)

    if not len(store):
        console.print(f"[dim]No profiles found in {config.profiles_file}[/dim]")
        return

    if probe:
        asyncio.run(_probe_all(store))

    table = Table(title="Profiles")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Protocol")
    table.add_column("Server")
    table.add_column("Transport")
    table.add_column("Security")
    table.add_column("Latency", justify="right")

    for profile in store.all():
        latency = store.latency(profile.id)
        table.add_row(
            profile.id,
            profile.name,
            type(profile).protocol.value,
            f"{profile.address}:{profile.port}",
            profile.transport.network.value,
            profile.security.kind.value,
            f"{latency:.0f} ms" if latency is not None else "[dim]-[/dim]",
        )
    console.print(table)


async def _probe_all(store: ProfileStore) -> None:
    async def _one(profile_id: str, address: str, port: int) -> None:
        try:
            store.set_latency(profile_id, await tcp_probe(address, port))
        except ProbeTimeout as exc:
            console.print(f"[yellow]{profile_id}:[/yellow] {exc}")

    await asyncio.gather(*(_one(p.id, p.address, p.port) for p in store.all()))
