"""CLI command: tunwarden render <PROFILE_ID> — print the engine config."""

from __future__ import annotations

import sys

import click
from rich.console import Console

from tunwarden.engine.config_gen import render_config
from tunwarden.errors import ConfigGenerationError
from tunwarden.profiles.loader import load_profiles, load_settings
from tunwarden.profiles.models import ProfileError

console = Console(stderr=True)


@click.command()
@click.argument("profile_id")
@click.pass_context
def render(ctx: click.Context, profile_id: str) -> None:
    """Print the engine configuration a connect would use."""
    config = ctx.obj["config"]
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

    try:
        text = render_config(profile, settings)
    except ConfigGenerationError as exc:
        console.print(f"[red]Cannot generate configuration:[/red] {exc}")
        sys.exit(1)

    # Plain stdout so the output can be piped into a file
    click.echo(text)
