"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from tunwarden import __version__
from tunwarden.config import AppConfig


@click.group()
@click.version_option(version=__version__, prog_name="tunwarden")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding profiles.yaml and settings.yaml.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, config_dir: Path | None, verbose: bool) -> None:
    """Tunwarden: supervised proxy tunnel sessions with kill switch and TUN mode."""
    ctx.ensure_object(dict)
    config = AppConfig.load(config_dir)
    config.verbose = verbose
    ctx.obj["config"] = config

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from tunwarden.cli.cleanup import cleanup  # noqa: F811
    from tunwarden.cli.connect import connect  # noqa: F811
    from tunwarden.cli.profiles import profiles  # noqa: F811
    from tunwarden.cli.render import render  # noqa: F811
    from tunwarden.cli.server import server  # noqa: F811

    main.add_command(connect)
    main.add_command(profiles)
    main.add_command(render)
    main.add_command(cleanup)
    main.add_command(server)


_register_commands()
