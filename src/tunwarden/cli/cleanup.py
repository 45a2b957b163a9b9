"""CLI command: tunwarden cleanup — recover the network after a crash.

Removes kill-switch rules, clears the system proxy and stops any engine or
tunneling processes left behind by a session that did not shut down.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import click
import psutil
from rich.console import Console

from tunwarden.errors import PrivilegeError, SystemProxyError
from tunwarden.net.commands import CommandRunner
from tunwarden.net.firewall import FirewallController
from tunwarden.net.sysproxy import SystemProxyToggle

logger = logging.getLogger(__name__)

console = Console(stderr=True)


def find_stray_processes(names: set[str]) -> list[psutil.Process]:
    """Running processes whose executable name is one of ``names``."""
    own_pid = os.getpid()
    found = []
    for proc in psutil.process_iter(["pid", "name"]):
        name = (proc.info.get("name") or "").lower()
        if proc.info["pid"] != own_pid and name in names:
            found.append(proc)
    return found


def stop_processes(procs: list[psutil.Process], timeout: float = 3.0) -> int:
    """Terminate, then kill whatever survives ``timeout``. Returns how many are gone."""
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.error("Permission denied stopping PID %d", proc.pid)

    gone, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
            gone.append(proc)
        except psutil.NoSuchProcess:
            gone.append(proc)
        except psutil.AccessDenied:
            logger.error("Permission denied killing PID %d", proc.pid)
    return len(gone)


def _binary_names(*paths) -> set[str]:
    names = set()
    for path in paths:
        if path is None:
            continue
        names.add(path.name.lower())
        names.add(path.stem.lower())
    return names


async def _revert_os_state(runner: CommandRunner) -> list[str]:
    problems = []
    try:
        await FirewallController(runner).revert()
        console.print("  Kill-switch rules removed")
    except PrivilegeError as exc:
        problems.append(str(exc))
    try:
        await SystemProxyToggle(runner).revert()
        console.print("  System proxy cleared")
    except SystemProxyError as exc:
        problems.append(str(exc))
    return problems


@click.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Emergency cleanup after a crashed session."""
    config = ctx.obj["config"]
    console.print("[bold]Tunwarden[/bold] cleaning up")

    strays = find_stray_processes(_binary_names(config.engine_path, config.tunnel_path))
    if strays:
        stopped = stop_processes(strays)
        console.print(f"  Stopped {stopped} stray process(es)")
    else:
        console.print("  [dim]No stray engine or tunnel processes[/dim]")

    problems = asyncio.run(_revert_os_state(CommandRunner()))
    for problem in problems:
        console.print(f"  [yellow]⚠ {problem}[/yellow]")
    if problems:
        sys.exit(1)
