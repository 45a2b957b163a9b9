"""Async OS command execution with timeouts and an elevation gate."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from tunwarden.errors import CommandError, PrivilegeError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0

# Output fragments that mean "you are not elevated" rather than a real failure.
_PRIVILEGE_MARKERS = (
    "operation not permitted",
    "permission denied",
    "requires elevation",
    "access is denied",
    "run as administrator",
)


def is_elevated() -> bool:
    """Whether this process may change routes, firewall rules and interfaces."""
    if platform.system() == "Windows":
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        # netsh prints errors to stdout, so callers usually want both
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner:
    """Runs OS commands as awaitable suspension points.

    ``run(..., privileged=True)`` refuses up front when the process is not
    elevated, so callers can tell "restart elevated" apart from a genuine
    command failure.
    """

    def __init__(self, elevated: bool | None = None) -> None:
        self._elevated = elevated

    @property
    def elevated(self) -> bool:
        if self._elevated is None:
            self._elevated = is_elevated()
        return self._elevated

    def require_elevation(self, action: str) -> None:
        if not self.elevated:
            raise PrivilegeError(
                f"{action} requires administrator/root privileges; "
                "restart tunwarden elevated"
            )

    async def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        check: bool = True,
        input: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> CommandResult:
        argv = tuple(argv)
        if privileged:
            self.require_elevation(argv[0])

        logger.debug("Running: %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CommandError(argv, reason="command not found") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise CommandError(argv, reason=f"timed out after {timeout:g}s") from None

        result = CommandResult(
            argv=argv,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
        )
        if check and result.returncode != 0:
            lowered = result.output.lower()
            if any(marker in lowered for marker in _PRIVILEGE_MARKERS):
                raise PrivilegeError(
                    f"{' '.join(argv)} was refused: {result.output}"
                )
            raise CommandError(argv, result.returncode, result.output)
        return result

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-running child with piped stdout/stderr."""
        argv = tuple(argv)
        if shutil.which(argv[0]) is None and not os.path.exists(argv[0]):
            raise CommandError(argv, reason="executable not found")
        logger.debug("Spawning: %s", " ".join(argv))
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **(env or {})},
        )
