"""Proxy engine process supervision — spawn, log capture, stats, stop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from tunwarden.errors import CommandError, ProcessSpawnError
from tunwarden.net.commands import CommandRunner
from tunwarden.session.models import LogLine

logger = logging.getLogger(__name__)

ASSET_ENV_VAR = "XRAY_LOCATION_ASSET"

MAX_LOG_LINES = 1000
STARTUP_GRACE = 1.0
STOP_GRACE = 5.0
STATS_TIMEOUT = 5.0

# Steady-state traffic lines kept out of the buffer
NOISE_MARKERS = ("socks-in -> direct", "127.0.0.1:0")


@dataclass(frozen=True)
class EngineHandle:
    pid: int
    config_path: Path
    started_at: float


@dataclass(frozen=True)
class EngineStats:
    """Cumulative byte counters reported by the engine."""

    uploaded: int = 0
    downloaded: int = 0


def classify_line(text: str) -> str:
    """Guess a log level for a line of child-process output."""
    lower = text.lower()
    if any(word in lower for word in ("error", "fatal", "panic", "fail")):
        return "ERROR"
    if "warn" in lower:
        return "WARNING"
    return "INFO"


async def pump_output(
    stream: asyncio.StreamReader | None,
    source: str,
    sink: Callable[[LogLine], None],
) -> None:
    """Forward each non-noise line of ``stream`` to ``sink`` until EOF."""
    if stream is None:
        return
    while True:
        raw = await stream.readline()
        if not raw:
            break
        text = raw.decode(errors="replace").rstrip()
        if not text or any(marker in text for marker in NOISE_MARKERS):
            continue
        sink(LogLine(level=classify_line(text), source=source, message=text))


def parse_stats_output(text: str) -> EngineStats:
    """Sum proxy-outbound counters from ``api statsquery`` JSON output.

    Only ``outbound>>>proxy>>>traffic>>>uplink|downlink`` is counted so
    inbound and outbound accounting of the same bytes is not doubled.
    """
    data = json.loads(text or "{}")
    uplink = 0
    downlink = 0
    for stat in data.get("stat", []) or []:
        name = stat.get("name", "")
        try:
            value = int(stat.get("value", 0) or 0)
        except (TypeError, ValueError):
            continue
        parts = name.split(">>>")
        if len(parts) != 4 or parts[0] != "outbound" or parts[1] != "proxy":
            continue
        if parts[3] == "uplink":
            uplink += value
        elif parts[3] == "downlink":
            downlink += value
    return EngineStats(uploaded=uplink, downloaded=downlink)


class ProcessSupervisor:
    """Owns the proxy engine child process.

    Output is captured into a bounded ring buffer of the most recent lines.
    If the process exits while nobody asked it to, the handle is cleared and
    ``on_exit`` is invoked with the return code.
    """

    def __init__(
        self,
        engine_path: Path,
        asset_dir: Path,
        runner: CommandRunner,
        *,
        max_log_lines: int = MAX_LOG_LINES,
        startup_grace: float = STARTUP_GRACE,
        stop_grace: float = STOP_GRACE,
        on_line: Callable[[LogLine], None] | None = None,
        on_exit: Callable[[int | None], None] | None = None,
    ) -> None:
        self._engine_path = Path(engine_path)
        self._asset_dir = Path(asset_dir)
        self._runner = runner
        self._startup_grace = startup_grace
        self._stop_grace = stop_grace
        self.on_line = on_line
        self.on_exit = on_exit
        self._logs: deque[LogLine] = deque(maxlen=max_log_lines)
        self._proc: asyncio.subprocess.Process | None = None
        self._handle: EngineHandle | None = None
        self._watcher: asyncio.Task | None = None
        self._pumps: list[asyncio.Task] = []
        self._stopping = False
        self._startup_complete = False
        self._stats_port = 0
        self._last_stats = EngineStats()

    @property
    def handle(self) -> EngineHandle | None:
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def logs(self) -> list[LogLine]:
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    async def start(self, config_path: Path, stats_port: int) -> EngineHandle:
        """Spawn ``<engine> run -c <config_path>``."""
        if self.is_running:
            raise ProcessSpawnError("Engine is already running")
        if not self._engine_path.exists() and shutil.which(str(self._engine_path)) is None:
            raise ProcessSpawnError(f"Engine binary not found at {self._engine_path}")
        if not Path(config_path).exists():
            raise ProcessSpawnError(f"Engine config not found at {config_path}")

        self._stopping = False
        self._startup_complete = False
        self._stats_port = stats_port
        self._last_stats = EngineStats()

        self._record(LogLine(level="INFO", source="tunwarden", message=f"Starting engine: {self._engine_path}"))
        try:
            proc = await self._runner.spawn(
                [str(self._engine_path), "run", "-c", str(config_path)],
                env={ASSET_ENV_VAR: str(self._asset_dir)},
            )
        except (CommandError, OSError) as exc:
            raise ProcessSpawnError(f"Failed to spawn engine: {exc}") from exc

        self._proc = proc
        self._pumps = [
            asyncio.create_task(pump_output(proc.stdout, "engine", self._record)),
            asyncio.create_task(pump_output(proc.stderr, "engine", self._record)),
        ]
        self._watcher = asyncio.create_task(self._watch(proc))

        # Rejected configs and busy ports make the engine exit right away
        done, _ = await asyncio.wait({self._watcher}, timeout=self._startup_grace)
        if done:
            await asyncio.gather(*self._pumps, return_exceptions=True)
            tail = "; ".join(line.message for line in list(self._logs)[-3:])
            self._proc = None
            raise ProcessSpawnError(
                f"Engine exited during startup with code {proc.returncode}: {tail}"
            )

        self._startup_complete = True
        self._handle = EngineHandle(
            pid=proc.pid,
            config_path=Path(config_path),
            started_at=time.time(),
        )
        logger.info("Engine started (PID %d)", proc.pid)
        return self._handle

    async def stop(self) -> None:
        """Terminate the engine, force-killing it after the grace period."""
        proc = self._proc
        if proc is None:
            return
        self._stopping = True
        if proc.returncode is None:
            logger.info("Stopping engine (PID %d)", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(self._wait_exit()), self._stop_grace)
            except asyncio.TimeoutError:
                logger.warning("Engine ignored terminate; force killing PID %d", proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await self._wait_exit()
        self._proc = None
        self._handle = None

    async def _wait_exit(self) -> None:
        if self._watcher is not None:
            await self._watcher

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        if self._proc is not proc:
            return
        if self._stopping or not self._startup_complete:
            self._record(LogLine(level="INFO", source="tunwarden", message=f"Engine exited with code {returncode}"))
            return

        self._proc = None
        self._handle = None
        self._record(
            LogLine(
                level="ERROR",
                source="tunwarden",
                message=f"Engine exited unexpectedly with code {returncode}",
            )
        )
        if self.on_exit is not None:
            self.on_exit(returncode)

    async def query_stats(self) -> EngineStats:
        """Cumulative counters; the last good reading survives query failures."""
        if not self.is_running:
            return self._last_stats
        try:
            result = await self._runner.run(
                [
                    str(self._engine_path),
                    "api",
                    "statsquery",
                    "-s",
                    f"127.0.0.1:{self._stats_port}",
                ],
                timeout=STATS_TIMEOUT,
            )
            stats = parse_stats_output(result.stdout)
        except (CommandError, ValueError, AttributeError) as exc:
            logger.debug("Stats query failed, keeping last reading: %s", exc)
            return self._last_stats
        self._last_stats = stats
        return stats

    def _record(self, line: LogLine) -> None:
        self._logs.append(line)
        if self.on_line is not None:
            self.on_line(line)
