"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from tunwarden.config import AppConfig
from tunwarden.errors import CommandError, PrivilegeError
from tunwarden.net.commands import CommandResult
from tunwarden.profiles.models import (
    Network,
    Security,
    SecurityKind,
    Settings,
    Transport,
    VLessProfile,
    VMessProfile,
)
from tunwarden.profiles.store import ProfileStore


class FakeProcess:
    """Stands in for asyncio.subprocess.Process. Create it inside a running loop."""

    def __init__(
        self,
        pid: int = 4242,
        lines: Sequence[str] = (),
        exit_code: int | None = None,
        ignore_terminate: bool = False,
    ) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        for line in lines:
            self.stdout.feed_data(line.encode() + b"\n")
        self.terminated = False
        self.killed = False
        self._ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()
        if exit_code is not None:
            self.exit(exit_code)

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self._ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeRunner:
    """Records commands instead of running them.

    ``respond`` and ``fail`` match on an argv prefix; the most recently
    registered match wins. Unmatched commands succeed with empty output.
    """

    def __init__(self, elevated: bool = True) -> None:
        self.elevated = elevated
        self.calls: list[tuple[str, ...]] = []
        self.inputs: dict[tuple[str, ...], str] = {}
        self.spawned: list[FakeProcess] = []
        self.spawn_calls: list[tuple[tuple[str, ...], dict | None]] = []
        self.process_factory: Callable[[], FakeProcess] = FakeProcess
        self._rules: list[tuple[tuple[str, ...], CommandResult | Exception]] = []

    def respond(self, prefix: Sequence[str], stdout: str = "", returncode: int = 0) -> None:
        prefix = tuple(prefix)
        self._rules.append((prefix, CommandResult(prefix, returncode, stdout, "")))

    def fail(self, prefix: Sequence[str], exc: Exception | None = None) -> None:
        prefix = tuple(prefix)
        self._rules.append((prefix, exc or CommandError(prefix, 1, "simulated failure")))

    def require_elevation(self, action: str) -> None:
        if not self.elevated:
            raise PrivilegeError(f"{action} requires administrator/root privileges")

    def commands(self, program: str) -> list[tuple[str, ...]]:
        return [argv for argv in self.calls if argv[0] == program]

    async def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        check: bool = True,
        input: str | None = None,
        timeout: float = 15.0,
    ) -> CommandResult:
        argv = tuple(argv)
        if privileged:
            self.require_elevation(argv[0])
        self.calls.append(argv)
        if input is not None:
            self.inputs[argv] = input

        for prefix, outcome in reversed(self._rules):
            if argv[: len(prefix)] != prefix:
                continue
            if isinstance(outcome, Exception):
                if check or not isinstance(outcome, CommandError):
                    raise outcome
                return CommandResult(argv, 1, "", str(outcome))
            return CommandResult(argv, outcome.returncode, outcome.stdout, "")
        return CommandResult(argv, 0, "", "")

    async def spawn(self, argv: Sequence[str], *, env: dict | None = None) -> FakeProcess:
        argv = tuple(argv)
        self.spawn_calls.append((argv, env))
        proc = self.process_factory()
        self.spawned.append(proc)
        return proc


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def profiles_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "profiles.yaml"


@pytest.fixture
def settings_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "settings.yaml"


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def runner_factory() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture
def process_factory() -> Callable[..., FakeProcess]:
    return FakeProcess


@pytest.fixture
def vless_profile() -> VLessProfile:
    return VLessProfile(
        id="sg-1",
        name="Singapore 1",
        address="sg1.example.net",
        port=443,
        user_id="b831381d-6324-4d53-ad4f-8cda48b30811",
        flow="xtls-rprx-vision",
        security=Security(
            kind=SecurityKind.REALITY,
            sni="www.microsoft.com",
            fingerprint="chrome",
            public_key="Z84J2IelR9ch3k8VtlVhhs5ycBUlXA7wHBWcBrjqnAw",
            short_id="6ba85179e30d4fc2",
        ),
    )


@pytest.fixture
def vmess_profile() -> VMessProfile:
    return VMessProfile(
        id="de-ws",
        name="Frankfurt WS",
        address="203.0.113.10",
        port=8443,
        user_id="a3482e88-686a-4a58-8126-99c9df64b7bf",
        transport=Transport(network=Network.WS, path="/ray", host="cdn.example.org"),
        security=Security(kind=SecurityKind.TLS, alpn=("h2", "http/1.1")),
    )


@pytest.fixture
def store(vless_profile: VLessProfile, vmess_profile: VMessProfile) -> ProfileStore:
    store = ProfileStore()
    store.add(vless_profile)
    store.add(vmess_profile)
    return store


@pytest.fixture
def default_settings() -> Settings:
    return Settings()


@pytest.fixture
def engine_binary(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "xray"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def app_config(tmp_path: Path, engine_binary: Path) -> AppConfig:
    return AppConfig(
        data_dir=tmp_path / "data",
        config_dir=tmp_path / "config",
        runtime_dir=tmp_path / "run",
        engine_path=engine_binary,
        tunnel_path=engine_binary.parent / "tun2socks",
        asset_dir=tmp_path / "assets",
    )
