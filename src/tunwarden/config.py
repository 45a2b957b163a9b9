"""Global configuration: XDG paths, engine binaries, environment overrides."""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "tunwarden"
    return Path.home() / ".local" / "share" / "tunwarden"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "tunwarden"
    return Path.home() / ".config" / "tunwarden"


def _default_runtime_dir() -> Path:
    return Path(tempfile.gettempdir()) / "tunwarden"


def _find_binary(name: str, data_dir: Path) -> Path:
    """Prefer a bundled binary under data_dir/bin, then PATH."""
    bundled = data_dir / "bin" / name
    if bundled.exists():
        return bundled
    found = shutil.which(name)
    return Path(found) if found else bundled


@dataclass
class AppConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    runtime_dir: Path = field(default_factory=_default_runtime_dir)
    engine_path: Path | None = None
    tunnel_path: Path | None = None
    asset_dir: Path | None = None
    tunnel_interface: str = "tun0"
    web_host: str = "127.0.0.1"  # Loopback only
    web_port: int = 8471
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.engine_path is None:
            self.engine_path = _find_binary("xray", self.data_dir)
        if self.tunnel_path is None:
            self.tunnel_path = _find_binary("tun2socks", self.data_dir)
        if self.asset_dir is None:
            # geoip.dat / geosite.dat usually ship next to the engine binary
            self.asset_dir = self.engine_path.parent

    @property
    def profiles_file(self) -> Path:
        return self.config_dir / "profiles.yaml"

    @property
    def settings_file(self) -> Path:
        return self.config_dir / "settings.yaml"

    @classmethod
    def load(cls, config_dir: Path | None = None) -> AppConfig:
        """Load config from environment variables with XDG defaults."""
        kwargs: dict = {}
        if config_dir is not None:
            kwargs["config_dir"] = config_dir

        env_engine = os.environ.get("TUNWARDEN_ENGINE_PATH")
        if env_engine:
            kwargs["engine_path"] = Path(env_engine)

        env_tunnel = os.environ.get("TUNWARDEN_TUNNEL_PATH")
        if env_tunnel:
            kwargs["tunnel_path"] = Path(env_tunnel)

        env_assets = os.environ.get("TUNWARDEN_ASSET_DIR")
        if env_assets:
            kwargs["asset_dir"] = Path(env_assets)

        env_runtime = os.environ.get("TUNWARDEN_RUNTIME_DIR")
        if env_runtime:
            kwargs["runtime_dir"] = Path(env_runtime)

        config = cls(**kwargs)

        env_port = os.environ.get("TUNWARDEN_WEB_PORT")
        if env_port:
            config.web_port = int(env_port)

        return config
