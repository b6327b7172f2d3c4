"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    override = environ.get("VELOCE_DATA_DIR")
    if override:
        return Path(override).expanduser()

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Veloce"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, STORAGE_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "sync.db"
SYNC_META_PATH = STORAGE_DIR / "sync_meta.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"
CLI_LOG_PATH = LOG_DIR / "cli.log"


@dataclass(frozen=True)
class RetrySettings:
    base_delay_sec: float = 1.0
    factor: float = 2.0
    max_delay_sec: float = 30.0
    max_attempts: int = 5


@dataclass(frozen=True)
class SyncSettings:
    enabled: bool = True
    debounce_sec: float = 2.0
    success_display_sec: float = 3.0
    retry: RetrySettings = RetrySettings()


SYNC = SyncSettings()


@dataclass(frozen=True)
class ConnectivitySettings:
    probe_timeout_sec: float = 5.0
    poll_interval_sec: float = 15.0


CONNECTIVITY = ConnectivitySettings()


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class RemoteSettings:
    base_url: str = field(default_factory=lambda: _env("VELOCE_REMOTE_URL"))
    api_key: str = field(default_factory=lambda: _env("VELOCE_REMOTE_KEY"))
    request_timeout_sec: float = 15.0
    connect_timeout_sec: float = 5.0
    health_path: str = "/auth/v1/health"
    tables: tuple[tuple[str, str], ...] = (
        ("task", "tasks"),
        ("goal", "goals"),
        ("achievement", "achievements"),
        ("user", "users"),
        ("streak", "streaks"),
        ("friendship", "friendships"),
        ("circle", "circles"),
        ("challenge", "challenges"),
        ("pact", "pacts"),
    )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)


REMOTE = RemoteSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_META_PATH",
    "SYNC_LOG_PATH",
    "CLI_LOG_PATH",
    "SYNC",
    "CONNECTIVITY",
    "REMOTE",
    "RetrySettings",
    "SyncSettings",
    "ConnectivitySettings",
    "RemoteSettings",
    "get_default_data_dir",
]
