"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
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
    """Return an OS-specific user data directory for ``app_name``.

    ``CALMIRROR_DATA_DIR`` in the environment wins over the platform default.
    """

    platform_id = (platform or sys.platform).lower()
    environ = dict(os.environ if env is None else env)
    override = environ.get("CALMIRROR_DATA_DIR")
    if override:
        return Path(override).expanduser()

    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = home_dir / "Library" / "Application Support"
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return base.expanduser() / sanitized


APP_NAME = "CalMirror"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"
SECRETS_DIR = DATA_DIR / "secrets"

for _dir in (DATA_DIR, LOG_DIR, SECRETS_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "calmirror.db"
TOKEN_PATH = SECRETS_DIR / "google-token.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    incremental_interval_sec: int = 60
    full_interval_sec: int = 8 * 60 * 60
    window_past_days: int = 30
    window_future_days: int = 90
    page_size: int = 2500
    max_error_length: int = 1000


SYNC = SyncSettings()


@dataclass(frozen=True)
class ConnectivitySettings:
    debounce_sec: float = 3.0
    poll_online_sec: float = 30.0
    poll_offline_sec: float = 10.0
    tick_sec: float = 1.0
    probe_host: str = "www.googleapis.com"
    probe_port: int = 443
    probe_timeout_sec: float = 3.0


CONNECTIVITY = ConnectivitySettings()


@dataclass(frozen=True)
class GoogleSettings:
    scopes: tuple[str, ...] = (
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
    )
    token_path: Path = TOKEN_PATH
    min_access_role: str = "reader"
    default_calendar_id: str = "primary"


GOOGLE = GoogleSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "SECRETS_DIR",
    "DB_PATH",
    "TOKEN_PATH",
    "SYNC_LOG_PATH",
    "SYNC",
    "CONNECTIVITY",
    "GOOGLE",
    "get_default_data_dir",
]
