"""Shared runtime settings for the local state database."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

APP_DIR_NAME = "tim"
DATABASE_FILE_NAME = "tim.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000


def config_root(env: dict[str, str] | None = None, platform: str | None = None) -> Path:
    """Resolve the per-user configuration directory.

    ``TIM_CONFIG_ROOT`` wins when set. Otherwise Windows uses ``%APPDATA%`` and
    everything else follows the XDG convention.
    """

    source = os.environ if env is None else env
    override = source.get("TIM_CONFIG_ROOT", "").strip()
    if override:
        return Path(override)

    if (platform or sys.platform) == "win32":
        app_data = source.get("APPDATA", "").strip()
        base = Path(app_data) if app_data else Path.home() / "AppData" / "Roaming"
        return base / APP_DIR_NAME

    xdg_config_home = source.get("XDG_CONFIG_HOME", "").strip()
    if xdg_config_home:
        return Path(xdg_config_home) / APP_DIR_NAME
    return Path.home() / ".config" / APP_DIR_NAME


@dataclass(frozen=True)
class StorageSettings:
    """Filesystem and SQLite locations for the shared state database."""

    config_root: Path
    sqlite_path: Path
    legacy_root: Path
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS

    @classmethod
    def from_env(
        cls, env: dict[str, str] | None = None, platform: str | None = None
    ) -> "StorageSettings":
        source = os.environ if env is None else env
        root = config_root(source, platform)
        raw_timeout = source.get("TIM_SQLITE_BUSY_TIMEOUT_MS", "").strip()
        busy_timeout_ms = int(raw_timeout) if raw_timeout.isdigit() else DEFAULT_BUSY_TIMEOUT_MS
        return cls(
            config_root=root,
            sqlite_path=root / DATABASE_FILE_NAME,
            legacy_root=root,
            busy_timeout_ms=busy_timeout_ms,
        )

    def ensure_directories(self) -> None:
        self.config_root.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def get_storage_settings(
    env: dict[str, str] | None = None, platform: str | None = None
) -> StorageSettings:
    """Build and hydrate storage settings from environment variables."""

    settings = StorageSettings.from_env(env, platform)
    settings.ensure_directories()
    return settings
