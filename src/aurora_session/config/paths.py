from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "aurora-session"
SETTINGS_FILENAME = "settings.json"


def user_config_dir(*, app_dir_name: str = APP_DIR_NAME) -> Path:
    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        if base:
            return Path(base) / app_dir_name
        return Path.home() / "AppData" / "Local" / app_dir_name

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / app_dir_name

    base = os.getenv("XDG_CONFIG_HOME")
    if base:
        return Path(base) / app_dir_name
    return Path.home() / ".config" / app_dir_name


def default_settings_path() -> Path:
    return user_config_dir() / SETTINGS_FILENAME


def resolve_config_relative(path_str: str, *, config_dir: Path | None = None) -> Path:
    """Relative paths in settings are taken relative to the config dir."""
    path = Path(path_str).expanduser()
    if path.is_absolute():
        return path
    return (config_dir or user_config_dir()) / path
