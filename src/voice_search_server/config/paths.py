from __future__ import annotations

import os
import sys
from pathlib import Path

APP_DIR_NAME = "voice-search-server"
HOME_ENV = "VOICE_SEARCH_SERVER_HOME"


def app_home() -> Path:
    """Directory holding settings.json and logs/.

    `VOICE_SEARCH_SERVER_HOME` overrides the per-OS config location.
    """
    override = os.getenv(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return _config_root() / APP_DIR_NAME


def _config_root() -> Path:
    if sys.platform.startswith("win"):
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        return Path(base) if base else Path.home() / "AppData" / "Local"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    base = os.getenv("XDG_CONFIG_HOME")
    return Path(base) if base else Path.home() / ".config"


def default_settings_path() -> Path:
    return app_home() / "settings.json"


def default_log_path() -> Path:
    return app_home() / "logs" / "server.log"
