"""Centralized path constants for the control plane."""

from __future__ import annotations

import os
from pathlib import Path

# User-specific state (allows running from read-only install directories)
_STATE_ENV = os.environ.get("GESTUREVISION_STATE_DIR")
STATE_DIR = Path(_STATE_ENV).expanduser() if _STATE_ENV else (Path.home() / ".gesturevision")

CONFIG_PATH = Path(os.environ.get("GESTUREVISION_CONFIG_PATH", STATE_DIR / "config.json"))

EXTENSIONS_DIR = STATE_DIR / "extensions"
PLUGINS_DIR = Path(os.environ.get("GESTUREVISION_PLUGINS_DIR", EXTENSIONS_DIR / "plugins"))
CUSTOM_GESTURES_DIR = Path(
    os.environ.get("GESTUREVISION_CUSTOM_GESTURES_DIR", EXTENSIONS_DIR / "custom_gestures")
)
DISABLED_PLUGINS_FILENAME = "disabled-plugins.json"
PLUGIN_MANIFEST_FILENAME = "manifest.json"

LOGS_DIR = STATE_DIR / "logs"
MASTER_LOG_FILE = LOGS_DIR / "gesturevision.log"


def ensure_directories(*directories: Path) -> None:
    """Create the given directories (default: the state directories) if they don't exist."""

    for directory in directories or (STATE_DIR, PLUGINS_DIR, CUSTOM_GESTURES_DIR):
        directory.mkdir(parents=True, exist_ok=True)


__all__ = [
    "STATE_DIR",
    "CONFIG_PATH",
    "EXTENSIONS_DIR",
    "PLUGINS_DIR",
    "CUSTOM_GESTURES_DIR",
    "DISABLED_PLUGINS_FILENAME",
    "PLUGIN_MANIFEST_FILENAME",
    "LOGS_DIR",
    "MASTER_LOG_FILE",
    "ensure_directories",
]
