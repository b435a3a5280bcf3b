"""Runtime configuration for querybox, read from QUERYBOX_* environment variables.

Timeouts and names are read once at import time; directories are resolved on
each call. Tests construct components with explicit arguments instead of
patching these.
"""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_config_dir

APP_NAME = "querybox"

# Name of the env var every plugin process receives with its own registry key.
PLUGIN_NAME_ENV = "QUERYBOX_PLUGIN_NAME"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def data_dir() -> Path:
    """Directory holding the credential DB and vault key.

    QUERYBOX_DATA_DIR wins; otherwise the per-user config dir, or ./data when
    the platform cannot report one (headless containers without $HOME).
    """
    override = os.environ.get("QUERYBOX_DATA_DIR", "").strip()
    if override:
        return Path(override)
    try:
        return Path(user_config_dir(APP_NAME, appauthor=False))
    except Exception:
        return Path("data")


def user_plugin_dir() -> Path:
    override = os.environ.get("QUERYBOX_PLUGIN_DIR", "").strip()
    if override:
        return Path(override)
    return data_dir() / "plugins"


def bundled_plugin_dir() -> Path:
    return Path(os.environ.get("QUERYBOX_BUNDLED_PLUGIN_DIR", "").strip() or Path("bin") / "plugins")


SCAN_INTERVAL = _float_env("QUERYBOX_SCAN_INTERVAL", 2.0)  # seconds between discovery passes
PROBE_TIMEOUT = _float_env("QUERYBOX_PROBE_TIMEOUT", 2.0)  # info / authforms
EXEC_TIMEOUT = _float_env("QUERYBOX_EXEC_TIMEOUT", 30.0)  # exec / connection-tree / test-connection

VAULT_KEY_ENV = "QUERYBOX_VAULT_KEY"
KEYRING_SERVICE = os.environ.get("QUERYBOX_KEYRING_SERVICE", "").strip() or APP_NAME
LOG_LEVEL = os.environ.get("QUERYBOX_LOG_LEVEL", "INFO").strip().upper() or "INFO"
