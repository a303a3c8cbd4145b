"""Centralized path definitions for configuration and state files.

Configuration lives under ~/.config/badnews/ following XDG conventions. The
per-deployment state directory (session + client store) is set in the config
file; the helpers here derive the file names inside it.

Usage:
    from badnews.paths import DEFAULT_CONFIG_FILE, session_file
"""

import os
from pathlib import Path

# Base directory for configuration
BADNEWS_CONFIG_DIR = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / "badnews"

# Default configuration file (overridden by --config or BADNEWS_CONFIG)
DEFAULT_CONFIG_FILE = BADNEWS_CONFIG_DIR / "config.yaml"

# Optional .env file read before environment overrides are applied
DEFAULT_ENV_FILE = BADNEWS_CONFIG_DIR / ".env"

# Lock/PID files for single-instance enforcement
LOCK_DIR = Path(os.environ.get("XDG_RUNTIME_DIR", "/tmp"))

SESSION_FILE_NAME = "session.yaml"
STORE_DIR_NAME = "store"


def ensure_state_dir(state_dir: Path) -> None:
    """Create the state directory (and the client store inside it).

    Call this explicitly before writing the session file or starting the
    client; nothing is created on import.
    """
    (state_dir / STORE_DIR_NAME).mkdir(parents=True, exist_ok=True)


def session_file(state_dir: Path) -> Path:
    """Path of the persisted login session."""
    return state_dir / SESSION_FILE_NAME


def store_dir(state_dir: Path) -> Path:
    """Path of the Matrix client store."""
    return state_dir / STORE_DIR_NAME
