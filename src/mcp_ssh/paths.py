"""
Local directory layout.

    <base_dir>/          ~/.mcp-ssh unless MCP_SSH_HOME is set
        keys/            one private key file per identity, mode 0600
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

BASE_DIR_ENV = "MCP_SSH_HOME"
DEFAULT_BASE_DIR_NAME = ".mcp-ssh"
KEYS_DIR_NAME = "keys"


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Windows %VAR% syntax is expanded as well.
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()


def get_home_dir() -> Path:
    """Return the user's home directory, honouring USERPROFILE on Windows."""
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile)
    return Path.home()


def get_base_dir() -> Path:
    """Return the base directory for persisted state."""
    override = os.environ.get(BASE_DIR_ENV)
    if override:
        return expand_path(override)
    return get_home_dir() / DEFAULT_BASE_DIR_NAME


def get_keys_dir(base_dir: Path | str | None = None) -> Path:
    """Return the keys directory under base_dir (or the default base dir)."""
    base = expand_path(base_dir) if base_dir is not None else get_base_dir()
    return base / KEYS_DIR_NAME
