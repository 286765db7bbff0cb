"""
Runtime settings for the connection and bootstrap core.

Provides:
- KeepaliveConfig: SSH-level keepalive passed through to asyncssh
- SSHSettings: ready timeout, key store location, key comment, known hosts

Settings are plain dataclasses validated on construction. SSHSettings.from_env()
layers environment overrides on top of the defaults:

    MCP_SSH_HOME            base directory (keys live in <base>/keys)
    MCP_SSH_READY_TIMEOUT   seconds allowed for each authentication attempt
    MCP_SSH_KNOWN_HOSTS     known_hosts file; unset disables host key checking
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from mcp_ssh.paths import BASE_DIR_ENV, expand_path, get_base_dir, get_keys_dir

READY_TIMEOUT_ENV = "MCP_SSH_READY_TIMEOUT"
KNOWN_HOSTS_ENV = "MCP_SSH_KNOWN_HOSTS"

DEFAULT_READY_TIMEOUT_SEC = 20.0
DEFAULT_KEY_COMMENT = "mcp-ssh-server"


@dataclass
class KeepaliveConfig:
    """
    SSH keepalive settings.

    Default: 10s interval, 3 max count = 30s before asyncssh drops a dead
    connection, which is what flips a registered session to stale.
    """
    interval_sec: float = 10.0
    max_count: int = 3

    def __post_init__(self) -> None:
        assert self.interval_sec > 0, \
            f"interval_sec must be positive, got {self.interval_sec}"
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"

    @property
    def total_timeout_sec(self) -> float:
        """Total time before keepalive failure (interval * max_count)."""
        return self.interval_sec * self.max_count

    def to_asyncssh_options(self) -> dict[str, Any]:
        return {
            "keepalive_interval": self.interval_sec,
            "keepalive_count_max": self.max_count,
        }


@dataclass
class SSHSettings:
    """
    Settings shared by the key store, the connector and the registry.

    Attributes:
        base_dir: Root of persisted state; keys go in base_dir/keys
        ready_timeout_sec: Upper bound for one authentication attempt
        keepalive: Keepalive settings for established sessions
        key_comment: Label used in "<label>@<host>" public key comments
        known_hosts: known_hosts path, or None to skip host key checks
    """
    base_dir: Path = field(default_factory=get_base_dir)
    ready_timeout_sec: float = DEFAULT_READY_TIMEOUT_SEC
    keepalive: KeepaliveConfig = field(default_factory=KeepaliveConfig)
    key_comment: str = DEFAULT_KEY_COMMENT
    known_hosts: Path | None = None

    def __post_init__(self) -> None:
        self.base_dir = expand_path(self.base_dir)
        if self.known_hosts is not None:
            self.known_hosts = expand_path(self.known_hosts)

        assert self.ready_timeout_sec > 0, \
            f"ready_timeout_sec must be positive, got {self.ready_timeout_sec}"
        assert self.key_comment and not any(c.isspace() for c in self.key_comment), \
            f"key_comment must be non-empty without whitespace, got {self.key_comment!r}"

    @property
    def keys_dir(self) -> Path:
        return get_keys_dir(self.base_dir)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "SSHSettings":
        """
        Build settings from environment variables.

        Explicit keyword overrides take precedence over the environment.

        Raises:
            ValueError: If MCP_SSH_READY_TIMEOUT is not a number
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if env.get(BASE_DIR_ENV):
            values["base_dir"] = Path(env[BASE_DIR_ENV])

        raw_timeout = env.get(READY_TIMEOUT_ENV)
        if raw_timeout:
            try:
                values["ready_timeout_sec"] = float(raw_timeout)
            except ValueError:
                raise ValueError(
                    f"{READY_TIMEOUT_ENV} must be a number of seconds, got {raw_timeout!r}"
                ) from None

        if env.get(KNOWN_HOSTS_ENV):
            values["known_hosts"] = Path(env[KNOWN_HOSTS_ENV])

        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "base_dir": str(self.base_dir),
            "ready_timeout_sec": self.ready_timeout_sec,
            "keepalive_interval_sec": self.keepalive.interval_sec,
            "keepalive_max_count": self.keepalive.max_count,
            "key_comment": self.key_comment,
            "known_hosts": str(self.known_hosts) if self.known_hosts else None,
        }
