"""
Error taxonomy for the SSH connection and bootstrap core.

Every error carries an ErrorContext so callers (and the JSONL event log)
can see which identity and which operation failed.

Error hierarchy:
- SSHError (base)
  - SSHConnectionError
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
    - NotConnected (no live session for the identity)
  - AuthenticationError
    - AuthFailed (password or key rejected, or no usable credential)
    - HostKeyMismatch (known hosts verification failed)
    - NoMutualKex (key exchange algorithm mismatch)
    - KeyLoadError (stored private key could not be imported)
  - BootstrapError (password to key upgrade failed)
  - RemoteCommandError (nonzero exit from a shell-based operation)
  - StorageError (local key store I/O failure other than "not found")
  - KeyGenerationError (keypair generation failed)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class DisconnectReason(str, Enum):
    """Reasons a session was removed from the registry."""
    NORMAL = "normal"
    STALE = "stale"
    SHUTDOWN = "shutdown"
    BOOTSTRAP_FAILED = "bootstrap_failed"


@dataclass
class ErrorContext:
    """
    Structured context for SSH errors.

    `identity` is the canonical "user@host:port" string and `operation`
    names the core operation that failed (connect, bootstrap, exec, ...).
    """
    identity: str | None = None
    operation: str | None = None
    host: str | None = None
    port: int | None = None
    username: str | None = None
    auth_method: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.port is not None:
            assert isinstance(self.port, int) and 1 <= self.port <= 65535, (
                f"Port must be between 1 and 65535, got {self.port}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra" and isinstance(value, dict):
                field_names = {f.name for f in fields(self)} - {"extra"}
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: "
                    f"{collisions}. Use distinct key names in extra."
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHError(Exception):
    """
    Base exception for all errors raised by this package.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Connection Errors
# ---------------------------------------------------------------------------

class SSHConnectionError(SSHError):
    """Base class for connection-related errors."""
    pass


class ConnectionRefused(SSHConnectionError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(SSHConnectionError):
    """Transport was not ready within the configured ready timeout."""
    pass


class HostUnreachable(SSHConnectionError):
    """Host could not be reached (network error)."""
    pass


class NotConnected(SSHConnectionError):
    """An operation was requested for an identity with no live session."""
    pass


# ---------------------------------------------------------------------------
# Authentication Errors
# ---------------------------------------------------------------------------

class AuthenticationError(SSHError):
    """Base class for authentication-related errors."""
    pass


class AuthFailed(AuthenticationError):
    """
    Authentication failed.

    This is raised when:
    - Password is incorrect or missing
    - Stored private key is not accepted by the server
    - Key auth failed and no password was supplied for the fallback
    """
    pass


class HostKeyMismatch(AuthenticationError):
    """Host key verification against known_hosts failed."""
    pass


class NoMutualKex(AuthenticationError):
    """Client and server could not agree on a key exchange algorithm."""
    pass


class KeyLoadError(AuthenticationError):
    """
    Stored private key could not be imported.

    The file exists but its content is not a usable private key.
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        assert key_path is None or (isinstance(key_path, str) and key_path.strip()), (
            f"key_path must be None or a non-empty string, got {key_path!r}"
        )
        if context is None:
            context = ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)


# ---------------------------------------------------------------------------
# Bootstrap, remote command and storage errors
# ---------------------------------------------------------------------------

class BootstrapError(SSHError):
    """
    The password to key upgrade failed.

    `state` is the last bootstrap state reached before the failure.
    """

    def __init__(
        self,
        message: str,
        state: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if state:
            context.extra["bootstrap_state"] = state
        super().__init__(message, context)
        self.state = state


class RemoteCommandError(SSHError):
    """A shell-based remote operation exited with a nonzero status."""

    def __init__(
        self,
        message: str,
        exit_code: int,
        stderr: str = "",
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.extra["exit_code"] = exit_code
        if stderr:
            context.extra["stderr"] = stderr
        super().__init__(message, context)
        self.exit_code = exit_code
        self.stderr = stderr


class StorageError(SSHError):
    """Local key storage failed for a reason other than "not found"."""

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        if key_path:
            context.key_path = key_path
        super().__init__(message, context)


class KeyGenerationError(SSHError):
    """ED25519 keypair generation failed."""
    pass
