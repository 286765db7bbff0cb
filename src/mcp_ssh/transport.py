"""
Transport capabilities and their asyncssh implementation.

The registry and the bootstrap protocol only talk to two small interfaces:

- Transport: one authenticated connection. It can run a command, report
  best-effort liveness, expose the raw handle and close.
- Connector: opens a Transport for an Identity with either a password or a
  PEM private key.

AsyncSSHConnector/AsyncSSHTransport implement them over asyncssh. Tests
substitute in-memory fakes.

asyncssh exceptions are mapped into the package's error taxonomy here, at
the boundary, so nothing above this module catches asyncssh types.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import asyncssh

from mcp_ssh.config import SSHSettings
from mcp_ssh.errors import (
    AuthFailed,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    KeyLoadError,
    NoMutualKex,
    SSHConnectionError,
    SSHError,
)
from mcp_ssh.identity import Identity

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Full captured output of one remote command."""
    stdout: str
    stderr: str
    exit_code: int


class Transport(Protocol):
    """An authenticated connection bound to one identity."""

    @property
    def is_alive(self) -> bool:
        """Best-effort, non-blocking liveness; does not prove the peer responds."""
        ...

    @property
    def handle(self) -> Any:
        """The underlying connection object, for derived capabilities."""
        ...

    async def run(self, command: str) -> ExecResult:
        """Run a command to completion and return its full output."""
        ...

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...


class Connector(Protocol):
    """Opens authenticated transports."""

    async def connect_with_password(self, identity: Identity, password: str) -> Transport:
        ...

    async def connect_with_key(self, identity: Identity, private_key_pem: str) -> Transport:
        ...


def map_exception(exc: BaseException, ctx: ErrorContext) -> SSHError:
    """Map asyncssh and socket exceptions to the error taxonomy."""
    ctx.original_error = str(exc)

    if isinstance(exc, SSHError):
        return exc

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return HostKeyMismatch(f"Host key verification failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.KeyExchangeFailed):
        return NoMutualKex(f"Key exchange failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ConnectionLost):
        return SSHConnectionError(f"Connection lost: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ChannelOpenError):
        return SSHConnectionError(f"Channel open failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.Error):
        return SSHConnectionError(f"SSH error: {exc}", context=ctx)

    if isinstance(exc, asyncio.TimeoutError):
        return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)

    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if isinstance(exc, ConnectionRefusedError) or "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str or "timeout" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)
        return SSHConnectionError(f"Connection failed: {exc}", context=ctx)

    return SSHError(f"Unexpected error: {exc}", context=ctx)


class _TrackingClient(asyncssh.SSHClient):
    """Records transport loss so liveness can be checked without I/O."""

    def __init__(self) -> None:
        super().__init__()
        self.lost = False
        self.lost_reason: str | None = None

    def connection_lost(self, exc: Exception | None) -> None:
        self.lost = True
        self.lost_reason = str(exc) if exc else None


class AsyncSSHTransport:
    """Transport over an asyncssh client connection."""

    def __init__(
        self,
        identity: Identity,
        conn: asyncssh.SSHClientConnection,
        client: _TrackingClient | None = None,
    ) -> None:
        self._identity = identity
        self._conn = conn
        self._client = client
        self._closed = False

    @property
    def is_alive(self) -> bool:
        if self._closed:
            return False
        if self._client is not None and self._client.lost:
            return False
        return True

    @property
    def handle(self) -> asyncssh.SSHClientConnection:
        return self._conn

    async def run(self, command: str) -> ExecResult:
        """
        Run a command and collect stdout and stderr concurrently.

        Resolves when the remote process exits. A process killed by a signal
        reports exit code -1. Output is read as bytes and decoded as UTF-8
        with invalid sequences replaced, so binary output cannot break the
        channel.

        Raises:
            SSHConnectionError: If the channel cannot be opened or the
                connection drops before completion
        """
        try:
            result = await self._conn.run(command, check=False, encoding=None)
        except (asyncssh.Error, OSError) as e:
            raise map_exception(e, self._context("exec")) from e

        return ExecResult(
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
            exit_code=result.exit_status if result.exit_status is not None else -1,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._conn.close()
        await self._conn.wait_closed()

    def _context(self, operation: str) -> ErrorContext:
        return ErrorContext(
            identity=self._identity.key,
            operation=operation,
            host=self._identity.host,
            port=self._identity.port,
            username=self._identity.username,
        )


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class AsyncSSHConnector:
    """
    Opens asyncssh connections restricted to a single auth method.

    Password attempts never offer keys and key attempts never offer a
    password or consult an SSH agent, so an authentication result always
    says something about the credential that was tried.
    """

    def __init__(self, settings: SSHSettings | None = None) -> None:
        self._settings = settings or SSHSettings()

    async def connect_with_password(self, identity: Identity, password: str) -> AsyncSSHTransport:
        assert password, "password must be non-empty"
        return await self._connect(
            identity,
            auth_method="password",
            password=password,
            client_keys=[],
            preferred_auth=["password"],
        )

    async def connect_with_key(self, identity: Identity, private_key_pem: str) -> AsyncSSHTransport:
        try:
            key = asyncssh.import_private_key(private_key_pem)
        except (asyncssh.KeyImportError, ValueError) as e:
            raise KeyLoadError(
                f"Stored private key for {identity.key} could not be imported: {e}",
                reason="import_error",
                context=ErrorContext(
                    identity=identity.key,
                    operation="connect",
                    auth_method="private_key",
                    original_error=str(e),
                ),
            ) from e

        return await self._connect(
            identity,
            auth_method="private_key",
            password=None,
            client_keys=[key],
            preferred_auth=["publickey"],
        )

    async def _connect(
        self,
        identity: Identity,
        auth_method: str,
        **auth_options: Any,
    ) -> AsyncSSHTransport:
        options: dict[str, Any] = {
            "host": identity.host,
            "port": identity.port,
            "username": identity.username,
            "known_hosts": str(self._settings.known_hosts) if self._settings.known_hosts else None,
            "agent_path": None,
            # Covers TCP connect, key exchange and authentication
            "connect_timeout": self._settings.ready_timeout_sec,
        }
        options.update(self._settings.keepalive.to_asyncssh_options())
        options.update(auth_options)

        client_instance: _TrackingClient | None = None

        def create_client() -> _TrackingClient:
            nonlocal client_instance
            client_instance = _TrackingClient()
            return client_instance

        logger.debug("Opening %s connection to %s", auth_method, identity.key)
        try:
            conn = await asyncssh.connect(client_factory=create_client, **options)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            ctx = ErrorContext(
                identity=identity.key,
                operation="connect",
                host=identity.host,
                port=identity.port,
                username=identity.username,
                auth_method=auth_method,
            )
            raise map_exception(e, ctx) from e

        logger.info("SSH connection established (%s) for %s", auth_method, identity.key)
        return AsyncSSHTransport(identity, conn, client_instance)
