"""
Connection registry: one live session per identity.

connect() decides between key and password authentication:

    live session registered     -> reuse it
    stale session registered    -> discard it, then continue
    stored key                  -> try key auth first
      key rejected + password   -> fall through to password
      key rejected, no password -> AuthFailed
    no key, no password         -> AuthFailed
    password                    -> authenticate, bootstrap, register

The whole sequence runs under a per-identity asyncio.Lock so concurrent
connects for one identity produce one bootstrap and share one session.

Failed bootstrap policy: connect() fails. The password-authenticated
transport is closed and nothing is registered, so a session returned by
connect() always means a key is stored and deployed for the identity.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable

from mcp_ssh.bootstrap import BootstrapProtocol
from mcp_ssh.config import SSHSettings
from mcp_ssh.errors import (
    AuthenticationError,
    AuthFailed,
    BootstrapError,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    NotConnected,
    SSHError,
)
from mcp_ssh.events import EventCollector, EventEmitter, EventType
from mcp_ssh.identity import DEFAULT_PORT, Identity
from mcp_ssh.keystore import KeyStore
from mcp_ssh.shell import join_commands, shell_quote
from mcp_ssh.transport import AsyncSSHConnector, Connector, ExecResult, Transport

logger = logging.getLogger(__name__)

AUTH_PRIVATE_KEY = "private_key"
AUTH_PASSWORD = "password"


@dataclass
class Session:
    """An authenticated transport bound to one identity."""
    identity: Identity
    transport: Transport
    auth_method: str
    created_at: float = field(default_factory=time.time)

    @property
    def is_alive(self) -> bool:
        return self.transport.is_alive

    @property
    def key(self) -> str:
        return self.identity.key


class ConnectionRegistry:
    """
    Owns every session and the connect/bootstrap sequence.

    Usage:
        async with ConnectionRegistry(SSHSettings.from_env()) as registry:
            session = await registry.connect(Identity.parse("alice@10.0.0.5:22"), password="pw1")
            result = await registry.execute_command(session.identity, "uname -a")

    Collaborators receive the registry instance; there is no module-level
    connection state.
    """

    def __init__(
        self,
        settings: SSHSettings | None = None,
        key_store: KeyStore | None = None,
        connector: Connector | None = None,
        event_collector: EventCollector | None = None,
        event_log_path: Path | str | None = None,
    ) -> None:
        self._settings = settings or SSHSettings()
        self._emitter = EventEmitter(collector=event_collector, jsonl_path=event_log_path)
        self._key_store = key_store or KeyStore(self._settings, self._emitter)
        self._connector: Connector = connector or AsyncSSHConnector(self._settings)
        self._bootstrap = BootstrapProtocol(self._key_store, self._emitter)

        self._sessions: dict[str, Session] = {}
        # Per-identity locks live only while some connect() holds or awaits them
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def __aenter__(self) -> "ConnectionRegistry":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def settings(self) -> SSHSettings:
        return self._settings

    @property
    def key_store(self) -> KeyStore:
        return self._key_store

    @staticmethod
    def identity_for(username: str, host: str, port: int = DEFAULT_PORT) -> Identity:
        """Build the identity (and so the session key) for connection fields."""
        return Identity.create(username, host, port)

    def identities(self) -> list[Identity]:
        """Identities with a registered session, live or not."""
        return [s.identity for s in self._sessions.values()]

    def is_connected(self, identity: Identity | str) -> bool:
        session = self._sessions.get(Identity.coerce(identity).key)
        return session is not None and session.is_alive

    def get_session(self, identity: Identity | str) -> Session:
        """
        Return the live session for an identity.

        Raises:
            NotConnected: If no live session is registered
        """
        identity = Identity.coerce(identity)
        session = self._sessions.get(identity.key)
        if session is None or not session.is_alive:
            raise NotConnected(
                f"No active connection for {identity.key}",
                context=_context(identity, "get_session"),
            )
        return session

    def get_session_handle(self, identity: Identity | str) -> Any:
        """
        Return the raw transport handle for derived capabilities.

        Raises:
            NotConnected: If no live session is registered
        """
        return self.get_session(identity).transport.handle

    async def connect(self, identity: Identity | str, password: str | None = None) -> Session:
        """
        Return a live session for an identity, authenticating if needed.

        Args:
            identity: Identity or canonical "user@host:port" string
            password: Password for first contact or key fallback

        Raises:
            AuthFailed: Credentials rejected, or none usable
            ConnectionTimeout: An attempt exceeded the ready timeout
            BootstrapError: Password auth succeeded but the key upgrade failed
            StorageError: The stored key could not be read
            SSHConnectionError: Any other transport failure
        """
        identity = Identity.coerce(identity)
        async with self._identity_lock(identity):
            existing = self._sessions.get(identity.key)
            if existing is not None:
                if existing.is_alive:
                    logger.debug("Reusing existing connection for %s", identity.key)
                    self._emitter.emit(EventType.CONNECT, identity=identity.key, status="reused")
                    return existing
                logger.info("Discarding stale connection for %s", identity.key)
                await self._discard(identity, DisconnectReason.STALE)

            self._emitter.emit(EventType.CONNECT, identity=identity.key, status="initiating")

            private_key = self._key_store.load_private_key(identity)
            if private_key is not None:
                try:
                    transport = await self._authenticate(
                        identity,
                        AUTH_PRIVATE_KEY,
                        self._connector.connect_with_key(identity, private_key),
                    )
                except AuthenticationError as e:
                    if not password:
                        raise AuthFailed(
                            "key auth failed, no password available",
                            context=_context(identity, "connect", AUTH_PRIVATE_KEY, e),
                        ) from e
                    logger.warning(
                        "Key authentication failed for %s, falling back to password: %s",
                        identity.key, e,
                    )
                else:
                    return self._register(identity, transport, AUTH_PRIVATE_KEY)

            if not password:
                raise AuthFailed(
                    "no key, no password",
                    context=_context(identity, "connect", AUTH_PASSWORD),
                )

            transport = await self._authenticate(
                identity,
                AUTH_PASSWORD,
                self._connector.connect_with_password(identity, password),
            )

            try:
                await self._bootstrap.run(identity, transport)
            except BootstrapError as e:
                self._emitter.emit(EventType.ERROR, **e.to_dict())
                await self._close_quietly(identity, transport)
                self._emitter.emit(
                    EventType.DISCONNECT,
                    identity=identity.key,
                    reason=DisconnectReason.BOOTSTRAP_FAILED.value,
                )
                raise
            except BaseException:
                # Cancelled or failed outside the bootstrap taxonomy
                await self._close_quietly(identity, transport)
                raise

            return self._register(identity, transport, AUTH_PASSWORD)

    async def execute_command(
        self,
        identity: Identity | str,
        command: str,
        working_directory: str | None = None,
    ) -> ExecResult:
        """
        Run a command over the identity's session.

        The result is the complete stdout, stderr and exit code; a nonzero
        exit code is returned, not raised.

        Raises:
            NotConnected: No live session (no network I/O is attempted)
            SSHConnectionError: The transport failed before completion
        """
        identity = Identity.coerce(identity)
        session = self._sessions.get(identity.key)
        if session is None:
            raise NotConnected(
                f"No active connection for {identity.key}",
                context=_context(identity, "exec"),
            )
        if not session.is_alive:
            await self._discard(identity, DisconnectReason.STALE)
            raise NotConnected(
                f"Connection for {identity.key} is no longer usable",
                context=_context(identity, "exec"),
            )

        full_command = command
        if working_directory:
            full_command = join_commands(f"cd {shell_quote(working_directory)}", command)

        logger.debug("Executing command on %s: %s", identity.key, command)
        with self._emitter.timed_event(
            EventType.EXEC, identity=identity.key, command=command,
        ) as event_data:
            try:
                result = await session.transport.run(full_command)
            except SSHError as e:
                event_data["error"] = str(e)
                raise
            event_data["exit_code"] = result.exit_code
            event_data["stdout_len"] = len(result.stdout)
            event_data["stderr_len"] = len(result.stderr)

        return result

    async def disconnect(self, identity: Identity | str) -> bool:
        """
        Close and remove the identity's session.

        Returns:
            True if a session was removed, False if none was registered
        """
        identity = Identity.coerce(identity)
        if identity.key not in self._sessions:
            return False
        await self._discard(identity, DisconnectReason.NORMAL)
        return True

    async def disconnect_all(self) -> None:
        """Close and remove every session."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._close_quietly(session.identity, session.transport)
            self._emitter.emit(
                EventType.DISCONNECT,
                identity=session.key,
                reason=DisconnectReason.SHUTDOWN.value,
            )
            logger.info("Connection closed: %s", session.key)

    async def close(self) -> None:
        """Disconnect everything and release the event sinks."""
        await self.disconnect_all()
        self._emitter.close()

    async def _authenticate(
        self,
        identity: Identity,
        method: str,
        attempt: Awaitable[Transport],
    ) -> Transport:
        """Await one authentication attempt under the ready timeout."""
        timeout = self._settings.ready_timeout_sec
        start_ms = time.time() * 1000
        logger.info("Attempting %s authentication for %s", method, identity.key)

        try:
            transport = await asyncio.wait_for(attempt, timeout=timeout)
        except asyncio.TimeoutError as e:
            self._emit_auth_failure(identity, method, start_ms, "ConnectionTimeout")
            raise ConnectionTimeout(
                f"Connection to {identity.key} not ready within {timeout:g}s",
                context=_context(identity, "connect", method, e),
            ) from e
        except AuthenticationError as e:
            self._emit_auth_failure(identity, method, start_ms, e.error_type, str(e))
            raise
        except SSHError as e:
            self._emit_auth_failure(identity, method, start_ms, e.error_type, str(e))
            self._emitter.emit(EventType.ERROR, **e.to_dict())
            raise

        self._emitter.emit(
            EventType.AUTH,
            identity=identity.key,
            status="success",
            method=method,
            duration_ms=(time.time() * 1000) - start_ms,
        )
        return transport

    def _emit_auth_failure(
        self,
        identity: Identity,
        method: str,
        start_ms: float,
        error_type: str,
        message: str | None = None,
    ) -> None:
        logger.warning("%s authentication for %s failed: %s", method, identity.key, message or error_type)
        self._emitter.emit(
            EventType.AUTH,
            identity=identity.key,
            status="failed",
            method=method,
            duration_ms=(time.time() * 1000) - start_ms,
            error_type=error_type,
            error_message=message,
        )

    def _register(self, identity: Identity, transport: Transport, method: str) -> Session:
        session = Session(identity=identity, transport=transport, auth_method=method)
        assert identity.key not in self._sessions, \
            f"Invariant: at most one session per identity ({identity.key})"
        self._sessions[identity.key] = session
        self._emitter.emit(
            EventType.CONNECT, identity=identity.key, status="connected", auth_method=method,
        )
        return session

    async def _discard(self, identity: Identity, reason: DisconnectReason) -> None:
        session = self._sessions.pop(identity.key, None)
        if session is None:
            return
        await self._close_quietly(identity, session.transport)
        self._emitter.emit(EventType.DISCONNECT, identity=identity.key, reason=reason.value)
        logger.info("Connection closed: %s (%s)", identity.key, reason.value)

    async def _close_quietly(self, identity: Identity, transport: Transport) -> None:
        """Close a transport that is being dropped; close failures are only logged."""
        try:
            await transport.close()
        except (SSHError, OSError) as e:
            logger.warning("Error while closing connection for %s: %s", identity.key, e)

    @asynccontextmanager
    async def _identity_lock(self, identity: Identity) -> AsyncIterator[None]:
        """Hold the identity's lock; drop it once no caller holds or awaits it."""
        key = identity.key
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]


def _context(
    identity: Identity,
    operation: str,
    auth_method: str | None = None,
    exc: BaseException | None = None,
) -> ErrorContext:
    return ErrorContext(
        identity=identity.key,
        operation=operation,
        host=identity.host,
        port=identity.port,
        username=identity.username,
        auth_method=auth_method,
        original_error=str(exc) if exc is not None else None,
    )
