"""
Password to key authentication upgrade.

Runs on a transport that has just authenticated with a password:

    NO_KEY -> PASSWORD_AUTHENTICATED -> KEY_GENERATED -> KEY_DEPLOYED
           -> KEY_STORED -> COMPLETE

Any failure moves to FAILED and raises BootstrapError chained to the cause.

Ordering invariant: the private key is written locally only after the
public key was deployed remotely, so a stored key always has a matching
authorized_keys line (unless the remote side later removes it).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from mcp_ssh.errors import BootstrapError, ErrorContext, RemoteCommandError, SSHError
from mcp_ssh.events import EventEmitter, EventType
from mcp_ssh.identity import Identity
from mcp_ssh.keystore import KeyStore
from mcp_ssh.shell import join_commands, shell_quote
from mcp_ssh.transport import Transport

logger = logging.getLogger(__name__)

SSH_DIR = "~/.ssh"
AUTHORIZED_KEYS = "~/.ssh/authorized_keys"


class BootstrapState(str, Enum):
    """Bootstrap progress."""
    NO_KEY = "no_key"
    PASSWORD_AUTHENTICATED = "password_authenticated"
    KEY_GENERATED = "key_generated"
    KEY_DEPLOYED = "key_deployed"
    KEY_STORED = "key_stored"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class BootstrapResult:
    """Outcome of a completed bootstrap."""
    identity: Identity
    state: BootstrapState
    public_key: str
    key_path: Path


def build_deploy_command(public_key: str) -> str:
    """
    Build the remote command that installs a public key line.

    Creates ~/.ssh (0700), terminates a final unterminated line, appends
    the key, drops duplicate lines keeping the first occurrence, and sets
    authorized_keys to 0600. Running it twice with the same key leaves a
    single copy of the line.
    """
    line = public_key.strip()
    assert line and "\n" not in line, "public key must be a single line"

    tmp = f"{AUTHORIZED_KEYS}.tmp"
    return join_commands(
        "umask 077",
        f"mkdir -p {SSH_DIR}",
        f"chmod 700 {SSH_DIR}",
        f"touch {AUTHORIZED_KEYS}",
        f'{{ [ ! -s {AUTHORIZED_KEYS} ] || [ -z "$(tail -c 1 {AUTHORIZED_KEYS})" ] '
        f"|| echo >> {AUTHORIZED_KEYS}; }}",
        f"printf '%s\\n' {shell_quote(line)} >> {AUTHORIZED_KEYS}",
        f"awk '!seen[$0]++' {AUTHORIZED_KEYS} > {tmp}",
        f"mv {tmp} {AUTHORIZED_KEYS}",
        f"chmod 600 {AUTHORIZED_KEYS}",
    )


class BootstrapProtocol:
    """
    Upgrades a password-authenticated identity to key authentication.

    Usage:
        protocol = BootstrapProtocol(key_store, emitter)
        result = await protocol.run(identity, password_transport)
    """

    def __init__(
        self,
        key_store: KeyStore,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._key_store = key_store
        self._emitter = emitter or EventEmitter()

    async def run(self, identity: Identity, transport: Transport) -> BootstrapResult:
        """
        Generate, deploy and store a keypair for an identity.

        Args:
            identity: The identity being upgraded
            transport: A live transport authenticated with the password

        Raises:
            BootstrapError: If any step fails; the cause is chained
        """
        state = BootstrapState.PASSWORD_AUTHENTICATED
        self._transition(identity, state)
        logger.info("Starting key bootstrap for %s", identity.key)

        try:
            pair = self._key_store.generate_key_pair(identity)
            state = BootstrapState.KEY_GENERATED
            self._transition(identity, state)

            await self.deploy_public_key(identity, transport, pair.public_key)
            state = BootstrapState.KEY_DEPLOYED
            self._transition(identity, state)

            key_path = self._key_store.store_private_key(identity, pair.private_key)
            state = BootstrapState.KEY_STORED
            self._transition(identity, state)
        except SSHError as e:
            logger.error("Key bootstrap for %s failed after %s: %s", identity.key, state.value, e)
            self._transition(identity, BootstrapState.FAILED, failed_after=state.value, error=str(e))
            raise BootstrapError(
                f"Key bootstrap failed after {state.value}: {e}",
                state=state.value,
                context=ErrorContext(
                    identity=identity.key,
                    operation="bootstrap",
                    host=identity.host,
                    port=identity.port,
                    username=identity.username,
                    original_error=str(e),
                ),
            ) from e

        self._transition(identity, BootstrapState.COMPLETE)
        logger.info("Key bootstrap completed for %s", identity.key)
        return BootstrapResult(
            identity=identity,
            state=BootstrapState.COMPLETE,
            public_key=pair.public_key,
            key_path=key_path,
        )

    async def deploy_public_key(
        self,
        identity: Identity,
        transport: Transport,
        public_key: str,
    ) -> None:
        """
        Idempotently install a public key line in the remote authorized_keys.

        Raises:
            RemoteCommandError: If the remote command exits nonzero
            SSHConnectionError: If the transport fails
        """
        logger.info("Deploying public key to %s", identity.key)
        result = await transport.run(build_deploy_command(public_key))
        if result.exit_code != 0:
            raise RemoteCommandError(
                f"Key deployment exited with code {result.exit_code}: {result.stderr.strip()}",
                exit_code=result.exit_code,
                stderr=result.stderr,
                context=ErrorContext(identity=identity.key, operation="deploy_public_key"),
            )

    def _transition(self, identity: Identity, state: BootstrapState, **data: str) -> None:
        self._emitter.emit(EventType.BOOTSTRAP, identity=identity.key, state=state.value, **data)
