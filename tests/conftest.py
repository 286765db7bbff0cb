"""
Pytest fixtures for mcp-ssh tests.

Provides:
- Settings and KeyStore fixtures rooted in tmp_path
- Event capture fixture for asserting event sequences
- FakeHost/FakeConnector/FakeTransport: in-memory stand-ins for the
  Connector and Transport capabilities, simulating one remote account with
  a password and an authorized_keys list
- MockSSHServer fixture for end-to-end tests over real asyncssh
"""
from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Callable, Generator

import pytest
from cryptography.hazmat.primitives import serialization

from mcp_ssh.config import SSHSettings
from mcp_ssh.errors import AuthFailed, ConnectionRefused, ErrorContext, SSHConnectionError
from mcp_ssh.identity import Identity
from mcp_ssh.keystore import KeyStore, decode_openssh_public_key
from mcp_ssh.transport import ExecResult

if TYPE_CHECKING:
    from mcp_ssh.events import EventCollector
    from mcp_ssh.registry import ConnectionRegistry
    from mcp_ssh.testing.mock_server import MockSSHServer


ALICE = "alice@10.0.0.5:22"
ALICE_PASSWORD = "pw1"


# ---------------------------------------------------------------------------
# In-memory remote side
# ---------------------------------------------------------------------------

@dataclass
class FakeHost:
    """
    One simulated remote account.

    authorized_keys holds the lines of ~/.ssh/authorized_keys. Commands that
    append to authorized_keys are interpreted (append then de-duplicate);
    anything else is answered from `responses` or succeeds silently.
    """
    password: str = ALICE_PASSWORD
    authorized_keys: list[str] = field(default_factory=list)
    reject_keys: bool = False
    auth_delay: float = 0.0
    deploy_exit_code: int = 0
    responses: dict[str, ExecResult] = field(default_factory=dict)
    handler: Callable[[str], ExecResult] | None = None

    commands: list[str] = field(default_factory=list)
    password_attempts: int = 0
    key_attempts: int = 0

    def execute(self, command: str) -> ExecResult:
        self.commands.append(command)

        if "authorized_keys" in command and "printf" in command:
            if self.deploy_exit_code != 0:
                return ExecResult("", "mkdir: Permission denied\n", self.deploy_exit_code)
            tokens = shlex.split(command)
            line = tokens[tokens.index("%s\\n") + 1]
            self.authorized_keys.append(line)
            self.authorized_keys = list(dict.fromkeys(self.authorized_keys))
            return ExecResult("", "", 0)

        if self.handler is not None:
            return self.handler(command)
        return self.responses.get(command, ExecResult("", "", 0))

    def accepts_key(self, private_key_pem: str) -> bool:
        if self.reject_keys:
            return False
        private_key = serialization.load_pem_private_key(
            private_key_pem.encode("ascii"), password=None,
        )
        point = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return any(decode_openssh_public_key(line)[1] == point for line in self.authorized_keys)


class FakeTransport:
    """Transport over a FakeHost."""

    def __init__(self, identity: Identity, host: FakeHost) -> None:
        self.identity = identity
        self.host = host
        self.alive = True
        self.close_calls = 0
        self.fail_runs = False

    @property
    def is_alive(self) -> bool:
        return self.alive

    @property
    def handle(self) -> FakeHost:
        return self.host

    async def run(self, command: str) -> ExecResult:
        if not self.alive or self.fail_runs:
            raise SSHConnectionError(
                "Connection lost",
                context=ErrorContext(identity=self.identity.key, operation="exec"),
            )
        return self.host.execute(command)

    async def close(self) -> None:
        self.close_calls += 1
        self.alive = False


class FakeConnector:
    """Connector resolving identities to FakeHosts."""

    def __init__(self) -> None:
        self.hosts: dict[str, FakeHost] = {}
        self.transports: list[FakeTransport] = []

    def add_host(self, identity: Identity | str, **kwargs) -> FakeHost:
        host = FakeHost(**kwargs)
        self.hosts[Identity.coerce(identity).key] = host
        return host

    async def connect_with_password(self, identity: Identity, password: str) -> FakeTransport:
        host = self._host_for(identity)
        host.password_attempts += 1
        if host.auth_delay:
            await asyncio.sleep(host.auth_delay)
        if password != host.password:
            raise AuthFailed(
                "Authentication failed: password rejected",
                context=ErrorContext(identity=identity.key, auth_method="password"),
            )
        return self._open(identity, host)

    async def connect_with_key(self, identity: Identity, private_key_pem: str) -> FakeTransport:
        host = self._host_for(identity)
        host.key_attempts += 1
        if host.auth_delay:
            await asyncio.sleep(host.auth_delay)
        if not host.accepts_key(private_key_pem):
            raise AuthFailed(
                "Authentication failed: key rejected",
                context=ErrorContext(identity=identity.key, auth_method="private_key"),
            )
        return self._open(identity, host)

    def _host_for(self, identity: Identity) -> FakeHost:
        host = self.hosts.get(identity.key)
        if host is None:
            raise ConnectionRefused(
                f"Connection refused: {identity.key}",
                context=ErrorContext(identity=identity.key, operation="connect"),
            )
        return host

    def _open(self, identity: Identity, host: FakeHost) -> FakeTransport:
        transport = FakeTransport(identity, host)
        self.transports.append(transport)
        return transport


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> SSHSettings:
    """Settings with the key store under tmp_path and a short ready timeout."""
    return SSHSettings(base_dir=tmp_path / "mcp-ssh", ready_timeout_sec=5.0)


@pytest.fixture
def key_store(settings: SSHSettings) -> KeyStore:
    return KeyStore(settings)


@pytest.fixture
def alice() -> Identity:
    return Identity.parse(ALICE)


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def fake_host(fake_connector: FakeConnector, alice: Identity) -> FakeHost:
    """The remote account behind alice@10.0.0.5:22, password pw1, no keys."""
    return fake_connector.add_host(alice)


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            registry = ConnectionRegistry(settings, event_collector=event_collector)
            ...
            assert event_collector.get_by_type("BOOTSTRAP")
    """
    from mcp_ssh.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
async def registry(
    settings: SSHSettings,
    fake_connector: FakeConnector,
    event_collector: "EventCollector",
) -> AsyncGenerator["ConnectionRegistry", None]:
    """ConnectionRegistry wired to the fake connector."""
    from mcp_ssh.registry import ConnectionRegistry

    async with ConnectionRegistry(
        settings,
        connector=fake_connector,
        event_collector=event_collector,
    ) as reg:
        yield reg


@pytest.fixture
async def mock_ssh_server(tmp_path: Path) -> AsyncGenerator["MockSSHServer", None]:
    """
    MockSSHServer accepting alice/pw1, running commands in a sandbox HOME.

    Usage:
        async def test_example(mock_ssh_server, settings):
            identity = Identity.create("alice", "127.0.0.1", mock_ssh_server.port)
    """
    from mcp_ssh.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="alice",
        password=ALICE_PASSWORD,
        home_dir=tmp_path / "remote-home",
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"
