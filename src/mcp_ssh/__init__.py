"""mcp-ssh: SSH connection core with password to key bootstrap."""

__version__ = "0.1.0"

from mcp_ssh.bootstrap import (
    BootstrapProtocol,
    BootstrapResult,
    BootstrapState,
    build_deploy_command,
)
from mcp_ssh.config import KeepaliveConfig, SSHSettings
from mcp_ssh.errors import (
    AuthenticationError,
    AuthFailed,
    BootstrapError,
    ConnectionRefused,
    ConnectionTimeout,
    DisconnectReason,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    KeyGenerationError,
    KeyLoadError,
    NoMutualKex,
    NotConnected,
    RemoteCommandError,
    SSHConnectionError,
    SSHError,
    StorageError,
)
from mcp_ssh.events import Event, EventCollector, EventEmitter, EventType, read_jsonl_events
from mcp_ssh.identity import (
    Identity,
    validate_hostname,
    validate_port,
    validate_username,
)
from mcp_ssh.keystore import (
    KeyPair,
    KeyStore,
    decode_openssh_public_key,
    encode_openssh_public_key,
)
from mcp_ssh.paths import expand_path, get_base_dir, get_keys_dir, is_windows
from mcp_ssh.registry import ConnectionRegistry, Session
from mcp_ssh.remote_fs import DirectoryEntry, PathStat, RemoteFileOps
from mcp_ssh.shell import join_commands, shell_quote
from mcp_ssh.transport import (
    AsyncSSHConnector,
    AsyncSSHTransport,
    Connector,
    ExecResult,
    Transport,
)

__all__ = [
    # Registry
    "ConnectionRegistry",
    "Session",
    # Identity
    "Identity",
    "validate_hostname",
    "validate_port",
    "validate_username",
    # Key store
    "KeyPair",
    "KeyStore",
    "encode_openssh_public_key",
    "decode_openssh_public_key",
    # Bootstrap
    "BootstrapProtocol",
    "BootstrapResult",
    "BootstrapState",
    "build_deploy_command",
    # Transport
    "AsyncSSHConnector",
    "AsyncSSHTransport",
    "Connector",
    "ExecResult",
    "Transport",
    # Remote files
    "RemoteFileOps",
    "DirectoryEntry",
    "PathStat",
    # Config
    "SSHSettings",
    "KeepaliveConfig",
    # Errors
    "SSHError",
    "SSHConnectionError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "HostUnreachable",
    "NotConnected",
    "AuthenticationError",
    "AuthFailed",
    "HostKeyMismatch",
    "NoMutualKex",
    "KeyLoadError",
    "BootstrapError",
    "RemoteCommandError",
    "StorageError",
    "KeyGenerationError",
    "ErrorContext",
    "DisconnectReason",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    "read_jsonl_events",
    # Paths
    "is_windows",
    "expand_path",
    "get_base_dir",
    "get_keys_dir",
    # Shell
    "shell_quote",
    "join_commands",
]
