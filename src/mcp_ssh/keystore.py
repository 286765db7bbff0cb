"""
Local ED25519 key store.

Provides:
- KeyPair: OpenSSH public key line plus PKCS8 PEM private key
- encode_openssh_public_key / decode_openssh_public_key: the
  "ssh-ed25519 <base64 wire blob> <comment>" codec
- KeyStore: generation, persistence, lookup and deletion keyed by Identity

The filesystem is the index: a key exists for an identity if and only if
its deterministic file exists. File names are derived from the canonical
identity string with every character outside [a-zA-Z0-9.-] replaced by '_'.
Distinct identities that sanitise to the same name share a file; this is a
known limitation.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import struct
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from mcp_ssh.config import SSHSettings
from mcp_ssh.errors import ErrorContext, KeyGenerationError, StorageError
from mcp_ssh.events import EventEmitter, EventType
from mcp_ssh.identity import Identity

logger = logging.getLogger(__name__)

KEY_TYPE = "ssh-ed25519"
ED25519_POINT_SIZE = 32
KEY_FILE_PREFIX = "id_ed25519_"
KEY_FILE_MODE = 0o600
KEYS_DIR_MODE = 0o700

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass(frozen=True)
class KeyPair:
    """A freshly generated keypair; never shared between identities."""
    public_key: str
    private_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r}, private_key=<redacted>)"


def _pack_string(value: bytes) -> bytes:
    """SSH wire 'string': uint32 big-endian length followed by the bytes."""
    return struct.pack(">I", len(value)) + value


def encode_openssh_public_key(point: bytes, comment: str) -> str:
    """
    Encode a raw ED25519 public point as an OpenSSH public key line.

    Args:
        point: The 32-byte curve point
        comment: Trailing comment, conventionally "<label>@<host>"

    Returns:
        "ssh-ed25519 <base64> <comment>"
    """
    assert len(point) == ED25519_POINT_SIZE, \
        f"ED25519 point must be {ED25519_POINT_SIZE} bytes, got {len(point)}"
    assert comment and not any(c.isspace() for c in comment), \
        f"comment must be non-empty without whitespace, got {comment!r}"

    blob = _pack_string(KEY_TYPE.encode("ascii")) + _pack_string(point)
    return f"{KEY_TYPE} {base64.b64encode(blob).decode('ascii')} {comment}"


def decode_openssh_public_key(line: str) -> tuple[str, bytes, str | None]:
    """
    Decode an OpenSSH ED25519 public key line.

    Returns:
        (key_type, point, comment); comment is None when absent

    Raises:
        ValueError: If the line is not a well-formed ssh-ed25519 key
    """
    parts = line.strip().split(None, 2)
    if len(parts) < 2:
        raise ValueError("public key line must have at least a type and a body")

    key_type, body = parts[0], parts[1]
    comment = parts[2] if len(parts) == 3 else None

    try:
        blob = base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise ValueError(f"public key body is not valid base64: {e}") from e

    fields: list[bytes] = []
    offset = 0
    while offset < len(blob):
        if offset + 4 > len(blob):
            raise ValueError("truncated length prefix in public key blob")
        (length,) = struct.unpack(">I", blob[offset:offset + 4])
        offset += 4
        if offset + length > len(blob):
            raise ValueError("field length exceeds public key blob")
        fields.append(blob[offset:offset + length])
        offset += length

    if len(fields) != 2:
        raise ValueError(f"expected 2 wire fields (type, point), got {len(fields)}")

    wire_type, point = fields[0].decode("ascii", errors="replace"), fields[1]
    if wire_type != key_type or key_type != KEY_TYPE:
        raise ValueError(f"unsupported key type {key_type!r} (wire type {wire_type!r})")
    if len(point) != ED25519_POINT_SIZE:
        raise ValueError(
            f"ED25519 point must be {ED25519_POINT_SIZE} bytes, got {len(point)}"
        )

    return key_type, point, comment


class KeyStore:
    """
    Generates, persists and loads per-identity ED25519 private keys.

    Usage:
        store = KeyStore(SSHSettings(base_dir=tmp_path))
        pair = store.generate_key_pair(identity)
        store.store_private_key(identity, pair.private_key)
        assert store.load_private_key(identity) == pair.private_key
    """

    def __init__(
        self,
        settings: SSHSettings | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._settings = settings or SSHSettings()
        self._emitter = emitter or EventEmitter()

    @property
    def keys_dir(self) -> Path:
        return self._settings.keys_dir

    def get_key_path(self, identity: Identity) -> Path:
        """Deterministic private key path for an identity."""
        sanitised = _UNSAFE_FILENAME_CHARS.sub("_", identity.key)
        path = self.keys_dir / f"{KEY_FILE_PREFIX}{sanitised}"

        assert not any(c in path.name for c in "/:@"), \
            f"Postcondition: key file name {path.name!r} contains a separator"
        return path

    def generate_key_pair(self, identity: Identity) -> KeyPair:
        """
        Generate a fresh ED25519 keypair for an identity.

        The public key comment is "<key_comment>@<host>".

        Raises:
            KeyGenerationError: If ED25519 is unavailable or generation fails
        """
        logger.info("Generating ED25519 key pair for %s", identity.key)
        try:
            private_key = ed25519.Ed25519PrivateKey.generate()
            private_pem = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ).decode("ascii")
            point = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        except (UnsupportedAlgorithm, ValueError) as e:
            raise KeyGenerationError(
                f"ED25519 key generation failed: {e}",
                context=self._context(identity, "generate_key_pair", e),
            ) from e

        comment = f"{self._settings.key_comment}@{identity.host}"
        return KeyPair(
            public_key=encode_openssh_public_key(point, comment),
            private_key=private_pem,
        )

    def store_private_key(self, identity: Identity, pem: str) -> Path:
        """
        Persist a private key with owner-only permissions.

        The key is written to a temporary file in the keys directory and
        renamed over the target, so readers see either the old key or the
        new one.

        Returns:
            The path the key was stored at

        Raises:
            StorageError: On any filesystem failure
        """
        assert pem.strip(), "Private key PEM must not be empty"
        path = self.get_key_path(identity)

        try:
            self._ensure_keys_dir()
            fd, tmp_name = tempfile.mkstemp(dir=self.keys_dir, prefix=".tmp-")
            try:
                with os.fdopen(fd, "w", encoding="ascii") as f:
                    f.write(pem)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, KEY_FILE_MODE)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to store private key at %s: %s", path, e)
            raise StorageError(
                f"Failed to store private key for {identity.key}: {e}",
                key_path=str(path),
                context=self._context(identity, "store_private_key", e),
            ) from e

        logger.info("Private key stored at %s", path)
        self._emitter.emit(EventType.KEY, action="stored", identity=identity.key, path=str(path))
        return path

    def load_private_key(self, identity: Identity) -> str | None:
        """
        Load the stored private key for an identity.

        Returns:
            The PEM text, or None if no key is stored (not an error)

        Raises:
            StorageError: On any filesystem failure other than "not found"
        """
        path = self.get_key_path(identity)
        try:
            pem = path.read_text(encoding="ascii")
        except FileNotFoundError:
            logger.debug("No stored key at %s", path)
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Failed to load private key at %s: %s", path, e)
            raise StorageError(
                f"Failed to load private key for {identity.key}: {e}",
                key_path=str(path),
                context=self._context(identity, "load_private_key", e),
            ) from e

        logger.debug("Loaded private key from %s", path)
        return pem

    def has_key(self, identity: Identity) -> bool:
        return self.load_private_key(identity) is not None

    def delete_key(self, identity: Identity) -> bool:
        """
        Delete the stored key for an identity.

        Returns:
            True if a file was removed, False if none existed

        Raises:
            StorageError: On any filesystem failure other than "not found"
        """
        path = self.get_key_path(identity)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(
                f"Failed to delete private key for {identity.key}: {e}",
                key_path=str(path),
                context=self._context(identity, "delete_key", e),
            ) from e

        logger.info("Private key deleted: %s", path)
        self._emitter.emit(EventType.KEY, action="deleted", identity=identity.key, path=str(path))
        return True

    def list_keys(self) -> list[Path]:
        """Return stored key files, sorted by name."""
        if not self.keys_dir.is_dir():
            return []
        return sorted(
            p for p in self.keys_dir.iterdir()
            if p.is_file() and p.name.startswith(KEY_FILE_PREFIX)
        )

    def _ensure_keys_dir(self) -> None:
        self.keys_dir.mkdir(mode=KEYS_DIR_MODE, parents=True, exist_ok=True)

    @staticmethod
    def _context(identity: Identity, operation: str, exc: Exception) -> ErrorContext:
        return ErrorContext(
            identity=identity.key,
            operation=operation,
            host=identity.host,
            port=identity.port,
            username=identity.username,
            original_error=str(exc),
        )
