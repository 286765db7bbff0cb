"""
Connection identity: the (username, host, port) triple.

The canonical string "user@host:port" is both the registry's session key and
the input to key file name derivation, so every component builds it through
Identity rather than formatting it by hand.

Components are validated before an Identity exists: hostnames per RFC
952/1123 (or a literal IP address), POSIX-style usernames and TCP ports.
None of them may carry shell metacharacters, newlines or null bytes, since
they end up in log lines, file names and remote command context.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Final

DEFAULT_PORT: Final[int] = 22

MAX_HOSTNAME_LENGTH: Final[int] = 253
MAX_LABEL_LENGTH: Final[int] = 63
MAX_USERNAME_LENGTH: Final[int] = 32

DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"
    "\n\r"
    "`$(){}[]|;&<>\\'\""
    "\t"
)

_LABEL_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$"
)

# POSIX-style, plus dots which are common in directory-backed accounts
_USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_.-]*$"
)

_CHAR_NAMES: Final[dict[str, str]] = {
    "\x00": "null byte",
    "\n": "newline",
    "\r": "carriage return",
    "\t": "tab",
}


def _check_dangerous_chars(value: str, field_name: str) -> None:
    for char in value:
        if char in DANGEROUS_CHARS:
            char_desc = _CHAR_NAMES.get(char, repr(char))
            raise ValueError(f"{field_name} contains forbidden character: {char_desc}")


def validate_hostname(hostname: str) -> str:
    """
    Validate and normalise a hostname or IP address literal.

    Returns:
        The hostname lower-cased (IPv6 literals in compressed form)

    Raises:
        ValueError: If the hostname is invalid
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")
    if not hostname:
        raise ValueError("hostname must not be empty")

    if ":" in hostname:
        try:
            return str(ipaddress.IPv6Address(hostname))
        except ValueError:
            raise ValueError(f"hostname is not a valid IPv6 address: {hostname!r}") from None

    _check_dangerous_chars(hostname, "hostname")

    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )

    labels = hostname.split(".")
    for i, label in enumerate(labels):
        if not label:
            if i == 0:
                raise ValueError("hostname must not start with a dot")
            elif i == len(labels) - 1:
                raise ValueError("hostname must not end with a dot")
            else:
                raise ValueError("hostname must not contain consecutive dots")

        if len(label) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"hostname label '{label}' exceeds maximum length of "
                f"{MAX_LABEL_LENGTH} characters (got {len(label)})"
            )

        if not _LABEL_PATTERN.match(label):
            if label.startswith("-"):
                raise ValueError(f"hostname label '{label}' must not start with a hyphen")
            if label.endswith("-"):
                raise ValueError(f"hostname label '{label}' must not end with a hyphen")
            raise ValueError(
                f"hostname label '{label}' contains invalid characters "
                "(only alphanumeric and hyphens allowed)"
            )

    return hostname.lower()


def validate_username(username: str) -> str:
    """
    Validate a username.

    Raises:
        ValueError: If the username is invalid
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")
    if not username:
        raise ValueError("username must not be empty")

    _check_dangerous_chars(username, "username")

    if len(username) > MAX_USERNAME_LENGTH:
        raise ValueError(
            f"username exceeds maximum length of {MAX_USERNAME_LENGTH} characters "
            f"(got {len(username)})"
        )

    if not _USERNAME_PATTERN.match(username):
        first_char = username[0]
        if not (first_char.isalpha() or first_char == "_"):
            raise ValueError(
                f"username must start with a letter or underscore, got '{first_char}'"
            )
        for char in username:
            if not (char.isalnum() or char in "_.-"):
                raise ValueError(f"username contains invalid character: {char!r}")
        raise ValueError(
            "username contains invalid characters "
            "(only alphanumeric, underscore, dot and hyphen allowed)"
        )

    return username


def validate_port(port: int) -> int:
    """
    Validate a TCP port number.

    Raises:
        ValueError: If the port is not an int in 1..65535
    """
    # bool is a subclass of int
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")
    if port < 1:
        raise ValueError(f"port must be at least 1, got {port}")
    if port > 65535:
        raise ValueError(f"port must be at most 65535, got {port}")
    return port


@dataclass(frozen=True)
class Identity:
    """
    A remote account/endpoint.

    Construct through Identity.create() or Identity.parse() to get
    validated, normalised components; direct construction is reserved for
    already-validated values.
    """
    username: str
    host: str
    port: int = DEFAULT_PORT

    @classmethod
    def create(cls, username: str, host: str, port: int = DEFAULT_PORT) -> "Identity":
        """Validate components and build an Identity."""
        return cls(
            username=validate_username(username),
            host=validate_hostname(host),
            port=validate_port(port),
        )

    @classmethod
    def parse(cls, value: str, default_port: int = DEFAULT_PORT) -> "Identity":
        """
        Parse "user@host[:port]".

        IPv6 literals must be bracketed when a port is given:
        "user@[::1]:2222". The split is on the rightmost '@'.

        Raises:
            ValueError: If the string is malformed or a component is invalid
        """
        if not isinstance(value, str) or "@" not in value:
            raise ValueError(f"identity must look like user@host[:port], got {value!r}")

        username, _, hostport = value.rpartition("@")
        port = default_port

        if hostport.startswith("["):
            host, sep, rest = hostport[1:].partition("]")
            if not sep:
                raise ValueError(f"unterminated '[' in identity {value!r}")
            if rest:
                if not rest.startswith(":"):
                    raise ValueError(f"unexpected text after ']' in identity {value!r}")
                port = _parse_port(rest[1:], value)
        elif hostport.count(":") == 1:
            host, _, raw_port = hostport.partition(":")
            port = _parse_port(raw_port, value)
        else:
            host = hostport

        return cls.create(username, host, port)

    @classmethod
    def coerce(cls, value: "Identity | str") -> "Identity":
        """Accept an Identity or its canonical string form."""
        if isinstance(value, Identity):
            return value
        return cls.parse(value)

    @property
    def key(self) -> str:
        """
        Canonical "user@host:port" string.

        IPv6 hosts are bracketed ("user@[::1]:22") so the key always parses
        back to the same identity.
        """
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{self.username}@{host}:{self.port}"

    def __str__(self) -> str:
        return self.key


def _parse_port(raw: str, original: str) -> int:
    if not raw.isdigit():
        raise ValueError(f"port must be numeric in identity {original!r}, got {raw!r}")
    return validate_port(int(raw))
