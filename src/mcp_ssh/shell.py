"""POSIX shell quoting for commands sent to the remote side."""
from __future__ import annotations


def shell_quote(value: str) -> str:
    """
    Quote a value as a single POSIX shell word.

    The value is wrapped in single quotes; each embedded single quote closes
    the quoted string, emits an escaped quote and re-opens it ('\\'').
    """
    assert "\x00" not in value, "shell arguments cannot contain null bytes"
    return "'" + value.replace("'", "'\\''") + "'"


def join_commands(*commands: str) -> str:
    """Chain commands with && so the first failure stops the sequence."""
    return " && ".join(commands)
