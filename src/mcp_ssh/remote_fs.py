"""
File and directory operations over a registered session.

There is no SFTP channel: every operation is a POSIX shell command sent
through ConnectionRegistry.execute_command, with all paths and content
quoted by shell_quote. listing and stat rely on GNU find/stat output
formats.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from mcp_ssh.errors import ErrorContext, RemoteCommandError
from mcp_ssh.identity import Identity
from mcp_ssh.registry import ConnectionRegistry
from mcp_ssh.shell import join_commands, shell_quote
from mcp_ssh.transport import ExecResult

logger = logging.getLogger(__name__)

_FIND_TYPES = {"d": "directory", "f": "file"}


@dataclass
class DirectoryEntry:
    """One entry of a directory listing."""
    name: str
    type: str  # 'file', 'directory' or 'other'
    size: int


@dataclass
class PathStat:
    """Type, size and modification time of a remote path."""
    type: str  # 'file', 'directory', 'symlink' or 'other'
    size: int
    modified: datetime


class RemoteFileOps:
    """
    Shell-based file operations for registered identities.

    Usage:
        files = RemoteFileOps(registry)
        await files.write_file(identity, "/tmp/app/config.ini", text)
        text = await files.read_file(identity, "/tmp/app/config.ini")
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry

    async def read_file(self, identity: Identity | str, path: str) -> str:
        result = await self._run(identity, "read_file", path, f"cat -- {shell_quote(path)}")
        return result.stdout

    async def write_file(self, identity: Identity | str, path: str, content: str) -> None:
        """Write content verbatim, creating parent directories as needed."""
        quoted = shell_quote(path)
        command = join_commands(
            f'mkdir -p -- "$(dirname -- {quoted})"',
            f"printf '%s' {shell_quote(content)} > {quoted}",
        )
        await self._run(identity, "write_file", path, command)
        logger.info("File written: %s (%d bytes)", path, len(content.encode("utf-8")))

    async def list_directory(self, identity: Identity | str, path: str) -> list[DirectoryEntry]:
        """List the immediate children of a directory, sorted by name."""
        command = (
            f"find {shell_quote(path)} -mindepth 1 -maxdepth 1 -printf '%y|%s|%f\\n'"
        )
        result = await self._run(identity, "list_directory", path, command)

        entries = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            kind, size, name = line.split("|", 2)
            entries.append(DirectoryEntry(
                name=name,
                type=_FIND_TYPES.get(kind, "other"),
                size=int(size) if size.isdigit() else 0,
            ))
        return sorted(entries, key=lambda e: e.name)

    async def stat(self, identity: Identity | str, path: str) -> PathStat:
        result = await self._run(
            identity, "stat", path, f"stat -c '%F|%s|%Y' -- {shell_quote(path)}",
        )
        type_str, size, mtime = result.stdout.strip().split("|")

        if "directory" in type_str:
            kind = "directory"
        elif "symbolic link" in type_str:
            kind = "symlink"
        elif "regular" in type_str:
            kind = "file"
        else:
            kind = "other"

        return PathStat(
            type=kind,
            size=int(size),
            modified=datetime.fromtimestamp(int(mtime), tz=timezone.utc),
        )

    async def exists(self, identity: Identity | str, path: str) -> bool:
        """
        Check whether a path exists.

        Raises:
            RemoteCommandError: If the check itself failed (exit code other
                than 0 or 1)
        """
        result = await self._registry.execute_command(identity, f"test -e {shell_quote(path)}")
        if result.exit_code in (0, 1):
            return result.exit_code == 0
        raise self._command_error(identity, "exists", path, result)

    async def _run(
        self,
        identity: Identity | str,
        operation: str,
        path: str,
        command: str,
    ) -> ExecResult:
        logger.debug("%s %s", operation, path)
        result = await self._registry.execute_command(identity, command)
        if result.exit_code != 0:
            raise self._command_error(identity, operation, path, result)
        return result

    @staticmethod
    def _command_error(
        identity: Identity | str,
        operation: str,
        path: str,
        result: ExecResult,
    ) -> RemoteCommandError:
        key = Identity.coerce(identity).key
        logger.error("%s failed for %s on %s: %s", operation, path, key, result.stderr.strip())
        return RemoteCommandError(
            f"{operation} failed for {path}: {result.stderr.strip() or f'exit code {result.exit_code}'}",
            exit_code=result.exit_code,
            stderr=result.stderr,
            context=ErrorContext(identity=key, operation=operation, extra={"path": path}),
        )
