"""
Tests for shell-based remote file operations over the in-memory fakes.

These check the commands sent and the parsing of their output; the
end-to-end behaviour against a real shell is covered in test_integration.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mcp_ssh.errors import NotConnected, RemoteCommandError
from mcp_ssh.identity import Identity
from mcp_ssh.registry import ConnectionRegistry
from mcp_ssh.remote_fs import DirectoryEntry, PathStat, RemoteFileOps
from mcp_ssh.shell import join_commands, shell_quote
from mcp_ssh.transport import ExecResult

from conftest import ALICE_PASSWORD, FakeHost


@pytest.fixture
async def files(registry: ConnectionRegistry, fake_host: FakeHost, alice: Identity) -> RemoteFileOps:
    await registry.connect(alice, password=ALICE_PASSWORD)
    return RemoteFileOps(registry)


class TestShellQuote:
    """Tests for shell_quote and join_commands."""

    def test_plain(self) -> None:
        assert shell_quote("/tmp/file") == "'/tmp/file'"

    def test_embedded_single_quote(self) -> None:
        assert shell_quote("it's") == "'it'\\''s'"

    def test_metacharacters_stay_literal(self) -> None:
        assert shell_quote("$(rm -rf /); `id`") == "'$(rm -rf /); `id`'"

    def test_rejects_nul(self) -> None:
        with pytest.raises(AssertionError):
            shell_quote("a\x00b")

    def test_join(self) -> None:
        assert join_commands("cd /", "ls") == "cd / && ls"


class TestReadWrite:
    """Tests for read_file and write_file."""

    @pytest.mark.asyncio
    async def test_read_file(self, files: RemoteFileOps, fake_host: FakeHost, alice: Identity) -> None:
        fake_host.responses["cat -- '/etc/motd'"] = ExecResult("welcome\n", "", 0)
        assert await files.read_file(alice, "/etc/motd") == "welcome\n"

    @pytest.mark.asyncio
    async def test_read_missing(self, files: RemoteFileOps, fake_host: FakeHost, alice: Identity) -> None:
        fake_host.responses["cat -- '/nope'"] = ExecResult(
            "", "cat: /nope: No such file or directory\n", 1,
        )
        with pytest.raises(RemoteCommandError) as exc_info:
            await files.read_file(alice, "/nope")

        assert exc_info.value.exit_code == 1
        assert "No such file" in str(exc_info.value)
        assert exc_info.value.context.extra["path"] == "/nope"

    @pytest.mark.asyncio
    async def test_write_file_quotes_content(
        self,
        files: RemoteFileOps,
        fake_host: FakeHost,
        alice: Identity,
    ) -> None:
        await files.write_file(alice, "/srv/app/it's.conf", "a='1'\n$HOME\n")

        assert fake_host.commands[-1] == (
            "mkdir -p -- \"$(dirname -- '/srv/app/it'\\''s.conf')\" && "
            "printf '%s' 'a='\\''1'\\''\n$HOME\n' > '/srv/app/it'\\''s.conf'"
        )

    @pytest.mark.asyncio
    async def test_requires_session(self, registry: ConnectionRegistry) -> None:
        files = RemoteFileOps(registry)
        with pytest.raises(NotConnected):
            await files.read_file("bob@10.0.0.9", "/etc/hosts")


class TestListAndStat:
    """Tests for list_directory, stat and exists."""

    @pytest.mark.asyncio
    async def test_list_directory(self, files: RemoteFileOps, fake_host: FakeHost, alice: Identity) -> None:
        fake_host.responses[
            "find '/srv' -mindepth 1 -maxdepth 1 -printf '%y|%s|%f\\n'"
        ] = ExecResult("f|12|b.txt\nd|4096|a dir\nl|7|link\nf|0|we|ird\n", "", 0)

        entries = await files.list_directory(alice, "/srv")

        assert entries == [
            DirectoryEntry(name="a dir", type="directory", size=4096),
            DirectoryEntry(name="b.txt", type="file", size=12),
            DirectoryEntry(name="link", type="other", size=7),
            DirectoryEntry(name="we|ird", type="file", size=0),
        ]

    @pytest.mark.asyncio
    async def test_list_empty(self, files: RemoteFileOps, fake_host: FakeHost, alice: Identity) -> None:
        assert await files.list_directory(alice, "/empty") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("type_str,expected", [
        ("regular file", "file"),
        ("regular empty file", "file"),
        ("directory", "directory"),
        ("symbolic link", "symlink"),
        ("fifo", "other"),
    ])
    async def test_stat(
        self,
        files: RemoteFileOps,
        fake_host: FakeHost,
        alice: Identity,
        type_str: str,
        expected: str,
    ) -> None:
        fake_host.responses["stat -c '%F|%s|%Y' -- '/x'"] = ExecResult(
            f"{type_str}|42|1700000000\n", "", 0,
        )

        assert await files.stat(alice, "/x") == PathStat(
            type=expected,
            size=42,
            modified=datetime.fromtimestamp(1700000000, tz=timezone.utc),
        )

    @pytest.mark.asyncio
    async def test_exists(self, files: RemoteFileOps, fake_host: FakeHost, alice: Identity) -> None:
        fake_host.responses["test -e '/there'"] = ExecResult("", "", 0)
        fake_host.responses["test -e '/gone'"] = ExecResult("", "", 1)
        fake_host.responses["test -e '/broken'"] = ExecResult("", "test: error\n", 2)

        assert await files.exists(alice, "/there") is True
        assert await files.exists(alice, "/gone") is False
        with pytest.raises(RemoteCommandError):
            await files.exists(alice, "/broken")
