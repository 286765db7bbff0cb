"""
Tests for the mcp-ssh CLI interface.

Tests the command-line interface for:
- Argument parsing (subcommands, target, port, --password, --cwd)
- Key store subcommands (key-path, forget, keys)
- Command execution via run_exec against MockSSHServer
- Exit code propagation and error reporting
"""
from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from mcp_ssh.__main__ import create_parser, main, parse_identity, run_exec
from mcp_ssh.config import SSHSettings
from mcp_ssh.events import read_jsonl_events
from mcp_ssh.identity import Identity
from mcp_ssh.keystore import KeyStore
from mcp_ssh.paths import BASE_DIR_ENV
from mcp_ssh.testing.mock_server import MockSSHServer

from conftest import ALICE_PASSWORD


class TestArgumentParsing:
    """Tests for CLI argument parsing."""

    def test_exec_defaults(self) -> None:
        args = create_parser().parse_args(["exec", "alice@host.example", "uname -a"])

        assert args.action == "exec"
        assert args.target == "alice@host.example"
        assert args.command == "uname -a"
        assert args.port == 22
        assert args.password is False
        assert args.cwd is None
        assert args.verbose == 0
        assert args.events is None

    def test_exec_options(self) -> None:
        args = create_parser().parse_args([
            "-vv", "--events", "/tmp/e.jsonl",
            "exec", "--password", "--cwd", "/srv", "-p", "2222", "alice@host", "ls",
        ])

        assert args.verbose == 2
        assert args.events == "/tmp/e.jsonl"
        assert args.password is True
        assert args.cwd == "/srv"
        assert args.port == 2222

    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_parse_identity_port(self) -> None:
        args = create_parser().parse_args(["key-path", "-p", "2222", "alice@host"])
        assert parse_identity(args).key == "alice@host:2222"

        args = create_parser().parse_args(["key-path", "-p", "2222", "alice@host:2200"])
        assert parse_identity(args).key == "alice@host:2200"


class TestKeyCommands:
    """Tests for key-path, forget and keys."""

    @pytest.fixture(autouse=True)
    def isolated_home(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
        monkeypatch.setenv(BASE_DIR_ENV, str(tmp_path / "state"))
        return tmp_path / "state"

    def test_key_path(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["key-path", "alice@10.0.0.5"]) == 0
        assert capsys.readouterr().out.strip() == str(
            isolated_home / "keys" / "id_ed25519_alice_10.0.0.5_22"
        )

    def test_forget(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]) -> None:
        store = KeyStore(SSHSettings(base_dir=isolated_home))
        identity = Identity.parse("alice@10.0.0.5")
        store.store_private_key(identity, "pem\n")

        assert main(["forget", "alice@10.0.0.5"]) == 0
        assert "Deleted" in capsys.readouterr().out
        assert not store.has_key(identity)

        assert main(["forget", "alice@10.0.0.5"]) == 0
        assert "No stored key" in capsys.readouterr().err

    def test_keys(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]) -> None:
        store = KeyStore(SSHSettings(base_dir=isolated_home))
        store.store_private_key(Identity.parse("bob@b.example"), "pem\n")

        assert main(["keys"]) == 0
        assert capsys.readouterr().out.strip().endswith("id_ed25519_bob_b.example_22")

    def test_invalid_target(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["key-path", "not-an-identity"]) == 1
        assert "Error:" in capsys.readouterr().err


class TestHelpOutput:
    """Tests for help output."""

    def test_help_output(self) -> None:
        result = subprocess.run(
            [sys.executable, "-m", "mcp_ssh", "--help"],
            capture_output=True,
            text=True,
            cwd=Path(__file__).parent.parent,
            env={
                **subprocess.os.environ,
                "PYTHONPATH": str(Path(__file__).parent.parent / "src"),
            },
        )

        assert result.returncode == 0
        assert "mcp-ssh" in result.stdout
        for subcommand in ("exec", "key-path", "forget", "keys"):
            assert subcommand in result.stdout
        assert "--events" in result.stdout


def exec_args(server: MockSSHServer, command: str, **overrides) -> argparse.Namespace:
    values = dict(
        target="alice@127.0.0.1",
        port=server.port,
        command=command,
        password=True,
        cwd=None,
        events=None,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


@pytest.mark.asyncio
async def test_cli_exec_bootstraps_then_uses_key(
    mock_ssh_server: MockSSHServer,
    settings: SSHSettings,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """First run prompts for the password; the second needs none."""
    with patch("mcp_ssh.__main__.getpass.getpass", return_value=ALICE_PASSWORD) as prompt:
        exit_code = await run_exec(exec_args(mock_ssh_server, "echo hello"), settings)
    assert exit_code == 0
    assert prompt.call_count == 1
    assert capsys.readouterr().out == "hello\n"

    exit_code = await run_exec(
        exec_args(mock_ssh_server, "echo again", password=False), settings,
    )
    assert exit_code == 0
    assert capsys.readouterr().out == "again\n"
    assert len(mock_ssh_server.authorized_keys()) == 1


@pytest.mark.asyncio
async def test_cli_exit_code_propagation(
    mock_ssh_server: MockSSHServer,
    settings: SSHSettings,
    capsys: pytest.CaptureFixture[str],
) -> None:
    with patch("mcp_ssh.__main__.getpass.getpass", return_value=ALICE_PASSWORD):
        exit_code = await run_exec(
            exec_args(mock_ssh_server, "echo bad >&2; exit 42"), settings,
        )

    assert exit_code == 42
    assert capsys.readouterr().err == "bad\n"


@pytest.mark.asyncio
async def test_cli_cwd_and_events(
    mock_ssh_server: MockSSHServer,
    settings: SSHSettings,
    temp_jsonl_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    workdir = mock_ssh_server.home / "sub"
    workdir.mkdir()

    with patch("mcp_ssh.__main__.getpass.getpass", return_value=ALICE_PASSWORD):
        exit_code = await run_exec(
            exec_args(mock_ssh_server, "pwd", cwd=str(workdir), events=str(temp_jsonl_path)),
            settings,
        )

    assert exit_code == 0
    assert capsys.readouterr().out.strip() == str(workdir)
    assert "EXEC" in [e.event_type for e in read_jsonl_events(temp_jsonl_path)]


def test_cli_exec_without_credentials(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """No stored key and no --password fails before any connection attempt."""
    with patch.dict("os.environ", {BASE_DIR_ENV: str(tmp_path)}):
        assert main(["exec", "alice@127.0.0.1", "true"]) == 1
    assert "no key, no password" in capsys.readouterr().err
