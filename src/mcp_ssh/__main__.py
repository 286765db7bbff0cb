"""
CLI interface for mcp-ssh.

Usage:
    python -m mcp_ssh exec --password user@host 'uname -a'   # First contact, bootstraps a key
    python -m mcp_ssh exec user@host 'uname -a'              # Uses the stored key
    python -m mcp_ssh exec --cwd /var/log user@host 'ls'
    python -m mcp_ssh exec -p 2222 user@host 'echo hello'
    python -m mcp_ssh --events events.jsonl exec user@host 'echo hello'
    python -m mcp_ssh key-path user@host
    python -m mcp_ssh forget user@host
    python -m mcp_ssh keys
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys

from mcp_ssh.config import SSHSettings
from mcp_ssh.errors import SSHError
from mcp_ssh.identity import DEFAULT_PORT, Identity
from mcp_ssh.keystore import KeyStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the mcp-ssh CLI."""
    parser = argparse.ArgumentParser(
        prog="mcp-ssh",
        description="SSH command execution with automatic key bootstrap",
        epilog="Example: python -m mcp_ssh exec --password user@host 'echo hello'",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug)",
    )

    parser.add_argument(
        "--events",
        metavar="PATH",
        help="Append JSONL events to PATH",
    )

    subparsers = parser.add_subparsers(dest="action", required=True)

    exec_parser = subparsers.add_parser(
        "exec",
        help="Connect (bootstrapping a key if needed) and run a command",
    )
    _add_target_arguments(exec_parser)
    exec_parser.add_argument(
        "command",
        help="Command to execute on the remote host",
    )
    exec_parser.add_argument(
        "--password",
        action="store_true",
        help="Prompt for a password (first contact or key fallback)",
    )
    exec_parser.add_argument(
        "--cwd",
        metavar="DIR",
        help="Remote working directory for the command",
    )

    key_path_parser = subparsers.add_parser(
        "key-path",
        help="Print the private key path for a target",
    )
    _add_target_arguments(key_path_parser)

    forget_parser = subparsers.add_parser(
        "forget",
        help="Delete the stored private key for a target",
    )
    _add_target_arguments(forget_parser)

    subparsers.add_parser(
        "keys",
        help="List stored private key files",
    )

    return parser


def _add_target_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "target",
        metavar="user@host[:port]",
        help="Remote identity",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port used when the target has none (default: {DEFAULT_PORT})",
    )


def configure_logging(verbose: int) -> None:
    """Configure root logging from the -v count."""
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    # asyncssh is chatty at INFO; only surface it at -vvv
    logging.getLogger("asyncssh").setLevel(
        logging.DEBUG if verbose >= 3 else logging.WARNING
    )


def parse_identity(args: argparse.Namespace) -> Identity:
    """Build the Identity named by a subcommand's target and -p."""
    return Identity.parse(args.target, default_port=args.port)


async def run_exec(args: argparse.Namespace, settings: SSHSettings) -> int:
    """
    Connect and run one command.

    Returns:
        Exit code from the remote command
    """
    from mcp_ssh.registry import ConnectionRegistry

    identity = parse_identity(args)
    password = None
    if args.password:
        password = getpass.getpass(f"Password for {identity.key}: ")

    async with ConnectionRegistry(settings, event_log_path=args.events) as registry:
        await registry.connect(identity, password=password)
        result = await registry.execute_command(
            identity, args.command, working_directory=args.cwd,
        )

    if result.stdout:
        sys.stdout.write(result.stdout)
    if result.stderr:
        sys.stderr.write(result.stderr)
    return result.exit_code


def run_key_command(args: argparse.Namespace, settings: SSHSettings) -> int:
    """Handle the local key store subcommands."""
    store = KeyStore(settings)

    if args.action == "keys":
        for path in store.list_keys():
            print(path)
        return 0

    identity = parse_identity(args)

    if args.action == "key-path":
        print(store.get_key_path(identity))
        return 0

    if store.delete_key(identity):
        print(f"Deleted stored key for {identity.key}")
    else:
        print(f"No stored key for {identity.key}", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = SSHSettings.from_env()
        if args.action == "exec":
            return asyncio.run(run_exec(args, settings))
        return run_key_command(args, settings)
    except (SSHError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
