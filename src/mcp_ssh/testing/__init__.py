"""
Testing utilities for mcp-ssh.

Provides MockSSHServer for integration testing against a real SSH protocol
stack without an external sshd.
"""
from mcp_ssh.testing.mock_server import MockServerConfig, MockSSHServer

__all__ = ["MockSSHServer", "MockServerConfig"]
