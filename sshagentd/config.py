"""
Runtime configuration of the agent core.
"""
import enum
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from .wire import MAX_FRAME_LENGTH


class DecodePolicy(enum.Enum):
    """What a connection does with a frame it cannot decode."""
    # Answer SSH_AGENT_FAILURE and keep reading. Frames whose length
    # prefix exceeds the maximum still close the connection.
    REPLY = "reply"
    # Close the connection on any decode error.
    CLOSE = "close"


def expand_path(path: str) -> Path:
    """Expand ~ and environment variables in path, return Path object."""
    return Path(os.path.expanduser(os.path.expandvars(path)))


def default_socket_path() -> str:
    """Socket path inside a fresh private temp directory, like ssh-agent."""
    sock_dir = tempfile.mkdtemp(prefix="sshagentd-")
    return os.path.join(sock_dir, "agent.{}".format(os.getpid()))


def parse_tcp_address(value: str) -> Tuple[str, int]:
    """Parse ``host:port``; a bare port binds the loopback address."""
    host, sep, port = value.rpartition(":")
    if not sep:
        host = "127.0.0.1"
    return host or "127.0.0.1", int(port)


class AgentConfig:
    def __init__(
        self,
        max_frame_length: int = MAX_FRAME_LENGTH,
        decode_policy: DecodePolicy = DecodePolicy.REPLY,
        debug: bool = False,
        socket_path: Optional[str] = None,
        tcp_address: Optional[Tuple[str, int]] = None,
    ):
        if max_frame_length < 1:
            raise ValueError("max_frame_length must be positive")
        self.max_frame_length = max_frame_length
        self.decode_policy = DecodePolicy(decode_policy)
        self.debug = debug
        self.socket_path = socket_path
        self.tcp_address = tcp_address

    def __repr__(self):
        return ("AgentConfig(max_frame_length={}, decode_policy={}, debug={}, "
                "socket_path={!r}, tcp_address={!r})".format(
                    self.max_frame_length, self.decode_policy.value, self.debug,
                    self.socket_path, self.tcp_address))

    @classmethod
    def from_env(cls, environ=None) -> "AgentConfig":
        """
        Build a config from environment variables.

        SSHAGENTD_MAX_FRAME: maximum frame length in bytes
        SSHAGENTD_DECODE_POLICY: "reply" or "close"
        SSHAGENTD_SOCKET: Unix socket path to listen on
        DEBUG: "1" enables debug logging
        """
        environ = os.environ if environ is None else environ
        kwargs = {"debug": environ.get("DEBUG") == "1"}
        if environ.get("SSHAGENTD_MAX_FRAME"):
            try:
                kwargs["max_frame_length"] = int(environ["SSHAGENTD_MAX_FRAME"])
            except ValueError:
                raise ValueError("SSHAGENTD_MAX_FRAME must be an integer, got {!r}".format(
                    environ["SSHAGENTD_MAX_FRAME"])) from None
        if environ.get("SSHAGENTD_DECODE_POLICY"):
            try:
                kwargs["decode_policy"] = DecodePolicy(environ["SSHAGENTD_DECODE_POLICY"].lower())
            except ValueError:
                raise ValueError("SSHAGENTD_DECODE_POLICY must be reply or close, got {!r}".format(
                    environ["SSHAGENTD_DECODE_POLICY"])) from None
        if environ.get("SSHAGENTD_SOCKET"):
            kwargs["socket_path"] = str(expand_path(environ["SSHAGENTD_SOCKET"]))
        return cls(**kwargs)
