"""Tests for configuration and command line parsing."""
import os

import pytest

from sshagentd.cli import parse_args
from sshagentd.config import (
    AgentConfig, DecodePolicy, default_socket_path, expand_path, parse_tcp_address,
)
from sshagentd.wire import MAX_FRAME_LENGTH


def test_defaults():
    config = AgentConfig()
    assert config.max_frame_length == MAX_FRAME_LENGTH
    assert config.decode_policy is DecodePolicy.REPLY
    assert not config.debug


def test_invalid_values():
    with pytest.raises(ValueError):
        AgentConfig(max_frame_length=0)
    with pytest.raises(ValueError):
        AgentConfig(decode_policy="sometimes")


def test_from_env():
    config = AgentConfig.from_env({
        "SSHAGENTD_MAX_FRAME": "4096",
        "SSHAGENTD_DECODE_POLICY": "CLOSE",
        "DEBUG": "1",
    })
    assert config.max_frame_length == 4096
    assert config.decode_policy is DecodePolicy.CLOSE
    assert config.debug


def test_from_env_empty():
    config = AgentConfig.from_env({})
    assert config.decode_policy is DecodePolicy.REPLY
    assert config.socket_path is None


def test_expand_path(monkeypatch):
    """Test path expansion."""
    monkeypatch.setenv("SSHAGENTD_TEST_VAR", "/tmp")
    assert str(expand_path("$SSHAGENTD_TEST_VAR/agent.sock")) == "/tmp/agent.sock"
    assert not str(expand_path("~/agent.sock")).startswith("~")


def test_default_socket_path():
    path = default_socket_path()
    try:
        assert os.path.isdir(os.path.dirname(path))
        assert not os.path.exists(path)
    finally:
        os.rmdir(os.path.dirname(path))


@pytest.mark.parametrize("value, expected", [
    ("127.0.0.1:4000", ("127.0.0.1", 4000)),
    ("4000", ("127.0.0.1", 4000)),
    (":4000", ("127.0.0.1", 4000)),
    ("::1:4000", ("::1", 4000)),
])
def test_parse_tcp_address(value, expected):
    assert parse_tcp_address(value) == expected


def test_parse_args():
    config, keys = parse_args(
        ["-d", "--tcp", "127.0.0.1:0", "-k", "/tmp/a", "-k", "/tmp/b",
         "--decode-policy", "close", "--max-frame", "1000"],
        environ={})
    assert config.debug
    assert config.tcp_address == ("127.0.0.1", 0)
    assert config.socket_path is None
    assert config.decode_policy is DecodePolicy.CLOSE
    assert config.max_frame_length == 1000
    assert keys == ["/tmp/a", "/tmp/b"]


def test_parse_args_socket_from_env():
    config, keys = parse_args([], environ={"SSHAGENTD_SOCKET": "/tmp/x.sock"})
    assert config.socket_path == "/tmp/x.sock"
    assert keys == []


def test_parse_args_rejects_bad_frame_size():
    with pytest.raises(SystemExit):
        parse_args(["--max-frame", "0"], environ={})


@pytest.mark.parametrize("environ", [
    {"SSHAGENTD_MAX_FRAME": "lots"},
    {"SSHAGENTD_DECODE_POLICY": "sometimes"},
    {"SSHAGENTD_MAX_FRAME": "-1"},
])
def test_from_env_rejects_bad_values(environ):
    with pytest.raises(ValueError):
        AgentConfig.from_env(environ)


def test_parse_args_reports_bad_environment(capsys):
    """Bad environment values end in a usage error, not a traceback."""
    with pytest.raises(SystemExit) as excinfo:
        parse_args([], environ={"SSHAGENTD_DECODE_POLICY": "sometimes"})
    assert excinfo.value.code == 2
    assert "SSHAGENTD_DECODE_POLICY" in capsys.readouterr().err
