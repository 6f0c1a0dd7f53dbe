"""Tests for the connection supervisor and the agent servers."""
import os
import socket
import socketserver
import struct
import threading

import pytest

from sshagentd.backend import Backend
from sshagentd.client import AgentClient
from sshagentd.config import AgentConfig, DecodePolicy
from sshagentd.dispatch import Dispatcher
from sshagentd.errors import AgentFailure, BackendFailure, ExtensionUnsupported
from sshagentd.keys import private_key_message, public_key_blob
from sshagentd.memory import MemoryBackend
from sshagentd.messages import (
    ExtensionFailure, Failure, IdentitiesAnswer, Identity, Lock, RequestIdentities,
    SignRequest, decode_response, encode,
)
from sshagentd.server import Connection, ConnectionState, TCPAgentServer
from sshagentd.wire import Reader, frame

FAILURE_FRAME = b"\x00\x00\x00\x01\x05"


class RequiredOnlyBackend(Backend):
    def list_identities(self):
        return []

    def sign(self, request):
        raise BackendFailure("no keys")


def test_empty_agent_then_unknown_key(served, fake_blob):
    """Empty list first, then a failed sign that leaves the connection open."""
    with served(MemoryBackend()) as (conn, sock):
        client = AgentClient(sock)
        assert client.request_identities() == []
        with pytest.raises(AgentFailure):
            client.sign(fake_blob(), b"data")
        assert client.request_identities() == []
    assert conn.state is ConnectionState.CLOSED
    assert conn.requests == 3


def test_sign_over_connection(served, ed25519_key):
    backend = MemoryBackend()
    blob = backend.add_key(ed25519_key, "me@host")
    with served(backend) as (conn, sock):
        client = AgentClient(sock)
        identities = client.request_identities()
        assert [(i.key_blob, i.comment) for i in identities] == [(blob, "me@host")]
        reader = Reader(client.sign(blob, b"session"))
        assert reader.read_text() == "ssh-ed25519"
        ed25519_key.public_key().verify(reader.read_string(), b"session")


def test_client_manages_keys(served, ecdsa_key):
    """Add, lock, unlock and remove through the wire."""
    with served(MemoryBackend()) as (conn, sock):
        client = AgentClient(sock)
        client.add_identity(private_key_message(ecdsa_key), "ec", ())
        assert len(client.request_identities()) == 1
        client.lock(b"pw")
        assert client.request_identities() == []
        with pytest.raises(AgentFailure):
            client.unlock(b"nope")
        client.unlock(b"pw")
        client.remove_identity(public_key_blob(ecdsa_key))
        assert client.request_identities() == []
        with pytest.raises(AgentFailure):
            client.add_smartcard_key("reader", b"0000")


def test_unsupported_capability_keeps_connection(served, recv_frame, fake_blob):
    """Lock on a backend without it: failure frame, then business as usual."""
    with served(RequiredOnlyBackend()) as (conn, sock):
        sock.sendall(encode(Lock(b"pw")))
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(encode(RequestIdentities()))
        assert decode_response(recv_frame(sock)) == IdentitiesAnswer(())


def test_extension_failure_differs_from_failure(served, recv_frame, fake_blob):
    """Unsupported extension and failed sign give different frames."""
    with served(MemoryBackend()) as (conn, sock):
        client = AgentClient(sock)
        assert client.request(SignRequest(fake_blob(), b"d")) == Failure()
        sock.sendall(encode(SignRequest(fake_blob(), b"d")))
        sign_frame = recv_frame(sock)
        sock.sendall(frame(b"\x1b\x00\x00\x00\x03foo" + b"payload"))
        extension_frame = recv_frame(sock)
    assert sign_frame == FAILURE_FRAME
    assert decode_response(extension_frame) == ExtensionFailure()
    assert extension_frame != sign_frame


def test_malformed_payload_answered_with_failure(served, recv_frame):
    """Truncated payloads get a failure and the stream stays usable."""
    with served(MemoryBackend()) as (conn, sock):
        sock.sendall(frame(b"\x0d\x00\x00\x00\x09abc"))
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(frame(b"\x0b\x00"))          # trailing byte
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(b"\x00\x00\x00\x00")         # empty frame
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(frame(b"\xfa\x01\x02"))      # unknown discriminant
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(encode(RequestIdentities()))
        assert decode_response(recv_frame(sock)) == IdentitiesAnswer(())


def test_oversized_frame_closes_connection(served, recv_frame):
    """A length prefix above the maximum cannot be resynchronised."""
    config = AgentConfig(max_frame_length=1024)
    with served(MemoryBackend(), config) as (conn, sock):
        sock.sendall(struct.pack("> I", 1025) + b"\x0b")
        assert recv_frame(sock) == b""


def test_close_policy(served, recv_frame):
    """With the close policy any malformed frame ends the connection."""
    config = AgentConfig(decode_policy=DecodePolicy.CLOSE)
    with served(MemoryBackend(), config) as (conn, sock):
        sock.sendall(encode(RequestIdentities()))
        assert decode_response(recv_frame(sock)) == IdentitiesAnswer(())
        sock.sendall(frame(b"\x0d\x00"))
        assert recv_frame(sock) == b""


def test_close_policy_still_answers_unknown_messages(served, recv_frame):
    """Unknown discriminants decode fine, so they are not decode errors."""
    config = AgentConfig(decode_policy=DecodePolicy.CLOSE)
    with served(MemoryBackend(), config) as (conn, sock):
        sock.sendall(frame(b"\xfa"))
        assert recv_frame(sock) == FAILURE_FRAME


def test_eof_inside_frame_closes(fake_blob):
    """A peer that hangs up mid-frame just closes the connection."""
    server_sock, client_sock = socket.socketpair()
    conn = Connection(server_sock, Dispatcher(MemoryBackend()))
    client_sock.sendall(b"\x00\x00\x00\x10\x0d")
    client_sock.close()
    conn.serve()
    server_sock.close()
    assert conn.state is ConnectionState.CLOSED
    assert conn.requests == 0


def test_in_flight_backend_call_finishes_after_disconnect(fake_blob):
    """Closing the client does not tear down a running backend call."""
    started = threading.Event()
    release = threading.Event()
    finished = []

    class SlowBackend(MemoryBackend):
        def sign(self, request):
            started.set()
            release.wait(5)
            finished.append(request.data)
            return b"signature"

    server_sock, client_sock = socket.socketpair()
    conn = Connection(server_sock, Dispatcher(SlowBackend()))
    thread = threading.Thread(target=conn.serve, daemon=True)
    thread.start()
    client_sock.sendall(encode(SignRequest(fake_blob(), b"slow")))
    assert started.wait(5)
    client_sock.close()
    release.set()
    thread.join(5)
    server_sock.close()
    assert not thread.is_alive()
    assert finished == [b"slow"]
    assert conn.state is ConnectionState.CLOSED


def test_concurrent_connections_share_one_backend(ed25519_key):
    """N clients doing M signs each all succeed, in per-connection order."""
    connections, requests = 8, 15
    peak = []

    class CountingBackend(MemoryBackend):
        active = 0

        def sign(self, request):
            CountingBackend.active += 1
            peak.append(CountingBackend.active)
            try:
                return super().sign(request)
            finally:
                CountingBackend.active -= 1

    backend = CountingBackend()
    blob = backend.add_key(ed25519_key, "shared")
    server = TCPAgentServer(("127.0.0.1", 0), backend)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    results = {}
    errors = []

    def worker(n):
        try:
            with AgentClient(socket.create_connection(server.server_address, timeout=10)) as client:
                results[n] = [
                    (data, client.sign(blob, data))
                    for data in ("conn{}-req{}".format(n, m).encode() for m in range(requests))
                ]
        except Exception as e:
            errors.append(e)

    workers = [threading.Thread(target=worker, args=(n,)) for n in range(connections)]
    try:
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join(30)
    finally:
        server.shutdown()
        server.server_close()

    assert errors == []
    assert len(results) == connections
    assert sum(len(r) for r in results.values()) == connections * requests
    assert max(peak) == 1
    for n, signatures in results.items():
        assert [data for data, _ in signatures] == [
            "conn{}-req{}".format(n, m).encode() for m in range(requests)]
        for data, blob_sig in signatures:
            reader = Reader(blob_sig)
            assert reader.read_text() == "ssh-ed25519"
            ed25519_key.public_key().verify(reader.read_string(), data)


@pytest.mark.skipif(not hasattr(socketserver, "ThreadingUnixStreamServer"),
                    reason="Unix sockets not available")
def test_unix_socket_server(tmp_path, ed25519_key):
    from sshagentd.server import serve_socket

    path = str(tmp_path / "agent.sock")
    backend = MemoryBackend()
    blob = backend.add_key(ed25519_key, "unix")
    server = serve_socket(path, backend)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        with AgentClient.connect(path) as client:
            assert [i.key_blob for i in client.request_identities()] == [blob]
            assert client.extension("query") is not None
        assert (tmp_path / "agent.sock").stat().st_mode & 0o077 == 0
    finally:
        server.shutdown()
        server.server_close()
    assert not (tmp_path / "agent.sock").exists()


def test_unencodable_response_answered_with_failure(served, recv_frame, fake_blob):
    """A comment the wire cannot carry gives a failure frame, not a hang-up."""
    class BadCommentBackend(RequiredOnlyBackend):
        calls = 0

        def list_identities(self):
            BadCommentBackend.calls += 1
            if BadCommentBackend.calls == 1:
                return [Identity(fake_blob(), "caf\ud800")]
            return [Identity(fake_blob(), "cafe")]

    with served(BadCommentBackend()) as (conn, sock):
        sock.sendall(encode(RequestIdentities()))
        assert recv_frame(sock) == FAILURE_FRAME
        sock.sendall(encode(RequestIdentities()))
        answer = decode_response(recv_frame(sock))
    assert answer == IdentitiesAnswer((Identity(fake_blob(), "cafe"),))
    assert conn.requests == 2


def test_oversized_prefix_alone_closes_connection(served, recv_frame):
    config = AgentConfig(max_frame_length=16)
    with served(MemoryBackend(), config) as (conn, sock):
        sock.sendall(struct.pack("> I", 17))
        assert recv_frame(sock) == b""
    assert conn.requests == 0


def test_client_tells_unsupported_extension_from_failed(served):
    class FailingExtensionBackend(RequiredOnlyBackend):
        extensions = ("fails@example.com",)

        def handle_extension(self, name, payload):
            if name == "fails@example.com":
                raise BackendFailure("broken")
            return super().handle_extension(name, payload)

    with served(FailingExtensionBackend()) as (conn, sock):
        client = AgentClient(sock)
        with pytest.raises(ExtensionUnsupported):
            client.extension("nope@example.com")
        with pytest.raises(AgentFailure) as excinfo:
            client.extension("fails@example.com")
        assert not isinstance(excinfo.value, ExtensionUnsupported)


@pytest.mark.skipif(not hasattr(socketserver, "ThreadingUnixStreamServer"),
                    reason="Unix sockets not available")
def test_unix_socket_server_keeps_process_umask(tmp_path, monkeypatch):
    """Socket permissions are set without touching the process umask."""
    from sshagentd.server import serve_socket

    def no_umask(mask):
        raise AssertionError("umask changed")

    monkeypatch.setattr(os, "umask", no_umask)
    server = serve_socket(str(tmp_path / "agent.sock"), MemoryBackend())
    try:
        assert (tmp_path / "agent.sock").stat().st_mode & 0o777 == 0o600
    finally:
        server.server_close()
