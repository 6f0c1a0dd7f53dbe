"""Shared fixtures for the agent tests."""
import contextlib
import socket
import struct
import threading

import pytest
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from sshagentd.dispatch import Dispatcher
from sshagentd.server import Connection
from sshagentd.wire import Writer


@pytest.fixture(scope="session")
def ed25519_key():
    return ed25519.Ed25519PrivateKey.generate()


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ecdsa_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def fake_blob():
    """Build a syntactically valid public key blob for an algorithm."""
    def build(algorithm="ssh-ed25519", body=b"A" * 32):
        return Writer().write_text(algorithm).write_string(body).getvalue()
    return build


@pytest.fixture
def recv_frame():
    """Read one raw frame from a socket; returns b'' once the peer closed."""
    def recv(sock, n):
        try:
            return sock.recv(n)
        except ConnectionResetError:
            # closing with unread input resets instead of a clean EOF
            return b""

    def read(sock):
        header = b""
        while len(header) < 4:
            chunk = recv(sock, 4 - len(header))
            if not chunk:
                return b""
            header += chunk
        length = struct.unpack("> I", header)[0]
        payload = b""
        while len(payload) < length:
            chunk = recv(sock, length - len(payload))
            assert chunk, "connection closed inside a frame"
            payload += chunk
        return header + payload
    return read


@pytest.fixture
def served():
    """Run a Connection over a socketpair; yields (connection, client socket)."""
    @contextlib.contextmanager
    def serve(backend, config=None):
        server_sock, client_sock = socket.socketpair()
        client_sock.settimeout(5)
        conn = Connection(server_sock, Dispatcher(backend), config)
        thread = threading.Thread(target=conn.serve, daemon=True)
        thread.start()
        try:
            yield conn, client_sock
        finally:
            client_sock.close()
            thread.join(5)
            server_sock.close()
    return serve
