"""
Connection supervisor: accepts clients and runs one request/response loop
per connection against a shared dispatcher.

Each accepted connection gets its own thread (socketserver threading
servers). Within a connection requests are handled strictly one after the
other; the next frame is not read before the previous response is written.
"""
import enum
import itertools
import logging
import os
import socketserver
import struct

from .backend import Backend
from .config import AgentConfig, DecodePolicy
from .dispatch import Dispatcher
from .errors import DecodeError, DecodeErrorKind, TransportError
from .logging_utils import log_event
from .messages import decode_request_payload, encode
from .wire import check_frame_length

LOG = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


class ConnectionState(enum.Enum):
    ACCEPTED = "accepted"
    READING = "reading"
    DISPATCHING = "dispatching"
    WRITING = "writing"
    CLOSED = "closed"


class Connection:
    """
    Request/response loop over one bidirectional byte stream.

    The stream only needs socket-style ``recv(n)`` and ``sendall(data)``.
    """

    def __init__(self, stream, dispatcher: Dispatcher, config: AgentConfig = None, name=None):
        self._stream = stream
        self._dispatcher = dispatcher
        self._config = config or AgentConfig()
        self.name = name or "conn-{}".format(next(_connection_ids))
        self.state = ConnectionState.ACCEPTED
        self.requests = 0

    def serve(self) -> None:
        """
        Serve until end of stream, a transport error, or a fatal decode error.

        The stream is closed on return.
        """
        LOG.debug("%s: accepted", self.name)
        try:
            while self._serve_one():
                pass
        except TransportError as e:
            LOG.debug("%s: transport error: %s", self.name, e)
        finally:
            self.state = ConnectionState.CLOSED
            close = getattr(self._stream, "close", None)
            if close is not None:
                try:
                    close()
                except OSError as e:
                    LOG.debug("%s: close failed: %s", self.name, e)
            LOG.debug("%s: closed after %d requests", self.name, self.requests)

    def _serve_one(self) -> bool:
        self.state = ConnectionState.READING
        header = self._read_exact(4, at_boundary=True)
        if header is None:
            return False
        length = struct.unpack('> I', header)[0]

        try:
            check_frame_length(length, self._config.max_frame_length)
            payload = self._read_exact(length)
            self.state = ConnectionState.DISPATCHING
            request = decode_request_payload(payload, self._config.max_frame_length)
        except DecodeError as e:
            if not self._survives(e):
                log_event(LOG, "connection_closed", level=logging.WARNING,
                          connection=self.name, kind=e.kind.value, error=str(e))
                return False
            self.state = ConnectionState.DISPATCHING
            response = encode(self._dispatcher.handle_decode_error(e))
        else:
            LOG.debug("%s: request: type:%d len:%d", self.name, request.kind, length)
            response = self._dispatcher.respond(request)

        self.requests += 1
        self.state = ConnectionState.WRITING
        self._write(response)
        return True

    def _survives(self, error: DecodeError) -> bool:
        # An oversized length prefix means we cannot find the next frame
        if error.kind is DecodeErrorKind.FIELD_TOO_LARGE and self.state is ConnectionState.READING:
            return False
        return self._config.decode_policy is DecodePolicy.REPLY

    def _read_exact(self, length: int, at_boundary: bool = False):
        buffer = bytearray()
        while len(buffer) < length:
            try:
                chunk = self._stream.recv(length - len(buffer))
            except OSError as e:
                raise TransportError("read failed: {}".format(e)) from e
            if not chunk:
                if at_boundary and not buffer:
                    return None
                raise TransportError("end of stream inside a frame")
            buffer.extend(chunk)
        return bytes(buffer)

    def _write(self, data: bytes) -> None:
        try:
            self._stream.sendall(data)
        except OSError as e:
            raise TransportError("write failed: {}".format(e)) from e


class AgentRequestHandler(socketserver.BaseRequestHandler):
    """
    Handle a single SSH agent session
    """

    def handle(self):
        Connection(self.request, self.server.dispatcher, self.server.config).serve()


class AgentServerMixin:
    """Shared state of agent servers: one dispatcher for every connection."""
    daemon_threads = True

    def _setup_agent(self, backend: Backend, config: AgentConfig = None, dispatcher: Dispatcher = None):
        self.config = config or AgentConfig()
        self.dispatcher = dispatcher or Dispatcher(backend)
        self.backend = backend

    def handle_error(self, request, client_address):
        # Never let one connection take the accept loop down
        LOG.exception("Unhandled error in connection from %r", client_address)


if hasattr(socketserver, "ThreadingUnixStreamServer"):
    class UnixAgentServer(AgentServerMixin, socketserver.ThreadingUnixStreamServer):
        def __init__(self, socket_path, backend, config=None, dispatcher=None):
            self._setup_agent(backend, config, dispatcher)
            self.socket_path = socket_path
            socketserver.ThreadingUnixStreamServer.__init__(self, socket_path, AgentRequestHandler)

        def server_bind(self):
            super().server_bind()
            # Nobody can connect before server_activate() calls listen()
            os.chmod(self.socket_path, 0o600)

        def server_close(self):
            super().server_close()
            try:
                os.unlink(self.socket_path)
            except FileNotFoundError:
                pass


class TCPAgentServer(AgentServerMixin, socketserver.ThreadingTCPServer):
    """Loopback TCP transport, meant for testing and platforms without AF_UNIX."""
    allow_reuse_address = True

    def __init__(self, address, backend, config=None, dispatcher=None):
        self._setup_agent(backend, config, dispatcher)
        socketserver.ThreadingTCPServer.__init__(self, address, AgentRequestHandler)


def serve_socket(socket_path: str, backend: Backend, config: AgentConfig = None):
    """Create a Unix socket agent server; the caller runs ``serve_forever``."""
    if not hasattr(socketserver, "ThreadingUnixStreamServer"):
        raise TransportError("Unix sockets not supported on this platform")
    server = UnixAgentServer(socket_path, backend, config)
    LOG.info("Listening on %s", socket_path)
    return server
