"""
SSH agent client speaking the same message model over a socket.
"""
import socket
import struct
from typing import List, Optional

from .errors import AgentFailure, ExtensionUnsupported, TransportError, UnexpectedResponse
from .messages import (
    AddIdentity, AddSmartcardKey, Extension, ExtensionFailure,
    ExtensionResponse, Failure, IdentitiesAnswer, Identity, Lock, Message,
    PrivateKey, RemoveAllIdentities, RemoveIdentity, RemoveSmartcardKey,
    RequestIdentities, SignRequest, SignResponse, Success, Unlock,
    decode_response_payload, encode,
)
from .wire import MAX_FRAME_LENGTH, check_frame_length


class AgentClient:
    """
    Synchronous client over a connected stream socket.

    Usable as a context manager; closing the client closes the socket.
    """

    def __init__(self, sock, max_frame_length: int = MAX_FRAME_LENGTH):
        self._sock = sock
        self._max_frame_length = max_frame_length

    @classmethod
    def connect(cls, socket_path: str) -> "AgentClient":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(socket_path)
        except OSError as e:
            sock.close()
            raise TransportError("cannot connect to {}: {}".format(socket_path, e)) from e
        return cls(sock)

    def close(self):
        self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def request(self, message: Message) -> Message:
        """Send one request and return the decoded response, whatever it is."""
        try:
            self._sock.sendall(encode(message))
        except OSError as e:
            raise TransportError("write failed: {}".format(e)) from e
        length = struct.unpack('> I', self._recv_exact(4))[0]
        check_frame_length(length, self._max_frame_length)
        return decode_response_payload(self._recv_exact(length), self._max_frame_length)

    def _recv_exact(self, length: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < length:
            try:
                chunk = self._sock.recv(length - len(buffer))
            except OSError as e:
                raise TransportError("read failed: {}".format(e)) from e
            if not chunk:
                raise TransportError("agent disconnected")
            buffer.extend(chunk)
        return bytes(buffer)

    def _expect(self, message: Message, expected):
        response = self.request(message)
        if isinstance(response, Failure):
            raise AgentFailure("{} failed".format(type(message).__name__))
        if type(response) is not expected:
            raise UnexpectedResponse("expected {}, got {!r}".format(expected.__name__, response))
        return response

    def request_identities(self) -> List[Identity]:
        return list(self._expect(RequestIdentities(), IdentitiesAnswer).identities)

    def sign(self, key_blob: bytes, data: bytes, flags: int = 0) -> bytes:
        """Return the signature blob."""
        return self._expect(SignRequest(key_blob, data, flags), SignResponse).signature

    def add_identity(self, key: PrivateKey, comment: str = '', constraints=None) -> None:
        self._expect(AddIdentity(key, comment, constraints), Success)

    def remove_identity(self, key_blob: bytes) -> None:
        self._expect(RemoveIdentity(key_blob), Success)

    def remove_all_identities(self) -> None:
        self._expect(RemoveAllIdentities(), Success)

    def add_smartcard_key(self, reader_id: str, pin: bytes = b'', constraints=None) -> None:
        self._expect(AddSmartcardKey(reader_id, pin, constraints), Success)

    def remove_smartcard_key(self, reader_id: str, pin: bytes = b'') -> None:
        self._expect(RemoveSmartcardKey(reader_id, pin), Success)

    def lock(self, passphrase: bytes) -> None:
        self._expect(Lock(passphrase), Success)

    def unlock(self, passphrase: bytes) -> None:
        self._expect(Unlock(passphrase), Success)

    def extension(self, name: str, payload: bytes = b'') -> Optional[bytes]:
        """
        Run an extension request.

        Returns:
            None when the agent answers plain success, else the reply payload

        Raises:
            ExtensionUnsupported: the agent does not support the extension
            AgentFailure: the extension failed
        """
        response = self.request(Extension(name, payload))
        if isinstance(response, Success):
            return None
        if isinstance(response, ExtensionResponse):
            return response.payload
        if isinstance(response, ExtensionFailure):
            raise ExtensionUnsupported("extension {} not supported".format(name))
        if isinstance(response, Failure):
            raise AgentFailure("extension {} failed".format(name))
        raise UnexpectedResponse("unexpected reply to extension {}: {!r}".format(name, response))
