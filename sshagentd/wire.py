"""
Primitive encodings of the SSH agent wire format.

Every message travels in a frame: a 4 byte big-endian length followed by
exactly that many bytes of payload. Inside the payload the protocol uses
RFC 4251 data types: byte, uint32, string and mpint.
"""
import struct

from .errors import DecodeError, DecodeErrorKind, ProtocolViolation

# Same limit OpenSSH's ssh-agent applies to a single message
MAX_FRAME_LENGTH = 256 * 1024

LENGTH = struct.Struct('> I')


def frame(payload: bytes) -> bytes:
    """Prefix a payload with its length."""
    return LENGTH.pack(len(payload)) + payload


def check_frame_length(length: int, max_length: int = MAX_FRAME_LENGTH) -> None:
    """
    Validate a declared frame length before any payload byte is read.

    Raises:
        DecodeError: TRUNCATED for an empty frame (no discriminant byte),
            FIELD_TOO_LARGE for a frame over ``max_length``
    """
    if length == 0:
        raise DecodeError(DecodeErrorKind.TRUNCATED, "empty frame")
    if length > max_length:
        raise DecodeError(
            DecodeErrorKind.FIELD_TOO_LARGE,
            "frame length {} exceeds maximum {}".format(length, max_length))


def unframe(data: bytes, max_length: int = MAX_FRAME_LENGTH) -> bytes:
    """
    Strip the length prefix from a complete frame.

    The declared length must describe exactly the bytes that follow it.
    """
    if len(data) < LENGTH.size:
        raise DecodeError(DecodeErrorKind.TRUNCATED, "short length prefix")
    length = LENGTH.unpack_from(data)[0]
    check_frame_length(length, max_length)
    available = len(data) - LENGTH.size
    if available < length:
        raise DecodeError(
            DecodeErrorKind.TRUNCATED,
            "frame declares {} bytes, {} available".format(length, available))
    if available > length:
        raise ProtocolViolation(
            DecodeErrorKind.TRAILING_DATA,
            "{} bytes after end of frame".format(available - length))
    return bytes(data[LENGTH.size:])


def mpint_bytes(value: int) -> bytes:
    """Two's complement, big-endian, minimal length; zero is empty."""
    if value == 0:
        return b''
    length = (value + (value < 0)).bit_length() // 8 + 1
    return value.to_bytes(length, 'big', signed=True)


class Reader:
    """
    Cursor over one payload.

    Never trusts a declared length beyond the bytes actually left.
    """

    def __init__(self, data: bytes, max_field: int = MAX_FRAME_LENGTH):
        self._data = memoryview(bytes(data))
        self._offset = 0
        self._max_field = max_field

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise DecodeError(
                DecodeErrorKind.TRUNCATED,
                "need {} bytes, {} left".format(n, self.remaining))
        chunk = self._data[self._offset:self._offset + n].tobytes()
        self._offset += n
        return chunk

    def read_byte(self) -> int:
        return self.take(1)[0]

    def read_bool(self) -> bool:
        return self.read_byte() != 0

    def read_uint32(self) -> int:
        return LENGTH.unpack(self.take(4))[0]

    def read_string(self) -> bytes:
        length = self.read_uint32()
        if length > self._max_field:
            raise DecodeError(
                DecodeErrorKind.FIELD_TOO_LARGE,
                "string length {} exceeds maximum {}".format(length, self._max_field))
        return self.take(length)

    def read_text(self) -> str:
        # surrogateescape keeps non UTF-8 bytes intact for re-encoding
        return self.read_string().decode('utf-8', 'surrogateescape')

    def read_mpint(self) -> int:
        raw = self.read_string()
        if not raw:
            return 0
        if raw[0] == 0x00 and (len(raw) == 1 or raw[1] < 0x80):
            raise DecodeError(DecodeErrorKind.INVALID_ENCODING, "mpint has superfluous leading zero")
        if raw[0] == 0xff and len(raw) > 1 and raw[1] >= 0x80:
            raise DecodeError(DecodeErrorKind.INVALID_ENCODING, "mpint has superfluous leading 0xff")
        return int.from_bytes(raw, 'big', signed=True)

    def read_rest(self) -> bytes:
        return self.take(self.remaining)

    def finish(self) -> None:
        if self.remaining:
            raise ProtocolViolation(
                DecodeErrorKind.TRAILING_DATA,
                "{} unread bytes after payload".format(self.remaining))


class Writer:
    """Accumulates an encoded payload."""

    def __init__(self):
        self._buffer = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def write_raw(self, data: bytes) -> 'Writer':
        self._buffer.extend(data)
        return self

    def write_byte(self, value: int) -> 'Writer':
        self._buffer.append(value)
        return self

    def write_bool(self, value: bool) -> 'Writer':
        return self.write_byte(1 if value else 0)

    def write_uint32(self, value: int) -> 'Writer':
        self._buffer.extend(LENGTH.pack(value))
        return self

    def write_string(self, value: bytes) -> 'Writer':
        self.write_uint32(len(value))
        self._buffer.extend(value)
        return self

    def write_text(self, value: str) -> 'Writer':
        return self.write_string(value.encode('utf-8', 'surrogateescape'))

    def write_mpint(self, value: int) -> 'Writer':
        return self.write_string(mpint_bytes(value))
