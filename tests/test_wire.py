"""Tests for the wire primitives."""
import pytest

from sshagentd.errors import DecodeError, DecodeErrorKind, ProtocolViolation
from sshagentd.wire import Reader, Writer, frame, mpint_bytes, unframe


@pytest.mark.parametrize("value, encoded", [
    # RFC 4251 section 5 examples
    (0, b"\x00\x00\x00\x00"),
    (0x9a378f9b2e332a7, b"\x00\x00\x00\x08\x09\xa3\x78\xf9\xb2\xe3\x32\xa7"),
    (0x80, b"\x00\x00\x00\x02\x00\x80"),
    (-0x1234, b"\x00\x00\x00\x02\xed\xcc"),
    (-0xdeadbeef, b"\x00\x00\x00\x05\xff\x21\x52\x41\x11"),
])
def test_mpint_rfc4251_examples(value, encoded):
    """mpints match the RFC examples both ways."""
    assert Writer().write_mpint(value).getvalue() == encoded
    assert Reader(encoded).read_mpint() == value


def test_mpint_sign_extension():
    """A leading zero appears only when the high bit is set."""
    assert mpint_bytes(0x7f) == b"\x7f"
    assert mpint_bytes(0xff) == b"\x00\xff"
    assert mpint_bytes(-1) == b"\xff"
    assert mpint_bytes(-128) == b"\x80"
    assert mpint_bytes(-129) == b"\xff\x7f"


@pytest.mark.parametrize("raw", [b"\x00", b"\x00\x01", b"\xff\x80"])
def test_non_canonical_mpint_rejected(raw):
    """Padding bytes that change nothing are refused."""
    data = Writer().write_string(raw).getvalue()
    with pytest.raises(DecodeError) as info:
        Reader(data).read_mpint()
    assert info.value.kind is DecodeErrorKind.INVALID_ENCODING


def test_string_length_beyond_data_is_truncated():
    """A declared length is never trusted past the available bytes."""
    reader = Reader(b"\x00\x00\x00\x10abc")
    with pytest.raises(DecodeError) as info:
        reader.read_string()
    assert info.value.kind is DecodeErrorKind.TRUNCATED


def test_string_length_beyond_maximum():
    """Strings longer than the configured maximum are rejected up front."""
    reader = Reader(b"\x00\x00\x01\x00" + b"x" * 256, max_field=16)
    with pytest.raises(DecodeError) as info:
        reader.read_string()
    assert info.value.kind is DecodeErrorKind.FIELD_TOO_LARGE


def test_empty_string_allowed():
    """Zero-length strings are legal."""
    reader = Reader(b"\x00\x00\x00\x00")
    assert reader.read_string() == b""
    reader.finish()


def test_finish_reports_trailing_bytes():
    """Unread bytes after a payload are a protocol violation."""
    reader = Reader(b"\x01\x02")
    reader.read_byte()
    with pytest.raises(ProtocolViolation) as info:
        reader.finish()
    assert info.value.kind is DecodeErrorKind.TRAILING_DATA


def test_text_keeps_invalid_utf8():
    """Non UTF-8 text survives decode and re-encode byte for byte."""
    data = Writer().write_string(b"user\xff@host").getvalue()
    text = Reader(data).read_text()
    assert Writer().write_text(text).getvalue() == data


def test_frame_and_unframe():
    """Frames carry a big-endian length prefix."""
    assert frame(b"\x0b") == b"\x00\x00\x00\x01\x0b"
    assert unframe(b"\x00\x00\x00\x01\x0b") == b"\x0b"


@pytest.mark.parametrize("data, kind", [
    (b"\x00\x00", DecodeErrorKind.TRUNCATED),
    (b"\x00\x00\x00\x00", DecodeErrorKind.TRUNCATED),
    (b"\x00\x00\x00\x05\x0b", DecodeErrorKind.TRUNCATED),
    (b"\x00\x00\x00\x01\x0b\x00", DecodeErrorKind.TRAILING_DATA),
    (b"\x7f\xff\xff\xff\x0b", DecodeErrorKind.FIELD_TOO_LARGE),
])
def test_unframe_errors(data, kind):
    """Frame length must match the bytes that follow and stay bounded."""
    with pytest.raises(DecodeError) as info:
        unframe(data)
    assert info.value.kind is kind


def test_unframe_custom_maximum():
    """The maximum frame length is configurable."""
    data = frame(b"\x1b" + b"x" * 99)
    assert unframe(data, max_length=100)
    with pytest.raises(DecodeError) as info:
        unframe(data, max_length=99)
    assert info.value.kind is DecodeErrorKind.FIELD_TOO_LARGE
