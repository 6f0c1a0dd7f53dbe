"""
Message model of the SSH agent protocol.

Requests and responses are closed sets of frozen dataclasses. Each variant
knows its discriminant byte and how to read and write its body; anything
with a discriminant we do not know becomes an ``UnknownMessage`` so the
stream stays in sync and the agent can answer with a failure.

Reference: draft-miller-ssh-agent, OpenSSH PROTOCOL.agent
"""
from dataclasses import dataclass, field
from typing import Callable, ClassVar, Dict, Optional, Tuple, Union

from .errors import DecodeError, DecodeErrorKind
from .wire import MAX_FRAME_LENGTH, Reader, Writer, frame, unframe

# Requests (client -> agent)
SSH_AGENTC_REQUEST_IDENTITIES = 11
SSH_AGENTC_SIGN_REQUEST = 13
SSH_AGENTC_ADD_IDENTITY = 17
SSH_AGENTC_REMOVE_IDENTITY = 18
SSH_AGENTC_REMOVE_ALL_IDENTITIES = 19
SSH_AGENTC_ADD_SMARTCARD_KEY = 20
SSH_AGENTC_REMOVE_SMARTCARD_KEY = 21
SSH_AGENTC_LOCK = 22
SSH_AGENTC_UNLOCK = 23
SSH_AGENTC_ADD_ID_CONSTRAINED = 25
SSH_AGENTC_ADD_SMARTCARD_KEY_CONSTRAINED = 26
SSH_AGENTC_EXTENSION = 27

# Responses (agent -> client)
SSH_AGENT_FAILURE = 5
SSH_AGENT_SUCCESS = 6
SSH_AGENT_IDENTITIES_ANSWER = 12
SSH_AGENT_SIGN_RESPONSE = 14
SSH_AGENT_EXTENSION_FAILURE = 28
SSH_AGENT_EXTENSION_RESPONSE = 29

# Key constraints
SSH_AGENT_CONSTRAIN_LIFETIME = 1
SSH_AGENT_CONSTRAIN_CONFIRM = 2
SSH_AGENT_CONSTRAIN_EXTENSION = 255

# Private key field layout per algorithm, as sent by ssh-add:
# 's' string, 'm' mpint, 'b' byte
_ECDSA_CURVES = ('nistp256', 'nistp384', 'nistp521')
KEY_LAYOUTS = {
    'ssh-rsa': 'mmmmmm',                # n e d iqmp p q
    'ssh-dss': 'mmmmm',                 # p q g y x
    'ssh-ed25519': 'ss',                # public, private || public
    'sk-ssh-ed25519@openssh.com': 'ssbss',
    'ssh-rsa-cert-v01@openssh.com': 'smmmm',
    'ssh-dss-cert-v01@openssh.com': 'sm',
    'ssh-ed25519-cert-v01@openssh.com': 'sss',
}
for _curve in _ECDSA_CURVES:
    KEY_LAYOUTS['ecdsa-sha2-' + _curve] = 'ssm'     # curve, Q, d
    KEY_LAYOUTS['ecdsa-sha2-{}-cert-v01@openssh.com'.format(_curve)] = 'sm'
KEY_LAYOUTS['sk-ecdsa-sha2-nistp256@openssh.com'] = 'sssbss'
del _curve


# -- sub-structures ---------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    key_blob: bytes
    comment: str = ''


@dataclass(frozen=True)
class PrivateKey:
    """Private key as carried by add-identity: algorithm plus its fields."""
    algorithm: str
    fields: Tuple[Union[bytes, int], ...] = field(repr=False)

    def encode(self, writer: Writer) -> None:
        layout = KEY_LAYOUTS.get(self.algorithm)
        if layout is None or len(layout) != len(self.fields):
            raise ValueError("no field layout for {} with {} fields".format(
                self.algorithm, len(self.fields)))
        writer.write_text(self.algorithm)
        for kind, value in zip(layout, self.fields):
            if kind == 's':
                writer.write_string(value)
            elif kind == 'm':
                writer.write_mpint(value)
            else:
                writer.write_byte(value)

    @classmethod
    def decode(cls, reader: Reader) -> 'PrivateKey':
        algorithm = reader.read_text()
        layout = KEY_LAYOUTS.get(algorithm)
        if layout is None:
            raise DecodeError(DecodeErrorKind.INVALID_DISCRIMINANT,
                              "unknown key algorithm {!r}".format(algorithm))
        readers = {'s': reader.read_string, 'm': reader.read_mpint, 'b': reader.read_byte}
        return cls(algorithm, tuple(readers[kind]() for kind in layout))


@dataclass(frozen=True)
class Lifetime:
    seconds: int
    KIND: ClassVar[int] = SSH_AGENT_CONSTRAIN_LIFETIME

    def encode(self, writer: Writer) -> None:
        writer.write_byte(self.KIND).write_uint32(self.seconds)


@dataclass(frozen=True)
class Confirm:
    KIND: ClassVar[int] = SSH_AGENT_CONSTRAIN_CONFIRM

    def encode(self, writer: Writer) -> None:
        writer.write_byte(self.KIND)


@dataclass(frozen=True)
class ExtensionConstraint:
    name: str
    data: bytes = b''
    KIND: ClassVar[int] = SSH_AGENT_CONSTRAIN_EXTENSION

    def encode(self, writer: Writer) -> None:
        writer.write_byte(self.KIND).write_text(self.name).write_string(self.data)


@dataclass(frozen=True)
class UnknownConstraint:
    """
    Constraint of a kind we cannot parse.

    Its length is unknowable, so it holds everything up to the end of the
    payload and is always the last constraint.
    """
    kind: int
    data: bytes = b''

    def encode(self, writer: Writer) -> None:
        writer.write_byte(self.kind).write_raw(self.data)


Constraint = Union[Lifetime, Confirm, ExtensionConstraint, UnknownConstraint]


def _read_constraints(reader: Reader) -> Tuple[Constraint, ...]:
    constraints = []
    while reader.remaining:
        kind = reader.read_byte()
        if kind == SSH_AGENT_CONSTRAIN_LIFETIME:
            constraints.append(Lifetime(reader.read_uint32()))
        elif kind == SSH_AGENT_CONSTRAIN_CONFIRM:
            constraints.append(Confirm())
        elif kind == SSH_AGENT_CONSTRAIN_EXTENSION:
            constraints.append(ExtensionConstraint(reader.read_text(), reader.read_string()))
        else:
            constraints.append(UnknownConstraint(kind, reader.read_rest()))
    return tuple(constraints)


def _write_constraints(writer: Writer, constraints) -> None:
    for constraint in constraints:
        constraint.encode(writer)


# -- message base -----------------------------------------------------------

class Message:
    """Common behaviour of all protocol messages."""
    TYPE: ClassVar[int]

    @property
    def kind(self) -> int:
        return self.TYPE

    def encode_body(self, writer: Writer) -> None:
        pass

    @classmethod
    def decode_body(cls, reader: Reader):
        return cls()


# -- requests ---------------------------------------------------------------

@dataclass(frozen=True)
class RequestIdentities(Message):
    TYPE: ClassVar[int] = SSH_AGENTC_REQUEST_IDENTITIES


@dataclass(frozen=True)
class SignRequest(Message):
    key_blob: bytes
    data: bytes
    flags: int = 0
    TYPE: ClassVar[int] = SSH_AGENTC_SIGN_REQUEST

    def encode_body(self, writer):
        writer.write_string(self.key_blob).write_string(self.data).write_uint32(self.flags)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_string(), reader.read_string(), reader.read_uint32())


@dataclass(frozen=True)
class AddIdentity(Message):
    """
    Add a private key.

    ``constraints`` of ``None`` encodes as SSH_AGENTC_ADD_IDENTITY; a tuple,
    even an empty one, encodes as SSH_AGENTC_ADD_ID_CONSTRAINED.
    """
    key: PrivateKey
    comment: str = ''
    constraints: Optional[Tuple[Constraint, ...]] = None
    TYPE: ClassVar[int] = SSH_AGENTC_ADD_IDENTITY

    @property
    def kind(self):
        if self.constraints is None:
            return SSH_AGENTC_ADD_IDENTITY
        return SSH_AGENTC_ADD_ID_CONSTRAINED

    def encode_body(self, writer):
        self.key.encode(writer)
        writer.write_text(self.comment)
        _write_constraints(writer, self.constraints or ())

    @classmethod
    def decode_body(cls, reader, constrained=False):
        key = PrivateKey.decode(reader)
        comment = reader.read_text()
        constraints = _read_constraints(reader) if constrained else None
        return cls(key, comment, constraints)


@dataclass(frozen=True)
class RemoveIdentity(Message):
    key_blob: bytes
    TYPE: ClassVar[int] = SSH_AGENTC_REMOVE_IDENTITY

    def encode_body(self, writer):
        writer.write_string(self.key_blob)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_string())


@dataclass(frozen=True)
class RemoveAllIdentities(Message):
    TYPE: ClassVar[int] = SSH_AGENTC_REMOVE_ALL_IDENTITIES


@dataclass(frozen=True)
class AddSmartcardKey(Message):
    """Load keys from a token; same ``constraints`` rule as AddIdentity."""
    reader_id: str
    pin: bytes = field(default=b'', repr=False)
    constraints: Optional[Tuple[Constraint, ...]] = None
    TYPE: ClassVar[int] = SSH_AGENTC_ADD_SMARTCARD_KEY

    @property
    def kind(self):
        if self.constraints is None:
            return SSH_AGENTC_ADD_SMARTCARD_KEY
        return SSH_AGENTC_ADD_SMARTCARD_KEY_CONSTRAINED

    def encode_body(self, writer):
        writer.write_text(self.reader_id).write_string(self.pin)
        _write_constraints(writer, self.constraints or ())

    @classmethod
    def decode_body(cls, reader, constrained=False):
        reader_id = reader.read_text()
        pin = reader.read_string()
        constraints = _read_constraints(reader) if constrained else None
        return cls(reader_id, pin, constraints)


@dataclass(frozen=True)
class RemoveSmartcardKey(Message):
    reader_id: str
    pin: bytes = field(default=b'', repr=False)
    TYPE: ClassVar[int] = SSH_AGENTC_REMOVE_SMARTCARD_KEY

    def encode_body(self, writer):
        writer.write_text(self.reader_id).write_string(self.pin)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_text(), reader.read_string())


@dataclass(frozen=True)
class Lock(Message):
    passphrase: bytes = field(repr=False)
    TYPE: ClassVar[int] = SSH_AGENTC_LOCK

    def encode_body(self, writer):
        writer.write_string(self.passphrase)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_string())


@dataclass(frozen=True)
class Unlock(Lock):
    TYPE: ClassVar[int] = SSH_AGENTC_UNLOCK


@dataclass(frozen=True)
class Extension(Message):
    """Vendor extension request; the payload is opaque to the core."""
    name: str
    payload: bytes = b''
    TYPE: ClassVar[int] = SSH_AGENTC_EXTENSION

    def encode_body(self, writer):
        writer.write_text(self.name).write_raw(self.payload)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_text(), reader.read_rest())


# -- responses --------------------------------------------------------------

@dataclass(frozen=True)
class Failure(Message):
    TYPE: ClassVar[int] = SSH_AGENT_FAILURE


@dataclass(frozen=True)
class Success(Message):
    TYPE: ClassVar[int] = SSH_AGENT_SUCCESS


@dataclass(frozen=True)
class IdentitiesAnswer(Message):
    identities: Tuple[Identity, ...] = ()
    TYPE: ClassVar[int] = SSH_AGENT_IDENTITIES_ANSWER

    def encode_body(self, writer):
        writer.write_uint32(len(self.identities))
        for identity in self.identities:
            writer.write_string(identity.key_blob).write_text(identity.comment)

    @classmethod
    def decode_body(cls, reader):
        count = reader.read_uint32()
        # every identity takes at least two length fields
        if count * 8 > reader.remaining:
            raise DecodeError(DecodeErrorKind.TRUNCATED,
                              "{} identities cannot fit in {} bytes".format(count, reader.remaining))
        return cls(tuple(Identity(reader.read_string(), reader.read_text()) for _ in range(count)))


@dataclass(frozen=True)
class SignResponse(Message):
    signature: bytes
    TYPE: ClassVar[int] = SSH_AGENT_SIGN_RESPONSE

    def encode_body(self, writer):
        writer.write_string(self.signature)

    @classmethod
    def decode_body(cls, reader):
        return cls(reader.read_string())


@dataclass(frozen=True)
class ExtensionFailure(Message):
    TYPE: ClassVar[int] = SSH_AGENT_EXTENSION_FAILURE


@dataclass(frozen=True)
class ExtensionResponse(Extension):
    TYPE: ClassVar[int] = SSH_AGENT_EXTENSION_RESPONSE


@dataclass(frozen=True)
class UnknownMessage(Message):
    """Any discriminant this side of the protocol does not understand."""
    type_code: int
    payload: bytes = b''

    @property
    def kind(self):
        return self.type_code

    def encode_body(self, writer):
        writer.write_raw(self.payload)


Request = Union[RequestIdentities, SignRequest, AddIdentity, RemoveIdentity,
                RemoveAllIdentities, AddSmartcardKey, RemoveSmartcardKey,
                Lock, Unlock, Extension, UnknownMessage]
Response = Union[Failure, Success, IdentitiesAnswer, SignResponse,
                 ExtensionFailure, ExtensionResponse, UnknownMessage]

_REQUEST_DECODERS: Dict[int, Callable[[Reader], Message]] = {
    SSH_AGENTC_REQUEST_IDENTITIES: RequestIdentities.decode_body,
    SSH_AGENTC_SIGN_REQUEST: SignRequest.decode_body,
    SSH_AGENTC_ADD_IDENTITY: AddIdentity.decode_body,
    SSH_AGENTC_ADD_ID_CONSTRAINED: lambda r: AddIdentity.decode_body(r, constrained=True),
    SSH_AGENTC_REMOVE_IDENTITY: RemoveIdentity.decode_body,
    SSH_AGENTC_REMOVE_ALL_IDENTITIES: RemoveAllIdentities.decode_body,
    SSH_AGENTC_ADD_SMARTCARD_KEY: AddSmartcardKey.decode_body,
    SSH_AGENTC_ADD_SMARTCARD_KEY_CONSTRAINED: lambda r: AddSmartcardKey.decode_body(r, constrained=True),
    SSH_AGENTC_REMOVE_SMARTCARD_KEY: RemoveSmartcardKey.decode_body,
    SSH_AGENTC_LOCK: Lock.decode_body,
    SSH_AGENTC_UNLOCK: Unlock.decode_body,
    SSH_AGENTC_EXTENSION: Extension.decode_body,
}

_RESPONSE_DECODERS: Dict[int, Callable[[Reader], Message]] = {
    SSH_AGENT_FAILURE: Failure.decode_body,
    SSH_AGENT_SUCCESS: Success.decode_body,
    SSH_AGENT_IDENTITIES_ANSWER: IdentitiesAnswer.decode_body,
    SSH_AGENT_SIGN_RESPONSE: SignResponse.decode_body,
    SSH_AGENT_EXTENSION_FAILURE: ExtensionFailure.decode_body,
    SSH_AGENT_EXTENSION_RESPONSE: ExtensionResponse.decode_body,
}


def encode_payload(message: Message) -> bytes:
    """Encode a message without the frame length prefix."""
    writer = Writer().write_byte(message.kind)
    message.encode_body(writer)
    return writer.getvalue()


def encode(message: Message) -> bytes:
    """Encode a message into a complete frame."""
    return frame(encode_payload(message))


def _decode_payload(payload, decoders, max_field):
    reader = Reader(payload, max_field)
    kind = reader.read_byte()
    decoder = decoders.get(kind)
    if decoder is None:
        return UnknownMessage(kind, reader.read_rest())
    message = decoder(reader)
    reader.finish()
    return message


def decode_request_payload(payload: bytes, max_field: int = MAX_FRAME_LENGTH) -> Request:
    return _decode_payload(payload, _REQUEST_DECODERS, max_field)


def decode_response_payload(payload: bytes, max_field: int = MAX_FRAME_LENGTH) -> Response:
    return _decode_payload(payload, _RESPONSE_DECODERS, max_field)


def decode_request(data: bytes, max_length: int = MAX_FRAME_LENGTH) -> Request:
    """
    Decode one complete request frame.

    Raises:
        DecodeError: the frame or its payload is malformed
    """
    return decode_request_payload(unframe(data, max_length), max_length)


def decode_response(data: bytes, max_length: int = MAX_FRAME_LENGTH) -> Response:
    """Decode one complete response frame."""
    return decode_response_payload(unframe(data, max_length), max_length)
