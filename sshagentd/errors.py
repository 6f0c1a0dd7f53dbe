"""
Error taxonomy for the agent protocol core.

None of these errors is allowed to cross the wire as text: the dispatcher
maps all of them to a failure frame and only the log keeps the detail.
"""
import enum


class AgentError(Exception):
    """Base class for every error raised by sshagentd."""


class DecodeErrorKind(enum.Enum):
    TRUNCATED = "truncated"
    TRAILING_DATA = "trailing_data"
    INVALID_DISCRIMINANT = "invalid_discriminant"
    FIELD_TOO_LARGE = "field_too_large"
    INVALID_ENCODING = "invalid_encoding"


class DecodeError(AgentError):
    """A frame or payload could not be decoded."""

    def __init__(self, kind: DecodeErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

    def __repr__(self):
        return "{}({}, {!r})".format(type(self).__name__, self.kind.name, str(self))


class ProtocolViolation(DecodeError):
    """Payload decoded fine but broke a framing rule (e.g. trailing bytes)."""


class UnsupportedOperation(AgentError):
    """The backend does not implement the requested capability."""

    def __init__(self, capability: str):
        super().__init__("unsupported capability: {}".format(capability))
        self.capability = capability


class BackendFailure(AgentError):
    """A capability was invoked but failed this time."""


class InvalidSignFlags(BackendFailure):
    """Sign flags do not match the key's algorithm family."""


class TransportError(AgentError):
    """Reading from or writing to the stream failed; the connection is done."""


class AgentFailure(AgentError):
    """The agent answered a request with a failure frame."""


class UnexpectedResponse(AgentError):
    """The agent answered with a message that does not fit the request."""


class ExtensionUnsupported(AgentFailure):
    """The agent answered an extension request with an extension failure."""
