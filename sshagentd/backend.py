"""
Capability interface an agent implementation plugs into the dispatcher.

Only ``list_identities`` and ``sign`` are required. Every other capability
is optional: the default raises ``UnsupportedOperation`` so the dispatcher
can tell "not implemented" apart from "failed this time" (``BackendFailure``)
even though both end up as the same failure frame on the wire.
"""
import abc
from typing import Optional, Sequence

from .errors import UnsupportedOperation
from .messages import AddIdentity, AddSmartcardKey, Identity, SignRequest

OPTIONAL_CAPABILITIES = (
    'add_identity',
    'remove_identity',
    'remove_all_identities',
    'add_smartcard_key',
    'remove_smartcard_key',
    'lock',
    'unlock',
    'handle_extension',
)


class Backend(abc.ABC):
    # Set to True when every method may run concurrently from several
    # connection threads; otherwise calls are serialised by the server.
    thread_safe = False

    # Extension names answered by handle_extension (reported by "query")
    extensions: Sequence[str] = ()

    @abc.abstractmethod
    def list_identities(self) -> Sequence[Identity]:
        """Return the public keys the agent offers, in order."""

    @abc.abstractmethod
    def sign(self, request: SignRequest) -> bytes:
        """
        Sign ``request.data`` with the key ``request.key_blob``.

        Returns:
            Signature blob (string algorithm, string signature)

        Raises:
            BackendFailure: unknown key, locked agent, refused confirmation...
        """

    def add_identity(self, request: AddIdentity) -> None:
        raise UnsupportedOperation('add_identity')

    def remove_identity(self, key_blob: bytes) -> None:
        raise UnsupportedOperation('remove_identity')

    def remove_all_identities(self) -> None:
        raise UnsupportedOperation('remove_all_identities')

    def add_smartcard_key(self, request: AddSmartcardKey) -> None:
        raise UnsupportedOperation('add_smartcard_key')

    def remove_smartcard_key(self, reader_id: str, pin: bytes) -> None:
        raise UnsupportedOperation('remove_smartcard_key')

    def lock(self, passphrase: bytes) -> None:
        raise UnsupportedOperation('lock')

    def unlock(self, passphrase: bytes) -> None:
        raise UnsupportedOperation('unlock')

    def handle_extension(self, name: str, payload: bytes) -> Optional[bytes]:
        """
        Handle a vendor extension.

        Returns:
            Reply payload for an extension response, or None for plain success

        Raises:
            UnsupportedOperation: this backend does not speak ``name``
        """
        raise UnsupportedOperation('handle_extension')

    def supports(self, capability: str) -> bool:
        """Tell whether an optional capability is overridden by this backend."""
        if capability not in OPTIONAL_CAPABILITIES:
            return hasattr(self, capability)
        return getattr(type(self), capability) is not getattr(Backend, capability)
