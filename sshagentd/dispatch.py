"""
Protocol dispatcher: one decoded request in, one response out.

The dispatcher keeps no state between calls; lock state and keys live in
the backend. Every failure becomes a wire-legal response here, and the
detail goes to the log only.
"""
import contextlib
import logging
import struct
import threading

from .backend import Backend
from .errors import BackendFailure, DecodeError, UnsupportedOperation
from .keys import fingerprint, flag_names, signature_algorithm
from .logging_utils import log_event
from .messages import (
    AddIdentity, AddSmartcardKey, Extension, ExtensionFailure,
    ExtensionResponse, Failure, IdentitiesAnswer, Identity, Lock, Message,
    RemoveAllIdentities, RemoveIdentity, RemoveSmartcardKey, RequestIdentities,
    SignRequest, SignResponse, Success, Unlock, encode,
)
from .wire import Writer

LOG = logging.getLogger(__name__)

QUERY_EXTENSION = "query"

FAILURE_FRAME = encode(Failure())


class Dispatcher:
    """
    Route requests to a backend.

    Args:
        backend: the capability implementation
        lock: context manager held around every backend call. Defaults to a
            new ``threading.Lock`` unless the backend declares itself
            thread safe.
    """

    def __init__(self, backend: Backend, lock=None):
        self.backend = backend
        if lock is None:
            lock = contextlib.nullcontext() if backend.thread_safe else threading.Lock()
        self.lock = lock
        self._handlers = {
            RequestIdentities: self._request_identities,
            SignRequest: self._sign,
            AddIdentity: self._add_identity,
            RemoveIdentity: self._remove_identity,
            RemoveAllIdentities: self._remove_all_identities,
            AddSmartcardKey: self._add_smartcard_key,
            RemoveSmartcardKey: self._remove_smartcard_key,
            Lock: self._lock,
            Unlock: self._unlock,
            Extension: self._extension,
        }

    def handle(self, request: Message) -> Message:
        """Answer one request. Never raises for backend or protocol errors."""
        handler = self._handlers.get(type(request))
        if handler is None:
            log_event(LOG, "unsupported_request", level=logging.WARNING, type=request.kind)
            return Failure()

        name = type(request).__name__
        try:
            return handler(request)
        except UnsupportedOperation as e:
            log_event(LOG, "unsupported_operation", level=logging.INFO,
                      request=name, capability=e.capability)
        except BackendFailure as e:
            log_event(LOG, "backend_failure", request=name, error=str(e))
        except Exception:
            LOG.exception("Backend raised while handling %s", name)
        return Failure()

    def respond(self, request: Message) -> bytes:
        """
        Answer one request with a complete response frame.

        A response holding values the wire cannot carry, such as a comment
        that is not valid UTF-8, becomes a failure frame.
        """
        response = self.handle(request)
        try:
            return encode(response)
        except (ValueError, TypeError, AttributeError, OverflowError, struct.error) as e:
            log_event(LOG, "encode_error", request=type(request).__name__,
                      response=type(response).__name__, error=str(e))
            return FAILURE_FRAME

    def handle_decode_error(self, error: DecodeError) -> Message:
        """Response for a frame that could not be decoded."""
        log_event(LOG, "decode_error", level=logging.WARNING,
                  kind=error.kind.value, error=str(error))
        return Failure()

    def _call(self, method, *args):
        with self.lock:
            return method(*args)

    def _request_identities(self, request):
        identities = tuple(
            Identity(bytes(identity.key_blob), identity.comment)
            for identity in self._call(self.backend.list_identities))
        LOG.debug("Agent: %d identities available", len(identities))
        return IdentitiesAnswer(identities)

    def _sign(self, request):
        algorithm = signature_algorithm(request.key_blob, request.flags)
        flags = flag_names(request.flags)
        LOG.info("Sign: %s key %s, %d bytes%s", algorithm,
                 fingerprint(request.key_blob), len(request.data),
                 " ({})".format(",".join(flags)) if flags else "")
        signature = self._call(self.backend.sign, request)
        return SignResponse(_wire_bytes(signature, "signature"))

    def _add_identity(self, request):
        self._call(self.backend.add_identity, request)
        LOG.info("Added %s key (%s)", request.key.algorithm, request.comment)
        return Success()

    def _remove_identity(self, request):
        self._call(self.backend.remove_identity, request.key_blob)
        LOG.info("Removed key %s", fingerprint(request.key_blob))
        return Success()

    def _remove_all_identities(self, request):
        self._call(self.backend.remove_all_identities)
        LOG.info("Removed all identities")
        return Success()

    def _add_smartcard_key(self, request):
        self._call(self.backend.add_smartcard_key, request)
        LOG.info("Added smartcard keys from %s", request.reader_id)
        return Success()

    def _remove_smartcard_key(self, request):
        self._call(self.backend.remove_smartcard_key, request.reader_id, request.pin)
        LOG.info("Removed smartcard keys from %s", request.reader_id)
        return Success()

    def _lock(self, request):
        self._call(self.backend.lock, request.passphrase)
        LOG.info("Agent locked")
        return Success()

    def _unlock(self, request):
        self._call(self.backend.unlock, request.passphrase)
        LOG.info("Agent unlocked")
        return Success()

    def _extension(self, request):
        try:
            reply = self._call(self.backend.handle_extension, request.name, request.payload)
        except UnsupportedOperation:
            if request.name == QUERY_EXTENSION:
                return self._query()
            LOG.info("Extension %s not supported", request.name)
            return ExtensionFailure()
        if reply is None:
            return Success()
        return ExtensionResponse(request.name, _wire_bytes(reply, "extension reply"))

    def _query(self):
        writer = Writer()
        for name in (QUERY_EXTENSION,) + tuple(self.backend.extensions):
            writer.write_text(name)
        return ExtensionResponse(QUERY_EXTENSION, writer.getvalue())


def _wire_bytes(value, what: str) -> bytes:
    # bytes(int) would silently build a zero-filled buffer
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise BackendFailure("{} must be bytes, got {}".format(what, type(value).__name__))
    return bytes(value)
