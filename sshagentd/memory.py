"""
In-memory key store backend.

Keeps private keys as ``cryptography`` objects for the lifetime of the
process. Not thread safe: it relies on the dispatcher serialising calls.
"""
import hashlib
import hmac
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

from cryptography.hazmat.primitives import serialization

from .backend import Backend
from .errors import BackendFailure
from .keys import fingerprint, load_private_key, public_key_blob, sign_data, signature_algorithm
from .messages import Confirm, Identity, Lifetime

LOG = logging.getLogger(__name__)

LOCK_HASH_ROUNDS = 10000


class _StoredKey:
    __slots__ = ('key', 'comment', 'expires', 'confirm')

    def __init__(self, key, comment, expires, confirm):
        self.key = key
        self.comment = comment
        self.expires = expires
        self.confirm = confirm


class MemoryBackend(Backend):
    """
    Args:
        confirm: called as ``confirm(comment, fingerprint)`` before using a
            key added with the confirm constraint; a falsy result refuses
            the signature. Without it such keys never sign.
        clock: monotonic time source, seconds
    """

    def __init__(self, confirm: Optional[Callable[[str, str], bool]] = None, clock=time.monotonic):
        self._keys = {}
        self._confirm = confirm
        self._clock = clock
        self._lock_salt = None
        self._lock_hash = None

    @property
    def locked(self) -> bool:
        return self._lock_hash is not None

    def __len__(self):
        self._expire()
        return len(self._keys)

    def _expire(self):
        now = self._clock()
        for blob, stored in list(self._keys.items()):
            if stored.expires is not None and stored.expires <= now:
                LOG.info("Key %s (%s) expired", fingerprint(blob), stored.comment)
                del self._keys[blob]

    def _require_unlocked(self):
        if self.locked:
            raise BackendFailure("agent is locked")

    def list_identities(self):
        # A locked agent answers with an empty list, as ssh-agent does
        if self.locked:
            return []
        self._expire()
        return [Identity(blob, stored.comment) for blob, stored in self._keys.items()]

    def sign(self, request):
        self._require_unlocked()
        self._expire()
        stored = self._keys.get(request.key_blob)
        if stored is None:
            raise BackendFailure("key not found: {}".format(fingerprint(request.key_blob)))
        if stored.confirm:
            if self._confirm is None or not self._confirm(stored.comment, fingerprint(request.key_blob)):
                raise BackendFailure("confirmation refused for {}".format(fingerprint(request.key_blob)))
        algorithm = signature_algorithm(request.key_blob, request.flags)
        return sign_data(stored.key, algorithm, request.data)

    def add_key(self, key, comment: str = '', lifetime: Optional[int] = None, confirm: bool = False) -> bytes:
        """
        Store a ``cryptography`` private key, replacing any key with the same
        public blob.

        Returns:
            The public key blob
        """
        self._require_unlocked()
        blob = public_key_blob(key)
        expires = None if lifetime is None else self._clock() + lifetime
        self._keys[blob] = _StoredKey(key, comment, expires, confirm)
        return blob

    def load_key_file(self, path, password: Optional[bytes] = None, comment: Optional[str] = None) -> bytes:
        """Add an OpenSSH format private key file."""
        path = Path(path)
        try:
            key = serialization.load_ssh_private_key(path.read_bytes(), password)
        except (ValueError, TypeError) as e:
            raise BackendFailure("cannot load {}: {}".format(path, e)) from e
        return self.add_key(key, comment if comment is not None else str(path))

    def add_identity(self, request):
        self._require_unlocked()
        lifetime = None
        confirm = False
        for constraint in request.constraints or ():
            if isinstance(constraint, Lifetime):
                lifetime = constraint.seconds
            elif isinstance(constraint, Confirm):
                confirm = True
            else:
                raise BackendFailure("unsupported key constraint {!r}".format(constraint))
        self.add_key(load_private_key(request.key), request.comment, lifetime, confirm)

    def remove_identity(self, key_blob):
        self._require_unlocked()
        if self._keys.pop(bytes(key_blob), None) is None:
            raise BackendFailure("key not found: {}".format(fingerprint(key_blob)))

    def remove_all_identities(self):
        self._require_unlocked()
        self._keys.clear()

    def _hash_passphrase(self, passphrase, salt):
        return hashlib.pbkdf2_hmac('sha256', passphrase, salt, LOCK_HASH_ROUNDS)

    def lock(self, passphrase):
        self._require_unlocked()
        self._lock_salt = os.urandom(16)
        self._lock_hash = self._hash_passphrase(passphrase, self._lock_salt)

    def unlock(self, passphrase):
        if not self.locked:
            raise BackendFailure("agent is not locked")
        if not hmac.compare_digest(self._hash_passphrase(passphrase, self._lock_salt), self._lock_hash):
            raise BackendFailure("incorrect passphrase")
        self._lock_salt = None
        self._lock_hash = None
