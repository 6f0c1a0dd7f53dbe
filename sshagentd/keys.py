"""
Key blob inspection, sign flag validation and conversions between wire
key formats and ``cryptography`` key objects.
"""
import base64
import hashlib
from typing import Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa, utils

from .errors import BackendFailure, DecodeError, InvalidSignFlags
from .messages import PrivateKey
from .wire import Reader, Writer

SSH_AGENT_RSA_SHA2_256 = 0x02
SSH_AGENT_RSA_SHA2_512 = 0x04
KNOWN_SIGN_FLAGS = SSH_AGENT_RSA_SHA2_256 | SSH_AGENT_RSA_SHA2_512

CERT_SUFFIX = '-cert-v01@openssh.com'

SigningKey = Union[ed25519.Ed25519PrivateKey, rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

_CURVES = {
    'nistp256': (ec.SECP256R1, hashes.SHA256),
    'nistp384': (ec.SECP384R1, hashes.SHA384),
    'nistp521': (ec.SECP521R1, hashes.SHA512),
}
_CURVE_NAMES = {curve.name: name for name, (curve, _) in _CURVES.items()}

_RSA_HASHES = {
    'ssh-rsa': hashes.SHA1,
    'rsa-sha2-256': hashes.SHA256,
    'rsa-sha2-512': hashes.SHA512,
}


def key_algorithm(key_blob: bytes) -> str:
    """Return the algorithm name every public key blob starts with."""
    return Reader(key_blob).read_text()


def base_algorithm(algorithm: str) -> str:
    if algorithm.endswith(CERT_SUFFIX):
        return algorithm[:-len(CERT_SUFFIX)]
    return algorithm


def key_family(algorithm: str) -> str:
    """Map a key algorithm (certificates included) to its family."""
    base = base_algorithm(algorithm)
    if base == 'ssh-rsa':
        return 'rsa'
    if base == 'ssh-dss':
        return 'dsa'
    if base == 'ssh-ed25519':
        return 'ed25519'
    if base.startswith('ecdsa-sha2-'):
        return 'ecdsa'
    if base.startswith('sk-ssh-ed25519'):
        return 'sk-ed25519'
    if base.startswith('sk-ecdsa-sha2-'):
        return 'sk-ecdsa'
    return 'unknown'


def signature_algorithm(key_blob: bytes, flags: int) -> str:
    """
    Validate sign flags against the key and pick the signature algorithm.

    Raises:
        InvalidSignFlags: unknown flag bits, or RSA flags on a non-RSA key
    """
    try:
        algorithm = key_algorithm(key_blob)
    except DecodeError as e:
        raise InvalidSignFlags("unreadable key blob: {}".format(e)) from e

    if flags & ~KNOWN_SIGN_FLAGS:
        raise InvalidSignFlags("unknown sign flags 0x{:08x}".format(flags))

    if key_family(algorithm) == 'rsa':
        # OpenSSH prefers SHA-256 when both are requested
        if flags & SSH_AGENT_RSA_SHA2_256:
            return 'rsa-sha2-256'
        if flags & SSH_AGENT_RSA_SHA2_512:
            return 'rsa-sha2-512'
        return 'ssh-rsa'

    if flags:
        raise InvalidSignFlags("flags 0x{:x} not valid for {} key".format(flags, algorithm))
    return base_algorithm(algorithm)


def flag_names(flags: int) -> list:
    names = []
    if flags & SSH_AGENT_RSA_SHA2_256:
        names.append("RSA_SHA2_256")
    if flags & SSH_AGENT_RSA_SHA2_512:
        names.append("RSA_SHA2_512")
    return names


def fingerprint(key_blob: bytes) -> str:
    """SHA256 fingerprint in the format ssh-keygen prints."""
    digest = hashlib.sha256(key_blob).digest()
    return 'SHA256:' + base64.b64encode(digest).decode('ascii').rstrip('=')


def signature_blob(algorithm: str, raw: bytes) -> bytes:
    return Writer().write_text(algorithm).write_string(raw).getvalue()


def public_key_blob(key) -> bytes:
    """Wire blob of a public (or private) ``cryptography`` key."""
    if hasattr(key, 'public_key'):
        key = key.public_key()
    line = key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
    return base64.b64decode(line.split()[1])


def private_key_message(key: SigningKey) -> PrivateKey:
    """Build the add-identity key structure for a private key."""
    if isinstance(key, ed25519.Ed25519PrivateKey):
        seed = key.private_bytes(serialization.Encoding.Raw,
                                 serialization.PrivateFormat.Raw,
                                 serialization.NoEncryption())
        public = key.public_key().public_bytes(serialization.Encoding.Raw,
                                               serialization.PublicFormat.Raw)
        return PrivateKey('ssh-ed25519', (public, seed + public))

    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.private_numbers()
        public = numbers.public_numbers
        return PrivateKey('ssh-rsa', (public.n, public.e, numbers.d,
                                      numbers.iqmp, numbers.p, numbers.q))

    if isinstance(key, ec.EllipticCurvePrivateKey):
        curve = _CURVE_NAMES.get(key.curve.name)
        if curve is None:
            raise ValueError("unsupported curve {}".format(key.curve.name))
        point = key.public_key().public_bytes(serialization.Encoding.X962,
                                              serialization.PublicFormat.UncompressedPoint)
        return PrivateKey('ecdsa-sha2-' + curve,
                          (curve.encode('ascii'), point, key.private_numbers().private_value))

    raise ValueError("unsupported key type {}".format(type(key).__name__))


def load_private_key(message: PrivateKey) -> SigningKey:
    """
    Turn an add-identity key structure into a ``cryptography`` key.

    Raises:
        BackendFailure: algorithm not supported, or inconsistent key fields
    """
    algorithm = message.algorithm
    fields = message.fields
    try:
        if algorithm == 'ssh-ed25519':
            public, secret = fields
            key = ed25519.Ed25519PrivateKey.from_private_bytes(secret[:32])
            if public_key_blob(key)[-32:] != public:
                raise BackendFailure("ed25519 public key does not match private key")
            return key

        if algorithm == 'ssh-rsa':
            n, e, d, iqmp, p, q = fields
            numbers = rsa.RSAPrivateNumbers(
                p=p, q=q, d=d,
                dmp1=rsa.rsa_crt_dmp1(d, p),
                dmq1=rsa.rsa_crt_dmq1(d, q),
                iqmp=iqmp,
                public_numbers=rsa.RSAPublicNumbers(e, n))
            return numbers.private_key()

        if algorithm.startswith('ecdsa-sha2-') and algorithm[11:] in _CURVES:
            curve_name, point, d = fields
            if curve_name.decode('ascii', 'replace') != algorithm[11:]:
                raise BackendFailure("curve name does not match key algorithm")
            curve, _ = _CURVES[algorithm[11:]]
            key = ec.derive_private_key(d, curve())
            expected = key.public_key().public_bytes(serialization.Encoding.X962,
                                                     serialization.PublicFormat.UncompressedPoint)
            if expected != point:
                raise BackendFailure("ecdsa public point does not match private key")
            return key
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise BackendFailure("invalid {} key: {}".format(algorithm, e)) from e

    raise BackendFailure("unsupported key algorithm {}".format(algorithm))


def sign_data(key: SigningKey, algorithm: str, data: bytes) -> bytes:
    """Sign ``data`` and return the wire signature blob."""
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return signature_blob(algorithm, key.sign(data))

    if isinstance(key, rsa.RSAPrivateKey):
        digest = _RSA_HASHES.get(algorithm)
        if digest is None:
            raise BackendFailure("cannot sign {} with an RSA key".format(algorithm))
        return signature_blob(algorithm, key.sign(data, padding.PKCS1v15(), digest()))

    if isinstance(key, ec.EllipticCurvePrivateKey):
        _, digest = _CURVES[_CURVE_NAMES[key.curve.name]]
        r, s = utils.decode_dss_signature(key.sign(data, ec.ECDSA(digest())))
        return signature_blob(algorithm, Writer().write_mpint(r).write_mpint(s).getvalue())

    raise BackendFailure("unsupported key type {}".format(type(key).__name__))
