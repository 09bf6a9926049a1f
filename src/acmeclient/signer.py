"""Signature engine.

Signs and verifies byte strings with RSA or elliptic-curve keys. JWS wants
ECDSA signatures as the fixed-width concatenation of ``R`` and ``S``
(RFC 7518, section 3.4) while `cryptography` produces and consumes DER, so
this module also converts between the two encodings.

"""
import collections
import enum
import logging
import re
from typing import Type
from typing import Union

from cryptography.exceptions import InvalidSignature
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from acmeclient import errors

logger = logging.getLogger(__name__)

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey]
HashAlgorithm = Type[hashes.HashAlgorithm]


class Format(enum.Enum):
    """Signature encoding."""
    DER = 'DER'
    FIXED_WIDTH = 'FIXED_WIDTH'


FIXED_WIDTHS = {
    hashes.SHA256: 64,
    hashes.SHA384: 96,
    hashes.SHA512: 132,
}
"""Width in bytes of ``R || S`` for each digest (P-256, P-384, P-521)."""

HASHES = {
    '256': hashes.SHA256,
    '384': hashes.SHA384,
    '512': hashes.SHA512,
}

FORMATS = {
    'RS': Format.DER,
    'ES': Format.FIXED_WIDTH,
}

SigningProfile = collections.namedtuple('SigningProfile', 'hash_alg fmt width')
"""Digest and encoding derived from a JWS ``alg`` value.

``width`` is the fixed signature width for `Format.FIXED_WIDTH`, `None`
otherwise.
"""

_ALG_RE = re.compile(r'^([A-Z]+)(\d+)$')


def signing_profile(alg: str) -> SigningProfile:
    """Derive the digest and signature encoding of a JWS algorithm.

    :param str alg: JWS algorithm identifier, e.g. ``RS256`` or ``ES384``.

    :raises .AlgorithmUnsupportedError: for unknown families or digest sizes.

    :rtype: SigningProfile

    """
    match = _ALG_RE.match(alg)
    if match is None:
        raise errors.AlgorithmUnsupportedError(
            'The given "{0}" algorithm is not supported'.format(alg))
    family, bits = match.groups()
    if family not in FORMATS or bits not in HASHES:
        raise errors.AlgorithmUnsupportedError(
            'The given "{0}" algorithm is not supported'.format(alg))
    hash_alg = HASHES[bits]
    fmt = FORMATS[family]
    width = FIXED_WIDTHS[hash_alg] if fmt is Format.FIXED_WIDTH else None
    return SigningProfile(hash_alg, fmt, width)


def der_to_fixed_width(signature: bytes, width: int) -> bytes:
    """Convert a DER ``ECDSA-Sig-Value`` into ``R || S``.

    :param bytes signature: DER encoded signature.
    :param int width: Total width of the result, each half padded to
        ``width // 2`` bytes.

    """
    try:
        r, s = decode_dss_signature(signature)
    except ValueError as error:
        raise errors.SignatureInvalidError(str(error)) from error
    half = width // 2
    try:
        return r.to_bytes(half, byteorder='big') + s.to_bytes(half, byteorder='big')
    except OverflowError as error:
        raise errors.SignatureInvalidError(
            'Signature does not fit in {0} bytes'.format(width)) from error


def fixed_width_to_der(signature: bytes, width: int) -> bytes:
    """Convert ``R || S`` back into a DER ``ECDSA-Sig-Value``."""
    if len(signature) != width:
        raise errors.SignatureInvalidError(
            'Expected a {0} bytes signature, got {1}'.format(width, len(signature)))
    half = width // 2
    r = int.from_bytes(signature[:half], byteorder='big')
    s = int.from_bytes(signature[half:], byteorder='big')
    return encode_dss_signature(r, s)


def _width(hash_alg: HashAlgorithm) -> int:
    try:
        return FIXED_WIDTHS[hash_alg]
    except KeyError:
        raise errors.AlgorithmUnsupportedError(
            'No ECDSA signature width for {0}'.format(hash_alg.name))


class DataSigner:
    """Sign data with a private key and check signatures with a public key."""

    def sign(self, data: bytes, private_key: PrivateKey,
             hash_alg: HashAlgorithm = hashes.SHA256,
             fmt: Format = Format.DER) -> bytes:
        """Sign ``data``.

        :param bytes data: Data to sign.
        :param private_key: RSA or elliptic-curve private key.
        :param hash_alg: `cryptography` hash class.
        :param Format fmt: Encoding of the returned signature.

        :raises .SigningFailedError: if the backend refuses to sign.

        :returns: The signature.
        :rtype: bytes

        """
        try:
            if isinstance(private_key, ec.EllipticCurvePrivateKey):
                signature = private_key.sign(data, ec.ECDSA(hash_alg()))
            elif isinstance(private_key, rsa.RSAPrivateKey):
                signature = private_key.sign(data, padding.PKCS1v15(), hash_alg())
            else:
                raise errors.SigningFailedError(
                    'Unsupported key type: {0}'.format(type(private_key).__name__))
        except (ValueError, TypeError, UnsupportedAlgorithm) as error:
            logger.debug(error, exc_info=True)
            raise errors.SigningFailedError(
                'Data signing failed with error: {0}'.format(error)) from error

        if fmt is Format.DER:
            return signature
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise errors.SigningFailedError('Fixed width signatures require an EC key')
        return der_to_fixed_width(signature, _width(hash_alg))

    def verify(self, signature: bytes, data: bytes, public_key: PublicKey,
               hash_alg: HashAlgorithm = hashes.SHA256,
               fmt: Format = Format.DER) -> None:
        """Check that ``signature`` signs ``data``.

        :raises .SignatureInvalidError: if the signature does not match.

        """
        if fmt is Format.FIXED_WIDTH:
            signature = fixed_width_to_der(signature, _width(hash_alg))
        try:
            if isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, data, ec.ECDSA(hash_alg()))
            elif isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, data, padding.PKCS1v15(), hash_alg())
            else:
                raise errors.SignatureInvalidError(
                    'Unsupported key type: {0}'.format(type(public_key).__name__))
        except InvalidSignature as error:
            raise errors.SignatureInvalidError(
                'Data signature check failed') from error
        except (ValueError, TypeError, UnsupportedAlgorithm) as error:
            raise errors.SignatureInvalidError(
                'Data signature check failed with error: {0}'.format(error)) from error
