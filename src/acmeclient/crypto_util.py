"""Crypto utilities.

Key pairs, distinguished names and certificate signing requests used by the
ACME client.
"""
import logging
from typing import Iterable
from typing import Optional
from typing import Tuple
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
import josepy as jose

from acmeclient import errors
from acmeclient import signer

logger = logging.getLogger(__name__)

EC_CURVE_ALGORITHMS = {
    'secp256r1': 'ES256',
    'secp384r1': 'ES384',
    'secp521r1': 'ES512',
}

EC_CURVES = {
    'secp256r1': ec.SECP256R1,
    'prime256v1': ec.SECP256R1,
    'secp384r1': ec.SECP384R1,
    'secp521r1': ec.SECP521R1,
}


class KeyPair:
    """Private key and its public half.

    :ivar private_key: `cryptography` RSA or elliptic-curve private key.

    """

    def __init__(self, private_key: signer.PrivateKey) -> None:
        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise errors.ClientError(
                'Unsupported key type: {0}'.format(type(private_key).__name__))
        self.private_key = private_key

    @property
    def public_key(self) -> signer.PublicKey:
        """Public half of the key pair."""
        return self.private_key.public_key()

    @property
    def algorithm(self) -> str:
        """JWS algorithm matching the key, e.g. ``RS256`` or ``ES384``."""
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return 'RS256'
        try:
            return EC_CURVE_ALGORITHMS[self.private_key.curve.name]
        except KeyError:
            raise errors.AlgorithmUnsupportedError(
                'Unsupported curve: {0}'.format(self.private_key.curve.name))

    def jwk(self) -> jose.JWK:
        """Public JSON Web Key of the pair."""
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            return jose.JWKRSA(key=self.public_key)
        return jose.JWKEC(key=self.public_key)

    def private_key_pem(self) -> bytes:
        """PKCS#8 PEM encoding of the private key."""
        return self.private_key.private_bytes(
            encoding=Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())

    def public_key_pem(self) -> bytes:
        """SubjectPublicKeyInfo PEM encoding of the public key."""
        return self.public_key.public_bytes(
            encoding=Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KeyPair):
            return NotImplemented
        return self.private_key_pem() == other.private_key_pem()

    def __hash__(self) -> int:
        return hash(self.private_key_pem())


def generate_rsa_key_pair(bits: int = 2048) -> KeyPair:
    """Generate an RSA key pair."""
    return KeyPair(rsa.generate_private_key(public_exponent=65537, key_size=bits))


def generate_ec_key_pair(curve: str = 'secp256r1') -> KeyPair:
    """Generate an elliptic-curve key pair.

    :param str curve: One of ``secp256r1`` (alias ``prime256v1``),
        ``secp384r1`` or ``secp521r1``.

    """
    try:
        curve_cls = EC_CURVES[curve]
    except KeyError:
        raise errors.ClientError('Unsupported curve: {0}'.format(curve))
    return KeyPair(ec.generate_private_key(curve_cls()))


def load_key_pair(private_key_pem: Union[str, bytes],
                  password: Optional[bytes] = None) -> KeyPair:
    """Parse a PEM encoded private key."""
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode('ascii')
    try:
        key = serialization.load_pem_private_key(private_key_pem, password=password)
    except (ValueError, TypeError) as error:
        raise errors.ClientError('Unable to parse private key: {0}'.format(error)) from error
    return KeyPair(key)  # type: ignore[arg-type]


def load_public_key(public_key_pem: Union[str, bytes]) -> signer.PublicKey:
    """Parse a PEM encoded public key."""
    if isinstance(public_key_pem, str):
        public_key_pem = public_key_pem.encode('ascii')
    try:
        key = serialization.load_pem_public_key(public_key_pem)
    except (ValueError, TypeError) as error:
        raise errors.ClientError('Unable to parse public key: {0}'.format(error)) from error
    if not isinstance(key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        raise errors.ClientError('Unsupported key type: {0}'.format(type(key).__name__))
    return key


class DistinguishedName:
    """Subject of a certificate signing request.

    :ivar str common_name: Primary domain.
    :ivar tuple subject_alternative_names: Additional domains.

    """

    def __init__(self, common_name: str, country_name: Optional[str] = None,
                 state_or_province_name: Optional[str] = None,
                 locality_name: Optional[str] = None,
                 organization_name: Optional[str] = None,
                 organizational_unit_name: Optional[str] = None,
                 email_address: Optional[str] = None,
                 subject_alternative_names: Iterable[str] = ()) -> None:
        if not isinstance(common_name, str) or not common_name:
            raise errors.ClientError('Common name must be a non-empty string')
        self.common_name = common_name
        self.country_name = country_name
        self.state_or_province_name = state_or_province_name
        self.locality_name = locality_name
        self.organization_name = organization_name
        self.organizational_unit_name = organizational_unit_name
        self.email_address = email_address
        self.subject_alternative_names: Tuple[str, ...] = tuple(
            dict.fromkeys(subject_alternative_names))

    def x509_name(self) -> x509.Name:
        """Subject as a `cryptography.x509.Name`."""
        attributes = [
            (x509.NameOID.COUNTRY_NAME, self.country_name),
            (x509.NameOID.STATE_OR_PROVINCE_NAME, self.state_or_province_name),
            (x509.NameOID.LOCALITY_NAME, self.locality_name),
            (x509.NameOID.ORGANIZATION_NAME, self.organization_name),
            (x509.NameOID.ORGANIZATIONAL_UNIT_NAME, self.organizational_unit_name),
            (x509.NameOID.COMMON_NAME, self.common_name),
            (x509.NameOID.EMAIL_ADDRESS, self.email_address),
        ]
        return x509.Name([x509.NameAttribute(oid, value)
                          for oid, value in attributes if value])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DistinguishedName):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self) -> str:
        return '{0}(common_name={1!r}, subject_alternative_names={2!r})'.format(
            self.__class__.__name__, self.common_name, self.subject_alternative_names)


class CertificateRequest:
    """Distinguished name and the key pair the certificate is issued for."""

    def __init__(self, distinguished_name: DistinguishedName, key_pair: KeyPair) -> None:
        self.distinguished_name = distinguished_name
        self.key_pair = key_pair

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CertificateRequest):
            return NotImplemented
        return (self.distinguished_name == other.distinguished_name
                and self.key_pair == other.key_pair)

    def __repr__(self) -> str:
        return '{0}({1!r})'.format(self.__class__.__name__, self.distinguished_name)


class CertificateRequestSigner:
    """Generate PEM encoded CSRs."""

    def sign_certificate_request(self, csr: CertificateRequest) -> bytes:
        """Generate a CSR whose subjectAltName holds the common name and
        every subject alternative name.

        :returns: buffer PEM-encoded Certificate Signing Request.

        """
        dn = csr.distinguished_name
        domains = list(dict.fromkeys((dn.common_name,) + dn.subject_alternative_names))
        builder = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(dn.x509_name())
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
                critical=False,
            )
        )
        logger.debug('Signing CSR for %s', ', '.join(domains))
        request = builder.sign(csr.key_pair.private_key, hashes.SHA256())
        return request.public_bytes(Encoding.PEM)


def encode_certificate(pem: Union[str, bytes]) -> str:
    """Re-encode the first certificate of ``pem`` as unpadded base64url DER.

    Further blocks of a full chain are ignored.

    :raises .ClientError: if no certificate can be loaded.

    """
    if isinstance(pem, str):
        pem = pem.encode('ascii')
    try:
        cert = x509.load_pem_x509_certificate(pem)
    except ValueError as error:
        raise errors.ClientError('Invalid PEM certificate: {0}'.format(error)) from error
    return jose.encode_b64jose(cert.public_bytes(Encoding.DER))


def encode_csr(pem: Union[str, bytes]) -> str:
    """Re-encode a PEM certificate signing request as unpadded base64url DER.

    :raises .ClientError: if the request cannot be loaded.

    """
    if isinstance(pem, str):
        pem = pem.encode('ascii')
    try:
        csr = x509.load_pem_x509_csr(pem)
    except ValueError as error:
        raise errors.ClientError(
            'Invalid PEM certificate signing request: {0}'.format(error)) from error
    return jose.encode_b64jose(csr.public_bytes(Encoding.DER))
