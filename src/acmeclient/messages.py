"""ACME protocol messages."""
import enum
import re
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple

from cryptography import x509
import josepy as jose

from acmeclient import crypto_util
from acmeclient import errors

STATUS_PENDING = 'pending'
STATUS_PROCESSING = 'processing'
STATUS_READY = 'ready'
STATUS_VALID = 'valid'
STATUS_INVALID = 'invalid'

IDENTIFIER_FQDN = 'dns'

CHALLENGE_HTTP01 = 'http-01'
CHALLENGE_DNS01 = 'dns-01'
CHALLENGE_TLSALPN01 = 'tls-alpn-01'


class Problem(jose.JSONObjectWithFields):
    """ACME problem document (RFC 7807).

    :ivar str typ:
    :ivar str title:
    :ivar str detail:

    """
    typ: str = jose.field('type', omitempty=True, default='about:blank')
    title: str = jose.field('title', omitempty=True)
    detail: str = jose.field('detail', omitempty=True)
    status: int = jose.field('status', omitempty=True)
    subproblems: Tuple[Dict[str, Any], ...] = jose.field('subproblems', omitempty=True)

    def to_error(self, status: Optional[int] = None) -> errors.ServerError:
        """Build the exception matching this problem type."""
        code = None
        if self.typ and self.typ.startswith(errors.ERROR_PREFIX):
            code = self.typ[len(errors.ERROR_PREFIX):]
        error_cls = errors.SERVER_ERRORS.get(code, errors.ServerError)
        return error_cls(detail=self.detail or self.title, typ=self.typ,
                         status=self.status if status is None else status,
                         problem=self)


class Directory(jose.JSONDeSerializable):
    """Directory.

    Directory resources must be accessed by the exact field name in RFC8555 (section 9.7.5).
    """
    NEW_NONCE = 'newNonce'
    NEW_ACCOUNT = 'newAccount'
    NEW_ORDER = 'newOrder'
    NEW_AUTHZ = 'newAuthz'
    REVOKE_CERT = 'revokeCert'
    KEY_CHANGE = 'keyChange'

    class Meta(jose.JSONObjectWithFields):
        """Directory Meta."""
        terms_of_service: str = jose.field('termsOfService', omitempty=True)
        website: str = jose.field('website', omitempty=True)
        caa_identities: List[str] = jose.field('caaIdentities', omitempty=True)
        external_account_required: bool = jose.field('externalAccountRequired',
                                                     omitempty=True)
        csr_eager: bool = jose.field('csrEager', omitempty=True, default=False)

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        self._jobj = dict(jobj)
        if not isinstance(self._jobj.get('meta'), self.Meta):
            self._jobj['meta'] = self.Meta.from_json(self._jobj.get('meta') or {})

    @property
    def meta(self) -> 'Directory.Meta':
        """Server metadata."""
        return self._jobj['meta']

    @property
    def csr_eager(self) -> bool:
        """Whether the CSR must be sent with the new order."""
        return bool(self.meta.csr_eager)

    def resource_url(self, name: str) -> str:
        """URL of a directory resource.

        :raises .UnknownResourceError: if the server does not advertise it.

        """
        url = self._jobj.get(name)
        if name == 'meta' or not url:
            raise errors.UnknownResourceError(name)
        return url

    def __contains__(self, name: str) -> bool:
        return name != 'meta' and bool(self._jobj.get(name))

    def __getitem__(self, name: str) -> str:
        return self.resource_url(name)

    def to_partial_json(self) -> Dict[str, Any]:
        return dict(self._jobj)

    @classmethod
    def from_json(cls, jobj: Mapping[str, Any]) -> 'Directory':
        if not isinstance(jobj, Mapping):
            raise jose.DeserializationError('Directory must be a JSON object')
        return cls(jobj)


class AuthorizationChallenge(jose.JSONObjectWithFields):
    """One way of proving control of one domain.

    :ivar str domain: Domain the challenge belongs to (without wildcard).
    :ivar str status: ``pending``, ``processing``, ``valid`` or ``invalid``.
    :ivar str typ: Challenge type, e.g. ``http-01`` or ``dns-01``.
    :ivar str url: Challenge URL.
    :ivar str token: Challenge token.
    :ivar str payload: Key authorization the challenge answer must expose.

    """
    domain: str = jose.field('domain')
    status: str = jose.field('status')
    typ: str = jose.field('type')
    url: str = jose.field('url')
    token: str = jose.field('token')
    payload: str = jose.field('payload')
    path: Optional[str] = jose.field('filePath', omitempty=True)
    verify_url: Optional[str] = jose.field('verifyUrl', omitempty=True)
    file_content: Optional[str] = jose.field('fileContent', omitempty=True)
    fqdn: Optional[str] = jose.field('fqdn', omitempty=True)

    @classmethod
    def from_response(cls, domain: str, response: Mapping[str, Any],
                      thumbprint: str) -> 'AuthorizationChallenge':
        """Build a challenge from the server's challenge object.

        :param str domain: Domain of the owning authorization.
        :param dict response: Challenge JSON.
        :param str thumbprint: base64url account key thumbprint.

        """
        try:
            token = response['token']
            file_content = response.get('filecontent')
            return cls(
                domain=domain,
                status=response['status'],
                typ=response['type'],
                url=response['url'],
                token=token,
                payload=file_content if file_content else '{0}.{1}'.format(token, thumbprint),
                path=response.get('path'),
                verify_url=response.get('verifyurl'),
                file_content=file_content,
                fqdn=response.get('fqdn'),
            )
        except KeyError as error:
            raise errors.ClientError(
                'Challenge response is missing field {0}'.format(error)) from error


class CertificateOrder(jose.JSONObjectWithFields):
    """Certificate order.

    :ivar dict challenges: Domain to tuple of `AuthorizationChallenge`.
    :ivar str order_endpoint: Order URL.

    """
    challenges: Dict[str, Tuple[AuthorizationChallenge, ...]] = jose.field(
        'authorizationsChallenges',
        encoder=lambda value: {
            domain: [chall.to_partial_json() for chall in challs]
            for domain, challs in value.items()},
        decoder=lambda value: {
            domain: tuple(AuthorizationChallenge.from_json(chall) for chall in challs)
            for domain, challs in value.items()})
    order_endpoint: str = jose.field('orderEndpoint')

    @property
    def domains(self) -> List[str]:
        """Domains covered by the order."""
        return list(self.challenges)

    def authorization_challenges(self, domain: str) -> Tuple[AuthorizationChallenge, ...]:
        """Challenges offered for ``domain``.

        :raises .ClientError: if the order does not cover ``domain``.

        """
        try:
            return self.challenges[domain]
        except KeyError:
            raise errors.ClientError(
                'The order does not contain any authorization challenge '
                'for the domain "{0}"'.format(domain))

    def __hash__(self) -> int:
        return hash((self.order_endpoint, tuple(sorted(self.challenges))))


class Certificate:
    """PEM certificate, optionally linked to the certificate of its issuer.

    :ivar str pem: PEM text.
    :ivar Certificate issuer: Issuer certificate, `None` for the chain root.

    """

    def __init__(self, pem: str, issuer: Optional['Certificate'] = None) -> None:
        self.pem = pem
        self.issuer = issuer

    def issuer_chain(self) -> List['Certificate']:
        """Issuers of this certificate, closest first."""
        chain = []
        issuer = self.issuer
        while issuer is not None:
            chain.append(issuer)
            issuer = issuer.issuer
        return chain

    def __iter__(self) -> Iterator['Certificate']:
        """Iterate from this certificate up to the root."""
        yield self
        yield from self.issuer_chain()

    def full_chain_pem(self) -> str:
        """PEM of the whole chain, leaf first."""
        return '\n'.join(cert.pem.strip() + '\n' for cert in self)

    def x509(self) -> x509.Certificate:
        """Parsed certificate.

        :raises .ClientError: if the PEM text is not a certificate.

        """
        try:
            return x509.load_pem_x509_certificate(self.pem.encode('ascii'))
        except ValueError as error:
            raise errors.ClientError(
                'Unable to parse certificate: {0}'.format(error)) from error

    def public_key(self) -> Any:
        """Public key of the certificate."""
        return self.x509().public_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Certificate):
            return NotImplemented
        return self.pem == other.pem and self.issuer == other.issuer

    def __hash__(self) -> int:
        return hash((self.pem, self.issuer))

    def __repr__(self) -> str:
        return '{0}(chain_length={1})'.format(
            self.__class__.__name__, len(self.issuer_chain()) + 1)


_BLANK_LINE_RE = re.compile(r'\r?\n[ \t]*\r?\n')


def parse_chain(text: str) -> Certificate:
    """Build the linked chain from PEM blocks separated by blank lines.

    The server lists the leaf first; the last block becomes the root.

    :raises .ClientError: if ``text`` holds no certificate.

    """
    chain = None
    blocks = [block.strip() for block in _BLANK_LINE_RE.split(text)]
    for pem in reversed([block for block in blocks if block]):
        chain = Certificate(pem, chain)
    if chain is None:
        raise errors.ClientError('The server returned an empty certificate chain')
    return chain


class CertificateResponse:
    """Issued certificate together with the request it answers."""

    def __init__(self, certificate_request: Optional[crypto_util.CertificateRequest],
                 certificate: Certificate) -> None:
        self.certificate_request = certificate_request
        self.certificate = certificate


class RevocationReason(enum.IntEnum):
    """Certificate revocation reason codes (RFC 5280, section 5.3.1)."""
    UNSPECIFIED = 0
    KEY_COMPROMISE = 1
    CA_COMPROMISE = 2
    AFFILIATION_CHANGED = 3
    SUPERSEDED = 4
    CESSATION_OF_OPERATION = 5
    CERTIFICATE_HOLD = 6
    REMOVE_FROM_CRL = 8
    PRIVILEGE_WITHDRAWN = 9
    AA_COMPROMISE = 10

    @classmethod
    def default(cls) -> 'RevocationReason':
        """Reason used when the caller does not give one."""
        return cls.UNSPECIFIED
