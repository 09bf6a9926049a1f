"""ACME client errors."""
from typing import Any
from typing import Mapping
from typing import Optional

ERROR_PREFIX = 'urn:ietf:params:acme:error:'


class Error(Exception):
    """Generic ACME client error."""


class DependencyError(Error):
    """Dependency error"""


class ClientError(Error):
    """Malformed input, invalid configuration or local protocol violation."""


class TransportError(ClientError):
    """The HTTP request could not be sent or no response was received."""


class UnknownResourceError(ClientError):
    """The directory does not advertise the requested resource."""

    def __init__(self, resource: str, *args: Any) -> None:
        super().__init__(*args)
        self.resource = resource

    def __str__(self) -> str:
        return 'Resource "{0}" is not available in the directory'.format(self.resource)


class AlgorithmUnsupportedError(ClientError):
    """The signature algorithm is not supported."""


class UnsupportedRecordTypeError(ClientError):
    """The DNS record type is not supported by the resolver."""


class NonceError(ClientError):
    """Server response nonce error."""


class BadNonce(NonceError):
    """Bad nonce error."""
    def __init__(self, nonce: str, error: Exception, *args: Any) -> None:
        super().__init__(*args)
        self.nonce = nonce
        self.error = error

    def __str__(self) -> str:
        return 'Invalid nonce ({0!r}): {1}'.format(self.nonce, self.error)


class MissingNonce(NonceError):
    """Missing nonce error.

    According to RFC 8555 an "ACME server MUST include an
    Replay-Nonce header field in each successful response to a POST it
    provides to a client (...)".

    :ivar headers: Mapping of HTTP headers

    """
    def __init__(self, headers: Mapping, *args: Any) -> None:
        super().__init__(*args)
        self.headers = dict(headers)

    def __str__(self) -> str:
        return ('Server response did not include a replay '
                'nonce, headers: {0} (This may be a service outage)'.format(
                    self.headers))


class ServerError(Error):
    """The server answered with an HTTP error or an ACME problem document.

    :ivar str typ: Problem type URN, if the server sent one.
    :ivar str detail: Human readable explanation from the server.
    :ivar int status: HTTP status code of the response.

    """
    def __init__(self, detail: Optional[str] = None, typ: Optional[str] = None,
                 status: Optional[int] = None, problem: Optional[Any] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.typ = typ
        self.status = status
        self.problem = problem

    @property
    def code(self) -> Optional[str]:
        """ACME error code, e.g. ``badNonce``, or `None` for non-ACME problems."""
        if self.typ is not None and self.typ.startswith(ERROR_PREFIX):
            return self.typ[len(ERROR_PREFIX):]
        return None

    def __str__(self) -> str:
        parts = [part for part in (self.typ, self.detail) if part]
        if not parts and self.status is not None:
            return 'HTTP {0}'.format(self.status)
        return ' :: '.join(parts)


class BadNonceError(ServerError):
    """The server rejected the anti-replay nonce."""


class MalformedError(ServerError):
    """The server rejected the request as malformed."""


class UnauthorizedError(ServerError):
    """The account lacks sufficient authorization."""


class RateLimitedError(ServerError):
    """Too many requests of a given type."""


class BadCSRError(ServerError):
    """The CSR is unacceptable."""


class AccountDoesNotExistError(ServerError):
    """The request specified an account that does not exist."""


class RejectedIdentifierError(ServerError):
    """The server will not issue certificates for the identifier."""


class ServerInternalError(ServerError):
    """The server experienced an internal error."""


SERVER_ERRORS = {
    'badNonce': BadNonceError,
    'malformed': MalformedError,
    'unauthorized': UnauthorizedError,
    'rateLimited': RateLimitedError,
    'badCSR': BadCSRError,
    'accountDoesNotExist': AccountDoesNotExistError,
    'rejectedIdentifier': RejectedIdentifierError,
    'serverInternal': ServerInternalError,
}


class ProtocolError(Error):
    """The ACME exchange did not reach the expected state."""


class ChallengeNotSupportedError(ProtocolError):
    """No usable authorization or challenge was offered for the domain."""


class _ChallengeResponseError(ProtocolError):
    """Challenge error carrying the last server response.

    :ivar dict response: Last challenge JSON returned by the server.

    """
    def __init__(self, response: Mapping[str, Any], *args: Any) -> None:
        super().__init__(*args)
        self.response = dict(response)


class ChallengeTimedOutError(_ChallengeResponseError):
    """The challenge was still pending when the deadline passed."""

    def __str__(self) -> str:
        return 'Challenge timed out, last status: {0}'.format(
            self.response.get('status'))


class ChallengeFailedError(_ChallengeResponseError):
    """The challenge ended in a state other than ``valid``."""

    def __str__(self) -> str:
        error = self.response.get('error') or {}
        return 'Challenge failed (status: {0}): {1}'.format(
            self.response.get('status'), error.get('detail', 'no detail given'))


class CertificateRequestFailedError(ProtocolError):
    """The order did not become ``valid`` after finalization."""


class CertificateRevocationError(ProtocolError):
    """Certificate revocation error."""


class RevocationUnsupportedError(CertificateRevocationError):
    """The server does not advertise a revocation endpoint."""


class RevocationFailedError(CertificateRevocationError):
    """The revocation request failed."""


class SigningError(Error):
    """Signature engine error."""


class SigningFailedError(SigningError):
    """The cryptographic backend could not sign the data."""


class SignatureInvalidError(SigningError):
    """The signature does not match the data and key."""


class DnsResolutionError(Error):
    """A DNS lookup failed."""
