"""ACME client API."""
import base64
import datetime
import json
import logging
import re
import time
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Union

from cryptography.hazmat.primitives import hashes
import josepy as jose
import requests
from requests.adapters import HTTPAdapter

from acmeclient import crypto_util
from acmeclient import errors
from acmeclient import jws
from acmeclient import messages
from acmeclient import signer

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_TIMEOUT = 45
DEFAULT_POLL_TIMEOUT = 180

_PENDING_ORDER_STATUSES = (
    messages.STATUS_PENDING,
    messages.STATUS_PROCESSING,
    messages.STATUS_READY,
)


class AcmeClient:
    """ACME client for a v2 API.

    The directory, the initialized network handle and the account URL are
    resolved on first use and kept for the lifetime of the instance.

    :ivar str directory_url: URL of the ACME directory.
    :ivar .CertificateRequestSigner csr_signer: CSR generator.
    """

    def __init__(self, net: 'ClientNetwork', directory_url: str,
                 csr_signer: Optional[crypto_util.CertificateRequestSigner] = None) -> None:
        """Initialize.

        :param .ClientNetwork net: Client network.
        :param str directory_url: URL of the ACME directory.
        :param .CertificateRequestSigner csr_signer: CSR generator.
        """
        self._uninitialized_net = net
        self._net: Optional[ClientNetwork] = None
        self.directory_url = directory_url
        self.csr_signer = csr_signer or crypto_util.CertificateRequestSigner()
        self._directory: Optional[messages.Directory] = None
        self._account_url: Optional[str] = None

    @property
    def net(self) -> 'ClientNetwork':
        """Network handle, wired to the ``newNonce`` endpoint."""
        if self._net is None:
            net = self._uninitialized_net
            if messages.Directory.NEW_NONCE in self.directory:
                net.nonce_endpoint = self.get_resource_url(messages.Directory.NEW_NONCE)
            self._net = net
        return self._net

    @property
    def directory(self) -> messages.Directory:
        """The ACME directory (RFC 8555 section 7.1.1), fetched once."""
        if self._directory is None:
            logger.debug('Fetching directory from %s', self.directory_url)
            jobj = self._uninitialized_net.request('GET', self.directory_url)
            try:
                self._directory = messages.Directory.from_json(jobj)
            except jose.DeserializationError as error:
                raise errors.ClientError(
                    'Invalid directory document: {0}'.format(error)) from error
        return self._directory

    def get_resource_url(self, resource: str) -> str:
        """Find a resource URL.

        :raises .UnknownResourceError: if the directory lacks ``resource``.

        """
        return self.directory.resource_url(resource)

    def is_csr_eager(self) -> bool:
        """Whether the server wants the CSR with the new order."""
        return self.directory.csr_eager

    @property
    def account_url(self) -> str:
        """URL of the account bound to the network key."""
        if self._account_url is None:
            net = self.net
            url = self.get_resource_url(messages.Directory.NEW_ACCOUNT)
            net.signed_request(url, {'onlyReturnExisting': True})
            if not net.last_location:
                raise errors.ClientError('The server did not return the account URL')
            self._account_url = net.last_location
            logger.debug('Resolved account URL: %s', self._account_url)
        return self._account_url

    def register_account(self, agreement: Optional[str] = None,
                         email: Optional[str] = None) -> Dict[str, Any]:
        """Register the network key, agreeing to the terms of service.

        Calling it again for the same key returns the same account.

        :param str agreement: Accepted terms of service URL, informational.
        :param str email: Contact email address.

        :returns: The account resource.
        :rtype: dict

        """
        if agreement is not None and not isinstance(agreement, str):
            raise errors.ClientError('agreement must be a string or None')
        if email is not None and not isinstance(email, str):
            raise errors.ClientError('email must be a string or None')

        payload: Dict[str, Any] = {
            'termsOfServiceAgreed': True,
            'contact': [],
        }
        if email:
            payload['contact'].append('mailto:' + email)

        net = self.net
        net.signed_request(self.get_resource_url(messages.Directory.NEW_ACCOUNT), payload)
        account = self.account_url
        logger.info('Registered account %s', account)
        return net.signed_request(account, None, account_url=account)

    def request_authorization(self, domain: str) -> Sequence[messages.AuthorizationChallenge]:
        """Order a certificate for ``domain`` and return its challenges.

        :raises .ChallengeNotSupportedError: if no challenge is offered.

        """
        order = self.request_order([domain])
        try:
            return order.authorization_challenges(domain)
        except errors.ClientError as error:
            raise errors.ChallengeNotSupportedError(str(error)) from error

    def request_order(self, domains: Sequence[str],
                      csr: Optional[crypto_util.CertificateRequest] = None,
                      challenge_type: Optional[str] = None) -> messages.CertificateOrder:
        """Request a new Order object from the server.

        :param list domains: Domains to order a certificate for.
        :param .CertificateRequest csr: Required when the server wants the
            CSR with the order.
        :param str challenge_type: Preferred challenge type hint.

        :raises .ChallengeNotSupportedError: if the server offers no
            authorization.

        :returns: The newly created order.
        :rtype: CertificateOrder

        """
        if (not isinstance(domains, (list, tuple)) or not domains
                or not all(isinstance(domain, str) and domain for domain in domains)):
            raise errors.ClientError(
                'domains must be a non-empty list of non-empty strings, got {0!r}'.format(domains))

        payload: Dict[str, Any] = {
            'identifiers': [{'type': messages.IDENTIFIER_FQDN, 'value': domain}
                            for domain in domains],
        }
        if self.is_csr_eager():
            payload['csr'] = self._encode_csr(csr)
        if challenge_type:
            payload['challenge_type'] = challenge_type

        net = self.net
        account = self.account_url
        response = net.signed_request(
            self.get_resource_url(messages.Directory.NEW_ORDER), payload, account_url=account)
        if not response.get('authorizations'):
            raise errors.ChallengeNotSupportedError(
                'The server returned no authorization for {0}'.format(', '.join(domains)))
        order_endpoint = net.last_location
        logger.info('Created order %s for %s', order_endpoint, ', '.join(domains))

        thumbprint = net.jwk_thumbprint()
        challenges: Dict[str, List[messages.AuthorizationChallenge]] = {}
        for authorization_url in response['authorizations']:
            authorization = self._post_as_get(authorization_url)
            try:
                value = authorization['identifier']['value']
            except (KeyError, TypeError) as error:
                raise errors.ClientError(
                    'Authorization {0} has no identifier'.format(authorization_url)) from error
            domain = ('*.' if authorization.get('wildcard') else '') + value
            for challenge in authorization.get('challenges', []):
                challenges.setdefault(domain, []).append(
                    messages.AuthorizationChallenge.from_response(value, challenge, thumbprint))

        return messages.CertificateOrder(
            challenges={domain: tuple(challs) for domain, challs in challenges.items()},
            order_endpoint=order_endpoint)

    def reload_authorization(self, challenge: messages.AuthorizationChallenge
                             ) -> messages.AuthorizationChallenge:
        """Fetch the current state of ``challenge``.

        :returns: A new challenge, ``challenge`` is left untouched.

        """
        response = self._post_as_get(challenge.url)
        return messages.AuthorizationChallenge.from_response(
            challenge.domain, response, self.net.jwk_thumbprint())

    def challenge_authorization(self, challenge: messages.AuthorizationChallenge,
                                timeout: int = DEFAULT_POLL_TIMEOUT) -> Dict[str, Any]:
        """Ask the server to validate ``challenge`` and wait for the result.

        :param int timeout: Seconds to wait for the challenge to leave the
            ``pending`` state.

        :raises .ChallengeTimedOutError: if still pending at the deadline.
        :raises .ChallengeFailedError: if it ends in any other state than
            ``valid``.

        :returns: Last challenge JSON returned by the server.
        :rtype: dict

        """
        _check_timeout(timeout)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        net = self.net
        account = self.account_url
        url = challenge.url

        response = self._post_as_get(url)
        if response.get('status') == messages.STATUS_PENDING:
            logger.info('Requesting validation of the %s challenge for %s',
                        challenge.typ, challenge.domain)
            response = net.signed_request(url, {}, account_url=account)

        while (datetime.datetime.now() <= deadline
               and response.get('status') == messages.STATUS_PENDING):
            time.sleep(1)
            response = self._post_as_get(url)

        status = response.get('status')
        if status == messages.STATUS_PENDING:
            raise errors.ChallengeTimedOutError(response)
        if status != messages.STATUS_VALID:
            raise errors.ChallengeFailedError(response)
        logger.info('The %s challenge for %s is valid', challenge.typ, challenge.domain)
        return response

    def request_certificate(self, domain: str, csr: crypto_util.CertificateRequest,
                            timeout: int = DEFAULT_POLL_TIMEOUT
                            ) -> messages.CertificateResponse:
        """Order and finalize a certificate for ``domain`` and the CSR's
        subject alternative names.
        """
        if not isinstance(domain, str) or not domain:
            raise errors.ClientError('domain must be a non-empty string')
        _check_timeout(timeout)
        domains = list(dict.fromkeys(
            [domain] + list(csr.distinguished_name.subject_alternative_names)))
        order = self.request_order(domains, csr)
        return self.finalize_order(order, csr, timeout)

    def finalize_order(self, order: messages.CertificateOrder,
                       csr: Optional[crypto_util.CertificateRequest] = None,
                       timeout: int = DEFAULT_POLL_TIMEOUT) -> messages.CertificateResponse:
        """Finalize an order and obtain a certificate.

        Reaching the deadline and the order becoming ``invalid`` both raise
        `.CertificateRequestFailedError`; the message names the last status.

        :param CertificateOrder order: order to finalize
        :param .CertificateRequest csr: Required unless the CSR was sent
            with the order.
        :param int timeout: Seconds to wait for issuance.

        :returns: The issued certificate.
        :rtype: CertificateResponse

        """
        _check_timeout(timeout)
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        net = self.net
        account = self.account_url
        order_endpoint = order.order_endpoint

        response = self._post_as_get(order_endpoint)
        if response.get('status') in (messages.STATUS_PENDING, messages.STATUS_READY):
            payload: Dict[str, Any] = {}
            if not self.is_csr_eager():
                payload['csr'] = self._encode_csr(csr)
            finalize_url = response.get('finalize')
            if not finalize_url:
                raise errors.ClientError('Order {0} has no finalize URL'.format(order_endpoint))
            logger.info('Finalizing order %s', order_endpoint)
            response = net.signed_request(finalize_url, payload, account_url=account)

        while (datetime.datetime.now() <= deadline
               and response.get('status') in _PENDING_ORDER_STATUSES):
            time.sleep(1)
            response = self._post_as_get(order_endpoint)

        status = response.get('status')
        if status != messages.STATUS_VALID:
            raise errors.CertificateRequestFailedError(
                'The order has not been validated (last status: {0})'.format(status))

        certificate_url = response.get('certificate')
        if not certificate_url:
            raise errors.CertificateRequestFailedError(
                'The order is valid but has no certificate URL')
        text = net.signed_request(certificate_url, None, account_url=account,
                                  return_json=False)
        chain = messages.parse_chain(text)
        logger.info('Certificate issued for order %s', order_endpoint)
        return messages.CertificateResponse(csr, chain)

    def revoke_certificate(self, certificate: messages.Certificate,
                           reason: Optional[messages.RevocationReason] = None) -> None:
        """Revoke certificate.

        :param Certificate certificate: Certificate to revoke.
        :param RevocationReason reason: Defaults to ``UNSPECIFIED``.

        :raises .RevocationUnsupportedError: if the server cannot revoke.
        :raises .RevocationFailedError: If revocation is unsuccessful.

        """
        try:
            endpoint = self.get_resource_url(messages.Directory.REVOKE_CERT)
        except errors.UnknownResourceError as error:
            raise errors.RevocationUnsupportedError(
                'This ACME server does not support certificate revocation.') from error

        if reason is None:
            reason = messages.RevocationReason.default()

        try:
            payload = {
                'certificate': crypto_util.encode_certificate(certificate.pem),
                'reason': int(reason),
            }
            self.net.signed_request(endpoint, payload, account_url=self.account_url,
                                    return_json=False)
        except (errors.ClientError, errors.ServerError) as error:
            raise errors.RevocationFailedError(str(error)) from error
        logger.info('Revoked certificate (reason: %d)', int(reason))

    def _post_as_get(self, url: str) -> Dict[str, Any]:
        """Send GET request using the POST-as-GET protocol."""
        return self.net.signed_request(url, None, account_url=self.account_url)

    def _encode_csr(self, csr: Optional[crypto_util.CertificateRequest]) -> str:
        if csr is None:
            raise errors.ClientError('A certificate request is required to finalize the order')
        return crypto_util.encode_csr(self.csr_signer.sign_certificate_request(csr))


def _check_timeout(timeout: Any) -> None:
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise errors.ClientError('timeout must be an integer, got {0!r}'.format(timeout))


class ClientNetwork:
    """Wrapper around requests that signs POSTs for authentication.

    Also adds user agent, handles Content-Type and anti-replay nonces.
    """
    JSON_CONTENT_TYPE = 'application/json'
    JOSE_CONTENT_TYPE = 'application/jose+json'
    JSON_ERROR_CONTENT_TYPE = 'application/problem+json'
    REPLAY_NONCE_HEADER = 'Replay-Nonce'

    """Initialize.

    :param .KeyPair key_pair: Account key pair.
    :param str alg: JWS algorithm, defaults to the one matching the key.
    :param bool verify_ssl: Whether to verify certificates on SSL connections.
    :param str user_agent: String to send as User-Agent header.
    :param int timeout: Timeout for requests.
    :param .DataSigner data_signer: Signature engine.
    """
    def __init__(self, key_pair: crypto_util.KeyPair, alg: Optional[str] = None,
                 verify_ssl: bool = True, user_agent: str = 'acmeclient-python',
                 timeout: int = DEFAULT_NETWORK_TIMEOUT,
                 data_signer: Optional[signer.DataSigner] = None) -> None:
        self.key_pair = key_pair
        self.alg = alg or key_pair.algorithm
        signer.signing_profile(self.alg)
        self.verify_ssl = verify_ssl
        self.user_agent = user_agent
        self.data_signer = data_signer or signer.DataSigner()
        self.nonce_endpoint: Optional[str] = None
        self.last_location: Optional[str] = None
        self.last_nonce: Optional[str] = None
        self._nonce: Optional[str] = None
        self.session = requests.Session()
        self._default_timeout = timeout
        adapter = HTTPAdapter()

        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def __del__(self) -> None:
        # Try to close the session, but don't show exceptions to the
        # user if the call to close() fails.
        try:
            self.session.close()
        except Exception:  # pylint: disable=broad-except
            pass

    def jwk_thumbprint(self) -> str:
        """base64url SHA-256 thumbprint of the account public key (RFC 7638)."""
        return jose.b64encode(
            self.key_pair.jwk().thumbprint(hash_function=hashes.SHA256)).decode('ascii')

    def sign_jwk_payload(self, url: str, payload: Optional[Mapping[str, Any]]
                         ) -> Dict[str, Any]:
        """Wrap ``payload`` in a JWS carrying the account public key.

        Only the ``newAccount`` resource accepts this form.

        """
        logger.debug('JWS payload:\n%s', payload)
        return jws.JWS.sign(payload, self.key_pair, url, self._get_nonce(url),
                            alg=self.alg, data_signer=self.data_signer).to_partial_json()

    def sign_kid_payload(self, url: str, account_url: str,
                         payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Wrap ``payload`` in a JWS identified by the account URL.

        A `None` payload gives a POST-as-GET request.

        """
        logger.debug('JWS payload:\n%s', payload)
        return jws.JWS.sign(payload, self.key_pair, url, self._get_nonce(url),
                            kid=account_url, alg=self.alg,
                            data_signer=self.data_signer).to_partial_json()

    def signed_request(self, url: str, payload: Optional[Mapping[str, Any]],
                       account_url: Optional[str] = None,
                       return_json: bool = True) -> Any:
        """POST ``payload`` wrapped in a JWS and check the response.

        Without ``account_url`` the JWS embeds the public key. If the server
        responded with a badNonce error, the request will be retried once.

        """
        try:
            return self._signed_request_once(url, payload, account_url, return_json)
        except errors.BadNonceError as error:
            logger.debug('Retrying request after error:\n%s', error)
            return self._signed_request_once(url, payload, account_url, return_json)

    def _signed_request_once(self, url: str, payload: Optional[Mapping[str, Any]],
                             account_url: Optional[str], return_json: bool) -> Any:
        if account_url is None:
            data = self.sign_jwk_payload(url, payload)
        else:
            data = self.sign_kid_payload(url, account_url, payload)
        return self.request('POST', url, data, return_json=return_json)

    def request(self, method: str, url: str, data: Optional[Mapping[str, Any]] = None,
                return_json: bool = True) -> Any:
        """Send a request and decode the response.

        :param dict data: Signed JWS to send as ``application/jose+json``.
        :param bool return_json: Decode the body as JSON, otherwise return
            the text.

        :raises .ServerError: if the server answered with an error.
        :raises .TransportError: if no response was received.

        """
        kwargs: Dict[str, Any] = {}
        if data is not None:
            kwargs['data'] = json.dumps(data)
            kwargs['headers'] = {'Content-Type': self.JOSE_CONTENT_TYPE}
        response = self._send_request(method, url, **kwargs)
        self._track(response)
        self._check_response(response)
        if not return_json:
            return response.text
        return self._decode_json(response)

    def head(self, url: str, **kwargs: Any) -> requests.Response:
        """Send HEAD request without checking the response."""
        return self._send_request('HEAD', url, **kwargs)

    def _track(self, response: requests.Response) -> None:
        self.last_location = response.headers.get('Location')
        # The server sends a fresh nonce with every response, errors included.
        if self.REPLAY_NONCE_HEADER in response.headers:
            self._add_nonce(response)

    def _add_nonce(self, response: requests.Response) -> None:
        if self.REPLAY_NONCE_HEADER in response.headers:
            nonce = response.headers[self.REPLAY_NONCE_HEADER]
            try:
                jose.decode_b64jose(nonce)
            except jose.DeserializationError as error:
                raise errors.BadNonce(nonce, error)
            logger.debug('Storing nonce: %s', nonce)
            self._nonce = nonce
            self.last_nonce = nonce
        else:
            raise errors.MissingNonce(response.headers)

    def _get_nonce(self, url: str) -> str:
        if self._nonce is None:
            logger.debug('Requesting fresh nonce')
            response = self.head(self.nonce_endpoint or url)
            if not response.ok and self.REPLAY_NONCE_HEADER not in response.headers:
                self._check_response(response)
            self._add_nonce(response)
        nonce, self._nonce = self._nonce, None
        assert nonce is not None
        return nonce

    @classmethod
    def _check_response(cls, response: requests.Response) -> None:
        """Raise the error carried by a non-2xx response.

        :raises .ServerError: (or the subclass matching the ACME problem
            type) with the server's detail message.

        """
        if response.ok:
            return
        response_ct = _content_type(response)
        try:
            jobj = response.json()
        except ValueError:
            jobj = None

        if jobj is not None:
            if response_ct != cls.JSON_ERROR_CONTENT_TYPE:
                logger.debug('Ignoring wrong Content-Type (%r) for JSON Error', response_ct)
            try:
                problem = messages.Problem.from_json(jobj)
            except jose.DeserializationError as error:
                raise errors.ServerError(detail=str(error), status=response.status_code) from error
            raise problem.to_error(response.status_code)
        raise errors.ServerError(detail=response.text or None, status=response.status_code)

    @classmethod
    def _decode_json(cls, response: requests.Response) -> Any:
        if not response.content:
            return {}
        response_ct = _content_type(response)
        try:
            jobj = response.json()
        except ValueError as error:
            raise errors.ClientError(
                'Unexpected response Content-Type: {0}'.format(response_ct)) from error
        if response_ct != cls.JSON_CONTENT_TYPE:
            logger.debug('Ignoring wrong Content-Type (%r) for JSON decodable '
                         'response', response_ct)
        return jobj

    def _send_request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send HTTP request.

        Makes sure that `verify_ssl` is respected. Logs request and
        response (with headers).

        :raises .TransportError: in case of any problems

        """
        if method == "POST":
            logger.debug('Sending POST request to %s:\n%s', url, kwargs['data'])
        else:
            logger.debug('Sending %s request to %s.', method, url)
        kwargs['verify'] = self.verify_ssl
        kwargs.setdefault('headers', {})
        kwargs['headers'].setdefault('User-Agent', self.user_agent)
        kwargs.setdefault('timeout', self._default_timeout)
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as error:
            # The requests library emits exceptions with a lot of extra text,
            # e.g. "HTTPSConnectionPool(host='acme.example.org', port=443):
            # Max retries exceeded with url: /directory (Caused by
            # NewConnectionError(...: [Errno 65] No route to host'))"
            err_regex = (r".*host='(\S*)'.*Max retries exceeded with url\: "
                         r"(\/\w*).*(\[Errno \d+\])([A-Za-z ]*)")
            m = re.match(err_regex, str(error))
            if m is None:
                raise errors.TransportError(str(error)) from error
            host, path, _err_no, err_msg = m.groups()
            raise errors.TransportError(f"Requesting {host}{path}:{err_msg}") from error

        # If an Accept header was sent in the request, the response may not be
        # UTF-8 encoded. In this case, we don't set response.encoding and log
        # the base64 response instead of raw bytes to keep binary data out of the logs.
        debug_content: Union[bytes, str]
        if "Accept" in kwargs["headers"]:
            debug_content = base64.b64encode(response.content)
        else:
            response.encoding = "utf-8"
            debug_content = response.text
        logger.debug('Received response:\nHTTP %d\n%s\n\n%s',
                     response.status_code,
                     "\n".join("{0}: {1}".format(k, v)
                               for k, v in response.headers.items()),
                     debug_content)
        return response


def _content_type(response: requests.Response) -> Optional[str]:
    response_ct = response.headers.get('Content-Type')
    # Strip parameters from the media-type (rfc2616#section-3.7)
    if response_ct:
        response_ct = response_ct.split(';')[0].strip()
    return response_ct
