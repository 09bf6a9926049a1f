"""Tests for acmeclient.client."""
import datetime
import http.client as http_client
import json
import sys
import unittest
from unittest import mock

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
import josepy as jose
import pytest
import requests

from acmeclient import errors
from acmeclient import messages
from acmeclient._internal.tests import test_util

DIRECTORY_URL = 'https://acme.example.org/directory'
DIRECTORY = {
    'newNonce': 'https://acme.example.org/acme/new-nonce',
    'newAccount': 'https://acme.example.org/acme/new-acct',
    'newOrder': 'https://acme.example.org/acme/new-order',
    'revokeCert': 'https://acme.example.org/acme/revoke-cert',
    'meta': {'termsOfService': 'https://example.org/tos.pdf'},
}
ACCOUNT_URL = 'https://acme.example.org/acme/acct/1'
ORDER_URL = 'https://acme.example.org/acme/order/1'
AUTHZ_URL = 'https://acme.example.org/acme/authz/1'
WILDCARD_AUTHZ_URL = 'https://acme.example.org/acme/authz/2'
HTTP_CHALL_URL = 'https://acme.example.org/acme/chall/1'
DNS_CHALL_URL = 'https://acme.example.org/acme/chall/2'
FINALIZE_URL = 'https://acme.example.org/acme/order/1/finalize'
CERT_URL = 'https://acme.example.org/acme/cert/1'

AUTHZ = {
    'status': 'pending',
    'identifier': {'type': 'dns', 'value': 'example.org'},
    'challenges': [
        {'type': 'http-01', 'status': 'pending', 'url': HTTP_CHALL_URL, 'token': 'tok1'},
        {'type': 'dns-01', 'status': 'pending', 'url': DNS_CHALL_URL, 'token': 'tok2'},
    ],
}
WILDCARD_AUTHZ = {
    'status': 'pending',
    'identifier': {'type': 'dns', 'value': 'example.org'},
    'wildcard': True,
    'challenges': [
        {'type': 'dns-01', 'status': 'pending', 'url': DNS_CHALL_URL, 'token': 'tok3'},
    ],
}


class AcmeClientTest(unittest.TestCase):
    """Tests for acmeclient.client.AcmeClient."""
    # pylint: disable=too-many-public-methods

    def setUp(self):
        self.directory = json.loads(json.dumps(DIRECTORY))
        self.net = mock.MagicMock()
        self.net.request.side_effect = lambda method, url: self.directory
        self.net.jwk_thumbprint.return_value = 'thumb'
        self.net.last_location = None
        self.net.nonce_endpoint = None
        self.routes = {
            DIRECTORY['newAccount']: [(ACCOUNT_URL, {'status': 'valid'})],
            ACCOUNT_URL: [(None, {'status': 'valid', 'contact': ['mailto:foo@example.org']})],
            DIRECTORY['newOrder']: [(ORDER_URL, {
                'status': 'pending',
                'authorizations': [AUTHZ_URL],
                'finalize': FINALIZE_URL,
            })],
            AUTHZ_URL: [(None, AUTHZ)],
            WILDCARD_AUTHZ_URL: [(None, WILDCARD_AUTHZ)],
        }
        self.net.signed_request.side_effect = self._signed_request

        self.csr_signer = mock.MagicMock()
        from acmeclient.client import AcmeClient
        self.client = AcmeClient(self.net, DIRECTORY_URL, csr_signer=self.csr_signer)

        from acmeclient.crypto_util import CertificateRequest
        from acmeclient.crypto_util import CertificateRequestSigner
        from acmeclient.crypto_util import DistinguishedName
        self.csr = CertificateRequest(
            DistinguishedName('example.org', subject_alternative_names=[
                'www.example.org', 'example.org']),
            test_util.ec_key_pair())
        csr_pem = CertificateRequestSigner().sign_certificate_request(self.csr)
        self.csr_signer.sign_certificate_request.return_value = csr_pem
        self.csr_b64 = jose.encode_b64jose(
            x509.load_pem_x509_csr(csr_pem).public_bytes(Encoding.DER))

    def _signed_request(self, url, payload, account_url=None, return_json=True):
        # pylint: disable=unused-argument
        responses = self.routes[url]
        location, response = responses.pop(0) if len(responses) > 1 else responses[0]
        self.net.last_location = location
        if isinstance(response, Exception):
            raise response
        return response

    def _calls(self, url):
        return [c for c in self.net.signed_request.call_args_list if c[0][0] == url]

    def _challenge(self, url=HTTP_CHALL_URL, typ='http-01'):
        return messages.AuthorizationChallenge(
            domain='example.org', status='pending', typ=typ, url=url,
            token='tok1', payload='tok1.thumb')

    def test_directory_fetched_once(self):
        assert self.client.directory.resource_url('newOrder') == DIRECTORY['newOrder']
        assert self.client.get_resource_url('newAccount') == DIRECTORY['newAccount']
        self.net.request.assert_called_once_with('GET', DIRECTORY_URL)

    def test_directory_invalid(self):
        self.directory = ['foo']
        with pytest.raises(errors.ClientError):
            self.client.directory  # pylint: disable=pointless-statement

    def test_net_uses_new_nonce_endpoint(self):
        assert self.client.net.nonce_endpoint == DIRECTORY['newNonce']

    def test_net_without_new_nonce_endpoint(self):
        del self.directory['newNonce']
        assert self.client.net.nonce_endpoint is None

    def test_unknown_resource(self):
        with pytest.raises(errors.UnknownResourceError):
            self.client.get_resource_url('keyChange')

    def test_is_csr_eager(self):
        assert not self.client.is_csr_eager()

    def test_account_url(self):
        assert self.client.account_url == ACCOUNT_URL
        assert self.client.account_url == ACCOUNT_URL
        self.net.signed_request.assert_called_once_with(
            DIRECTORY['newAccount'], {'onlyReturnExisting': True})

    def test_account_url_missing_location(self):
        self.routes[DIRECTORY['newAccount']] = [(None, {})]
        with pytest.raises(errors.ClientError):
            self.client.account_url  # pylint: disable=pointless-statement

    def test_register_account(self):
        account = self.client.register_account(email='foo@example.org')
        assert account['status'] == 'valid'
        first_call = self._calls(DIRECTORY['newAccount'])[0]
        assert first_call == mock.call(DIRECTORY['newAccount'], {
            'termsOfServiceAgreed': True,
            'contact': ['mailto:foo@example.org'],
        })
        self.net.signed_request.assert_called_with(ACCOUNT_URL, None, account_url=ACCOUNT_URL)

    def test_register_account_without_email(self):
        self.client.register_account()
        payload = self._calls(DIRECTORY['newAccount'])[0][0][1]
        assert payload['contact'] == []

    def test_register_account_invalid_arguments(self):
        with pytest.raises(errors.ClientError):
            self.client.register_account(email=42)
        with pytest.raises(errors.ClientError):
            self.client.register_account(agreement=['foo'])

    def test_request_order(self):
        self.routes[DIRECTORY['newOrder']][0][1]['authorizations'].append(WILDCARD_AUTHZ_URL)
        order = self.client.request_order(['example.org', '*.example.org'])

        assert order.order_endpoint == ORDER_URL
        assert sorted(order.domains) == ['*.example.org', 'example.org']
        challenges = order.authorization_challenges('example.org')
        assert [c.typ for c in challenges] == ['http-01', 'dns-01']
        assert challenges[0].payload == 'tok1.thumb'
        wildcard = order.authorization_challenges('*.example.org')
        assert wildcard[0].domain == 'example.org'

        call = self._calls(DIRECTORY['newOrder'])[0]
        assert call[0][1] == {'identifiers': [
            {'type': 'dns', 'value': 'example.org'},
            {'type': 'dns', 'value': '*.example.org'},
        ]}
        assert call[1] == {'account_url': ACCOUNT_URL}
        self.net.signed_request.assert_any_call(AUTHZ_URL, None, account_url=ACCOUNT_URL)

    def test_request_order_challenge_type(self):
        self.client.request_order(['example.org'], challenge_type='dns-01')
        payload = self._calls(DIRECTORY['newOrder'])[0][0][1]
        assert payload['challenge_type'] == 'dns-01'

    def test_request_order_csr_eager(self):
        self.directory['meta']['csrEager'] = True
        self.client.request_order(['example.org'], self.csr)
        payload = self._calls(DIRECTORY['newOrder'])[0][0][1]
        assert payload['csr'] == self.csr_b64
        self.csr_signer.sign_certificate_request.assert_called_once_with(self.csr)

    def test_request_order_csr_eager_without_csr(self):
        self.directory['meta']['csrEager'] = True
        with pytest.raises(errors.ClientError):
            self.client.request_order(['example.org'])

    def test_request_order_not_eager_ignores_csr(self):
        self.client.request_order(['example.org'], self.csr)
        payload = self._calls(DIRECTORY['newOrder'])[0][0][1]
        assert 'csr' not in payload

    def test_request_order_no_authorizations(self):
        self.routes[DIRECTORY['newOrder']] = [(ORDER_URL, {'status': 'pending'})]
        with pytest.raises(errors.ChallengeNotSupportedError):
            self.client.request_order(['example.org'])

    def test_request_order_invalid_domains(self):
        for domains in ([], 'example.org', [''], [42], None):
            with pytest.raises(errors.ClientError):
                self.client.request_order(domains)

    def test_request_order_authorization_without_challenges(self):
        self.routes[AUTHZ_URL] = [(None, dict(AUTHZ, challenges=[]))]
        order = self.client.request_order(['example.org'])
        assert order.domains == []

    def test_request_authorization(self):
        challenges = self.client.request_authorization('example.org')
        assert [c.url for c in challenges] == [HTTP_CHALL_URL, DNS_CHALL_URL]

    def test_request_authorization_not_offered(self):
        with pytest.raises(errors.ChallengeNotSupportedError):
            self.client.request_authorization('example.com')

    def test_reload_authorization(self):
        challenge = self._challenge()
        self.routes[HTTP_CHALL_URL] = [(None, dict(AUTHZ['challenges'][0], status='valid'))]
        reloaded = self.client.reload_authorization(challenge)
        assert reloaded.status == 'valid'
        assert reloaded.domain == 'example.org'
        assert challenge.status == 'pending'

    def test_challenge_authorization(self):
        chall = AUTHZ['challenges'][0]
        self.routes[HTTP_CHALL_URL] = [
            (None, dict(chall, status='pending')),
            (None, dict(chall, status='pending')),
            (None, dict(chall, status='pending')),
            (None, dict(chall, status='valid')),
        ]
        response = self.client.challenge_authorization(self._challenge())
        assert response['status'] == 'valid'
        calls = self._calls(HTTP_CHALL_URL)
        assert len(calls) == 4
        assert calls[1] == mock.call(HTTP_CHALL_URL, {}, account_url=ACCOUNT_URL)
        assert calls[2] == mock.call(HTTP_CHALL_URL, None, account_url=ACCOUNT_URL)

    def test_challenge_authorization_already_valid(self):
        self.routes[HTTP_CHALL_URL] = [(None, {'status': 'valid'})]
        self.client.challenge_authorization(self._challenge())
        assert len(self._calls(HTTP_CHALL_URL)) == 1

    @mock.patch('acmeclient.client.datetime')
    def test_challenge_authorization_timeout(self, dt_mock):
        dt_mock.timedelta = datetime.timedelta
        dt_mock.datetime.now.side_effect = [
            datetime.datetime(2015, 3, 27),
            datetime.datetime(2015, 3, 27, 0, 0, 1),
            datetime.datetime(2015, 3, 27, 0, 0, 3),
        ]
        self.routes[HTTP_CHALL_URL] = [(None, {'status': 'pending'})]
        with pytest.raises(errors.ChallengeTimedOutError) as raised:
            self.client.challenge_authorization(self._challenge(), timeout=2)
        assert raised.value.response == {'status': 'pending'}

    def test_challenge_authorization_failed(self):
        self.routes[HTTP_CHALL_URL] = [
            (None, {'status': 'pending'}),
            (None, {'status': 'invalid', 'error': {'detail': 'Connection refused'}}),
        ]
        with pytest.raises(errors.ChallengeFailedError) as raised:
            self.client.challenge_authorization(self._challenge())
        assert raised.value.response['status'] == 'invalid'
        assert 'Connection refused' in str(raised.value)

    def test_challenge_authorization_missing_status(self):
        self.routes[HTTP_CHALL_URL] = [(None, {'url': HTTP_CHALL_URL})]
        with pytest.raises(errors.ChallengeFailedError):
            self.client.challenge_authorization(self._challenge())

    def test_challenge_authorization_invalid_timeout(self):
        with pytest.raises(errors.ClientError):
            self.client.challenge_authorization(self._challenge(), timeout='10')

    def _order(self):
        return messages.CertificateOrder(
            challenges={'example.org': (self._challenge(),)}, order_endpoint=ORDER_URL)

    def _route_finalize(self, final_status='valid'):
        self.routes[ORDER_URL] = [
            (None, {'status': 'ready', 'finalize': FINALIZE_URL}),
            (None, {'status': 'processing'}),
            (None, {'status': final_status, 'certificate': CERT_URL}),
        ]
        self.routes[FINALIZE_URL] = [(None, {'status': 'processing'})]
        self.routes[CERT_URL] = [(None, 'LEAF\n\nINTER\n\nROOT\n')]

    def test_finalize_order(self):
        self._route_finalize()
        response = self.client.finalize_order(self._order(), self.csr)
        assert response.certificate_request is self.csr
        assert response.certificate.pem == 'LEAF'
        assert [c.pem for c in response.certificate.issuer_chain()] == ['INTER', 'ROOT']
        self.net.signed_request.assert_any_call(
            FINALIZE_URL, {'csr': self.csr_b64}, account_url=ACCOUNT_URL)
        self.net.signed_request.assert_called_with(
            CERT_URL, None, account_url=ACCOUNT_URL, return_json=False)

    def test_finalize_order_csr_eager(self):
        self.directory['meta']['csrEager'] = True
        self._route_finalize()
        self.client.finalize_order(self._order())
        self.net.signed_request.assert_any_call(FINALIZE_URL, {}, account_url=ACCOUNT_URL)
        self.csr_signer.sign_certificate_request.assert_not_called()

    def test_finalize_order_without_csr(self):
        self._route_finalize()
        with pytest.raises(errors.ClientError):
            self.client.finalize_order(self._order())

    def test_finalize_order_invalid(self):
        self._route_finalize('invalid')
        with pytest.raises(errors.CertificateRequestFailedError) as raised:
            self.client.finalize_order(self._order(), self.csr)
        assert 'invalid' in str(raised.value)
        assert not self._calls(CERT_URL)

    @mock.patch('acmeclient.client.datetime')
    def test_finalize_order_timeout(self, dt_mock):
        dt_mock.timedelta = datetime.timedelta
        dt_mock.datetime.now.side_effect = [
            datetime.datetime(2015, 3, 27),
            datetime.datetime(2015, 3, 27, 0, 0, 11),
        ]
        self._route_finalize()
        with pytest.raises(errors.CertificateRequestFailedError) as raised:
            self.client.finalize_order(self._order(), self.csr, timeout=10)
        assert 'processing' in str(raised.value)

    def test_finalize_order_already_valid(self):
        self.routes[ORDER_URL] = [(None, {'status': 'valid', 'certificate': CERT_URL})]
        self.routes[CERT_URL] = [(None, 'LEAF\n')]
        response = self.client.finalize_order(self._order())
        assert response.certificate.issuer is None
        assert not self._calls(FINALIZE_URL)

    def test_request_certificate(self):
        self._route_finalize()
        response = self.client.request_certificate('example.org', self.csr)
        assert response.certificate.pem == 'LEAF'
        payload = self._calls(DIRECTORY['newOrder'])[0][0][1]
        assert [i['value'] for i in payload['identifiers']] == [
            'example.org', 'www.example.org']

    def test_request_certificate_invalid_domain(self):
        with pytest.raises(errors.ClientError):
            self.client.request_certificate('', self.csr)

    def _certificate(self):
        pem = test_util.self_signed_cert_pem(test_util.ec_key_pair(), 'example.org')
        return messages.Certificate(pem)

    def test_revoke_certificate(self):
        self.routes[DIRECTORY['revokeCert']] = [(None, '')]
        certificate = self._certificate()
        self.client.revoke_certificate(certificate, messages.RevocationReason.KEY_COMPROMISE)
        call = self._calls(DIRECTORY['revokeCert'])[0]
        assert call[0][1]['reason'] == 1
        der = certificate.x509().public_bytes(Encoding.DER)
        assert jose.b64decode(call[0][1]['certificate']) == der
        assert call[1] == {'account_url': ACCOUNT_URL, 'return_json': False}

    def test_revoke_certificate_full_chain(self):
        self.routes[DIRECTORY['revokeCert']] = [(None, '')]
        leaf = self._certificate()
        root = test_util.self_signed_cert_pem(test_util.rsa_key_pair(), 'Example Root')
        self.client.revoke_certificate(messages.Certificate(leaf.pem + root))
        sent = self._calls(DIRECTORY['revokeCert'])[0][0][1]['certificate']
        assert jose.b64decode(sent) == leaf.x509().public_bytes(Encoding.DER)

    def test_revoke_certificate_unknown_reason_code(self):
        self.routes[DIRECTORY['revokeCert']] = [(None, '')]
        self.client.revoke_certificate(self._certificate(), 7)
        assert self._calls(DIRECTORY['revokeCert'])[0][0][1]['reason'] == 7

    def test_revoke_certificate_default_reason(self):
        self.routes[DIRECTORY['revokeCert']] = [(None, '')]
        self.client.revoke_certificate(self._certificate())
        assert self._calls(DIRECTORY['revokeCert'])[0][0][1]['reason'] == 0

    def test_revoke_certificate_unsupported(self):
        del self.directory['revokeCert']
        with pytest.raises(errors.RevocationUnsupportedError):
            self.client.revoke_certificate(self._certificate())

    def test_revoke_certificate_failed(self):
        self.routes[DIRECTORY['revokeCert']] = [(None, errors.UnauthorizedError(
            detail='not the owner', typ='urn:ietf:params:acme:error:unauthorized'))]
        with pytest.raises(errors.RevocationFailedError) as raised:
            self.client.revoke_certificate(self._certificate())
        assert isinstance(raised.value.__cause__, errors.UnauthorizedError)


class ClientNetworkTest(unittest.TestCase):
    """Tests for acmeclient.client.ClientNetwork."""

    def setUp(self):
        self.verify_ssl = mock.MagicMock()
        self.key_pair = test_util.ec_key_pair()

        from acmeclient.client import ClientNetwork
        self.net = ClientNetwork(
            self.key_pair, verify_ssl=self.verify_ssl, user_agent='acmeclient-python-test')

        self.response = mock.MagicMock(ok=True, status_code=http_client.OK)
        self.response.headers = {}
        self.response.content = b''

    def test_init(self):
        assert self.net.verify_ssl is self.verify_ssl
        assert self.net.alg == 'ES256'

    def test_init_unsupported_alg(self):
        from acmeclient.client import ClientNetwork
        with pytest.raises(errors.AlgorithmUnsupportedError):
            ClientNetwork(self.key_pair, alg='HS256')

    def test_jwk_thumbprint(self):
        expected = jose.b64encode(self.key_pair.jwk().thumbprint()).decode()
        assert self.net.jwk_thumbprint() == expected

    def test_check_response_ok(self):
        # pylint: disable=protected-access
        self.net._check_response(self.response)

    def test_check_response_problem(self):
        self.response.ok = False
        self.response.status_code = 400
        self.response.headers['Content-Type'] = 'application/problem+json'
        self.response.json.return_value = {
            'type': 'urn:ietf:params:acme:error:malformed', 'detail': 'foo'}
        # pylint: disable=protected-access
        with pytest.raises(errors.MalformedError) as raised:
            self.net._check_response(self.response)
        assert raised.value.status == 400
        assert raised.value.detail == 'foo'

    def test_check_response_not_ok_no_jobj(self):
        self.response.ok = False
        self.response.status_code = 502
        self.response.text = 'Bad Gateway'
        self.response.json.side_effect = ValueError
        # pylint: disable=protected-access
        with pytest.raises(errors.ServerError) as raised:
            self.net._check_response(self.response)
        assert raised.value.status == 502
        assert raised.value.detail == 'Bad Gateway'

    def test_check_response_not_ok_jobj_no_problem(self):
        self.response.ok = False
        self.response.json.return_value = []
        # pylint: disable=protected-access
        with pytest.raises(errors.ServerError):
            self.net._check_response(self.response)

    def test_decode_json_empty_body(self):
        # pylint: disable=protected-access
        assert self.net._decode_json(self.response) == {}

    def test_decode_json_invalid(self):
        self.response.content = b'foo'
        self.response.json.side_effect = ValueError
        # pylint: disable=protected-access
        with pytest.raises(errors.ClientError):
            self.net._decode_json(self.response)

    def test_send_request(self):
        self.net.session = mock.MagicMock()
        self.net.session.request.return_value = self.response
        # pylint: disable=protected-access
        assert self.response == self.net._send_request(
            'HEAD', 'http://example.com/', bar='baz')
        self.net.session.request.assert_called_once_with(
            'HEAD', 'http://example.com/', headers=mock.ANY, verify=mock.ANY,
            timeout=mock.ANY, bar='baz')

    def test_send_request_verify_ssl(self):
        # pylint: disable=protected-access
        for verify in True, False:
            self.net.session = mock.MagicMock()
            self.net.session.request.return_value = self.response
            self.net.verify_ssl = verify
            # pylint: disable=protected-access
            assert self.response == self.net._send_request('GET', 'http://example.com/')
            self.net.session.request.assert_called_once_with(
                'GET', 'http://example.com/', verify=verify, timeout=45, headers=mock.ANY)

    def test_send_request_user_agent(self):
        self.net.session = mock.MagicMock()
        # pylint: disable=protected-access
        self.net._send_request('GET', 'http://example.com/', headers={'bar': 'baz'})
        self.net.session.request.assert_called_once_with(
            'GET', 'http://example.com/', verify=mock.ANY, timeout=45,
            headers={'User-Agent': 'acmeclient-python-test', 'bar': 'baz'})

    def test_send_request_timeout(self):
        self.net.session = mock.MagicMock()
        # pylint: disable=protected-access
        self.net._send_request('GET', 'http://example.com/', timeout=5)
        self.net.session.request.assert_called_once_with(
            'GET', 'http://example.com/', verify=mock.ANY, timeout=5, headers=mock.ANY)

    def test_send_request_transport_error(self):
        self.net.session = mock.MagicMock()
        self.net.session.request.side_effect = requests.exceptions.RequestException('foo')
        # pylint: disable=protected-access
        with pytest.raises(errors.TransportError) as raised:
            self.net._send_request('GET', 'http://example.com/')
        assert str(raised.value) == 'foo'

    def test_send_request_connection_error_message(self):
        self.net.session = mock.MagicMock()
        self.net.session.request.side_effect = requests.exceptions.ConnectionError(
            "HTTPSConnectionPool(host='acme.example.org', port=443): Max retries "
            "exceeded with url: /directory (Caused by NewConnectionError('"
            "<urllib3.connection.HTTPSConnection object at 0x108356c80>: Failed to "
            "establish a new connection: [Errno 65] No route to host',))")
        # pylint: disable=protected-access
        with pytest.raises(errors.TransportError) as raised:
            self.net._send_request('GET', 'https://acme.example.org/directory')
        assert str(raised.value) == 'Requesting acme.example.org/directory: No route to host'

    def test_del(self):
        sess = mock.MagicMock()
        self.net.session = sess
        del self.net
        sess.close.assert_called_once_with()

    def test_del_error(self):
        self.net.session = mock.MagicMock()
        self.net.session.close.side_effect = Exception
        del self.net


class ClientNetworkWithMockedResponseTest(unittest.TestCase):
    """Tests for acmeclient.client.ClientNetwork which mock out response."""

    def setUp(self):
        from acmeclient.client import ClientNetwork
        self.key_pair = test_util.ec_key_pair()
        self.net = ClientNetwork(self.key_pair)
        self.net.nonce_endpoint = 'https://acme.example.org/acme/new-nonce'

        self.all_nonces = [jose.encode_b64jose(b'Nonce'), jose.encode_b64jose(b'Nonce2')]
        self.available_nonces = self.all_nonces[:]
        self.responses = []
        self.sent = []

        def send_request(method, url, **kwargs):
            self.sent.append((method, url, kwargs))
            if self.responses:
                response = self.responses.pop(0)
            else:
                response = self._response()
            if self.available_nonces:
                response.headers[self.net.REPLAY_NONCE_HEADER] = self.available_nonces.pop(0)
            return response

        # pylint: disable=protected-access
        self.net._send_request = self.send_request = mock.MagicMock(side_effect=send_request)

    @staticmethod
    def _response(status_code=http_client.OK, jobj=None, text=None, headers=None):
        response = mock.MagicMock(ok=status_code < 400, status_code=status_code)
        response.headers = dict(headers or {})
        if jobj is not None:
            response.headers.setdefault('Content-Type', 'application/json')
            response.content = json.dumps(jobj).encode()
            response.text = json.dumps(jobj)
            response.json.return_value = jobj
        else:
            response.content = (text or '').encode()
            response.text = text or ''
            response.json.side_effect = ValueError
        return response

    def _sent_jws(self, index):
        from acmeclient.jws import JWS
        return JWS.json_loads(self.sent[index][2]['data'])

    def test_head(self):
        response = self.net.head('http://example.com/', bar='baz')
        self.send_request.assert_called_once_with('HEAD', 'http://example.com/', bar='baz')
        assert response.status_code == http_client.OK

    def test_request_get(self):
        self.responses = [self._response(jobj={'foo': 'bar'})]
        assert self.net.request('GET', 'http://example.com/') == {'foo': 'bar'}
        self.send_request.assert_called_once_with('GET', 'http://example.com/')

    def test_request_raw(self):
        self.responses = [self._response(text='LEAF\n\nROOT')]
        assert self.net.request('GET', 'http://example.com/', return_json=False) == \
            'LEAF\n\nROOT'

    def test_request_tracks_location(self):
        self.responses = [self._response(jobj={}, headers={'Location': 'http://loc/'})]
        self.net.request('GET', 'http://example.com/')
        assert self.net.last_location == 'http://loc/'
        self.responses = [self._response(jobj={})]
        self.net.request('GET', 'http://example.com/')
        assert self.net.last_location is None

    def test_signed_request_jwk(self):
        self.responses = [self._response(), self._response(
            jobj={'status': 'valid'}, headers={'Location': 'acct'})]
        result = self.net.signed_request('http://example.com/new-acct', {'foo': 'bar'})
        assert result == {'status': 'valid'}
        assert self.sent[0][:2] == ('HEAD', self.net.nonce_endpoint)
        assert self.sent[1][0] == 'POST'
        assert self.sent[1][2]['headers'] == {'Content-Type': 'application/jose+json'}
        jws = self._sent_jws(1)
        assert jws.header.nonce == self.all_nonces[0]
        assert jws.header.jwk is not None
        assert jws.header.kid is None
        assert jws.payload_json() == {'foo': 'bar'}
        jws.verify(self.key_pair.public_key)
        assert self.net.last_nonce == self.all_nonces[1]

    def test_signed_request_kid_reuses_nonce(self):
        self.responses = [self._response(), self._response(jobj={}), self._response(jobj={})]
        self.net.signed_request('http://example.com/a', None, account_url='acct')
        self.net.signed_request('http://example.com/b', None, account_url='acct')
        assert [method for method, _, _ in self.sent] == ['HEAD', 'POST', 'POST']
        jws = self._sent_jws(2)
        assert jws.header.kid == 'acct'
        assert jws.header.jwk is None
        assert jws.header.nonce == self.all_nonces[1]
        assert jws.payload == ''

    def test_signed_request_retries_bad_nonce_once(self):
        bad_nonce = {'type': 'urn:ietf:params:acme:error:badNonce', 'detail': 'stale'}
        self.available_nonces = [jose.encode_b64jose(b'n%d' % i) for i in range(4)]
        self.responses = [
            self._response(),
            self._response(400, jobj=bad_nonce),
            self._response(jobj={'status': 'valid'}),
        ]
        result = self.net.signed_request('http://example.com/', {}, account_url='acct')
        assert result == {'status': 'valid'}
        assert [method for method, _, _ in self.sent] == ['HEAD', 'POST', 'POST']
        # The retry uses the nonce delivered with the error response.
        assert self._sent_jws(2).header.nonce == jose.encode_b64jose(b'n1')

    def test_signed_request_bad_nonce_twice(self):
        bad_nonce = {'type': 'urn:ietf:params:acme:error:badNonce', 'detail': 'stale'}
        self.available_nonces = [jose.encode_b64jose(b'n%d' % i) for i in range(4)]
        self.responses = [
            self._response(),
            self._response(400, jobj=bad_nonce),
            self._response(400, jobj=bad_nonce),
        ]
        with pytest.raises(errors.BadNonceError):
            self.net.signed_request('http://example.com/', {}, account_url='acct')
        assert len(self.sent) == 3

    def test_signed_request_other_error_not_retried(self):
        self.responses = [
            self._response(),
            self._response(403, jobj={'type': 'urn:ietf:params:acme:error:unauthorized'}),
        ]
        with pytest.raises(errors.UnauthorizedError):
            self.net.signed_request('http://example.com/', {}, account_url='acct')
        assert len(self.sent) == 2

    def test_missing_nonce(self):
        self.available_nonces = []
        with pytest.raises(errors.MissingNonce):
            self.net.signed_request('http://example.com/', {}, account_url='acct')

    def test_bad_nonce_header(self):
        self.available_nonces = ['f']
        with pytest.raises(errors.BadNonce):
            self.net.signed_request('http://example.com/', {}, account_url='acct')

    def test_head_failure_without_nonce(self):
        self.available_nonces = []
        self.responses = [self._response(503, text='down')]
        with pytest.raises(errors.ServerError) as raised:
            self.net.signed_request('http://example.com/', {}, account_url='acct')
        assert raised.value.status == 503

    def test_transport_error_passthrough(self):
        self.send_request.side_effect = errors.TransportError('foo')
        with pytest.raises(errors.TransportError):
            self.net.request('GET', 'http://example.com/')


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
