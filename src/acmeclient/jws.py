"""ACME-specific JWS.

Requests to an ACME server are flattened JWS objects (RFC 7515, section
7.2.2) whose protected header carries ``alg``, ``nonce``, ``url`` and either
the account public ``jwk`` or the account URL as ``kid``. Signatures are
produced by `acmeclient.signer` so that ECDSA signatures use the fixed-width
encoding JWS requires.
"""
import json
from typing import Any
from typing import Mapping
from typing import Optional

import josepy as jose

from acmeclient import crypto_util
from acmeclient import errors
from acmeclient import signer


class Header(jose.JSONObjectWithFields):
    """ACME-specific JOSE protected header. Implements nonce, kid, and url.
    """
    alg: str = jose.field('alg')
    nonce: Optional[str] = jose.field('nonce', omitempty=True)
    url: str = jose.field('url')
    kid: Optional[str] = jose.field('kid', omitempty=True)
    jwk: Optional[jose.JWK] = jose.field('jwk', omitempty=True, decoder=jose.JWK.from_json)


def _encode_payload(payload: Optional[Mapping[str, Any]]) -> bytes:
    # None means POST-as-GET and must serialize to an empty payload, while an
    # empty dict is the "{}" payload.
    if payload is None:
        return b''
    return json.dumps(payload).encode('utf-8')


class JWS(jose.JSONObjectWithFields):
    """Flattened JWS JSON serialization."""
    protected: str = jose.field('protected')
    payload: str = jose.field('payload')
    signature: str = jose.field('signature')

    @classmethod
    def sign(cls, payload: Optional[Mapping[str, Any]], key_pair: crypto_util.KeyPair,
             url: str, nonce: Optional[str], kid: Optional[str] = None,
             alg: Optional[str] = None,
             data_signer: Optional[signer.DataSigner] = None) -> 'JWS':
        """Sign ``payload`` for ``url``.

        Per RFC 8555, jwk and kid are mutually exclusive, so the public key
        is embedded only if ``kid`` is not provided.

        :param dict payload: JSON payload, `None` for POST-as-GET.
        :param KeyPair key_pair: Account key pair.
        :param str url: Target URL.
        :param str nonce: Anti-replay nonce.
        :param str kid: Account URL.
        :param str alg: JWS algorithm, defaults to the key pair's.

        """
        alg = alg or key_pair.algorithm
        profile = signer.signing_profile(alg)
        header = Header(alg=alg, nonce=nonce, url=url, kid=kid,
                        jwk=key_pair.jwk() if kid is None else None)
        protected = jose.b64encode(header.json_dumps().encode('utf-8')).decode('ascii')
        encoded_payload = jose.b64encode(_encode_payload(payload)).decode('ascii')
        signing_input = '{0}.{1}'.format(protected, encoded_payload).encode('ascii')
        signature = (data_signer or signer.DataSigner()).sign(
            signing_input, key_pair.private_key, profile.hash_alg, profile.fmt)
        return cls(protected=protected, payload=encoded_payload,
                   signature=jose.b64encode(signature).decode('ascii'))

    @property
    def header(self) -> Header:
        """Decoded protected header."""
        return Header.json_loads(jose.b64decode(self.protected))

    def payload_json(self) -> Optional[Any]:
        """Decoded payload, `None` for POST-as-GET."""
        raw = jose.b64decode(self.payload)
        return json.loads(raw.decode('utf-8')) if raw else None

    def verify(self, public_key: signer.PublicKey,
               data_signer: Optional[signer.DataSigner] = None) -> None:
        """Check the signature against ``public_key``.

        :raises .SignatureInvalidError: if it does not match.
        :raises .AlgorithmUnsupportedError: if ``alg`` is not supported.

        """
        profile = signer.signing_profile(self.header.alg)
        signing_input = '{0}.{1}'.format(self.protected, self.payload).encode('ascii')
        try:
            signature = jose.b64decode(self.signature)
        except (TypeError, ValueError) as error:
            raise errors.SignatureInvalidError(str(error)) from error
        (data_signer or signer.DataSigner()).verify(
            signature, signing_input, public_key, profile.hash_alg, profile.fmt)
