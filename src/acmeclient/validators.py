"""Local checks that a challenge answer is published before asking the
server to validate it."""
import abc
import datetime
import hashlib
import logging
import time
from typing import Iterable
from typing import Optional

import josepy as jose
import requests

from acmeclient import dns_resolver
from acmeclient import errors
from acmeclient import messages

logger = logging.getLogger(__name__)


class ValidatorInterface(metaclass=abc.ABCMeta):
    """Checks one kind of challenge answer."""

    @abc.abstractmethod
    def supports(self, challenge: messages.AuthorizationChallenge) -> bool:
        """Whether the validator knows how to check ``challenge``."""

    @abc.abstractmethod
    def is_valid(self, challenge: messages.AuthorizationChallenge) -> bool:
        """Whether the answer to ``challenge`` is visible. Never raises on
        lookup failures."""


class DnsDataExtractor:
    """Name and value of the TXT record answering a dns-01 challenge."""

    LABEL = '_acme-challenge'

    def get_fqdn(self, challenge: messages.AuthorizationChallenge) -> str:
        if challenge.fqdn:
            return challenge.fqdn
        domain = challenge.domain
        if domain.startswith('*.'):
            domain = domain[2:]
        return '{0}.{1}'.format(self.LABEL, domain)

    def get_record_value(self, challenge: messages.AuthorizationChallenge) -> str:
        return jose.b64encode(
            hashlib.sha256(challenge.payload.encode('utf-8')).digest()).decode('ascii')


class DnsValidator(ValidatorInterface):
    """Looks for the expected TXT record of a dns-01 challenge."""

    def __init__(self, extractor: Optional[DnsDataExtractor] = None,
                 resolver: Optional[dns_resolver.DnsResolverInterface] = None) -> None:
        self.extractor = extractor or DnsDataExtractor()
        self.resolver = resolver or dns_resolver.get_default_resolver()

    def supports(self, challenge: messages.AuthorizationChallenge) -> bool:
        return challenge.typ == messages.CHALLENGE_DNS01

    def is_valid(self, challenge: messages.AuthorizationChallenge) -> bool:
        fqdn = self.extractor.get_fqdn(challenge)
        expected = self.extractor.get_record_value(challenge)
        try:
            entries = self.resolver.get_txt_entries(fqdn)
        except errors.Error as error:
            logger.debug('Unable to check TXT records of %s: %s', fqdn, error)
            return False
        found = expected in entries
        if not found:
            logger.debug('Expected TXT record %r not found for %s in %r',
                         expected, fqdn, entries)
        return found


class HttpValidator(ValidatorInterface):
    """Fetches the answer of an http-01 challenge over plain HTTP."""

    WHITESPACE_CUTSET = "\n\r\t "
    """Whitespace characters which should be ignored at the end of the body."""

    def __init__(self, timeout: int = 30) -> None:
        self.timeout = timeout

    def supports(self, challenge: messages.AuthorizationChallenge) -> bool:
        return challenge.typ == messages.CHALLENGE_HTTP01

    def uri(self, challenge: messages.AuthorizationChallenge) -> str:
        if challenge.verify_url:
            return challenge.verify_url
        return 'http://{0}/.well-known/acme-challenge/{1}'.format(
            challenge.domain, challenge.token)

    def is_valid(self, challenge: messages.AuthorizationChallenge) -> bool:
        uri = self.uri(challenge)
        logger.debug("Verifying %s at %s...", challenge.typ, uri)
        try:
            http_response = requests.get(uri, verify=False, timeout=self.timeout)
        except requests.exceptions.RequestException as error:
            logger.debug("Unable to reach %s: %s", uri, error)
            return False
        # Key authorizations only use the base64url alphabet plus ".".
        http_response.encoding = "ascii"
        answer = http_response.text.rstrip(self.WHITESPACE_CUTSET)
        if answer != challenge.payload:
            logger.debug("Key authorization from response (%r) doesn't match "
                         "the expected one (%r)", answer, challenge.payload)
            return False
        return True


class ChainValidator(ValidatorInterface):
    """Delegates to the first validator supporting the challenge."""

    def __init__(self, validators: Iterable[ValidatorInterface]) -> None:
        self.validators = list(validators)

    def _find(self, challenge: messages.AuthorizationChallenge
              ) -> Optional[ValidatorInterface]:
        for validator in self.validators:
            if validator.supports(challenge):
                return validator
        return None

    def supports(self, challenge: messages.AuthorizationChallenge) -> bool:
        return self._find(challenge) is not None

    def is_valid(self, challenge: messages.AuthorizationChallenge) -> bool:
        validator = self._find(challenge)
        if validator is None:
            raise errors.ChallengeNotSupportedError(
                'No validator supports the {0} challenge'.format(challenge.typ))
        return validator.is_valid(challenge)


def wait_for_validation(validator: ValidatorInterface,
                        challenge: messages.AuthorizationChallenge,
                        timeout: int = 180, interval: int = 1) -> bool:
    """Poll ``validator`` until the answer is visible or ``timeout`` seconds
    have passed.

    :returns: whether the answer became visible in time.

    """
    deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
    while True:
        if validator.is_valid(challenge):
            return True
        if datetime.datetime.now() > deadline:
            logger.info('The %s answer for %s is still not visible after %d seconds',
                        challenge.typ, challenge.domain, timeout)
            return False
        time.sleep(interval)
