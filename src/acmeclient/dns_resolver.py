"""DNS resolvers for local validation of challenge answers.

`LibDnsResolver` needs dnspython, available through the ``dns`` extra.
`SimpleDnsResolver` only relies on the platform resolver and cannot read TXT
records.
"""
import abc
import logging
import socket
from typing import Iterable
from typing import List
from typing import Optional

from acmeclient import errors

DNS_REQUIREMENT = 'dnspython>=2.0'

try:
    import dns.exception
    import dns.resolver
    DNS_AVAILABLE = True
except ImportError:  # pragma: no cover
    DNS_AVAILABLE = False


logger = logging.getLogger(__name__)

TYPE_TXT = 'TXT'
TYPE_A = 'A'
TYPE_CNAME = 'CNAME'

SUPPORTED_TYPES = (TYPE_TXT, TYPE_A, TYPE_CNAME)


class DnsResolverInterface(metaclass=abc.ABCMeta):
    """Looks up DNS records."""

    @classmethod
    @abc.abstractmethod
    def is_supported(cls) -> bool:
        """Whether the resolver can run in this environment."""

    def get_txt_entries(self, name: str) -> List[str]:
        """TXT records of ``name``, sorted and deduplicated."""
        return self.get_entries(TYPE_TXT, name)

    @abc.abstractmethod
    def get_entries(self, record_type: str, name: str) -> List[str]:
        """Records of ``record_type`` for ``name``, sorted and deduplicated.

        :raises .UnsupportedRecordTypeError: if ``record_type`` is not
            ``TXT``, ``A`` or ``CNAME``.
        :raises .DnsResolutionError: if the lookup fails.

        """


def _check_record_type(record_type: str) -> None:
    if record_type not in SUPPORTED_TYPES:
        raise errors.UnsupportedRecordTypeError(
            'Record type "{0}" is not supported'.format(record_type))


class LibDnsResolver(DnsResolverInterface):
    """dnspython based resolver.

    Unless nameservers are given, queries go to the authoritative
    nameservers of the zone holding the name so that freshly published
    records are seen before caches expire.

    :ivar list nameservers: IP addresses to query instead of the
        authoritative ones.
    :ivar bool authoritative: Look up the zone's nameservers first.

    """

    def __init__(self, nameservers: Optional[Iterable[str]] = None,
                 authoritative: bool = True, timeout: float = 5.0) -> None:
        if not DNS_AVAILABLE:
            raise errors.DependencyError(
                '{0} is required to use this resolver'.format(DNS_REQUIREMENT))
        self.nameservers = list(nameservers or [])
        self.authoritative = authoritative
        self.timeout = timeout

    @classmethod
    def is_supported(cls) -> bool:
        return DNS_AVAILABLE

    def get_entries(self, record_type: str, name: str) -> List[str]:
        _check_record_type(record_type)
        try:
            answer = self._resolver_for(name).resolve(name, record_type)
        except (dns.exception.DNSException, ValueError) as error:
            logger.debug('Error resolving %s %s: %s', record_type, name, error)
            raise errors.DnsResolutionError(
                'Unable to resolve {0} records for {1}: {2}'.format(
                    record_type, name, error)) from error

        if record_type == TYPE_TXT:
            entries = [b''.join(rdata.strings).decode('utf-8', errors='replace')
                       for rdata in answer]
        elif record_type == TYPE_CNAME:
            entries = [rdata.target.to_text(omit_final_dot=True) for rdata in answer]
        else:
            entries = [rdata.address for rdata in answer]
        return sorted(set(entries))

    def _resolver_for(self, name: str) -> 'dns.resolver.Resolver':
        resolver = dns.resolver.Resolver()
        resolver.lifetime = self.timeout
        if self.nameservers:
            resolver.nameservers = self.nameservers
        elif self.authoritative:
            nameservers = self._authoritative_nameservers(name)
            if nameservers:
                resolver.nameservers = nameservers
        return resolver

    def _authoritative_nameservers(self, name: str) -> List[str]:
        try:
            zone = dns.resolver.zone_for_name(name)
            addresses = []
            for ns in dns.resolver.resolve(zone, 'NS'):
                addresses.extend(
                    rdata.address for rdata in dns.resolver.resolve(ns.target, TYPE_A))
        except dns.exception.DNSException as error:
            logger.warning('Unable to locate the authoritative nameservers of %s, '
                           'using the system resolver: %s', name, error)
            return []
        logger.debug('Authoritative nameservers for %s: %s', name, addresses)
        return addresses


class SimpleDnsResolver(DnsResolverInterface):
    """Resolver built on the platform's name resolution.

    Only ``A`` and ``CNAME`` lookups are possible.
    """

    @classmethod
    def is_supported(cls) -> bool:
        return True

    def get_entries(self, record_type: str, name: str) -> List[str]:
        _check_record_type(record_type)
        if record_type == TYPE_TXT:
            raise errors.DnsResolutionError(
                'TXT records cannot be resolved without {0}'.format(DNS_REQUIREMENT))
        try:
            hostname, _aliases, addresses = socket.gethostbyname_ex(name)
        except OSError as error:
            raise errors.DnsResolutionError(
                'Unable to resolve {0} records for {1}: {2}'.format(
                    record_type, name, error)) from error

        if record_type == TYPE_A:
            return sorted(set(addresses))
        # The canonical name differs from the queried one when it is an alias.
        if hostname.rstrip('.') == name.rstrip('.'):
            return []
        return [hostname.rstrip('.')]


def get_default_resolver() -> DnsResolverInterface:
    """`LibDnsResolver` when dnspython is installed, `SimpleDnsResolver`
    otherwise."""
    if LibDnsResolver.is_supported():
        return LibDnsResolver()
    logger.warning('%s is not installed, TXT records cannot be checked', DNS_REQUIREMENT)
    return SimpleDnsResolver()
