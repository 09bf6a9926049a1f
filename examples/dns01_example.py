"""Example ACME-V2 API for DNS-01 challenge.

Brief:

This a complete usage example of the acmeclient API.

Limitations of this example:
    - Works for one domain name plus its subject alternative names
    - Performs only DNS-01 challenge

Workflow:
    (Account creation)
    - Create account key
    - Register account and accept TOS
    (Certificate actions)
    - Select DNS-01 within offered challenges by the CA server
    - Wait for challenge TXT record to be published
    - Issue certificate
    - Revoke certificate
"""
import logging

from acmeclient import client
from acmeclient import crypto_util
from acmeclient import errors
from acmeclient import messages
from acmeclient import validators

# This is the staging point for ACME-V2 within Let's Encrypt.
DIRECTORY_URL = 'https://acme-staging-v02.api.letsencrypt.org/directory'

USER_AGENT = 'acmeclient-example'

# Domain name for the certificate.
DOMAIN = 'client.example.com'


def select_dns01_chall(order, domain):
    """Extract the dns-01 challenge offered for ``domain``."""
    for challenge in order.authorization_challenges(domain):
        if challenge.typ == messages.CHALLENGE_DNS01:
            return challenge
    raise errors.ChallengeNotSupportedError(
        'DNS-01 challenge was not offered by the CA server.')


def example_dns():
    """This example executes the whole process of fulfilling a DNS-01 challenge."""
    logging.basicConfig(level=logging.INFO)

    # Register account and accept TOS
    account_key = crypto_util.generate_ec_key_pair('secp384r1')
    net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
    client_acme = client.AcmeClient(net, DIRECTORY_URL)
    client_acme.register_account(email='fake@example.com')

    # Create domain private key and CSR
    csr = crypto_util.CertificateRequest(
        crypto_util.DistinguishedName(DOMAIN), crypto_util.generate_rsa_key_pair())

    # Issue certificate
    order = client_acme.request_order([DOMAIN], csr, messages.CHALLENGE_DNS01)
    challenge = select_dns01_chall(order, DOMAIN)

    extractor = validators.DnsDataExtractor()
    input("Add DNS TXT record and press Enter when ready:\n"
          "TXT Record Name: {0}\nValue: {1}\n".format(
              extractor.get_fqdn(challenge), extractor.get_record_value(challenge)))

    if not validators.wait_for_validation(validators.DnsValidator(), challenge, timeout=300):
        print('The TXT record is not visible yet, asking the CA anyway.')

    client_acme.challenge_authorization(challenge)
    response = client_acme.finalize_order(order, csr)
    print(response.certificate.full_chain_pem())

    # Revoke certificate
    client_acme.revoke_certificate(response.certificate, messages.RevocationReason.SUPERSEDED)


if __name__ == "__main__":
    example_dns()
