"""ACME protocol client.

This package drives the `ACME protocol`_ from account registration to
certificate issuance and revocation, and validates challenge answers locally
before asking the certificate authority to check them.

.. _`ACME protocol`: https://datatracker.ietf.org/doc/html/rfc8555

"""
