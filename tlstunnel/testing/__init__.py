"""Testing utilities for in-process tunnel simulations.

Certificate generation needs ``cryptography``, which is only installed with
the ``test`` extra (``pip install tlstunnel[test]``).
"""

from .certs import TestCertificates, generate_test_certificates
from .fake_upstream import EchoUpstream

__all__ = [
    "EchoUpstream",
    "TestCertificates",
    "generate_test_certificates",
]
