"""Shared fixtures."""

from datetime import datetime, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from helpers import FakeDNSProbe


@pytest.fixture
def public_dns():
    """Every name resolves to a public address."""
    return FakeDNSProbe(default=['93.184.216.34'])


@pytest.fixture
def fixed_now():
    return datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope='session')
def rsa_1024_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)
