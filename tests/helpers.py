"""Test doubles and certificate builders shared across test modules."""

import ipaddress
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from websec_audit.scanner.probes.dns_probe import DNSResult


class FakeDNSProbe:
    """DNS probe answering from a table; unknown hosts do not resolve."""

    def __init__(self, records: Optional[Dict[str, List[str]]] = None, default: Optional[List[str]] = None):
        self.records = records or {}
        self.default = default
        self.calls: List[str] = []

    async def resolve(self, host: str) -> DNSResult:
        self.calls.append(host)
        addresses = self.records.get(host, self.default)
        if not addresses:
            return DNSResult(host=host, success=False, error="No DNS records found")
        return DNSResult(host=host, success=True, a_records=list(addresses))


def build_certificate(subject_cn: str = 'example.com', issuer_cn: Optional[str] = None,
                      not_before: Optional[datetime] = None, not_after: Optional[datetime] = None,
                      key=None, signing_key=None, hash_algorithm=None,
                      san: bool = True, eku: bool = True, ip_addresses=()) -> x509.Certificate:
    """Self-signed unless issuer_cn/signing_key are given."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    signing_key = signing_key or key
    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=30)
    not_after = not_after or now + timedelta(days=365)

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn or subject_cn)])

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if san:
        names = [x509.DNSName(subject_cn)] + [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses]
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    if eku:
        builder = builder.add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)

    return builder.sign(signing_key, hash_algorithm or hashes.SHA256())


def make_certificate(*args, **kwargs) -> bytes:
    """DER bytes of build_certificate(...)."""
    return build_certificate(*args, **kwargs).public_bytes(Encoding.DER)
