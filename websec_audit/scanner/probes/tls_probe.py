"""TLS probe - dedicated handshake to read protocol, cipher and certificates.

The fetch connection already tells us something about TLS, but it runs
with verification off and never sees the chain. This probe handshakes
with verification on first, and only falls back to an unverified
handshake when the certificate is rejected, so we learn both what the
server offers and whether a browser would trust it.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import lru_cache
from typing import Dict, Any, FrozenSet, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dh, dsa, ec, ed448, ed25519, rsa
from cryptography.x509.oid import SignatureAlgorithmOID

from websec_audit.util.types import TLSSession
from websec_audit.util.time import now_utc, duration_ms
from websec_audit.scanner.errors import NetworkError, classify_exception

logger = logging.getLogger(__name__)

HANDSHAKE_ERRORS = (asyncio.TimeoutError, ssl.SSLError, OSError)

SIGNATURE_ALGORITHM_NAMES = {
    SignatureAlgorithmOID.RSA_WITH_MD5: 'md5WithRSAEncryption',
    SignatureAlgorithmOID.RSA_WITH_SHA1: 'sha1WithRSAEncryption',
    SignatureAlgorithmOID.RSA_WITH_SHA224: 'sha224WithRSAEncryption',
    SignatureAlgorithmOID.RSA_WITH_SHA256: 'sha256WithRSAEncryption',
    SignatureAlgorithmOID.RSA_WITH_SHA384: 'sha384WithRSAEncryption',
    SignatureAlgorithmOID.RSA_WITH_SHA512: 'sha512WithRSAEncryption',
    SignatureAlgorithmOID.RSASSA_PSS: 'RSASSA-PSS',
    SignatureAlgorithmOID.ECDSA_WITH_SHA1: 'ecdsa-with-SHA1',
    SignatureAlgorithmOID.ECDSA_WITH_SHA224: 'ecdsa-with-SHA224',
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: 'ecdsa-with-SHA256',
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: 'ecdsa-with-SHA384',
    SignatureAlgorithmOID.ECDSA_WITH_SHA512: 'ecdsa-with-SHA512',
    SignatureAlgorithmOID.DSA_WITH_SHA1: 'dsa-with-sha1',
    SignatureAlgorithmOID.DSA_WITH_SHA224: 'dsa-with-sha224',
    SignatureAlgorithmOID.DSA_WITH_SHA256: 'dsa-with-sha256',
    SignatureAlgorithmOID.ED25519: 'ed25519',
    SignatureAlgorithmOID.ED448: 'ed448',
}


@dataclass
class CertificateInfo:
    """The parts of an X.509 certificate the TLS analyzer grades."""
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial_number: str = ""
    signature_algorithm: Optional[str] = None  # e.g. "sha256WithRSAEncryption"
    signature_hash: Optional[str] = None  # e.g. "sha256"; None for EdDSA
    key_type: Optional[str] = None  # RSA, EC, DSA, DH, Ed25519, Ed448
    key_size: Optional[int] = None
    san: List[str] = field(default_factory=list)
    has_san: bool = False
    has_eku: bool = False
    fingerprint_sha256: str = ""

    @property
    def self_signed(self) -> bool:
        return self.subject == self.issuer

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject': self.subject,
            'issuer': self.issuer,
            'not_before': self.not_before.isoformat(),
            'not_after': self.not_after.isoformat(),
            'serial_number': self.serial_number,
            'signature_algorithm': self.signature_algorithm,
            'signature_hash': self.signature_hash,
            'key_type': self.key_type,
            'key_size': self.key_size,
            'san': list(self.san),
            'fingerprint_sha256': self.fingerprint_sha256,
        }


def _key_details(cert: x509.Certificate) -> Tuple[Optional[str], Optional[int]]:
    key = cert.public_key()
    if isinstance(key, rsa.RSAPublicKey):
        return 'RSA', key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return 'EC', key.curve.key_size
    if isinstance(key, dsa.DSAPublicKey):
        return 'DSA', key.key_size
    if isinstance(key, dh.DHPublicKey):
        return 'DH', key.key_size
    if isinstance(key, ed25519.Ed25519PublicKey):
        return 'Ed25519', 256
    if isinstance(key, ed448.Ed448PublicKey):
        return 'Ed448', 456
    return type(key).__name__, None


def _signature_details(cert: x509.Certificate) -> Tuple[Optional[str], Optional[str]]:
    oid = cert.signature_algorithm_oid
    algorithm = SIGNATURE_ALGORITHM_NAMES.get(oid, oid.dotted_string)
    try:
        hash_alg = cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        return algorithm, 'unknown'
    return algorithm, hash_alg.name if hash_alg is not None else None


def parse_certificate(der: bytes) -> CertificateInfo:
    """Parse a DER certificate. Raises ValueError on garbage input."""
    cert = x509.load_der_x509_certificate(der)
    signature_algorithm, signature_hash = _signature_details(cert)
    key_type, key_size = _key_details(cert)

    san: List[str] = []
    has_san = False
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        has_san = True
        san = san_ext.value.get_values_for_type(x509.DNSName)
        san += [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass

    try:
        cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        has_eku = True
    except x509.ExtensionNotFound:
        has_eku = False

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        serial_number=hex(cert.serial_number),
        signature_algorithm=signature_algorithm,
        signature_hash=signature_hash,
        key_type=key_type,
        key_size=key_size,
        san=san,
        has_san=has_san,
        has_eku=has_eku,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
    )


def build_context(verify: bool) -> ssl.SSLContext:
    """SSL context that still negotiates legacy protocols and ciphers.

    We want to grade a TLS 1.0 server, not fail to talk to it.
    """
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    try:
        context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
        context.set_ciphers('ALL:@SECLEVEL=0')
    except (ValueError, ssl.SSLError) as e:
        # Some OpenSSL builds refuse to go below their policy floor
        logger.debug(f"Could not relax TLS context: {e}")
    return context


@lru_cache(maxsize=1)
def trusted_subjects() -> FrozenSet[str]:
    """RFC 4514 subjects of the CAs in the system trust store.

    get_ca_certs only lists what OpenSSL has loaded eagerly, which misses
    hashed capath directories, so the default CA bundle is read as well.
    """
    subjects = set()
    for der in ssl.create_default_context().get_ca_certs(binary_form=True):
        try:
            subjects.add(x509.load_der_x509_certificate(der).subject.rfc4514_string())
        except ValueError as e:
            logger.debug(f"Skipping unreadable CA certificate: {e}")

    cafile = ssl.get_default_verify_paths().cafile
    if cafile:
        try:
            with open(cafile, 'rb') as f:
                bundle = x509.load_pem_x509_certificates(f.read())
        except (OSError, ValueError) as e:
            logger.debug(f"Could not read CA bundle {cafile}: {e}")
        else:
            subjects.update(cert.subject.rfc4514_string() for cert in bundle)

    logger.debug(f"Loaded {len(subjects)} trusted CA subjects")
    return frozenset(subjects)


class TLSProbe:
    """Async TLS handshake for protocol, cipher and chain."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    async def handshake(self, host: str, port: int = 443) -> TLSSession:
        """Handshake with host and describe the session.

        A rejected certificate is not a failure: the handshake is repeated
        unverified and the session comes back with authorized=False.
        Anything else (timeout, reset, protocol alert) raises NetworkError.
        """
        start = now_utc()
        url = f"https://{host}:{port}"
        try:
            try:
                session = await self._handshake(host, port, verify=True)
            except ssl.SSLCertVerificationError as e:
                message = e.verify_message or str(e)
                logger.info(f"Certificate for {host}:{port} not trusted: {message}")
                session = await self._handshake(host, port, verify=False)
                session = replace(session, authorized=False, authorization_error=message)
        except HANDSHAKE_ERRORS as e:
            classified = classify_exception(e, url)
            logger.warning(f"TLS handshake with {host}:{port} failed: {classified.technical_message}")
            raise NetworkError(classified) from e

        logger.debug(
            f"TLS handshake with {host}:{port}: {session.protocol} {session.cipher} "
            f"({len(session.certificates)} certs) in {duration_ms(start):.0f}ms"
        )
        return session

    async def _handshake(self, host: str, port: int, verify: bool) -> TLSSession:
        context = build_context(verify)
        writer = None
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=context, server_hostname=host),
                timeout=self.timeout
            )
            ssl_obj = writer.get_extra_info('ssl_object')
            if ssl_obj is None:
                raise ssl.SSLError("No SSL object in connection")

            cipher = ssl_obj.cipher()
            certificates, chain_available = self._read_chain(ssl_obj, verify)
            return TLSSession(
                protocol=ssl_obj.version(),
                cipher=cipher[0] if cipher else None,
                cipher_bits=cipher[2] if cipher and len(cipher) > 2 else None,
                certificates=certificates,
                chain_available=chain_available,
                authorized=verify,
            )
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except (ssl.SSLError, OSError) as e:
                    logger.debug(f"Error closing TLS connection to {host}:{port}: {e}")

    @staticmethod
    def _read_chain(ssl_obj, verified: bool) -> Tuple[Tuple[bytes, ...], bool]:
        """DER chain, leaf first, and whether it is the full chain.

        get_verified_chain/get_unverified_chain only exist on Python 3.13+;
        older runtimes give us the leaf alone.
        """
        getter = getattr(ssl_obj, 'get_verified_chain' if verified else 'get_unverified_chain', None)
        if getter is not None:
            chain = tuple(c for c in (getter() or []) if isinstance(c, bytes))
            if chain:
                return chain, True

        leaf = ssl_obj.getpeercert(binary_form=True)
        return ((leaf,) if leaf else ()), False
