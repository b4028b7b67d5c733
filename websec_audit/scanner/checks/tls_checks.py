"""TLS/certificate analyzer.

Grades protocol version, cipher suite, the leaf certificate and the chain
from a dedicated handshake. When the handshake itself fails, a single
verifying HEAD request tells us at least whether a browser would trust
the site, and the category is scored on that alone.
"""

import logging
from datetime import datetime
from typing import AbstractSet, Callable, Dict, Any, Iterable, List, Optional, Tuple

from websec_audit.util.types import (
    AnalyzerConfig, CategoryAnalysis, NormalizedURL, Severity, TLSSession,
    VulnerabilityFinding, clamp_score
)
from websec_audit.util.time import now_utc, days_until, as_utc, duration_ms
from websec_audit.scanner.errors import ClassifiedError, ErrorCategory, NetworkError
from websec_audit.scanner.probes.http_probe import HTTPProbe
from websec_audit.scanner.probes.tls_probe import CertificateInfo, TLSProbe, parse_certificate, trusted_subjects
from websec_audit.scanner.checks.registry import (
    CERT_EXPIRY_WARNING_DAYS, DEFAULT_MIN_KEY_SIZE, EDDSA_KEY_TYPES,
    FALLBACK_FAILED_SCORE, FALLBACK_TIMEOUT_SCORE, FALLBACK_UNVERIFIED_SCORE,
    FALLBACK_VERIFIED_SCORE, INSECURE_CIPHER_ALGORITHMS, MAX_CHAIN_DEPTH,
    MIN_CIPHER_BITS, MIN_KEY_SIZES, SECURE_HASH_ALGORITHMS, STRONG_CIPHER_BITS,
    STRONG_CIPHER_BONUS, TLS13_BONUS, TLS_AUTHORIZED_BASE_SCORE,
    TLS_COMPONENT_PENALTIES, TLS_TOP_LEVEL_PENALTIES, TLS_UNAUTHORIZED_BASE_SCORE,
    TLS_URGENT_SCORE
)

logger = logging.getLogger(__name__)

CATEGORY = 'ssl'


def walk_chain(certificates: List[CertificateInfo],
               trusted: AbstractSet[str] = frozenset(),
               max_depth: int = MAX_CHAIN_DEPTH) -> Tuple[List[CertificateInfo], bool]:
    """Follow issuer links from the leaf over an explicit list.

    Returns the path walked and whether it is complete: it ended at a
    self-signed root, or at a certificate whose issuer is in trusted.
    Servers normally leave the root out, so the second case is the usual
    one. Stops when no issuer is found, when a certificate would repeat,
    or at max_depth.
    """
    if not certificates:
        return [], False

    path = [certificates[0]]
    visited = {0}
    current = certificates[0]
    while True:
        if current.self_signed:
            return path, True

        next_index = None
        for index, candidate in enumerate(certificates):
            if index not in visited and candidate.subject == current.issuer:
                next_index = index
                break
        if next_index is None:
            return path, current.issuer in trusted
        if len(path) >= max_depth:
            return path, False

        visited.add(next_index)
        current = certificates[next_index]
        path.append(current)


def protocol_grade(protocol: Optional[str]) -> Optional[str]:
    """A+/A/B/F for known protocol names, None when unrecognized."""
    if not protocol:
        return None
    version = protocol.lower().replace(' ', '')
    if 'tlsv1.3' in version:
        return 'A+'
    if 'tlsv1.2' in version:
        return 'A'
    if 'tlsv1.1' in version:
        return 'B'
    if version in ('tlsv1', 'tlsv1.0') or version.startswith('ssl'):
        return 'F'
    return None


def _cipher_parts(name: str) -> List[str]:
    return name.upper().replace('_', '-').split('-')


def key_exchange(name: str) -> str:
    name = name.upper()
    if 'ECDHE' in name:
        return 'ECDHE'
    if 'DHE' in name:
        return 'DHE'
    if 'RSA' in name:
        return 'RSA'
    return 'unknown'


def authentication(name: str) -> str:
    name = name.upper()
    if 'ECDSA' in name:
        return 'ECDSA'
    if 'RSA' in name:
        return 'RSA'
    if 'DSS' in name:
        return 'DSS'
    return 'unknown'


def bulk_algorithm(name: str) -> str:
    for part in _cipher_parts(name):
        if any(alg in part for alg in ('AES', 'CHACHA20', 'CAMELLIA', 'RC4', 'DES')):
            return part
    return 'unknown'


class TLSAnalyzer:
    """Scores the ssl category of a report."""

    def __init__(self, tls_probe: Optional[TLSProbe] = None,
                 config: Optional[AnalyzerConfig] = None,
                 http_probe_factory: Optional[Callable[[], HTTPProbe]] = None,
                 trusted_issuers: Optional[Iterable[str]] = None):
        self.config = config or AnalyzerConfig()
        self.tls_probe = tls_probe or TLSProbe(timeout=self.config.tls_timeout)
        self.http_probe_factory = http_probe_factory or (lambda: HTTPProbe(self.config))
        # None means the system trust store, loaded on first use
        self._trusted_issuers = frozenset(trusted_issuers) if trusted_issuers is not None else None

    @property
    def trusted_issuers(self) -> AbstractSet[str]:
        if self._trusted_issuers is None:
            self._trusted_issuers = trusted_subjects()
        return self._trusted_issuers

    async def analyze(self, target: NormalizedURL) -> CategoryAnalysis:
        if not target.is_https:
            return self.not_https()

        start = now_utc()
        try:
            session = await self.tls_probe.handshake(target.host, target.port)
        except NetworkError as e:
            logger.warning(f"Detailed TLS analysis of {target.host} failed, trying simple check")
            analysis = await self.fallback(target, e.classified)
        else:
            analysis = self.grade_session(session)

        logger.debug(f"TLS analysis of {target.host} scored {analysis.score} in {duration_ms(start):.0f}ms")
        return analysis

    def not_https(self) -> CategoryAnalysis:
        return CategoryAnalysis(
            category=CATEGORY,
            score=0,
            recommendations=['Use HTTPS to protect the communication'],
            details={'is_secure': False, 'reason': 'URL does not use HTTPS'},
        )

    def grade_session(self, session: TLSSession, now: Optional[datetime] = None) -> CategoryAnalysis:
        """Score a completed handshake."""
        now = now or now_utc()

        top_level: List[VulnerabilityFinding] = []
        if not session.authorized and session.authorization_error:
            top_level.append(VulnerabilityFinding(
                type='authorization',
                severity=Severity.CRITICAL,
                message=f"Certificate not trusted: {session.authorization_error}",
                impact='The connection cannot be trusted',
                remediation='Install a certificate issued by a trusted CA that matches the host name',
            ))

        protocol_details, protocol_findings = self.analyze_protocol(session.protocol)
        cipher_details, cipher_findings = self.analyze_cipher(session.cipher, session.cipher_bits)
        cert_details, cert_findings, chain_details, chain_findings = self.analyze_certificates(session, now)

        components = protocol_findings + cipher_findings + cert_findings + chain_findings

        score = TLS_AUTHORIZED_BASE_SCORE if session.authorized else TLS_UNAUTHORIZED_BASE_SCORE
        score -= sum(TLS_TOP_LEVEL_PENALTIES.get(f.severity, 0) for f in top_level)
        score -= sum(TLS_COMPONENT_PENALTIES.get(f.severity, 0) for f in components)
        if session.protocol and '1.3' in session.protocol:
            score += TLS13_BONUS
        if session.cipher_bits is not None and session.cipher_bits >= STRONG_CIPHER_BITS:
            score += STRONG_CIPHER_BONUS
        score = clamp_score(score)

        recommendations = []
        if score < TLS_URGENT_SCORE:
            recommendations.append('SSL/TLS configuration needs urgent improvement')
        if not session.authorized:
            recommendations.append('Fix the certificate problems')
        if session.protocol and protocol_grade(session.protocol) not in ('A+', 'A'):
            recommendations.append('Upgrade to TLS 1.2 or later')
        if session.cipher_bits is not None and session.cipher_bits < STRONG_CIPHER_BITS:
            recommendations.append('Use ciphers of at least 256 bits')

        return CategoryAnalysis(
            category=CATEGORY,
            score=score,
            findings=top_level + components,
            recommendations=recommendations,
            details={
                'is_secure': True,
                'is_valid': session.authorized,
                'method': 'handshake',
                'authorization_error': session.authorization_error,
                'protocol': protocol_details,
                'cipher': cipher_details,
                'certificate': cert_details,
                'chain': chain_details,
            },
        )

    def analyze_protocol(self, protocol: Optional[str]) -> Tuple[Dict[str, Any], List[VulnerabilityFinding]]:
        grade = protocol_grade(protocol)
        details = {'version': protocol, 'grade': grade, 'is_secure': grade in ('A+', 'A')}
        findings = []

        if grade is None:
            findings.append(VulnerabilityFinding(
                type='no_protocol',
                severity=Severity.CRITICAL,
                message=f"TLS protocol could not be identified ({protocol or 'none'})",
                impact='Transport security cannot be confirmed',
                remediation='Serve HTTPS with TLS 1.2 or TLS 1.3',
            ))
        elif grade == 'B':
            findings.append(VulnerabilityFinding(
                type='deprecated_protocol',
                severity=Severity.MEDIUM,
                message='TLS 1.1 is deprecated',
                impact='Upgrading to TLS 1.2 or later is recommended',
                remediation='Disable TLS 1.1 and enable TLS 1.2 and TLS 1.3',
            ))
        elif grade == 'F':
            findings.append(VulnerabilityFinding(
                type='insecure_protocol',
                severity=Severity.CRITICAL,
                message=f"Insecure or obsolete protocol: {protocol}",
                impact='Exposed to several known protocol attacks',
                remediation='Disable SSL and TLS 1.0; enable TLS 1.2 and TLS 1.3',
            ))
        return details, findings

    def analyze_cipher(self, name: Optional[str],
                       bits: Optional[int]) -> Tuple[Dict[str, Any], List[VulnerabilityFinding]]:
        if not name:
            return {'is_secure': False, 'error': 'Cipher not identified'}, []

        details = {
            'name': name,
            'bits': bits,
            'algorithm': bulk_algorithm(name),
            'key_exchange': key_exchange(name),
            'authentication': authentication(name),
            'is_secure': bits is not None and bits >= MIN_CIPHER_BITS,
        }
        findings = []

        if bits is not None and bits < MIN_CIPHER_BITS:
            findings.append(VulnerabilityFinding(
                type='weak_cipher',
                severity=Severity.CRITICAL,
                message=f"Weak cipher: {bits} bits",
                impact='Easily broken by attackers',
                remediation='Allow only cipher suites with at least 128-bit keys',
            ))

        parts = _cipher_parts(name)
        if any(alg in parts for alg in INSECURE_CIPHER_ALGORITHMS) or 'RC4' in name.upper():
            details['is_secure'] = False
            findings.append(VulnerabilityFinding(
                type='insecure_algorithm',
                severity=Severity.HIGH,
                message=f"Insecure encryption algorithm in {name}",
                impact='Exposed to cryptographic attacks',
                remediation='Remove RC4, DES, 3DES and MD5 based suites',
            ))
        return details, findings

    def analyze_certificates(self, session: TLSSession, now: datetime):
        """Grade the leaf and walk the chain.

        Returns (certificate details, certificate findings, chain details,
        chain findings).
        """
        if not session.certificates:
            return {'is_valid': False, 'error': 'Certificate not found'}, [], {'length': 0}, []

        try:
            parsed = [parse_certificate(der) for der in session.certificates]
        except ValueError as e:
            logger.warning(f"Could not parse certificate: {e}")
            return {'is_valid': False, 'error': 'Certificate could not be parsed'}, [], {'length': 0}, []

        cert_details, cert_findings = self.analyze_certificate(parsed[0], now)
        chain_details, chain_findings = self.analyze_chain(parsed, session.chain_available)
        return cert_details, cert_findings, chain_details, chain_findings

    def analyze_certificate(self, cert: CertificateInfo,
                            now: datetime) -> Tuple[Dict[str, Any], List[VulnerabilityFinding]]:
        days = days_until(cert.not_after, now)
        expired = as_utc(cert.not_after) < as_utc(now)
        not_yet_valid = as_utc(cert.not_before) > as_utc(now)

        details = cert.to_dict()
        details.update({
            'days_until_expiry': days,
            'is_expired': expired,
            'is_not_yet_valid': not_yet_valid,
        })
        findings = []

        if expired:
            findings.append(VulnerabilityFinding(
                type='expired',
                severity=Severity.CRITICAL,
                message='Certificate has expired',
                impact='Browsers will show a security warning',
                remediation='Renew the certificate now',
            ))
        elif days <= CERT_EXPIRY_WARNING_DAYS:
            findings.append(VulnerabilityFinding(
                type='expiring_soon',
                severity=Severity.WARNING,
                message=f"Certificate expires in {days} days",
                impact='The certificate must be renewed soon',
                remediation='Renew the certificate or automate renewal',
            ))

        if not_yet_valid:
            findings.append(VulnerabilityFinding(
                type='not_yet_valid',
                severity=Severity.HIGH,
                message=f"Certificate is not valid until {cert.not_before.isoformat()}",
                impact='Browsers will reject the certificate',
                remediation='Check the server clock and the certificate validity period',
            ))

        eddsa = cert.key_type in EDDSA_KEY_TYPES
        if not eddsa and (cert.signature_hash or '').lower() not in SECURE_HASH_ALGORITHMS:
            findings.append(VulnerabilityFinding(
                type='weak_signature',
                severity=Severity.HIGH,
                message=f"Weak signature algorithm: {cert.signature_algorithm or cert.signature_hash}",
                impact='Exposed to forgery attacks',
                remediation='Reissue the certificate with a SHA-256 or stronger signature',
            ))

        if not eddsa:
            minimum = MIN_KEY_SIZES.get(cert.key_type, DEFAULT_MIN_KEY_SIZE)
            if cert.key_size is None or cert.key_size < minimum:
                findings.append(VulnerabilityFinding(
                    type='weak_key',
                    severity=Severity.HIGH,
                    message=f"Insecure key size: {cert.key_size or 0} bits",
                    impact='Exposed to brute force attacks',
                    remediation=f"Use a {cert.key_type or 'RSA'} key of at least {minimum} bits",
                ))

        if not cert.has_san and not cert.has_eku:
            findings.append(VulnerabilityFinding(
                type='missing_extensions',
                severity=Severity.MEDIUM,
                message='Important certificate extensions are missing',
                impact='Clients may reject or misuse the certificate',
                remediation='Reissue the certificate with subjectAltName and extendedKeyUsage',
            ))

        return details, findings

    def analyze_chain(self, certificates: List[CertificateInfo],
                      chain_available: bool) -> Tuple[Dict[str, Any], List[VulnerabilityFinding]]:
        path, complete = walk_chain(certificates, self.trusted_issuers)
        details = {
            'length': len(path),
            'is_complete': complete,
            'available': chain_available,
            'subjects': [c.subject for c in path],
        }
        findings = []
        if chain_available and not complete:
            findings.append(VulnerabilityFinding(
                type='incomplete_chain',
                severity=Severity.MEDIUM,
                message='Certificate chain is incomplete',
                impact='Some browsers may show warnings',
                remediation='Serve the full intermediate chain with the certificate',
            ))
        return details, findings

    async def fallback(self, target: NormalizedURL, cause: ClassifiedError) -> CategoryAnalysis:
        """Score from one verifying HEAD request. Low confidence by nature."""
        details = {
            'method': 'simple_check',
            'confidence': 'low',
            'handshake_error': cause.technical_message,
        }
        try:
            async with self.http_probe_factory() as http:
                await http.head(target.origin, verify_tls=True, timeout=self.config.tls_fallback_timeout)
        except NetworkError as e:
            return self._fallback_failure(e.classified, details)

        details.update({'is_secure': True, 'is_valid': True})
        return CategoryAnalysis(
            category=CATEGORY,
            score=FALLBACK_VERIFIED_SCORE,
            recommendations=['Valid SSL certificate found; protocol and cipher could not be graded'],
            details=details,
        )

    def _fallback_failure(self, error: ClassifiedError, details: Dict[str, Any]) -> CategoryAnalysis:
        details['error'] = error.technical_message
        if error.category == ErrorCategory.SSL_ERROR:
            details.update({'is_secure': True, 'is_valid': False})
            score = FALLBACK_UNVERIFIED_SCORE
            finding = VulnerabilityFinding(
                type='ssl_validation_failed',
                severity=Severity.HIGH,
                message='SSL certificate is not valid',
                impact='The connection may not be secure',
                remediation='Install a valid certificate from a trusted CA',
            )
            recommendations = ['Fix the SSL certificate problems']
        elif error.category == ErrorCategory.TIMEOUT:
            details.update({'is_secure': False, 'is_valid': False})
            score = FALLBACK_TIMEOUT_SCORE
            finding = VulnerabilityFinding(
                type='ssl_timeout',
                severity=Severity.MEDIUM,
                message='SSL connection timed out',
                impact='The server may be slow or overloaded',
                remediation='Check the server TLS configuration and load',
            )
            recommendations = ['Try again in a few minutes']
        else:
            details.update({'is_secure': False, 'is_valid': False})
            score = FALLBACK_FAILED_SCORE
            finding = VulnerabilityFinding(
                type='ssl_connection_failed',
                severity=Severity.CRITICAL,
                message='Could not connect over SSL',
                impact='The site may not support HTTPS properly',
                remediation='Make sure the server accepts TLS connections on this port',
            )
            recommendations = [
                'Check that the site supports HTTPS',
                'The server may have an SSL configuration problem',
            ]

        return CategoryAnalysis(
            category=CATEGORY,
            score=score,
            findings=[finding],
            recommendations=recommendations,
            details=details,
        )
