"""
Cookie Security Checks
======================
Parses every Set-Cookie value of the response and grades:
- Secure / HttpOnly / SameSite flags, stricter for sensitive names
- Lifetime, value encoding, size and suspicious characters
- Domain and path scope
- Patterns across all cookies (flag ratios, tracking names, persistence)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from dateutil import parser as date_parser

from websec_audit.util.types import CategoryAnalysis, Severity, VulnerabilityFinding, clamp_score
from websec_audit.util.time import now_utc, seconds_until
from websec_audit.scanner.checks.registry import (
    COOKIE_EXPLANATIONS, COOKIE_HTTPONLY_BONUS, COOKIE_MAX_LIFETIME_SECONDS, COOKIE_PATTERN_EXPLANATIONS,
    COOKIE_PENALTIES, COOKIE_SAMESITE_BONUS, COOKIE_SECURE_BONUS, EXCESSIVE_COOKIE_COUNT,
    GENERIC_COOKIE_EXPLANATION, MAX_COOKIE_VALUE_LENGTH, MIN_HTTPONLY_RATIO, MIN_SECURE_RATIO,
    SENSITIVE_COOKIE_RE, SUSPICIOUS_COOKIE_CHARS_RE, TRACKING_COOKIE_RE
)

logger = logging.getLogger(__name__)

CATEGORY = 'cookies'

BASE64_RE = re.compile(r'^[A-Za-z0-9+/]+=*$')
HEX_RE = re.compile(r'^[0-9a-fA-F]+$')
RANDOM_RUN_RE = re.compile(r'[A-Za-z0-9]{20,}')


@dataclass
class ParsedCookie:
    """One Set-Cookie value, attributes resolved"""
    name: str
    value: str
    domain: Optional[str] = None
    path: str = '/'
    secure: bool = False
    httponly: bool = False
    samesite: Optional[str] = None
    max_age: Optional[int] = None
    expires: Optional[datetime] = None

    @property
    def is_persistent(self) -> bool:
        return self.max_age is not None or self.expires is not None

    def lifetime(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds the cookie lives for; None for session cookies. Max-Age wins over Expires."""
        if self.max_age is not None:
            return float(self.max_age)
        if self.expires is not None:
            return seconds_until(self.expires, now)
        return None


def parse_set_cookie(header: str) -> Optional[ParsedCookie]:
    """Parse one Set-Cookie value. Returns None for an empty string."""
    parts = [p.strip() for p in header.split(';')]
    if not parts or not parts[0]:
        return None

    name, sep, value = parts[0].partition('=')
    if not sep:
        # Bare token with no '=' is a value with an empty name
        name, value = '', parts[0]
    cookie = ParsedCookie(name=name.strip(), value=value.strip().strip('"'))

    for attribute in parts[1:]:
        key, _, attr_value = attribute.partition('=')
        key = key.strip().lower()
        attr_value = attr_value.strip()

        if key == 'domain' and attr_value:
            cookie.domain = attr_value.lower()
        elif key == 'path' and attr_value:
            cookie.path = attr_value
        elif key == 'secure':
            cookie.secure = True
        elif key == 'httponly':
            cookie.httponly = True
        elif key == 'samesite' and attr_value:
            cookie.samesite = attr_value
        elif key == 'max-age':
            try:
                cookie.max_age = int(attr_value)
            except ValueError:
                logger.debug(f"Ignoring invalid Max-Age on cookie {cookie.name}: {attr_value}")
        elif key == 'expires' and attr_value:
            try:
                cookie.expires = date_parser.parse(attr_value)
            except (ValueError, OverflowError) as e:
                logger.debug(f"Ignoring invalid Expires on cookie {cookie.name}: {e}")

    return cookie


def is_sensitive(name: str) -> bool:
    return bool(SENSITIVE_COOKIE_RE.search(name))


def is_tracking(name: str) -> bool:
    return bool(TRACKING_COOKIE_RE.search(name))


def looks_encoded(value: str) -> bool:
    """Heuristic: base64-ish, long hex, or a long random-looking run."""
    return (
        (bool(BASE64_RE.match(value)) and len(value) > 10)
        or (bool(HEX_RE.match(value)) and len(value) > 16)
        or bool(RANDOM_RUN_RE.search(value))
    )


def explain_cookie(name: str) -> str:
    if name in COOKIE_EXPLANATIONS:
        return COOKIE_EXPLANATIONS[name]
    for pattern, explanation in COOKIE_PATTERN_EXPLANATIONS:
        if pattern.search(name):
            return explanation
    return GENERIC_COOKIE_EXPLANATION


@dataclass
class CookieReport:
    """Per-cookie grading result"""
    cookie: ParsedCookie
    sensitive: bool
    encoded: bool
    lifetime: Optional[float]
    findings: List[VulnerabilityFinding] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    security_level: str = 'insecure'
    explanation: str = ''

    def to_dict(self) -> Dict[str, Any]:
        c = self.cookie
        return {
            'name': c.name,
            'domain': c.domain,
            'path': c.path,
            'secure': c.secure,
            'httponly': c.httponly,
            'samesite': c.samesite,
            'max_age': c.max_age,
            'expires': c.expires.isoformat() if c.expires else None,
            'is_session': not c.is_persistent,
            'lifetime_seconds': self.lifetime,
            'is_sensitive': self.sensitive,
            'is_encoded': self.encoded,
            'security_level': self.security_level,
            'explanation': self.explanation,
            'notes': list(self.notes),
            'findings': [f.to_dict() for f in self.findings],
        }


class CookieAnalyzer:
    """Scores the cookies category of a report."""

    def analyze(self, set_cookie_headers: List[str], url: str,
                now: Optional[datetime] = None) -> CategoryAnalysis:
        now = now or now_utc()
        cookies = [c for c in (parse_set_cookie(h) for h in set_cookie_headers or []) if c is not None]

        if not cookies:
            return CategoryAnalysis(
                category=CATEGORY,
                score=100,
                recommendations=['If you use cookies, set the Secure, HttpOnly and SameSite flags'],
                details={'has_cookies': False, 'count': 0},
            )

        reports = [self.check_cookie(c, now) for c in cookies]
        findings = [f for r in reports for f in r.findings]

        count = len(cookies)
        summary = {
            'secure': sum(1 for c in cookies if c.secure),
            'httponly': sum(1 for c in cookies if c.httponly),
            'samesite': sum(1 for c in cookies if c.samesite),
            'session': sum(1 for c in cookies if not c.is_persistent),
            'persistent': sum(1 for c in cookies if c.is_persistent),
        }
        findings.extend(self.check_patterns(cookies, summary))

        score = 100.0
        score -= sum(COOKIE_PENALTIES.get(f.severity, 0) for f in findings)
        score += summary['secure'] / count * COOKIE_SECURE_BONUS
        score += summary['httponly'] / count * COOKIE_HTTPONLY_BONUS
        score += summary['samesite'] / count * COOKIE_SAMESITE_BONUS
        score = clamp_score(score)

        logger.debug(f"Cookies for {url}: {count} cookies, {len(findings)} findings, score {score}")

        return CategoryAnalysis(
            category=CATEGORY,
            score=score,
            findings=findings,
            recommendations=self.recommendations(findings, summary, count, score),
            details={
                'has_cookies': True,
                'count': count,
                'summary': summary,
                'cookies': [r.to_dict() for r in reports],
            },
        )

    def check_cookie(self, cookie: ParsedCookie, now: datetime) -> CookieReport:
        sensitive = is_sensitive(cookie.name)
        report = CookieReport(
            cookie=cookie,
            sensitive=sensitive,
            encoded=looks_encoded(cookie.value),
            lifetime=cookie.lifetime(now),
            explanation=explain_cookie(cookie.name),
        )

        def add(type_, severity, message, impact, remediation):
            report.findings.append(VulnerabilityFinding(
                type=type_, severity=severity, message=f"{cookie.name}: {message}",
                impact=impact, remediation=remediation, cookie=cookie.name,
            ))

        if not cookie.secure:
            add('missing_secure_flag', Severity.CRITICAL if sensitive else Severity.HIGH,
                'cookie without Secure flag',
                'Cookie may be sent over unencrypted HTTP',
                'Add the Secure flag to the cookie')

        if not cookie.httponly:
            add('missing_httponly_flag', Severity.HIGH if sensitive else Severity.MEDIUM,
                'cookie without HttpOnly flag',
                'Cookie readable from JavaScript (exposed to XSS)',
                'Add the HttpOnly flag to the cookie')

        if not cookie.samesite:
            add('missing_samesite', Severity.MEDIUM,
                'cookie without SameSite attribute',
                'Exposed to CSRF attacks',
                'Set SameSite to Strict, Lax or None as needed')
        elif cookie.samesite.lower() == 'none' and not cookie.secure:
            add('samesite_none_without_secure', Severity.HIGH,
                'SameSite=None without Secure flag',
                'Modern browsers reject this cookie',
                'Add the Secure flag when using SameSite=None')

        if report.lifetime is not None and report.lifetime > COOKIE_MAX_LIFETIME_SECONDS:
            days = round(report.lifetime / 86400)
            add('excessive_cookie_lifetime', Severity.MEDIUM,
                f"cookie lifetime too long: {days} days",
                'Widens the window of opportunity for attacks',
                'Reduce the cookie lifetime to the minimum needed')

        if report.encoded:
            report.notes.append('Value appears to be encoded')
        elif sensitive:
            add('unencoded_sensitive_cookie', Severity.MEDIUM,
                'sensitive cookie with unencoded value',
                'Sensitive information can be read easily',
                'Encode or encrypt sensitive cookie values')

        if len(cookie.value) > MAX_COOKIE_VALUE_LENGTH:
            add('oversized_cookie', Severity.LOW,
                f"cookie too large: {len(cookie.value)} characters",
                'May hurt performance and compatibility',
                'Shrink the cookie or use another storage mechanism')

        if SUSPICIOUS_COOKIE_CHARS_RE.search(cookie.value):
            add('suspicious_characters', Severity.LOW,
                'cookie value contains potentially dangerous characters',
                'May indicate missing sanitization',
                'Sanitize and validate cookie values')

        if cookie.domain:
            if cookie.domain.startswith('.'):
                report.notes.append('Wildcard cookie domain - check that it is needed')
            if len(cookie.domain.lstrip('.').split('.')) <= 2:
                add('overly_broad_domain', Severity.LOW,
                    'cookie domain too broad',
                    'Cookie is shared with more subdomains than needed',
                    'Use a more specific domain where possible')

        if cookie.path == '/' and sensitive:
            add('broad_path_sensitive_cookie', Severity.MEDIUM,
                'sensitive cookie with path /',
                'Cookie is sent to every page of the site',
                'Use a more specific path for sensitive cookies')

        report.security_level = self.security_level(cookie, report.findings)
        return report

    @staticmethod
    def security_level(cookie: ParsedCookie, findings: List[VulnerabilityFinding]) -> str:
        if any(f.severity == Severity.CRITICAL for f in findings):
            return 'critical'
        if any(f.severity == Severity.HIGH for f in findings):
            return 'insecure'
        if cookie.secure and cookie.httponly and cookie.samesite:
            return 'secure'
        if cookie.secure and cookie.httponly:
            return 'moderate'
        return 'insecure'

    def check_patterns(self, cookies: List[ParsedCookie], summary: Dict[str, int]) -> List[VulnerabilityFinding]:
        """Findings about the cookie set as a whole."""
        findings = []
        count = len(cookies)

        if count > EXCESSIVE_COOKIE_COUNT:
            findings.append(VulnerabilityFinding(
                type='excessive_cookies',
                severity=Severity.LOW,
                message=f"Too many cookies: {count}",
                impact='May hurt performance and privacy',
                remediation='Review whether every cookie is needed',
            ))

        secure_ratio = summary['secure'] / count
        if secure_ratio < MIN_SECURE_RATIO:
            findings.append(VulnerabilityFinding(
                type='low_secure_cookie_ratio',
                severity=Severity.HIGH,
                message=f"Only {round(secure_ratio * 100)}% of cookies have the Secure flag",
                impact='Several cookies can be intercepted',
                remediation='Add the Secure flag to every cookie',
            ))

        httponly_ratio = summary['httponly'] / count
        if httponly_ratio < MIN_HTTPONLY_RATIO:
            findings.append(VulnerabilityFinding(
                type='low_httponly_ratio',
                severity=Severity.MEDIUM,
                message=f"Only {round(httponly_ratio * 100)}% of cookies have the HttpOnly flag",
                impact='Several cookies are readable from JavaScript',
                remediation='Add HttpOnly to cookies that scripts do not need',
            ))

        if summary['session'] == 0 and summary['persistent'] > 0:
            findings.append(VulnerabilityFinding(
                type='no_session_cookies',
                severity=Severity.LOW,
                message='Only persistent cookies found',
                impact='Data stays stored after the browser is closed',
                remediation='Use session cookies where appropriate',
            ))

        tracking = [c.name for c in cookies if is_tracking(c.name)]
        if tracking:
            findings.append(VulnerabilityFinding(
                type='tracking_cookies_detected',
                severity=Severity.INFO,
                message=f"{len(tracking)} possible tracking cookie(s): {', '.join(tracking)}",
                impact='May affect user privacy',
                remediation='Make sure you have consent for tracking cookies',
            ))

        return findings

    @staticmethod
    def recommendations(findings: List[VulnerabilityFinding], summary: Dict[str, int],
                        count: int, score: int) -> List[str]:
        recommendations = []
        if any(f.severity == Severity.CRITICAL for f in findings):
            recommendations.append('CRITICAL: fix the cookie security problems immediately')

        if score < 50:
            recommendations.append('Cookie configuration is inadequate - urgent review needed')
        elif score < 70:
            recommendations.append('Cookie configuration needs significant improvement')
        elif score < 90:
            recommendations.append('Good cookie configuration, some optimizations possible')

        if summary['secure'] < count:
            recommendations.append('Add the Secure flag to every cookie')
        if summary['httponly'] < count * 0.8:
            recommendations.append('Add HttpOnly to cookies that do not need JavaScript access')
        if summary['samesite'] < count * 0.5:
            recommendations.append('Set the SameSite attribute on every cookie')

        return recommendations
