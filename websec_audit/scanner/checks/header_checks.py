"""
Security Header Checks
======================
Grades the response headers against the security header catalog:
- Missing headers, weighted by catalog severity
- Per-header configuration quality (CSP, HSTS, framing, sniffing, ...)
- Information disclosure through Server / X-Powered-By
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from websec_audit.util.types import CategoryAnalysis, Severity, VulnerabilityFinding, clamp_score
from websec_audit.scanner.checks.registry import (
    CACHE_CONTROL_SECURE_DIRECTIVES, CSP_CRITICAL_DIRECTIVES, CSP_FINDING_PENALTY, CSP_MIN_SCORE,
    DEFAULT_HEADER_SCORE, DEFAULT_OPTIONAL_HEADER_POLICY, HSTS_BASE_SCORE,
    HSTS_INCLUDE_SUBDOMAINS_BONUS, HSTS_MIN_MAX_AGE, HSTS_PRELOAD_BONUS, HTTPS_BASE_SCORE,
    IMPORTANT_PERMISSIONS_FEATURES, KNOWN_PERMISSIONS_FEATURES, KNOWN_PERMISSIONS_PREFIXES,
    MISSING_HEADER_PENALTY, PERMISSIONS_BASE_SCORE, PERMISSIONS_PER_FEATURE, SECURITY_HEADERS,
    TOTAL_HEADER_WEIGHT, VALID_REFERRER_POLICIES, OptionalHeaderPolicy
)

logger = logging.getLogger(__name__)

CATEGORY = 'headers'


@dataclass
class HeaderCheck:
    """Result of grading one present header"""
    value: str
    score: int = DEFAULT_HEADER_SCORE
    findings: List[VulnerabilityFinding] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'value': self.value,
            'score': self.score,
            'findings': [f.to_dict() for f in self.findings],
            'recommendations': list(self.recommendations),
            **self.details,
        }


def parse_csp(value: str) -> Dict[str, List[str]]:
    """directive -> source list. Later duplicates overwrite earlier ones."""
    directives: Dict[str, List[str]] = {}
    for part in value.split(';'):
        tokens = part.split()
        if not tokens:
            continue
        directives[tokens[0].lower()] = tokens[1:]
    return directives


def parse_hsts(value: str) -> Dict[str, Any]:
    params = {'max_age': 0, 'include_subdomains': False, 'preload': False}
    for part in value.split(';'):
        token = part.strip().lower()
        if token.startswith('max-age='):
            match = re.match(r'"?(\d+)', token[len('max-age='):])
            params['max_age'] = int(match.group(1)) if match else 0
        elif token == 'includesubdomains':
            params['include_subdomains'] = True
        elif token == 'preload':
            params['preload'] = True
    return params


def parse_permissions_policy(value: str) -> Dict[str, str]:
    """feature -> allowlist, for every `feature=allowlist` item."""
    policies: Dict[str, str] = {}
    for item in value.split(','):
        feature, sep, allowlist = item.strip().partition('=')
        if sep and feature.strip():
            policies[feature.strip().lower()] = allowlist.strip()
    return policies


def is_known_permission(feature: str) -> bool:
    return feature in KNOWN_PERMISSIONS_FEATURES or feature.startswith(KNOWN_PERMISSIONS_PREFIXES)


class HeaderAnalyzer:
    """Scores the headers category of a report."""

    def __init__(self, policy: Optional[OptionalHeaderPolicy] = None):
        self.policy = policy or DEFAULT_OPTIONAL_HEADER_POLICY
        self._checks = {
            'content-security-policy': self.check_csp,
            'strict-transport-security': self.check_hsts,
            'x-frame-options': self.check_frame_options,
            'x-content-type-options': self.check_content_type_options,
            'referrer-policy': self.check_referrer_policy,
            'permissions-policy': self.check_permissions_policy,
            'x-xss-protection': self.check_xss_protection,
            'cache-control': self.check_cache_control,
        }

    def analyze(self, headers: Dict[str, str], url: str) -> CategoryAnalysis:
        headers = {k.lower(): v for k, v in headers.items()}

        present: List[str] = []
        missing: List[str] = []
        checks: Dict[str, HeaderCheck] = {}
        findings: List[VulnerabilityFinding] = []

        for name, definition in SECURITY_HEADERS.items():
            value = headers.get(name.lower())
            if value:
                present.append(name)
                check = self.check_header(name, value)
                checks[name] = check
                findings.extend(check.findings)
            else:
                missing.append(name)
                findings.append(VulnerabilityFinding(
                    type='missing_header',
                    severity=definition.severity,
                    message=f"Header {name} is missing",
                    impact=definition.impact,
                    remediation=definition.description,
                    header=name,
                ))

        additional = self.additional_headers(headers)
        for info in additional.values():
            if 'finding' in info:
                findings.append(info.pop('finding'))

        score = self.score(present, missing, checks, url)
        recommendations = self.recommendations(present, missing, checks, additional, score)

        logger.debug(f"Headers for {url}: {len(present)} present, {len(missing)} missing, score {score}")

        return CategoryAnalysis(
            category=CATEGORY,
            score=score,
            findings=findings,
            recommendations=recommendations,
            details={
                'present': present,
                'missing': missing,
                'headers': {name: check.to_dict() for name, check in checks.items()},
                'additional': additional,
            },
        )

    def check_header(self, name: str, value: str) -> HeaderCheck:
        checker = self._checks.get(name.lower())
        if checker is None:
            return HeaderCheck(value=value)
        check = checker(value)
        for finding in check.findings:
            finding.header = name
        return check

    def score(self, present: List[str], missing: List[str],
              checks: Dict[str, HeaderCheck], url: str) -> int:
        """Weighted header score normalized to 0-100."""
        score = HTTPS_BASE_SCORE if url.lower().startswith('https://') else 0

        for name in present:
            definition = SECURITY_HEADERS[name]
            header_score = checks[name].score or DEFAULT_HEADER_SCORE
            score += header_score / 100 * definition.weight

        for name in missing:
            if self.policy.is_optional(name, url):
                continue
            definition = SECURITY_HEADERS[name]
            score -= definition.weight * MISSING_HEADER_PENALTY.get(definition.severity, 0)

        return clamp_score(score / TOTAL_HEADER_WEIGHT * 100)

    def recommendations(self, present: List[str], missing: List[str], checks: Dict[str, HeaderCheck],
                        additional: Dict[str, Dict[str, Any]], score: int) -> List[str]:
        recommendations = []

        critical_missing = [h for h in missing if SECURITY_HEADERS[h].severity == Severity.CRITICAL]
        if critical_missing:
            recommendations.append(f"CRITICAL: implement the headers: {', '.join(critical_missing)}")

        for name in present:
            recommendations.extend(checks[name].recommendations)

        for info in additional.values():
            if info.get('recommendation'):
                recommendations.append(info['recommendation'])

        if score < 50:
            recommendations.append('Security header configuration is inadequate - urgent review needed')
        elif score < 70:
            recommendations.append('Security header configuration needs improvement')
        elif score < 90:
            recommendations.append('Good security header configuration, some optimizations possible')

        return list(dict.fromkeys(recommendations))

    def additional_headers(self, headers: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
        """Headers outside the catalog that leak server details."""
        additional: Dict[str, Dict[str, Any]] = {}

        if headers.get('server'):
            additional['server'] = {
                'value': headers['server'],
                'recommendation': 'Consider hiding or generalizing the Server header',
            }

        if headers.get('x-powered-by'):
            additional['x_powered_by'] = {
                'value': headers['x-powered-by'],
                'finding': VulnerabilityFinding(
                    type='information_disclosure',
                    severity=Severity.LOW,
                    message=f"X-Powered-By reveals the technology in use: {headers['x-powered-by']}",
                    impact='Makes reconnaissance for targeted attacks easier',
                    remediation='Remove the X-Powered-By header',
                    header='X-Powered-By',
                ),
            }

        return additional

    # ---- per-header checks ----

    def check_csp(self, value: str) -> HeaderCheck:
        directives = parse_csp(value)
        check = HeaderCheck(value=value, details={'directives': directives})

        missing = [d for d in CSP_CRITICAL_DIRECTIVES if d not in directives]
        if missing:
            check.findings.append(VulnerabilityFinding(
                type='missing_csp_directives',
                severity=Severity.HIGH,
                message=f"Critical CSP directives missing: {', '.join(missing)}",
                impact='Incomplete protection against XSS',
                remediation='Define default-src, script-src and object-src',
            ))

        unsafe = []
        for directive, sources in directives.items():
            # keywords are case-insensitive
            lowered = [source.lower() for source in sources]
            for keyword in ('unsafe-inline', 'unsafe-eval'):
                if f"'{keyword}'" in lowered:
                    unsafe.append(f"{directive}: {keyword}")
        if unsafe:
            check.findings.append(VulnerabilityFinding(
                type='unsafe_csp_directives',
                severity=Severity.MEDIUM,
                message=f"Unsafe CSP sources in use: {', '.join(unsafe)}",
                impact='Weakens the protection CSP provides',
                remediation='Replace unsafe-inline/unsafe-eval with nonces or hashes',
            ))

        if '*' in directives.get('script-src', []):
            check.findings.append(VulnerabilityFinding(
                type='csp_wildcard_script',
                severity=Severity.HIGH,
                message='Wildcard (*) in script-src',
                impact='Scripts from any origin may run',
                remediation='List the script origins explicitly',
            ))

        check.score = max(CSP_MIN_SCORE, 100 - len(check.findings) * CSP_FINDING_PENALTY)
        return check

    def check_hsts(self, value: str) -> HeaderCheck:
        params = parse_hsts(value)
        check = HeaderCheck(value=value, details={'params': params})

        if params['max_age'] < HSTS_MIN_MAX_AGE:
            check.findings.append(VulnerabilityFinding(
                type='hsts_short_max_age',
                severity=Severity.MEDIUM,
                message=f"HSTS max-age too low: {params['max_age']} seconds",
                impact='HSTS may not protect over the long term',
                remediation=f"Set max-age to at least {HSTS_MIN_MAX_AGE}",
            ))

        if not params['include_subdomains']:
            check.recommendations.append('Consider adding includeSubDomains to protect subdomains')
        if not params['preload']:
            check.recommendations.append('Consider adding preload to get into the browser preload list')

        check.score = (
            HSTS_BASE_SCORE
            + (HSTS_INCLUDE_SUBDOMAINS_BONUS if params['include_subdomains'] else 0)
            + (HSTS_PRELOAD_BONUS if params['preload'] else 0)
        )
        return check

    def check_frame_options(self, value: str) -> HeaderCheck:
        check = HeaderCheck(value=value)
        normalized = value.strip().lower()

        if normalized == 'deny':
            check.score, check.details['level'] = 100, 'strict'
        elif normalized == 'sameorigin':
            check.score, check.details['level'] = 90, 'moderate'
        elif normalized.startswith('allow-from'):
            check.score, check.details['level'] = 70, 'permissive'
            check.findings.append(VulnerabilityFinding(
                type='deprecated_allow_from',
                severity=Severity.LOW,
                message='ALLOW-FROM is obsolete, use CSP frame-ancestors',
                impact='Not supported by modern browsers',
                remediation="Use Content-Security-Policy: frame-ancestors",
            ))
        else:
            check.score = 30
            check.findings.append(VulnerabilityFinding(
                type='invalid_x_frame_options',
                severity=Severity.MEDIUM,
                message=f"Invalid value: {value}",
                impact='Header gives no protection',
                remediation='Use DENY or SAMEORIGIN',
            ))
        return check

    def check_content_type_options(self, value: str) -> HeaderCheck:
        check = HeaderCheck(value=value)
        if value.strip().lower() == 'nosniff':
            check.score = 100
        else:
            check.score = 30
            check.findings.append(VulnerabilityFinding(
                type='invalid_x_content_type_options',
                severity=Severity.MEDIUM,
                message=f"Value must be 'nosniff', found: {value}",
                impact='Does not prevent MIME sniffing',
                remediation='Set X-Content-Type-Options: nosniff',
            ))
        return check

    def check_referrer_policy(self, value: str) -> HeaderCheck:
        policies = [p.strip().lower() for p in value.split(',') if p.strip()]
        check = HeaderCheck(value=value, details={'policies': policies})

        invalid = [p for p in policies if p not in VALID_REFERRER_POLICIES]
        if invalid:
            check.findings.append(VulnerabilityFinding(
                type='invalid_referrer_policy',
                severity=Severity.LOW,
                message=f"Invalid policies: {', '.join(invalid)}",
                impact='May not behave as expected',
                remediation='Use a standard policy such as strict-origin-when-cross-origin',
            ))

        if 'no-referrer' in policies or 'strict-origin' in policies:
            check.score, check.details['privacy_level'] = 100, 'high'
        elif 'origin' in policies or 'strict-origin-when-cross-origin' in policies:
            check.score, check.details['privacy_level'] = 80, 'medium'
        else:
            check.score, check.details['privacy_level'] = 60, 'low'
        return check

    def check_permissions_policy(self, value: str) -> HeaderCheck:
        policies = parse_permissions_policy(value)
        check = HeaderCheck(value=value, details={'policies': policies})

        unknown = [f for f in policies if not is_known_permission(f)]
        if unknown:
            check.findings.append(VulnerabilityFinding(
                type='unknown_permissions_feature',
                severity=Severity.LOW,
                message=f"Unknown Permissions-Policy features: {', '.join(unknown)}",
                impact='Browsers ignore unknown features',
                remediation='Check the feature names against the Permissions-Policy registry',
            ))

        unconfigured = [f for f in IMPORTANT_PERMISSIONS_FEATURES if f not in policies]
        if unconfigured:
            check.recommendations.append(f"Consider configuring policies for: {', '.join(unconfigured)}")

        check.score = min(100, PERMISSIONS_BASE_SCORE + len(policies) * PERMISSIONS_PER_FEATURE)
        return check

    def check_xss_protection(self, value: str) -> HeaderCheck:
        check = HeaderCheck(value=value)
        check.findings.append(VulnerabilityFinding(
            type='obsolete_header',
            severity=Severity.INFO,
            message='X-XSS-Protection is obsolete, use CSP',
            impact='Superseded by Content-Security-Policy',
            remediation='Rely on Content-Security-Policy instead',
        ))

        normalized = re.sub(r'\s+', ' ', value.strip().lower())
        if normalized == '1; mode=block':
            check.score, check.details['level'] = 70, 'block'
        elif normalized == '1':
            check.score, check.details['level'] = 50, 'filter'
        elif normalized == '0':
            check.score, check.details['level'] = 20, 'disabled'
            check.findings.append(VulnerabilityFinding(
                type='xss_protection_disabled',
                severity=Severity.LOW,
                message='XSS filter disabled',
                impact='No XSS filtering in older browsers',
                remediation="Set '1; mode=block' or drop the header in favour of CSP",
            ))
        else:
            check.score = 30
            check.findings.append(VulnerabilityFinding(
                type='invalid_xss_protection',
                severity=Severity.LOW,
                message=f"Invalid value: {value}",
                impact='Header gives no protection',
                remediation="Use '1; mode=block'",
            ))
        return check

    def check_cache_control(self, value: str) -> HeaderCheck:
        directives = [d.strip().lower() for d in value.split(',') if d.strip()]
        check = HeaderCheck(value=value, details={'directives': directives})

        if any(d in directives for d in CACHE_CONTROL_SECURE_DIRECTIVES):
            check.score = 80
        else:
            check.score = 40
            check.recommendations.append('Consider no-cache or no-store for sensitive data')
        return check
