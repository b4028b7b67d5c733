"""
Unit Tests for the security header analyzer
"""

import pytest

from websec_audit.util.types import Severity
from websec_audit.scanner.checks.header_checks import (
    HeaderAnalyzer, parse_csp, parse_hsts, parse_permissions_policy
)
from websec_audit.scanner.checks.registry import (
    DEFAULT_OPTIONAL_HEADER_POLICY, SECURITY_HEADERS, OptionalHeaderPolicy, security_headers_table
)


WELL_CONFIGURED = {
    'content-security-policy': "default-src 'self'; script-src 'self'; object-src 'none'",
    'strict-transport-security': 'max-age=63072000; includeSubDomains; preload',
    'x-frame-options': 'DENY',
    'x-content-type-options': 'nosniff',
    'referrer-policy': 'no-referrer',
    'permissions-policy': 'camera=(), microphone=(), geolocation=(), payment=(), usb=(), fullscreen=()',
    'x-xss-protection': '1; mode=block',
    'expect-ct': 'max-age=86400, enforce',
    'cache-control': 'no-store',
    'pragma': 'no-cache',
}


def types_of(findings):
    return [f.type for f in findings]


@pytest.fixture
def analyzer():
    return HeaderAnalyzer()


class TestAggregate:

    def test_all_headers_well_configured(self, analyzer):
        analysis = analyzer.analyze(WELL_CONFIGURED, 'https://example.com')

        assert analysis.score == 100
        assert analysis.details['missing'] == []
        assert len(analysis.details['present']) == 10
        assert 'missing_header' not in types_of(analysis.findings)

    def test_missing_csp_and_hsts_scores_lower(self, analyzer):
        headers = dict(WELL_CONFIGURED)
        del headers['content-security-policy']
        del headers['strict-transport-security']

        full = analyzer.analyze(WELL_CONFIGURED, 'https://example.com')
        partial = analyzer.analyze(headers, 'https://example.com')

        assert partial.score < full.score
        assert partial.score == 81
        missing = [f for f in partial.findings if f.type == 'missing_header']
        assert {f.header for f in missing} == {'Content-Security-Policy', 'Strict-Transport-Security'}
        assert all(f.severity == Severity.CRITICAL for f in missing)
        assert partial.recommendations[0] == (
            'CRITICAL: implement the headers: Content-Security-Policy, Strict-Transport-Security'
        )

    def test_no_headers_over_https(self, analyzer):
        analysis = analyzer.analyze({}, 'https://example.com')

        assert analysis.score == 21
        assert len(analysis.details['missing']) == 10
        assert 'Security header configuration is inadequate - urgent review needed' in analysis.recommendations

    def test_no_headers_over_http_clamps_to_zero(self, analyzer):
        analysis = analyzer.analyze({}, 'http://example.com')
        assert analysis.score == 0

    def test_header_names_are_case_insensitive(self, analyzer):
        analysis = analyzer.analyze({'X-Frame-Options': 'DENY'}, 'https://example.com')
        assert 'X-Frame-Options' in analysis.details['present']

    def test_information_disclosure(self, analyzer):
        analysis = analyzer.analyze({'server': 'nginx/1.18.0', 'x-powered-by': 'PHP/7.4'}, 'https://example.com')

        disclosure = [f for f in analysis.findings if f.type == 'information_disclosure']
        assert len(disclosure) == 1
        assert disclosure[0].severity == Severity.LOW
        assert 'Consider hiding or generalizing the Server header' in analysis.recommendations
        assert analysis.details['additional']['server']['value'] == 'nginx/1.18.0'

    def test_score_band_recommendation(self, analyzer):
        headers = dict(WELL_CONFIGURED)
        del headers['content-security-policy']
        del headers['strict-transport-security']
        analysis = analyzer.analyze(headers, 'https://example.com')

        assert 'Good security header configuration, some optimizations possible' in analysis.recommendations


class TestOptionalPolicy:

    def test_major_site_skips_legacy_headers(self):
        policy = DEFAULT_OPTIONAL_HEADER_POLICY
        assert policy.is_optional('X-Frame-Options', 'https://www.google.com/') is True
        assert policy.is_optional('Referrer-Policy', 'https://www.google.com/') is False

    def test_other_sites_skip_policy_headers(self):
        policy = DEFAULT_OPTIONAL_HEADER_POLICY
        assert policy.is_optional('Referrer-Policy', 'https://example.com') is True
        assert policy.is_optional('X-Frame-Options', 'https://example.com') is False

    def test_lookalike_host_is_not_major(self):
        assert DEFAULT_OPTIONAL_HEADER_POLICY.is_major_site('notgoogle.com') is False

    def test_policy_is_swappable(self):
        strict = HeaderAnalyzer(policy=OptionalHeaderPolicy(optional_default=()))
        lenient = HeaderAnalyzer()

        assert strict.analyze({}, 'https://example.com').score < lenient.analyze({}, 'https://example.com').score


class TestCSP:

    def test_parse(self):
        directives = parse_csp("default-src 'self'; script-src 'self' cdn.example.com;; upgrade-insecure-requests")
        assert directives == {
            'default-src': ["'self'"],
            'script-src': ["'self'", 'cdn.example.com'],
            'upgrade-insecure-requests': [],
        }

    def test_weak_policy(self, analyzer):
        check = analyzer.check_header('Content-Security-Policy', "script-src 'self' 'unsafe-inline' *")

        assert types_of(check.findings) == ['missing_csp_directives', 'unsafe_csp_directives', 'csp_wildcard_script']
        assert check.score == 40
        assert all(f.header == 'Content-Security-Policy' for f in check.findings)

    def test_unsafe_keywords_any_case(self, analyzer):
        check = analyzer.check_csp("default-src 'self'; script-src 'self' 'UNSAFE-INLINE' 'Unsafe-Eval'; object-src 'none'")

        assert types_of(check.findings) == ['unsafe_csp_directives']
        assert 'script-src: unsafe-inline' in check.findings[0].message
        assert 'script-src: unsafe-eval' in check.findings[0].message

    def test_score_floor(self, analyzer):
        check = analyzer.check_csp("script-src * 'unsafe-eval'")
        assert check.score >= 20


class TestHSTS:

    def test_parse(self):
        assert parse_hsts('max-age=31536000; includeSubDomains') == {
            'max_age': 31536000, 'include_subdomains': True, 'preload': False,
        }

    def test_short_max_age(self, analyzer):
        check = analyzer.check_hsts('max-age=300')

        assert types_of(check.findings) == ['hsts_short_max_age']
        assert check.score == 60
        assert len(check.recommendations) == 2

    def test_full(self, analyzer):
        check = analyzer.check_hsts('max-age=31536000; includeSubDomains; preload')
        assert check.findings == []
        assert check.score == 100


class TestSimpleHeaders:

    @pytest.mark.parametrize('value,score,finding', [
        ('DENY', 100, None),
        ('sameorigin', 90, None),
        ('ALLOW-FROM https://partner.example', 70, 'deprecated_allow_from'),
        ('whatever', 30, 'invalid_x_frame_options'),
    ])
    def test_frame_options(self, analyzer, value, score, finding):
        check = analyzer.check_frame_options(value)
        assert check.score == score
        assert types_of(check.findings) == ([finding] if finding else [])

    def test_content_type_options(self, analyzer):
        assert analyzer.check_content_type_options('nosniff').score == 100
        bad = analyzer.check_content_type_options('sniff')
        assert bad.score == 30
        assert bad.findings[0].severity == Severity.MEDIUM

    @pytest.mark.parametrize('value,score', [
        ('no-referrer', 100),
        ('strict-origin', 100),
        ('strict-origin-when-cross-origin', 80),
        ('unsafe-url', 60),
    ])
    def test_referrer_policy(self, analyzer, value, score):
        assert analyzer.check_referrer_policy(value).score == score

    def test_referrer_policy_invalid_token(self, analyzer):
        check = analyzer.check_referrer_policy('origin, bogus')
        assert check.score == 80
        assert types_of(check.findings) == ['invalid_referrer_policy']

    @pytest.mark.parametrize('value,score,extra', [
        ('1; mode=block', 70, []),
        ('1', 50, []),
        ('0', 20, ['xss_protection_disabled']),
        ('yes', 30, ['invalid_xss_protection']),
    ])
    def test_xss_protection(self, analyzer, value, score, extra):
        check = analyzer.check_xss_protection(value)
        assert check.score == score
        assert types_of(check.findings) == ['obsolete_header'] + extra
        assert check.findings[0].severity == Severity.INFO

    def test_cache_control(self, analyzer):
        assert analyzer.check_cache_control('private, max-age=0').score == 80
        loose = analyzer.check_cache_control('public, max-age=600')
        assert loose.score == 40
        assert loose.recommendations == ['Consider no-cache or no-store for sensitive data']

    def test_header_without_specific_check(self, analyzer):
        assert analyzer.check_header('Expect-CT', 'max-age=0').score == 50


class TestPermissionsPolicy:

    def test_parse(self):
        assert parse_permissions_policy('camera=(), geolocation=(self "https://maps.example")') == {
            'camera': '()',
            'geolocation': '(self "https://maps.example")',
        }

    def test_unknown_feature_flagged(self, analyzer):
        check = analyzer.check_permissions_policy('camera=(), teleport=()')

        assert types_of(check.findings) == ['unknown_permissions_feature']
        assert check.findings[0].severity == Severity.LOW
        assert check.score == 60
        assert check.recommendations == ['Consider configuring policies for: microphone, geolocation, payment']

    def test_client_hints_are_known(self, analyzer):
        check = analyzer.check_permissions_policy('ch-ua-platform=*')
        assert check.findings == []


def test_catalog_table():
    table = security_headers_table()

    assert set(table) == set(SECURITY_HEADERS)
    assert table['Content-Security-Policy'] == {
        'description': SECURITY_HEADERS['Content-Security-Policy'].description,
        'severity': 'critical',
        'weight': 15,
    }
    assert sum(entry['weight'] for entry in table.values()) == 76
