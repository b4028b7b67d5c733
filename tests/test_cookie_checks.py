"""
Unit Tests for Set-Cookie parsing and the cookie analyzer
"""

from datetime import datetime, timezone

import pytest

from websec_audit.util.types import Severity
from websec_audit.scanner.checks.cookie_checks import (
    CookieAnalyzer, ParsedCookie, explain_cookie, is_sensitive, is_tracking, looks_encoded, parse_set_cookie
)


def types_of(findings):
    return [f.type for f in findings]


@pytest.fixture
def analyzer():
    return CookieAnalyzer()


class TestParse:

    def test_attributes(self):
        cookie = parse_set_cookie(
            'id=1; Expires=Tue, 21 Oct 2025 07:28:00 GMT; Path=/app; Domain=.Example.com; Secure; HttpOnly; SameSite=Lax'
        )

        assert cookie.name == 'id'
        assert cookie.value == '1'
        assert cookie.domain == '.example.com'
        assert cookie.path == '/app'
        assert cookie.secure is True
        assert cookie.httponly is True
        assert cookie.samesite == 'Lax'
        assert cookie.expires == datetime(2025, 10, 21, 7, 28, tzinfo=timezone.utc)
        assert cookie.is_persistent is True

    def test_defaults(self):
        cookie = parse_set_cookie('theme=dark')
        assert cookie == ParsedCookie(name='theme', value='dark')
        assert cookie.is_persistent is False
        assert cookie.lifetime() is None

    def test_max_age_wins_over_expires(self, fixed_now):
        cookie = parse_set_cookie('a=b; Max-Age=60; Expires=Tue, 21 Oct 2025 07:28:00 GMT')
        assert cookie.lifetime(fixed_now) == 60.0

    def test_lifetime_from_expires(self, fixed_now):
        cookie = parse_set_cookie('a=b; Expires=Mon, 02 Jun 2025 12:00:00 GMT')
        assert cookie.lifetime(fixed_now) == 86400.0

    def test_invalid_max_age_ignored(self):
        cookie = parse_set_cookie('a=b; Max-Age=soon')
        assert cookie.max_age is None
        assert cookie.is_persistent is False

    def test_invalid_expires_ignored(self):
        cookie = parse_set_cookie('a=b; Expires=not a date at all')
        assert cookie.expires is None

    def test_bare_token_is_value(self):
        cookie = parse_set_cookie('justavalue')
        assert cookie.name == ''
        assert cookie.value == 'justavalue'

    def test_quoted_value(self):
        assert parse_set_cookie('a="xyz"; Path=/').value == 'xyz'

    def test_empty(self):
        assert parse_set_cookie('') is None


class TestHelpers:

    @pytest.mark.parametrize('name', ['sessionid', 'auth_token', 'XSRF-csrf', 'api_key', 'jwt'])
    def test_sensitive(self, name):
        assert is_sensitive(name) is True

    def test_not_sensitive(self):
        assert is_sensitive('theme') is False

    def test_tracking(self):
        assert is_tracking('_ga') is True
        assert is_tracking('utm_source') is True
        assert is_tracking('lang') is False

    @pytest.mark.parametrize('value,expected', [
        ('dGhpcyBpcyBhIHRlc3Q=', True),
        ('deadbeefdeadbeefdead', True),
        ('abc', False),
        ('dark', False),
    ])
    def test_looks_encoded(self, value, expected):
        assert looks_encoded(value) is expected

    def test_explanations(self):
        assert explain_cookie('PHPSESSID') == 'PHP session cookie that identifies a unique visitor'
        assert explain_cookie('my_session') == 'Cookie used to manage the user session'
        assert explain_cookie('cart_id') == 'Cookie that keeps the shopping cart'
        assert explain_cookie('zzz') == 'General purpose cookie used by the site'


class TestAnalyze:

    def test_no_cookies(self, analyzer):
        analysis = analyzer.analyze([], 'https://example.com')

        assert analysis.score == 100
        assert analysis.grade == 'A+'
        assert analysis.findings == []
        assert analysis.details == {'has_cookies': False, 'count': 0}
        assert analysis.recommendations == ['If you use cookies, set the Secure, HttpOnly and SameSite flags']

    def test_well_configured_cookie(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['prefs=abc; Secure; HttpOnly; SameSite=Strict'], 'https://example.com',
                                    now=fixed_now)

        assert analysis.score == 100
        assert analysis.findings == []
        assert analysis.recommendations == []
        cookie = analysis.details['cookies'][0]
        assert cookie['security_level'] == 'secure'
        assert cookie['is_session'] is True

    def test_unprotected_session_cookie(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['sessionid=abc123'], 'https://example.com', now=fixed_now)

        by_type = {f.type: f for f in analysis.findings}
        assert by_type['missing_secure_flag'].severity == Severity.CRITICAL
        assert by_type['missing_httponly_flag'].severity == Severity.HIGH
        assert by_type['missing_samesite'].severity == Severity.MEDIUM
        assert 'unencoded_sensitive_cookie' in by_type
        assert 'broad_path_sensitive_cookie' in by_type
        assert 'low_secure_cookie_ratio' in by_type
        assert 'low_httponly_ratio' in by_type

        assert by_type['missing_secure_flag'].cookie == 'sessionid'
        assert by_type['missing_secure_flag'].message == 'sessionid: cookie without Secure flag'

        assert analysis.score == 5
        assert analysis.details['cookies'][0]['security_level'] == 'critical'
        assert analysis.recommendations == [
            'CRITICAL: fix the cookie security problems immediately',
            'Cookie configuration is inadequate - urgent review needed',
            'Add the Secure flag to every cookie',
            'Add HttpOnly to cookies that do not need JavaScript access',
            'Set the SameSite attribute on every cookie',
        ]

    def test_samesite_none_requires_secure(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['theme=dark; HttpOnly; SameSite=None'], 'https://example.com', now=fixed_now)

        cookie_findings = [f for f in analysis.findings if f.cookie == 'theme']
        assert types_of(cookie_findings) == ['missing_secure_flag', 'samesite_none_without_secure']
        assert all(f.severity == Severity.HIGH for f in cookie_findings)

    def test_long_lived_cookie(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['prefs=x; Secure; HttpOnly; SameSite=Lax; Max-Age=31536000'],
                                    'https://example.com', now=fixed_now)

        assert types_of(analysis.findings) == ['excessive_cookie_lifetime', 'no_session_cookies']
        assert analysis.findings[0].message == 'prefs: cookie lifetime too long: 365 days'

    def test_broad_domain(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['lang=en; Domain=.example.com; Secure; HttpOnly; SameSite=Lax'],
                                    'https://example.com', now=fixed_now)

        assert types_of(analysis.findings) == ['overly_broad_domain']
        assert 'Wildcard cookie domain - check that it is needed' in analysis.details['cookies'][0]['notes']

    def test_tracking_cookie_reported(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['_ga=GA1.2.3; Secure; HttpOnly; SameSite=Lax'], 'https://example.com',
                                    now=fixed_now)

        tracking = [f for f in analysis.findings if f.type == 'tracking_cookies_detected']
        assert len(tracking) == 1
        assert tracking[0].severity == Severity.INFO

    def test_too_many_cookies(self, analyzer, fixed_now):
        headers = [f"pref{i}=x; Secure; HttpOnly; SameSite=Lax" for i in range(11)]
        analysis = analyzer.analyze(headers, 'https://example.com', now=fixed_now)

        assert 'excessive_cookies' in types_of(analysis.findings)
        assert analysis.details['count'] == 11

    def test_moderate_level_without_samesite(self, analyzer, fixed_now):
        analysis = analyzer.analyze(['prefs=x; Secure; HttpOnly'], 'https://example.com', now=fixed_now)
        assert analysis.details['cookies'][0]['security_level'] == 'moderate'

    def test_summary_counts(self, analyzer, fixed_now):
        analysis = analyzer.analyze(
            ['a=1; Secure; HttpOnly; SameSite=Lax', 'b=2; Max-Age=60'], 'https://example.com', now=fixed_now
        )

        assert analysis.details['summary'] == {
            'secure': 1, 'httponly': 1, 'samesite': 1, 'session': 1, 'persistent': 1,
        }
