"""
Tests for the analysis pipeline with scripted probes
"""

import asyncio

import pytest

from websec_audit.util.types import AnalysisOptions, CategoryAnalysis, FetchResult
from websec_audit.scanner.errors import ErrorCategory, NetworkError, ValidationError, make_error
from websec_audit.scanner.validation import URLValidator
from websec_audit.scanner.runner import SecurityAnalyzer
from helpers import FakeDNSProbe


PAGE = '<html><head><meta charset="utf-8"></head><body>hi</body></html>'


class ScriptedHTTPProbe:
    """HTTP probe answering every request from a canned FetchResult."""

    def __init__(self, status=200, headers=None, cookies=(), body=PAGE, error=None):
        self.status = status
        self.headers = headers or {}
        self.cookies = tuple(cookies)
        self.body = body
        self.error = error
        self.fetched = []
        self.heads = []

    def __call__(self):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch(self, url):
        self.fetched.append(url)
        if self.error:
            raise NetworkError(make_error(self.error, 'simulated', url=url))
        return FetchResult(url=url, final_url=url, status=self.status, headers=dict(self.headers),
                           body=self.body, cookies=self.cookies)

    async def head(self, url, verify_tls=False, timeout=None):
        self.heads.append(url)
        if self.error:
            raise NetworkError(make_error(self.error, 'simulated', url=url))
        return {'status': self.status, 'headers': dict(self.headers), 'is_available': self.status < 400}


class StaticTLSAnalyzer:

    def __init__(self, score=100):
        self.score = score
        self.targets = []

    async def analyze(self, target):
        self.targets.append(target.url)
        return CategoryAnalysis(category='ssl', score=self.score)


class ExplodingAnalyzer:

    def analyze(self, *args, **kwargs):
        raise RuntimeError('analyzer exploded')


def build(http=None, tls=None, **kwargs):
    http = http or ScriptedHTTPProbe()
    tls = tls or StaticTLSAnalyzer()
    analyzer = SecurityAnalyzer(
        validator=URLValidator(FakeDNSProbe(default=['93.184.216.34'])),
        http_probe_factory=http,
        tls_analyzer=tls,
        **kwargs
    )
    return analyzer, http, tls


class TestAnalyze:

    def test_full_report(self):
        analyzer, http, tls = build()
        report = asyncio.run(analyzer.analyze('example.com'))

        assert http.fetched == ['https://example.com']
        assert tls.targets == ['https://example.com']
        assert list(report.categories) == ['ssl', 'headers', 'cookies', 'html']
        assert report.url == 'https://example.com'
        assert report.original_url == 'example.com'
        assert report.is_https is True
        # 25 + 0.35 * 21 + 25 + 12 - 2 critical missing headers
        assert report.overall_score == 49
        assert report.grade == 'F'
        assert report.categories['cookies'].details['has_cookies'] is False

    def test_failing_analyzer_becomes_placeholder(self):
        analyzer, _, _ = build(header_analyzer=ExplodingAnalyzer())
        report = asyncio.run(analyzer.analyze('example.com'))

        headers = report.categories['headers']
        assert headers.error is True
        assert headers.score == 0
        assert headers.details['error'] == 'analyzer exploded'
        assert report.categories['ssl'].score == 100
        assert report.categories['html'].score == 80
        assert report.overall_score == 62

    def test_failing_tls_analyzer_does_not_cancel_others(self):
        class BrokenTLS:
            async def analyze(self, target):
                raise ConnectionResetError('reset during handshake')

        analyzer, _, _ = build(tls=BrokenTLS())
        report = asyncio.run(analyzer.analyze('example.com'))

        assert report.categories['ssl'].error is True
        assert report.categories['headers'].error is False
        assert report.categories['cookies'].error is False

    def test_disabled_categories_skipped(self):
        analyzer, _, tls = build()
        options = AnalysisOptions(check_ssl=False, check_cookies=False)
        report = asyncio.run(analyzer.analyze('example.com', options))

        assert list(report.categories) == ['headers', 'html']
        assert tls.targets == []
        assert 'ssl' not in report.stats['scores']

    def test_cookies_and_headers_reach_analyzers(self):
        http = ScriptedHTTPProbe(
            headers={'x-powered-by': 'PHP/8.1'},
            cookies=['sessionid=abc123'],
        )
        analyzer, _, _ = build(http=http)
        report = asyncio.run(analyzer.analyze('example.com'))

        types = {(f.category, f.type) for f in report.findings}
        assert ('headers', 'information_disclosure') in types
        assert ('cookies', 'missing_secure_flag') in types

    def test_error_status_raises(self):
        analyzer, _, tls = build(http=ScriptedHTTPProbe(status=404))

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(analyzer.analyze('example.com'))

        assert exc_info.value.category == ErrorCategory.HTTP_CLIENT_ERROR
        assert exc_info.value.classified.status == 404
        assert tls.targets == []

    def test_transport_failure_propagates(self):
        analyzer, _, _ = build(http=ScriptedHTTPProbe(error=ErrorCategory.TIMEOUT))

        with pytest.raises(NetworkError) as exc_info:
            asyncio.run(analyzer.analyze('example.com'))
        assert exc_info.value.category == ErrorCategory.TIMEOUT

    def test_invalid_url_raises_validation_error(self):
        analyzer, http, _ = build()

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(analyzer.analyze('http://127.0.0.1'))

        assert 'Private or local addresses are not allowed' in exc_info.value.errors
        assert http.fetched == []

    def test_repeat_runs_match_apart_from_timestamp(self):
        analyzer, _, _ = build(http=ScriptedHTTPProbe(cookies=['theme=dark']))

        first = asyncio.run(analyzer.analyze('example.com')).to_dict()
        second = asyncio.run(analyzer.analyze('example.com')).to_dict()
        first.pop('timestamp')
        second.pop('timestamp')

        assert first == second


class TestCheckUrlStatus:

    def test_available(self):
        analyzer, http, _ = build()
        status = asyncio.run(analyzer.check_url_status('example.com'))

        assert status == {
            'is_valid': True,
            'is_available': True,
            'status': 200,
            'is_https': True,
            'normalized_url': 'https://example.com',
        }
        assert http.heads == ['https://example.com']

    def test_unreachable(self):
        analyzer, _, _ = build(http=ScriptedHTTPProbe(error=ErrorCategory.CONNECTION_REFUSED))
        status = asyncio.run(analyzer.check_url_status('example.com'))

        assert status['is_valid'] is True
        assert status['is_available'] is False
        assert status['error']['category'] == 'connection_refused'

    def test_invalid(self):
        analyzer, http, _ = build()
        status = asyncio.run(analyzer.check_url_status('ftp://example.com'))

        assert status['is_valid'] is False
        assert status['errors'] == [{'url': 'ftp://example.com', 'errors': ['Protocol must be HTTP or HTTPS']}]
        assert http.heads == []
