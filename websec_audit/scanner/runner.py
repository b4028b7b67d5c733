"""Analysis pipeline runner - orchestrates one endpoint analysis.

This is where all the pieces come together:
1. Validate and normalize the URL
2. Fetch the target once (with retries)
3. Run the enabled analyzers side by side (TLS, headers, cookies, HTML)
4. Score the results into a SecurityReport
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Any, List, Optional

from websec_audit.util.types import (
    AnalysisCategory, AnalysisOptions, AnalyzerConfig, CategoryAnalysis, CategoryOutcome,
    FetchResult, NormalizedURL, SecurityReport, ValidationResult
)
from websec_audit.util.time import now_utc, duration_ms
from websec_audit.scanner.errors import NetworkError, ValidationError, classify_status
from websec_audit.scanner.validation import URLValidator
from websec_audit.scanner.probes.dns_probe import DNSProbe
from websec_audit.scanner.probes.http_probe import HTTPProbe
from websec_audit.scanner.probes.tls_probe import TLSProbe
from websec_audit.scanner.checks.tls_checks import TLSAnalyzer
from websec_audit.scanner.checks.header_checks import HeaderAnalyzer
from websec_audit.scanner.checks.cookie_checks import CookieAnalyzer
from websec_audit.scanner.checks.html_checks import HTMLAnalyzer
from websec_audit.scanner.scoring.model import ScoringModel

logger = logging.getLogger(__name__)


class SecurityAnalyzer:
    """Runs the complete analysis pipeline for one URL at a time.

    Analyzer objects are built once here and reused across calls; nothing
    else is kept between analyses.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None,
                 validator: Optional[URLValidator] = None,
                 http_probe_factory: Optional[Callable[[], HTTPProbe]] = None,
                 tls_analyzer: Optional[TLSAnalyzer] = None,
                 header_analyzer: Optional[HeaderAnalyzer] = None,
                 cookie_analyzer: Optional[CookieAnalyzer] = None,
                 html_analyzer: Optional[HTMLAnalyzer] = None,
                 scoring_model: Optional[ScoringModel] = None):
        self.config = config or AnalyzerConfig()
        self.validator = validator or URLValidator(DNSProbe(timeout=self.config.dns_timeout))
        self.http_probe_factory = http_probe_factory or (lambda: HTTPProbe(self.config))
        self.tls_analyzer = tls_analyzer or TLSAnalyzer(
            TLSProbe(timeout=self.config.tls_timeout),
            config=self.config,
            http_probe_factory=self.http_probe_factory,
        )
        self.header_analyzer = header_analyzer or HeaderAnalyzer()
        self.cookie_analyzer = cookie_analyzer or CookieAnalyzer()
        self.html_analyzer = html_analyzer or HTMLAnalyzer()
        self.scoring = scoring_model or ScoringModel()

    async def validate_url(self, raw: str) -> ValidationResult:
        return await self.validator.validate_and_normalize(raw)

    async def analyze(self, url: str, options: Optional[AnalysisOptions] = None) -> SecurityReport:
        """Analyze one URL end to end.

        Raises ValidationError for unusable input and NetworkError when the
        target cannot be fetched or answers with a 4xx/5xx status. A failing
        analyzer does not raise: its category scores 0 with an
        analysis_error finding.
        """
        options = options or AnalysisOptions()
        start_time = now_utc()
        logger.info(f"Starting analysis of {url}")

        validation = await self.validate_url(url)
        if not validation.is_valid:
            logger.info(f"Rejected {url}: {'; '.join(validation.error_messages())}")
            raise ValidationError(url, validation.error_messages(), validation.suggestions)
        target = validation.url

        async with self.http_probe_factory() as http:
            fetch = await http.fetch(target.url)

        if fetch.status >= 400:
            classified = classify_status(fetch.status, fetch.final_url, fetch.reason)
            logger.warning(f"{fetch.final_url} answered {fetch.status}, not analyzing")
            raise NetworkError(classified)

        outcomes = await self.run_analyzers(target, fetch, options)
        report = self.scoring.build_report(target, url, fetch, outcomes)

        logger.info(
            f"Analysis of {target.normalized} complete: {report.overall_score} ({report.grade}) "
            f"in {duration_ms(start_time):.0f}ms"
        )
        return report

    async def run_analyzers(self, target: NormalizedURL, fetch: FetchResult,
                            options: AnalysisOptions) -> List[CategoryOutcome]:
        """Run every enabled analyzer concurrently and settle them all.

        One analyzer failing never cancels the others.
        """
        categories = options.enabled_categories()
        results = await asyncio.gather(
            *(self._run_category(category, target, fetch) for category in categories),
            return_exceptions=True
        )

        outcomes = []
        for category, result in zip(categories, results):
            if isinstance(result, BaseException):
                outcomes.append(CategoryOutcome(category=category, error=result))
            else:
                outcomes.append(CategoryOutcome(category=category, analysis=result))
        return outcomes

    def _run_category(self, category: str, target: NormalizedURL,
                      fetch: FetchResult) -> Awaitable[CategoryAnalysis]:
        if category == AnalysisCategory.SSL.value:
            return self.tls_analyzer.analyze(target)
        if category == AnalysisCategory.HEADERS.value:
            return asyncio.to_thread(self.header_analyzer.analyze, fetch.headers, target.url)
        if category == AnalysisCategory.COOKIES.value:
            return asyncio.to_thread(self.cookie_analyzer.analyze, list(fetch.cookies), fetch.final_url)
        if category == AnalysisCategory.HTML.value:
            return asyncio.to_thread(self.html_analyzer.analyze, fetch.body, fetch.final_url)
        raise ValueError(f"Unknown analysis category: {category}")

    async def check_url_status(self, url: str) -> Dict[str, Any]:
        """Validate url and check it answers a HEAD request."""
        validation = await self.validate_url(url)
        if not validation.is_valid:
            return {
                'is_valid': False,
                'errors': validation.errors,
                'suggestions': validation.suggestions,
            }

        target = validation.url
        status: Dict[str, Any] = {
            'is_valid': True,
            'is_available': False,
            'status': None,
            'is_https': target.is_https,
            'normalized_url': target.normalized,
        }
        try:
            async with self.http_probe_factory() as http:
                head = await http.head(target.url)
        except NetworkError as e:
            logger.info(f"{target.normalized} is not reachable: {e.classified.technical_message}")
            status['error'] = e.classified.summary()
            return status

        status['is_available'] = head['is_available']
        status['status'] = head['status']
        return status


async def validate_url(raw: str, config: Optional[AnalyzerConfig] = None) -> ValidationResult:
    return await SecurityAnalyzer(config).validate_url(raw)


async def analyze(url: str, options: Optional[AnalysisOptions] = None,
                  config: Optional[AnalyzerConfig] = None) -> SecurityReport:
    return await SecurityAnalyzer(config).analyze(url, options)


async def check_url_status(url: str, config: Optional[AnalyzerConfig] = None) -> Dict[str, Any]:
    return await SecurityAnalyzer(config).check_url_status(url)
