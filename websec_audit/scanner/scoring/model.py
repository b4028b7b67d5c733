"""Scoring model: turn per-category analyses into one report.

Clear rules:
- Each category is scored 0-100 by its own analyzer
- The overall score is a weighted sum over the enabled categories
- Critical findings cost up to 30 more points, plain HTTP costs 15
- A category whose analyzer blew up scores 0 and says why
"""

import logging
from collections import Counter
from typing import List, Dict, Any, Optional

from websec_audit.util.types import (
    CategoryAnalysis, CategoryOutcome, FetchResult, NormalizedURL,
    SecurityReport, Severity, VulnerabilityFinding, clamp_score
)
from websec_audit.util.time import iso_timestamp
from websec_audit.util.grades import score_to_grade
from websec_audit.scanner.checks.registry import (
    CATEGORY_WEIGHTS, CRITICAL_FINDING_PENALTY, MAX_CRITICAL_PENALTY, NON_HTTPS_PENALTY
)

logger = logging.getLogger(__name__)


def dedupe(items: List[str]) -> List[str]:
    """Order-preserving de-duplication."""
    return list(dict.fromkeys(items))


class ScoringModel:
    """Aggregates category analyses into a SecurityReport."""

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or CATEGORY_WEIGHTS)

    def placeholder(self, category: str, error: BaseException) -> CategoryAnalysis:
        """Zero-score stand-in for a category whose analyzer failed."""
        return CategoryAnalysis(
            category=category,
            score=0,
            findings=[VulnerabilityFinding(
                type='analysis_error',
                severity=Severity.WARNING,
                message=f"{category} analysis failed: {error}",
                impact='This category could not be evaluated',
                remediation='Run the analysis again',
            )],
            recommendations=[],
            details={'error': str(error), 'error_type': type(error).__name__},
            error=True,
        )

    def settle(self, outcomes: List[CategoryOutcome]) -> Dict[str, CategoryAnalysis]:
        """Resolve every outcome to an analysis, keeping category order."""
        categories: Dict[str, CategoryAnalysis] = {}
        for outcome in outcomes:
            if outcome.ok:
                categories[outcome.category] = outcome.analysis
            else:
                error = outcome.error or RuntimeError("analyzer returned nothing")
                logger.error(f"{outcome.category} analysis failed: {error!r}")
                categories[outcome.category] = self.placeholder(outcome.category, error)
        return categories

    def effective_weights(self, categories: List[str]) -> Dict[str, float]:
        """Weights renormalized over the categories that actually ran."""
        total = sum(self.weights.get(c, 0.0) for c in categories)
        if total <= 0:
            return {c: 0.0 for c in categories}
        return {c: self.weights.get(c, 0.0) / total for c in categories}

    def overall_score(self, categories: Dict[str, CategoryAnalysis],
                      findings: List[VulnerabilityFinding], is_https: bool) -> int:
        weights = self.effective_weights(list(categories))
        weighted = sum(weights[name] * analysis.score for name, analysis in categories.items())

        critical = sum(1 for f in findings if f.severity == Severity.CRITICAL)
        weighted -= min(critical * CRITICAL_FINDING_PENALTY, MAX_CRITICAL_PENALTY)

        if not is_https:
            weighted -= NON_HTTPS_PENALTY

        return clamp_score(weighted)

    def stats(self, categories: Dict[str, CategoryAnalysis],
              findings: List[VulnerabilityFinding]) -> Dict[str, Any]:
        counts = Counter(f.severity for f in findings)
        stats: Dict[str, Any] = {severity.value: counts.get(severity, 0) for severity in Severity}
        stats['total'] = len(findings)
        stats['scores'] = {name: analysis.score for name, analysis in categories.items()}
        return stats

    def build_report(self, target: NormalizedURL, original_url: str, fetch: FetchResult,
                     outcomes: List[CategoryOutcome], timestamp: Optional[str] = None) -> SecurityReport:
        """Assemble the final report from settled analyzer outcomes."""
        categories = self.settle(outcomes)

        findings: List[VulnerabilityFinding] = []
        recommendations: List[str] = []
        for name, analysis in categories.items():
            findings.extend(f.with_category(name) for f in analysis.findings)
            recommendations.extend(analysis.recommendations)

        overall = self.overall_score(categories, findings, target.is_https)
        grade = score_to_grade(overall)

        logger.info(
            f"Scored {target.normalized}: {overall} ({grade}), "
            f"{len(findings)} findings across {len(categories)} categories"
        )

        return SecurityReport(
            url=target.url,
            original_url=original_url,
            final_url=fetch.final_url,
            http_status=fetch.status,
            is_https=target.is_https,
            redirected=fetch.was_redirected,
            redirect_count=fetch.redirect_count,
            categories=categories,
            overall_score=overall,
            grade=grade,
            findings=findings,
            recommendations=dedupe(recommendations),
            stats=self.stats(categories, findings),
            timestamp=timestamp or iso_timestamp(),
        )
