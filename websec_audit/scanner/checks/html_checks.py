"""HTML checks - a light pass over the fetched markup."""

import logging
from typing import List
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from websec_audit.util.types import CategoryAnalysis, Severity, VulnerabilityFinding
from websec_audit.scanner.checks.registry import (
    HTML_BASE_SCORE, INSECURE_SCRIPT_PENALTY, MISSING_CHARSET_PENALTY,
    PASSWORD_FORM_GET_PENALTY, PASSWORD_OVER_HTTP_PENALTY
)

logger = logging.getLogger(__name__)

CATEGORY = 'html'


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def has_charset(soup: BeautifulSoup) -> bool:
    if soup.find('meta', attrs={'charset': True}):
        return True
    for meta in soup.find_all('meta', attrs={'http-equiv': True}):
        if meta['http-equiv'].strip().lower() == 'content-type':
            return True
    return False


class HTMLAnalyzer:
    """Scores the html category of a report."""

    def analyze(self, body: str, url: str) -> CategoryAnalysis:
        soup = BeautifulSoup(body or '', 'html.parser')
        is_https = url.lower().startswith('https://')
        page_origin = _origin(url)

        findings: List[VulnerabilityFinding] = []
        recommendations: List[str] = []
        score = HTML_BASE_SCORE

        forms = soup.find_all('form')
        password_forms = 0
        for form in forms:
            if not form.find('input', attrs={'type': lambda t: t and t.lower() == 'password'}):
                continue
            password_forms += 1
            method = (form.get('method') or 'get').strip().lower()
            action = form.get('action') or ''

            if not is_https:
                score -= PASSWORD_OVER_HTTP_PENALTY
                findings.append(VulnerabilityFinding(
                    type='password_over_http',
                    severity=Severity.CRITICAL,
                    message=f"Password form served over plain HTTP (action: {action or 'self'})",
                    impact='Credentials travel unencrypted',
                    remediation='Serve every page with a login form over HTTPS',
                ))
                recommendations.append('Serve login forms over HTTPS only')

            if method == 'get':
                score -= PASSWORD_FORM_GET_PENALTY
                findings.append(VulnerabilityFinding(
                    type='password_form_get',
                    severity=Severity.CRITICAL,
                    message=f"Password form submitted with GET (action: {action or 'self'})",
                    impact='Passwords end up in URLs, logs and browser history',
                    remediation='Submit password forms with method="post"',
                ))
                recommendations.append('Use POST for forms that carry passwords')

        insecure_scripts = []
        unparsable_scripts = []
        for script in soup.find_all('script', src=True):
            raw_src = script['src'].strip()
            try:
                src = urljoin(url, raw_src)
                scheme = urlsplit(src).scheme.lower()
            except ValueError as e:
                logger.debug(f"Skipping script with unparsable src {raw_src!r} on {url}: {e}")
                unparsable_scripts.append(raw_src)
                continue
            if scheme == 'http' and _origin(src) != page_origin:
                insecure_scripts.append(src)
                score -= INSECURE_SCRIPT_PENALTY
                findings.append(VulnerabilityFinding(
                    type='insecure_external_script',
                    severity=Severity.HIGH,
                    message=f"External script loaded over HTTP: {src}",
                    impact='A network attacker can replace the script',
                    remediation='Load third-party scripts over HTTPS, ideally with Subresource Integrity',
                ))
        if insecure_scripts:
            recommendations.append('Load external scripts over HTTPS')

        charset = has_charset(soup)
        if not charset:
            score -= MISSING_CHARSET_PENALTY
            findings.append(VulnerabilityFinding(
                type='missing_charset',
                severity=Severity.LOW,
                message='No charset declared in the markup',
                impact='Browsers may guess the encoding, which enables some XSS tricks',
                remediation='Add <meta charset="utf-8"> to the document head',
            ))
            recommendations.append('Declare the document charset')

        logger.debug(f"HTML for {url}: {len(forms)} forms, {len(insecure_scripts)} insecure scripts, raw score {score}")

        return CategoryAnalysis(
            category=CATEGORY,
            score=score,
            findings=findings,
            recommendations=list(dict.fromkeys(recommendations)),
            details={
                'raw_score': score,
                'forms': len(forms),
                'password_forms': password_forms,
                'insecure_scripts': insecure_scripts,
                'unparsable_scripts': unparsable_scripts,
                'has_charset': charset,
            },
        )
