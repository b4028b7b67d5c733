"""Core data types shared across the analysis pipeline.

Every stage hands the next one one of these instead of loose dicts.
All of them are created fresh per analysis and serialize with to_dict().
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

from websec_audit.util.grades import score_to_grade


class Severity(Enum):
    """Closed set of finding severities.

    The scoring tables are keyed by these values, so adding one means
    touching every penalty table in the registry.
    """
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"
    WARNING = "warning"


class AnalysisCategory(Enum):
    """The four independently scored categories of a report."""
    SSL = "ssl"
    HEADERS = "headers"
    COOKIES = "cookies"
    HTML = "html"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> int:
    """Round (halves up) and clamp a score into [0, 100]."""
    return max(0, min(100, round_half_up(value)))


@dataclass
class VulnerabilityFinding:
    """A single weakness found by one of the analyzers."""
    type: str  # e.g. "missing_header", "missing_secure_flag"
    severity: Severity
    message: str
    impact: str = ""
    remediation: str = ""
    category: Optional[str] = None  # filled in by the aggregator
    header: Optional[str] = None  # header the finding is about
    cookie: Optional[str] = None  # cookie the finding is about

    def with_category(self, category: str) -> "VulnerabilityFinding":
        """Copy of this finding tagged with its report category."""
        return replace(self, category=category)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type,
            'severity': self.severity.value,
            'message': self.message,
            'impact': self.impact,
            'remediation': self.remediation,
        }
        if self.category:
            data['category'] = self.category
        if self.header:
            data['header'] = self.header
        if self.cookie:
            data['cookie'] = self.cookie
        return data


@dataclass
class CategoryAnalysis:
    """Scored result of one analyzer.

    The score is clamped on construction so no analyzer can leak an
    out-of-range value into the aggregate.
    """
    category: str
    score: int
    findings: List[VulnerabilityFinding] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    error: bool = False

    def __post_init__(self):
        self.score = clamp_score(self.score)

    @property
    def grade(self) -> str:
        return score_to_grade(self.score)

    def count(self, severity: Severity) -> int:
        return sum(1 for f in self.findings if f.severity == severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'score': self.score,
            'grade': self.grade,
            'error': self.error,
            'findings': [f.to_dict() for f in self.findings],
            'recommendations': list(self.recommendations),
            'details': self.details,
        }


@dataclass(frozen=True)
class NormalizedURL:
    """A validated target URL. Immutable once validation succeeds."""
    url: str  # the candidate string that passed validation
    scheme: str
    host: str
    port: int
    path: str = ""
    query: str = ""
    has_www: bool = False
    is_ip: bool = False
    default_port: bool = True

    @property
    def is_https(self) -> bool:
        return self.scheme == 'https'

    @property
    def origin(self) -> str:
        host = f"[{self.host}]" if ':' in self.host else self.host
        if self.default_port:
            return f"{self.scheme}://{host}"
        return f"{self.scheme}://{host}:{self.port}"

    @property
    def normalized(self) -> str:
        """Canonical form: default port and a bare "/" path are dropped."""
        path = '' if self.path == '/' else self.path
        query = f"?{self.query}" if self.query else ''
        return f"{self.origin}{path}{query}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'normalized_url': self.normalized,
            'scheme': self.scheme,
            'host': self.host,
            'port': self.port,
            'is_https': self.is_https,
            'metadata': {
                'has_www': self.has_www,
                'is_ip': self.is_ip,
                'default_port': self.default_port,
            },
        }


@dataclass
class ValidationResult:
    """Outcome of URL validation: a target, or every candidate's errors."""
    is_valid: bool
    url: Optional[NormalizedURL] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)  # [{'url': ..., 'errors': [...]}]
    suggestions: List[str] = field(default_factory=list)

    def error_messages(self) -> List[str]:
        """Flat list of every candidate error, in the order they were found."""
        return [msg for entry in self.errors for msg in entry.get('errors', [])]

    def to_dict(self) -> Dict[str, Any]:
        if self.is_valid and self.url:
            data = {'ok': True}
            data.update(self.url.to_dict())
            return data
        return {
            'ok': False,
            'errors': self.errors,
            'suggestions': self.suggestions,
        }


@dataclass(frozen=True)
class TransportSecurity:
    """TLS fields captured from the fetch connection itself."""
    protocol: Optional[str] = None
    cipher: Optional[str] = None
    cipher_bits: Optional[int] = None
    peer_certificate: Optional[bytes] = None  # DER

    def to_dict(self) -> Dict[str, Any]:
        return {
            'protocol': self.protocol,
            'cipher': self.cipher,
            'cipher_bits': self.cipher_bits,
            'has_certificate': self.peer_certificate is not None,
        }


@dataclass(frozen=True)
class FetchResult:
    """One fetched response. Owned by a single analysis, never mutated."""
    url: str
    final_url: str
    status: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)  # lower-cased keys
    body: str = ""
    cookies: Tuple[str, ...] = ()  # raw Set-Cookie values
    redirect_count: int = 0
    redirect_chain: Tuple[str, ...] = ()
    transport: Optional[TransportSecurity] = None

    @property
    def was_redirected(self) -> bool:
        return self.redirect_count > 0 or self.final_url != self.url

    @property
    def size(self) -> int:
        return len(self.body)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'final_url': self.final_url,
            'status': self.status,
            'reason': self.reason,
            'headers': dict(self.headers),
            'cookies': list(self.cookies),
            'redirect_count': self.redirect_count,
            'redirect_chain': list(self.redirect_chain),
            'size': self.size,
            'transport': self.transport.to_dict() if self.transport else None,
        }


@dataclass(frozen=True)
class TLSSession:
    """What a dedicated TLS handshake revealed about the server."""
    protocol: Optional[str]
    cipher: Optional[str]
    cipher_bits: Optional[int]
    certificates: Tuple[bytes, ...] = ()  # DER, leaf first
    chain_available: bool = False  # False when only the leaf could be read
    authorized: bool = False
    authorization_error: Optional[str] = None


@dataclass
class AnalysisOptions:
    """Which categories an analysis should run."""
    check_ssl: bool = True
    check_headers: bool = True
    check_cookies: bool = True
    check_html: bool = True

    def enabled_categories(self) -> List[str]:
        flags = [
            (AnalysisCategory.SSL, self.check_ssl),
            (AnalysisCategory.HEADERS, self.check_headers),
            (AnalysisCategory.COOKIES, self.check_cookies),
            (AnalysisCategory.HTML, self.check_html),
        ]
        return [category.value for category, enabled in flags if enabled]


@dataclass
class CategoryOutcome:
    """Settled result of one analyzer task: an analysis or the reason it failed."""
    category: str
    analysis: Optional[CategoryAnalysis] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.analysis is not None and self.error is None


@dataclass
class SecurityReport:
    """Final output of analyze(). Plain data, JSON-serializable via to_dict()."""
    url: str
    original_url: str
    final_url: str
    http_status: int
    is_https: bool
    redirected: bool
    redirect_count: int
    categories: Dict[str, CategoryAnalysis]
    overall_score: int
    grade: str
    findings: List[VulnerabilityFinding]
    recommendations: List[str]
    stats: Dict[str, Any]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'url': self.url,
            'original_url': self.original_url,
            'final_url': self.final_url,
            'timestamp': self.timestamp,
            'http_status': self.http_status,
            'is_https': self.is_https,
            'redirected': self.redirected,
            'redirect_count': self.redirect_count,
            'overall_score': self.overall_score,
            'grade': self.grade,
        }
        for name, analysis in self.categories.items():
            data[name] = analysis.to_dict()
        data['findings'] = [f.to_dict() for f in self.findings]
        data['recommendations'] = list(self.recommendations)
        data['stats'] = self.stats
        return data


@dataclass
class AnalyzerConfig:
    """Runtime knobs for one SecurityAnalyzer.

    Defaults are the production values; tests shrink the delays.
    """
    http_timeout: float = 30.0
    connect_timeout: float = 5.0
    tls_timeout: float = 10.0
    tls_fallback_timeout: float = 5.0
    dns_timeout: float = 5.0
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number
    max_redirects: int = 5
    max_body_bytes: int = 10 * 1024 * 1024

    def to_dict(self) -> Dict[str, Any]:
        return {
            'http_timeout': self.http_timeout,
            'connect_timeout': self.connect_timeout,
            'tls_timeout': self.tls_timeout,
            'tls_fallback_timeout': self.tls_fallback_timeout,
            'dns_timeout': self.dns_timeout,
            'max_retries': self.max_retries,
            'retry_delay': self.retry_delay,
            'max_redirects': self.max_redirects,
            'max_body_bytes': self.max_body_bytes,
        }
