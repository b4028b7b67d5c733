"""Static tables for the analyzers.

Header catalog, penalty tables, bonuses and thresholds. Every magnitude
an analyzer adds or subtracts lives here under a name, so tuning the
scoring never means hunting through analyzer code.
"""

import re
from dataclasses import dataclass
from typing import Dict, Any, List, Tuple
from urllib.parse import urlsplit

from websec_audit.util.types import Severity


@dataclass(frozen=True)
class HeaderDefinition:
    """One entry of the security header catalog."""
    name: str
    description: str
    severity: Severity
    weight: int
    impact: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'description': self.description,
            'severity': self.severity.value,
            'weight': self.weight,
        }


SECURITY_HEADERS: Dict[str, HeaderDefinition] = {
    'Content-Security-Policy': HeaderDefinition(
        name='Content-Security-Policy',
        description='Helps prevent attacks such as Cross Site Scripting (XSS) by declaring which content sources are trusted.',
        severity=Severity.CRITICAL,
        weight=15,
        impact='Site is exposed to XSS and code injection attacks',
    ),
    'Strict-Transport-Security': HeaderDefinition(
        name='Strict-Transport-Security',
        description='Makes browsers talk to the server over HTTPS only, protecting against downgrade attacks.',
        severity=Severity.CRITICAL,
        weight=15,
        impact='HTTP connections are not forced to HTTPS',
    ),
    'X-Frame-Options': HeaderDefinition(
        name='X-Frame-Options',
        description='Prevents the site from being loaded inside an iframe, protecting against clickjacking.',
        severity=Severity.HIGH,
        weight=10,
        impact='Site can be embedded in malicious iframes',
    ),
    'X-Content-Type-Options': HeaderDefinition(
        name='X-Content-Type-Options',
        description='Stops the browser from guessing the content type (MIME sniffing), which can prevent malicious code execution.',
        severity=Severity.HIGH,
        weight=10,
        impact='Browser may misinterpret file types',
    ),
    'Referrer-Policy': HeaderDefinition(
        name='Referrer-Policy',
        description='Controls how much referrer information is sent when a link is followed.',
        severity=Severity.MEDIUM,
        weight=5,
        impact='Referrer information may leak',
    ),
    'Permissions-Policy': HeaderDefinition(
        name='Permissions-Policy',
        description='Controls access to browser features such as camera, microphone and location.',
        severity=Severity.MEDIUM,
        weight=5,
        impact='Unrestricted access to browser APIs',
    ),
    'X-XSS-Protection': HeaderDefinition(
        name='X-XSS-Protection',
        description='Enables the XSS filter of older browsers.',
        severity=Severity.MEDIUM,
        weight=5,
        impact='Older browsers get no reflected XSS filtering',
    ),
    'Expect-CT': HeaderDefinition(
        name='Expect-CT',
        description='Lets the site monitor and enforce Certificate Transparency.',
        severity=Severity.LOW,
        weight=3,
        impact='Misissued certificates may go unnoticed',
    ),
    'Cache-Control': HeaderDefinition(
        name='Cache-Control',
        description='Controls how responses are cached. Can keep sensitive data out of the browser cache.',
        severity=Severity.MEDIUM,
        weight=5,
        impact='Sensitive responses may be cached',
    ),
    'Pragma': HeaderDefinition(
        name='Pragma',
        description='Used with Cache-Control so that sensitive data is not cached by legacy clients.',
        severity=Severity.LOW,
        weight=3,
        impact='Legacy caches may store sensitive responses',
    ),
}

TOTAL_HEADER_WEIGHT = sum(h.weight for h in SECURITY_HEADERS.values())

HTTPS_BASE_SCORE = 30

# Fraction of the header weight lost when it is missing
MISSING_HEADER_PENALTY: Dict[Severity, float] = {
    Severity.CRITICAL: 0.3,
    Severity.HIGH: 0.2,
    Severity.MEDIUM: 0.1,
}

# Sub-score used for a present header with no specific check
DEFAULT_HEADER_SCORE = 50

CSP_CRITICAL_DIRECTIVES = ('default-src', 'script-src', 'object-src')
CSP_FINDING_PENALTY = 20
CSP_MIN_SCORE = 20

HSTS_MIN_MAX_AGE = 31536000  # one year
HSTS_BASE_SCORE = 60
HSTS_INCLUDE_SUBDOMAINS_BONUS = 20
HSTS_PRELOAD_BONUS = 20

VALID_REFERRER_POLICIES = (
    'no-referrer', 'no-referrer-when-downgrade', 'origin',
    'origin-when-cross-origin', 'same-origin', 'strict-origin',
    'strict-origin-when-cross-origin', 'unsafe-url',
)

KNOWN_PERMISSIONS_FEATURES = frozenset({
    'accelerometer', 'ambient-light-sensor', 'attribution-reporting', 'autoplay',
    'battery', 'bluetooth', 'browsing-topics', 'camera', 'clipboard-read',
    'clipboard-write', 'compute-pressure', 'cross-origin-isolated',
    'display-capture', 'document-domain', 'encrypted-media',
    'execution-while-not-rendered', 'execution-while-out-of-viewport',
    'fullscreen', 'gamepad', 'geolocation', 'gyroscope', 'hid',
    'identity-credentials-get', 'idle-detection', 'interest-cohort',
    'keyboard-map', 'local-fonts', 'magnetometer', 'microphone', 'midi',
    'otp-credentials', 'payment', 'picture-in-picture',
    'publickey-credentials-create', 'publickey-credentials-get',
    'screen-wake-lock', 'serial', 'speaker-selection', 'storage-access',
    'sync-xhr', 'unload', 'usb', 'web-share', 'window-management',
    'xr-spatial-tracking',
})
# Client hint features (ch-ua, ch-dpr, ...) are open-ended
KNOWN_PERMISSIONS_PREFIXES = ('ch-',)
IMPORTANT_PERMISSIONS_FEATURES = ('camera', 'microphone', 'geolocation', 'payment')
PERMISSIONS_BASE_SCORE = 40
PERMISSIONS_PER_FEATURE = 10

CACHE_CONTROL_SECURE_DIRECTIVES = ('no-store', 'no-cache', 'private')


@dataclass(frozen=True)
class OptionalHeaderPolicy:
    """Which missing headers go unpenalized for a given site.

    Large sites get a pass on the legacy framing/XSS headers; everyone
    else gets a pass on the two "nice to have" policy headers.
    """
    major_sites: Tuple[str, ...] = (
        'google.com', 'facebook.com', 'microsoft.com', 'amazon.com', 'apple.com',
    )
    optional_for_major: Tuple[str, ...] = ('X-XSS-Protection', 'X-Frame-Options')
    optional_default: Tuple[str, ...] = ('Permissions-Policy', 'Referrer-Policy')

    def is_major_site(self, host: str) -> bool:
        host = host.lower().rstrip('.')
        return any(host == site or host.endswith('.' + site) for site in self.major_sites)

    def is_optional(self, header: str, url: str) -> bool:
        host = urlsplit(url).hostname or ''
        if self.is_major_site(host):
            return header in self.optional_for_major
        return header in self.optional_default


DEFAULT_OPTIONAL_HEADER_POLICY = OptionalHeaderPolicy()


# ---- TLS ----

# Findings about the session as a whole (authorization)
TLS_TOP_LEVEL_PENALTIES: Dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
    Severity.WARNING: 2,
}
# Findings about one component (certificate, chain, protocol, cipher)
TLS_COMPONENT_PENALTIES: Dict[Severity, int] = {
    Severity.CRITICAL: 20,
    Severity.HIGH: 12,
    Severity.MEDIUM: 6,
    Severity.WARNING: 2,
}

TLS_AUTHORIZED_BASE_SCORE = 100
TLS_UNAUTHORIZED_BASE_SCORE = 30
TLS13_BONUS = 5
STRONG_CIPHER_BONUS = 3
STRONG_CIPHER_BITS = 256
MIN_CIPHER_BITS = 128
TLS_URGENT_SCORE = 70

INSECURE_CIPHER_ALGORITHMS = ('RC4', 'DES', '3DES', 'MD5')
SECURE_HASH_ALGORITHMS = ('sha256', 'sha384', 'sha512', 'sha3-256', 'sha3-384', 'sha3-512')
EDDSA_KEY_TYPES = ('Ed25519', 'Ed448')
MIN_KEY_SIZES: Dict[str, int] = {
    'RSA': 2048,
    'DSA': 2048,
    'DH': 2048,
    'EC': 256,
}
DEFAULT_MIN_KEY_SIZE = 2048
CERT_EXPIRY_WARNING_DAYS = 30
MAX_CHAIN_DEPTH = 10

# Outcomes of the verifying HEAD request used when the handshake fails
FALLBACK_VERIFIED_SCORE = 70
FALLBACK_UNVERIFIED_SCORE = 30
FALLBACK_TIMEOUT_SCORE = 10
FALLBACK_FAILED_SCORE = 0


# ---- Cookies ----

COOKIE_PENALTIES: Dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 10,
    Severity.LOW: 5,
    Severity.INFO: 2,
    Severity.WARNING: 2,
}
COOKIE_SECURE_BONUS = 10
COOKIE_HTTPONLY_BONUS = 10
COOKIE_SAMESITE_BONUS = 5

COOKIE_MAX_LIFETIME_SECONDS = 24 * 60 * 60
MAX_COOKIE_VALUE_LENGTH = 4096
EXCESSIVE_COOKIE_COUNT = 10
MIN_SECURE_RATIO = 0.8
MIN_HTTPONLY_RATIO = 0.6

SENSITIVE_COOKIE_RE = re.compile(
    r'session|auth|token|csrf|password|login|user|admin|secure|private|jwt|bearer|oauth|api[_-]?key',
    re.IGNORECASE
)
TRACKING_COOKIE_RE = re.compile(
    r'^_ga|^_gtm|^_gid|^_fbp|^_fbc|track|analytics|pixel|campaign|utm_|visitor|affiliate',
    re.IGNORECASE
)
SUSPICIOUS_COOKIE_CHARS_RE = re.compile(r'[<>"\'&]')

COOKIE_EXPLANATIONS: Dict[str, str] = {
    'PHPSESSID': 'PHP session cookie that identifies a unique visitor',
    'JSESSIONID': 'Session cookie used by Java application servers',
    'ASP.NET_SessionId': 'Session cookie for ASP.NET applications',
    'csrftoken': 'Token used to protect against CSRF attacks',
    'SID': 'Generic session identifier',
    'NID': 'Google cookie used to personalize ads',
    '_ga': 'Google Analytics cookie that identifies unique users',
    '_gid': 'Google Analytics cookie that identifies users over 24 hours',
    '_fbp': 'Facebook Pixel tracking cookie',
    '_session_id': 'Application session identifier',
}

# First match wins
COOKIE_PATTERN_EXPLANATIONS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r'session', re.I), 'Cookie used to manage the user session'),
    (re.compile(r'auth|login', re.I), 'Cookie related to user authentication'),
    (re.compile(r'csrf|token', re.I), 'Security token protecting against forged requests'),
    (re.compile(r'cart|basket', re.I), 'Cookie that keeps the shopping cart'),
    (re.compile(r'lang|locale', re.I), 'Cookie that stores the language preference'),
    (re.compile(r'theme|style', re.I), 'Cookie that stores display preferences'),
    (re.compile(r'_ga|_gtm|analytics', re.I), 'Cookie used for site analytics and statistics'),
    (re.compile(r'_fb|facebook', re.I), 'Cookie related to Facebook features'),
]
GENERIC_COOKIE_EXPLANATION = 'General purpose cookie used by the site'


# ---- HTML ----

HTML_BASE_SCORE = 80
PASSWORD_OVER_HTTP_PENALTY = 20
PASSWORD_FORM_GET_PENALTY = 25
INSECURE_SCRIPT_PENALTY = 15
MISSING_CHARSET_PENALTY = 5


# ---- Aggregation ----

CATEGORY_WEIGHTS: Dict[str, float] = {
    'ssl': 0.25,
    'headers': 0.35,
    'cookies': 0.25,
    'html': 0.15,
}
CRITICAL_FINDING_PENALTY = 10
MAX_CRITICAL_PENALTY = 30
NON_HTTPS_PENALTY = 15


def security_headers_table() -> Dict[str, Dict[str, Any]]:
    """The header catalog as plain data, keyed by header name."""
    return {name: definition.to_dict() for name, definition in SECURITY_HEADERS.items()}
