"""Error taxonomy shared by the validator, the fetcher and the analyzers.

Raw failures (socket errors, aiohttp exceptions, HTTP statuses) are mapped
into a small closed set of categories. Each category knows whether a retry
makes sense and what to tell the user about it.
"""

import asyncio
import errno
import logging
import socket
import ssl
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

import aiohttp

from websec_audit.util.time import iso_timestamp

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    DNS_ERROR = "dns_error"
    CONNECTION_REFUSED = "connection_refused"
    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"
    SSL_ERROR = "ssl_error"
    HOST_UNREACHABLE = "host_unreachable"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    NETWORK_ERROR = "network_error"
    HTTP_CLIENT_ERROR = "http_client_error"
    HTTP_RATE_LIMITED = "http_rate_limited"
    HTTP_SERVER_ERROR = "http_server_error"
    VALIDATION_ERROR = "validation_error"
    ANALYSIS_ERROR = "analysis_error"


@dataclass(frozen=True)
class ErrorProfile:
    """Static description of one error category."""
    retryable: bool
    user_message: str
    suggestions: tuple


# The only process-wide error table. Read-only.
ERROR_TAXONOMY: Dict[ErrorCategory, ErrorProfile] = {
    ErrorCategory.DNS_ERROR: ErrorProfile(
        retryable=False,
        user_message="Site not found. Check that the URL is correct.",
        suggestions=(
            "Check that the site name is spelled correctly",
            "Try adding \"www.\" to the start of the URL",
            "Check your internet connection",
            "The site may be temporarily offline",
        ),
    ),
    ErrorCategory.CONNECTION_REFUSED: ErrorProfile(
        retryable=False,
        user_message="The server refused the connection.",
        suggestions=(
            "The server may be overloaded",
            "Try again in a few minutes",
            "Check that the port is correct (80 for HTTP, 443 for HTTPS)",
        ),
    ),
    ErrorCategory.CONNECTION_RESET: ErrorProfile(
        retryable=True,
        user_message="The connection was interrupted by the server.",
        suggestions=(
            "Try again in a moment",
            "The server may have restarted",
            "This is likely a temporary server problem",
        ),
    ),
    ErrorCategory.TIMEOUT: ErrorProfile(
        retryable=True,
        user_message="The site took too long to respond.",
        suggestions=(
            "Try again, the slowdown may be temporary",
            "Check your internet connection",
            "The server may be overloaded",
        ),
    ),
    ErrorCategory.SSL_ERROR: ErrorProfile(
        retryable=False,
        user_message="There is a problem with the site's SSL/TLS certificate.",
        suggestions=(
            "The site's certificate may have expired",
            "The site may have an incorrect SSL configuration",
            "Try plain HTTP if the site offers it (less secure)",
        ),
    ),
    ErrorCategory.HOST_UNREACHABLE: ErrorProfile(
        retryable=False,
        user_message="The server cannot be reached over the network.",
        suggestions=(
            "Check your internet connection",
            "The server may be offline",
            "There may be a network routing problem",
        ),
    ),
    ErrorCategory.TOO_MANY_REDIRECTS: ErrorProfile(
        retryable=False,
        user_message="The site redirected too many times.",
        suggestions=(
            "The site may have a redirect loop",
            "Try the final destination URL directly",
        ),
    ),
    ErrorCategory.NETWORK_ERROR: ErrorProfile(
        retryable=True,
        user_message="Could not connect to the server.",
        suggestions=(
            "Check your internet connection",
            "Try again in a few minutes",
            "The problem may be on the server side",
        ),
    ),
    ErrorCategory.HTTP_CLIENT_ERROR: ErrorProfile(
        retryable=False,
        user_message="The server rejected the request.",
        suggestions=(
            "Check that the URL is correct",
            "Try the site's main page",
        ),
    ),
    ErrorCategory.HTTP_RATE_LIMITED: ErrorProfile(
        retryable=True,
        user_message="Too many requests.",
        suggestions=(
            "Too many requests, wait a few minutes",
            "The site limits the request rate",
        ),
    ),
    ErrorCategory.HTTP_SERVER_ERROR: ErrorProfile(
        retryable=False,
        user_message="The server failed to handle the request.",
        suggestions=(
            "Try again in a few minutes",
            "The problem is on the server side",
        ),
    ),
    ErrorCategory.VALIDATION_ERROR: ErrorProfile(
        retryable=False,
        user_message="The URL is not valid.",
        suggestions=(
            "Check that the URL is formatted correctly",
            "Use a public http:// or https:// address",
        ),
    ),
    ErrorCategory.ANALYSIS_ERROR: ErrorProfile(
        retryable=False,
        user_message="Internal error while analyzing the URL.",
        suggestions=(
            "Try again",
            "Check that the URL is correct",
        ),
    ),
}

HTTP_STATUS_MESSAGES: Dict[int, str] = {
    400: "Bad request",
    401: "Unauthorized",
    403: "Access denied",
    404: "Resource not found",
    405: "Method not allowed",
    408: "Request timeout",
    429: "Too many requests",
    500: "Internal server error",
    502: "Bad gateway",
    503: "Service unavailable",
    504: "Gateway timeout",
}

HTTP_STATUS_SUGGESTIONS: Dict[int, List[str]] = {
    400: [
        "Check that the URL is formatted correctly",
        "Remove special characters from the URL",
    ],
    401: [
        "The site requires authentication",
        "Try the site's main page",
    ],
    403: [
        "You do not have permission to access this resource",
        "Try the site's main page",
        "The site may block bots and automated tools",
    ],
    404: [
        "The page does not exist or has moved",
        "Check that the URL is correct",
        "Try the site's main page",
    ],
    408: [
        "Try again, the server timed out",
        "The server is responding slowly",
    ],
    429: [
        "Too many requests, wait a few minutes",
        "The site limits the request rate",
    ],
    500: [
        "Internal server error",
        "Try again in a few minutes",
        "The problem is on the server side",
    ],
    502: [
        "Problem in the server's gateway or proxy",
        "Try again in a few minutes",
    ],
    503: [
        "Service temporarily unavailable",
        "The server may be under maintenance",
        "Try again later",
    ],
    504: [
        "Gateway timeout",
        "The server is overloaded",
        "Try again in a few minutes",
    ],
}

RETRYABLE_STATUSES = frozenset({408, 429, 502, 503, 504})


@dataclass
class ClassifiedError:
    """A failure mapped into the taxonomy, ready for logs and for users."""
    category: ErrorCategory
    retryable: bool
    technical_message: str
    user_message: str
    suggestions: List[str] = field(default_factory=list)
    url: Optional[str] = None
    status: Optional[int] = None
    code: Optional[str] = None
    timestamp: str = field(default_factory=iso_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'category': self.category.value,
            'retryable': self.retryable,
            'technical_message': self.technical_message,
            'user_message': self.user_message,
            'suggestions': list(self.suggestions),
            'url': self.url,
            'timestamp': self.timestamp,
        }
        if self.status is not None:
            data['status'] = self.status
        if self.code:
            data['code'] = self.code
        return data

    def summary(self) -> Dict[str, Any]:
        """Short form for log lines."""
        return {
            'category': self.category.value,
            'status': self.status,
            'code': self.code,
            'url': self.url,
        }


class AnalysisError(Exception):
    """Base error of the analysis pipeline. Always carries a ClassifiedError."""

    def __init__(self, classified: ClassifiedError):
        super().__init__(classified.user_message)
        self.classified = classified

    @property
    def category(self) -> ErrorCategory:
        return self.classified.category

    def to_dict(self) -> Dict[str, Any]:
        return self.classified.to_dict()


class ValidationError(AnalysisError):
    """The input URL failed validation."""

    def __init__(self, url: str, errors: List[str], suggestions: Optional[List[str]] = None):
        profile = ERROR_TAXONOMY[ErrorCategory.VALIDATION_ERROR]
        classified = ClassifiedError(
            category=ErrorCategory.VALIDATION_ERROR,
            retryable=False,
            technical_message="; ".join(errors) or "Invalid URL",
            user_message=profile.user_message,
            suggestions=list(suggestions or profile.suggestions),
            url=url,
        )
        super().__init__(classified)
        self.errors = list(errors)


class NetworkError(AnalysisError):
    """No usable response could be obtained from the target."""


def make_error(category: ErrorCategory, technical_message: str, url: Optional[str] = None,
               status: Optional[int] = None, code: Optional[str] = None,
               retryable: Optional[bool] = None) -> ClassifiedError:
    """Build a ClassifiedError from the taxonomy table."""
    profile = ERROR_TAXONOMY[category]
    return ClassifiedError(
        category=category,
        retryable=profile.retryable if retryable is None else retryable,
        technical_message=technical_message,
        user_message=profile.user_message,
        suggestions=list(profile.suggestions),
        url=url,
        status=status,
        code=code,
    )


def classify_status(status: int, url: Optional[str] = None, reason: str = "") -> ClassifiedError:
    """Classify an HTTP error status (>= 400)."""
    if status == 408:
        category = ErrorCategory.TIMEOUT
    elif status == 429:
        category = ErrorCategory.HTTP_RATE_LIMITED
    elif status >= 500:
        category = ErrorCategory.HTTP_SERVER_ERROR
    else:
        category = ErrorCategory.HTTP_CLIENT_ERROR

    technical = f"HTTP {status}: {reason}" if reason else f"HTTP {status}"
    classified = make_error(category, technical, url=url, status=status,
                            retryable=status in RETRYABLE_STATUSES)
    classified.user_message = HTTP_STATUS_MESSAGES.get(status, f"HTTP error {status}")
    classified.suggestions = list(HTTP_STATUS_SUGGESTIONS.get(status, [
        "Try again in a few minutes",
        "Check that the URL is correct",
    ]))
    logger.debug(f"Classified HTTP {status} for {url} as {category.value}")
    return classified


def _os_error_of(exc: BaseException) -> Optional[OSError]:
    """Dig the underlying OSError out of an aiohttp connector error."""
    if isinstance(exc, aiohttp.ClientConnectorError):
        return exc.os_error
    if isinstance(exc, OSError):
        return exc
    cause = exc.__cause__ or exc.__context__
    if isinstance(cause, OSError):
        return cause
    return None


def _error_code(os_error: Optional[OSError]) -> Optional[str]:
    if os_error is None or os_error.errno is None:
        return None
    return errno.errorcode.get(os_error.errno, str(os_error.errno))


def classify_exception(exc: BaseException, url: Optional[str] = None) -> ClassifiedError:
    """Map a raised exception into the taxonomy.

    Order matters: aiohttp's certificate and SSL errors are also connector
    errors, and connector errors wrap the OSError that says what happened.
    """
    if isinstance(exc, AnalysisError):
        return exc.classified

    technical = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
    os_error = _os_error_of(exc)
    code = _error_code(os_error)

    if isinstance(exc, aiohttp.TooManyRedirects):
        category = ErrorCategory.TOO_MANY_REDIRECTS
    elif isinstance(exc, (aiohttp.ClientConnectorCertificateError, aiohttp.ClientSSLError,
                          ssl.SSLError, ssl.CertificateError)):
        category = ErrorCategory.SSL_ERROR
    elif isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, socket.gaierror) or isinstance(os_error, socket.gaierror):
        category = ErrorCategory.DNS_ERROR
        code = code or 'ENOTFOUND'
    elif isinstance(os_error, ConnectionRefusedError):
        category = ErrorCategory.CONNECTION_REFUSED
    elif isinstance(exc, aiohttp.ServerDisconnectedError) or isinstance(os_error, ConnectionResetError):
        category = ErrorCategory.CONNECTION_RESET
    elif os_error is not None and os_error.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
        category = ErrorCategory.HOST_UNREACHABLE
    elif isinstance(os_error, TimeoutError):
        category = ErrorCategory.TIMEOUT
    elif isinstance(os_error, ssl.SSLError):
        category = ErrorCategory.SSL_ERROR
    else:
        category = ErrorCategory.NETWORK_ERROR

    classified = make_error(category, technical, url=url, code=code)
    logger.debug(f"Classified {type(exc).__name__} for {url} as {category.value}")
    return classified


def is_recoverable(classified: ClassifiedError) -> bool:
    """Whether retrying the same request could plausibly succeed."""
    if classified.status is not None:
        return classified.status in RETRYABLE_STATUSES
    return classified.retryable
