"""HTTP probe - fetch the target once, retrying transient failures.

Certificate verification is off on purpose for the main fetch: a site with
a broken certificate still has headers, cookies and markup worth grading.
The TLS analyzer judges the certificate separately.
"""

import asyncio
import logging
import random
import ssl
from typing import Dict, Any, Optional, List

import aiohttp

from websec_audit.util.types import AnalyzerConfig, FetchResult, TransportSecurity
from websec_audit.util.time import now_utc, duration_ms
from websec_audit.scanner.errors import (
    ClassifiedError, NetworkError, RETRYABLE_STATUSES, classify_exception
)

logger = logging.getLogger(__name__)

USER_AGENTS = [
    'WebSec-Audit/1.0 (passive security posture check)',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) '
    'Chrome/91.0.4472.124 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:89.0) Gecko/20100101 Firefox/89.0',
    'Mozilla/5.0 (iPhone; CPU iPhone OS 14_6 like Mac OS X) AppleWebKit/605.1.15 '
    '(KHTML, like Gecko) Version/14.0 Mobile/15E148 Safari/604.1',
]

DEFAULT_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Cache-Control': 'no-cache',
    'Pragma': 'no-cache',
}

# Everything below this is a response we analyze, not an error
MAX_STATUS = 600

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def normalize_headers(raw) -> Dict[str, str]:
    """Lower-case header names; repeated headers are joined with ", "."""
    headers: Dict[str, str] = {}
    for key, value in raw.items():
        name = key.lower()
        if name in headers:
            headers[name] = f"{headers[name]}, {value}"
        else:
            headers[name] = value
    return headers


def transport_security(resp: aiohttp.ClientResponse) -> Optional[TransportSecurity]:
    """Read TLS fields off the live connection. Must run before the body is read."""
    conn = resp.connection
    transport = conn.transport if conn is not None else None
    if transport is None:
        return None

    ssl_obj = transport.get_extra_info('ssl_object')
    if ssl_obj is None:
        return None

    cipher = ssl_obj.cipher()  # (name, protocol, bits) or None
    return TransportSecurity(
        protocol=ssl_obj.version(),
        cipher=cipher[0] if cipher else None,
        cipher_bits=cipher[2] if cipher else None,
        peer_certificate=ssl_obj.getpeercert(binary_form=True),
    )


async def read_limited(resp: aiohttp.ClientResponse, limit: int) -> bytes:
    """Read at most limit bytes of the body."""
    chunks = []
    size = 0
    async for chunk in resp.content.iter_chunked(64 * 1024):
        chunks.append(chunk)
        size += len(chunk)
        if size >= limit:
            logger.warning(f"Body of {resp.url} truncated at {limit} bytes")
            break
    return b"".join(chunks)[:limit]


class HTTPProbe:
    """Async HTTP client for one analysis.

    Use as an async context manager; the aiohttp session lives exactly as
    long as the block.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or AnalyzerConfig()
        self.rng = rng or random.Random()
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        timeout = aiohttp.ClientTimeout(
            total=self.config.http_timeout,
            sock_connect=self.config.connect_timeout
        )
        connector = aiohttp.TCPConnector(limit=10, ssl=False)
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            headers=DEFAULT_HEADERS
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def user_agent(self) -> str:
        return self.rng.choice(USER_AGENTS)

    def redirect_limit(self) -> int:
        # aiohttp gives up once the redirect count reaches max_redirects,
        # so allowing N hops means passing N + 1
        return self.config.max_redirects + 1

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff before the given attempt."""
        return attempt * self.config.retry_delay

    async def fetch(self, url: str) -> FetchResult:
        """GET url with bounded retries.

        Retryable transport failures and retryable statuses (408, 429, 502,
        503, 504) are tried again after attempt * retry_delay seconds. The
        last response is returned as data whatever its status; NetworkError
        is raised only when no response arrived at all.
        """
        start = now_utc()
        max_attempts = max(1, self.config.max_retries)
        last_result: Optional[FetchResult] = None
        last_error: Optional[ClassifiedError] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.backoff_delay(attempt))
                logger.info(f"Retrying {url} (attempt {attempt}/{max_attempts})")

            try:
                result = await self._get(url)
            except TRANSPORT_ERRORS as e:
                last_error = classify_exception(e, url)
                logger.warning(
                    f"Fetch attempt {attempt} for {url} failed: "
                    f"{last_error.category.value} ({last_error.technical_message})"
                )
                if not last_error.retryable:
                    break
                continue

            last_result = result
            if result.status in RETRYABLE_STATUSES and attempt < max_attempts:
                logger.info(f"{url} answered {result.status}, will retry")
                continue
            break

        if last_result is not None:
            logger.info(
                f"Fetched {url} -> {last_result.status} "
                f"({last_result.size} chars, {last_result.redirect_count} redirects) "
                f"in {duration_ms(start):.0f}ms"
            )
            return last_result

        logger.error(f"Could not fetch {url}: {last_error.technical_message}")
        raise NetworkError(last_error)

    async def _get(self, url: str) -> FetchResult:
        """One GET attempt. Transport errors propagate to fetch()."""
        if self.session is None:
            raise RuntimeError("HTTPProbe must be used as an async context manager")

        async with self.session.get(
            url,
            ssl=False,
            allow_redirects=True,
            max_redirects=self.redirect_limit(),
            headers={'User-Agent': self.user_agent()}
        ) as resp:
            transport = transport_security(resp)
            raw_body = await read_limited(resp, self.config.max_body_bytes)
            try:
                body = raw_body.decode(resp.charset or 'utf-8', errors='replace')
            except LookupError:
                body = raw_body.decode('utf-8', errors='replace')

            if resp.status >= MAX_STATUS:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status,
                    message=f"Unexpected status {resp.status}"
                )

            chain: List[str] = [str(r.url) for r in resp.history]
            return FetchResult(
                url=url,
                final_url=str(resp.url),
                status=resp.status,
                reason=resp.reason or "",
                headers=normalize_headers(resp.headers),
                body=body,
                cookies=tuple(resp.headers.getall('Set-Cookie', [])),
                redirect_count=len(resp.history),
                redirect_chain=tuple(chain + [str(resp.url)]) if chain else (),
                transport=transport,
            )

    async def head(self, url: str, verify_tls: bool = False,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        """Single HEAD request for availability checks.

        With verify_tls the certificate must validate, so a rejected
        certificate surfaces as a NetworkError in the ssl_error category.
        """
        if self.session is None:
            raise RuntimeError("HTTPProbe must be used as an async context manager")

        ssl_param = ssl.create_default_context() if verify_tls else False
        request_timeout = aiohttp.ClientTimeout(total=timeout or self.config.connect_timeout)
        try:
            async with self.session.head(
                url,
                ssl=ssl_param,
                timeout=request_timeout,
                allow_redirects=True,
                max_redirects=self.redirect_limit(),
                headers={'User-Agent': self.user_agent()}
            ) as resp:
                return {
                    'status': resp.status,
                    'headers': normalize_headers(resp.headers),
                    'is_available': resp.status < 400,
                }
        except TRANSPORT_ERRORS as e:
            classified = classify_exception(e, url)
            logger.debug(f"HEAD {url} failed: {classified.category.value}")
            raise NetworkError(classified) from e
