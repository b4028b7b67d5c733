"""DNS probe - resolve a host before we try to talk to it.

Uses the system resolver through asyncio. A and AAAA lookups run in
parallel, each under the same timeout.
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from websec_audit.util.time import now_utc, duration_ms

logger = logging.getLogger(__name__)


@dataclass
class DNSResult:
    host: str
    success: bool
    a_records: List[str] = field(default_factory=list)
    aaaa_records: List[str] = field(default_factory=list)
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def addresses(self) -> List[str]:
        return self.a_records + self.aaaa_records

    def to_dict(self) -> Dict[str, Any]:
        return {
            'host': self.host,
            'success': self.success,
            'a_records': self.a_records,
            'aaaa_records': self.aaaa_records,
            'error': self.error,
        }


class DNSProbe:
    """Async A/AAAA resolver.

    No cache: an analysis resolves its host once and then throws the
    answer away.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def resolve(self, host: str) -> DNSResult:
        """Resolve host to its IPv4 and IPv6 addresses.

        Never raises for lookup failures; they come back as success=False.
        """
        start = now_utc()
        loop = asyncio.get_running_loop()

        a_results, aaaa_results = await asyncio.gather(
            asyncio.wait_for(loop.getaddrinfo(host, None, family=socket.AF_INET), timeout=self.timeout),
            asyncio.wait_for(loop.getaddrinfo(host, None, family=socket.AF_INET6), timeout=self.timeout),
            return_exceptions=True
        )

        a_records = []
        if not isinstance(a_results, BaseException):
            a_records = sorted(set(r[4][0] for r in a_results))

        aaaa_records = []
        if not isinstance(aaaa_results, BaseException):
            aaaa_records = sorted(set(r[4][0] for r in aaaa_results))

        success = bool(a_records or aaaa_records)
        timed_out = (not success and isinstance(a_results, asyncio.TimeoutError)
                     and isinstance(aaaa_results, asyncio.TimeoutError))

        error = None
        if timed_out:
            error = "DNS timeout"
            logger.warning(f"DNS timeout for {host}")
        elif not success:
            error = "No DNS records found"
            logger.debug(f"DNS lookup failed for {host}: {a_results!r}")

        logger.debug(f"Resolved {host} in {duration_ms(start):.0f}ms: {a_records + aaaa_records}")
        return DNSResult(
            host=host,
            success=success,
            a_records=a_records,
            aaaa_records=aaaa_records,
            error=error,
            timed_out=timed_out,
        )
