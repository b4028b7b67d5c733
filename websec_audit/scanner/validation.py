"""URL validation and normalization.

Turns whatever the user typed into one public http(s) URL we are willing
to fetch. Candidates are tried HTTPS first; the first one that parses,
points at a public host and resolves wins.
"""

import ipaddress
import logging
import re
from typing import List, Optional, Tuple, Union
from urllib.parse import urlsplit, SplitResult

from websec_audit.util.types import NormalizedURL, ValidationResult
from websec_audit.util.time import now_utc, duration_ms
from websec_audit.scanner.probes.dns_probe import DNSProbe

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {'http': 80, 'https': 443}

SCHEME_RE = re.compile(r'^[a-z][a-z0-9+.\-]*://')
DOMAIN_RE = re.compile(
    r'^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$',
    re.IGNORECASE
)
MAX_HOSTNAME_LENGTH = 253

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Applied to the raw input when building suggestions
SCHEME_TYPOS = {
    'htttp://': 'http://',
    'htp://': 'http://',
    'https//': 'https://',
}
TLD_TYPOS = {
    '.con': '.com',
    '.co': '.com',
}


def parse_ip(host: str) -> Optional[IPAddress]:
    """Return the address if host is an IPv4/IPv6 literal, else None."""
    try:
        return ipaddress.ip_address(host.strip('[]'))
    except ValueError:
        return None


def is_private_address(address: IPAddress) -> bool:
    """Anything we refuse to fetch: private, loopback, link-local, unspecified."""
    return (address.is_private or address.is_loopback
            or address.is_link_local or address.is_unspecified)


def is_local_name(host: str) -> bool:
    return host == 'localhost' or host.endswith('.localhost')


class URLValidator:
    """Validates raw user input and picks the best reachable URL variant."""

    def __init__(self, dns_probe: Optional[DNSProbe] = None):
        self.dns_probe = dns_probe or DNSProbe()

    async def validate_and_normalize(self, raw: str) -> ValidationResult:
        """Validate raw input. Never raises.

        Returns the first passing candidate, or every candidate's errors
        plus suggestions for what the user might have meant.
        """
        start = now_utc()
        try:
            if not isinstance(raw, str) or not raw.strip():
                return ValidationResult(
                    is_valid=False,
                    errors=[{'url': raw if isinstance(raw, str) else '', 'errors': ["URL is required"]}],
                )

            clean = raw.strip().lower()
            errors = []
            for candidate in self.candidates(clean):
                target, candidate_errors = await self.validate_candidate(candidate)
                if target:
                    logger.debug(f"Validated {raw!r} as {target.normalized} in {duration_ms(start):.0f}ms")
                    return ValidationResult(is_valid=True, url=target)
                errors.append({'url': candidate, 'errors': candidate_errors})

            logger.info(f"URL validation failed for {raw!r}: {len(errors)} candidate(s) rejected")
            return ValidationResult(
                is_valid=False,
                errors=errors,
                suggestions=self.suggestions(clean),
            )

        except Exception as e:
            logger.error(f"Unexpected error validating {raw!r}: {e}", exc_info=True)
            return ValidationResult(
                is_valid=False,
                errors=[{'url': raw if isinstance(raw, str) else '', 'errors': ["Internal error while validating the URL"]}],
            )

    def candidates(self, clean: str) -> List[str]:
        """Ordered URL variants to try, HTTPS first."""
        if clean.startswith('https://'):
            return [clean]
        if clean.startswith('http://'):
            return ['https://' + clean[len('http://'):], clean]
        if SCHEME_RE.match(clean):
            # Some other scheme; let it fail the scheme check.
            return [clean]

        variants = [f"https://{clean}", f"http://{clean}"]
        if not clean.startswith('www.'):
            variants += [f"https://www.{clean}", f"http://www.{clean}"]
        return variants

    async def validate_candidate(self, candidate: str) -> Tuple[Optional[NormalizedURL], List[str]]:
        """Run every check against one candidate.

        Returns (NormalizedURL, []) on success or (None, errors).
        """
        try:
            parts = urlsplit(candidate)
            port = parts.port
        except ValueError:
            return None, ["Malformed URL"]

        errors = []
        host = parts.hostname or ''

        if parts.scheme not in DEFAULT_PORTS:
            errors.append("Protocol must be HTTP or HTTPS")

        if not host:
            errors.append("Invalid hostname")
            return None, errors

        address = parse_ip(host)
        if address is None and not self._valid_domain(host):
            errors.append("Invalid hostname format")

        if (address is not None and is_private_address(address)) or is_local_name(host):
            errors.append("Private or local addresses are not allowed")

        # Only public, well-formed names are worth a lookup
        if not errors and address is None:
            result = await self.dns_probe.resolve(host)
            if not result.success:
                errors.append(f"DNS does not resolve: {result.error}")
            elif all(self._private(a) for a in result.addresses):
                errors.append("Host resolves only to private addresses")

        if errors:
            return None, errors

        return self._normalize(candidate, parts, host, port, address is not None), []

    def suggestions(self, clean: str) -> List[str]:
        """Guesses at what the user meant, without duplicates."""
        suggestions = []

        if '.' not in clean:
            suggestions += [f"{clean}.com", f"{clean}.org", f"{clean}.net"]

        if not clean.startswith('www.') and '.' in clean and not SCHEME_RE.match(clean):
            suggestions.append(f"www.{clean}")

        for typo, correction in SCHEME_TYPOS.items():
            if typo in clean:
                suggestions.append(clean.replace(typo, correction, 1))

        for typo, correction in TLD_TYPOS.items():
            if clean.endswith(typo):
                suggestions.append(clean[:-len(typo)] + correction)
                break

        return list(dict.fromkeys(suggestions))

    @staticmethod
    def _valid_domain(host: str) -> bool:
        return len(host) <= MAX_HOSTNAME_LENGTH and bool(DOMAIN_RE.match(host))

    @staticmethod
    def _private(addr: str) -> bool:
        parsed = parse_ip(addr.split('%')[0])
        return parsed is not None and is_private_address(parsed)

    @staticmethod
    def _normalize(candidate: str, parts: SplitResult, host: str,
                   port: Optional[int], is_ip: bool) -> NormalizedURL:
        default_port = DEFAULT_PORTS[parts.scheme]
        return NormalizedURL(
            url=candidate,
            scheme=parts.scheme,
            host=host,
            port=port or default_port,
            path=parts.path,
            query=parts.query,
            has_www=host.startswith('www.'),
            is_ip=is_ip,
            default_port=port is None or port == default_port,
        )
