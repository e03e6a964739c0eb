"""
EdgeOne IP list retrieval and normalization.

Fetches the published EdgeOne edge-node prefixes and turns the response,
whatever its shape (JSON array, bracketed text or free text), into a
deduplicated set of validated network prefixes.
"""

import ipaddress
import json
import logging
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, FrozenSet, List, Optional, Tuple, Union

import requests

from edgeone_config import FAMILIES, FAMILY_V4, FAMILY_V6, ProtectionConfig
from edgeone_errors import EmptyResultSetError, SourceUnavailableError

logger = logging.getLogger(__name__)

# Last-known-good EdgeOne ranges, used when the API cannot be reached
FALLBACK_PREFIXES = (
    '101.32.0.0/16',
    '101.33.0.0/16',
    '203.205.128.0/19',
    '203.205.176.0/20',
    '101.226.0.0/16',
    '182.254.0.0/16',
    '2402:4e00:1000::/48',
    '2402:4e00:2000::/48',
    '2402:4e00:3000::/48',
    '2402:4e00:4000::/48',
    '2402:4e00:8000::/48',
    '2402:4e00::/32',
)

# IPv4 a.b.c.d/n or IPv6 hex groups/n, each not starting in the middle of an address
PREFIX_PATTERN = re.compile(
    r'(?<![\d.])\d{1,3}(?:\.\d{1,3}){3}/\d{1,3}'
    r'|(?<![0-9A-Fa-f:])[0-9A-Fa-f]{0,4}(?::[0-9A-Fa-f]{0,4}){2,7}/\d{1,3}'
)
ARRAY_PUNCTUATION = re.compile(r'[\[\]"\',]')
COMMENT_LINE = re.compile(r'^(#|;|$)')


@dataclass(frozen=True)
class NetworkPrefix:
    """A validated network prefix tagged with its address family."""

    address: str
    prefix_length: int
    family: str

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError(f"Unknown address family: {self.family}")
        max_length = 32 if self.family == FAMILY_V4 else 128
        if not 0 <= self.prefix_length <= max_length:
            raise ValueError(f"Prefix length {self.prefix_length} out of range for {self.family}")

        address = ipaddress.ip_address(self.address)
        if address.version != (4 if self.family == FAMILY_V4 else 6):
            raise ValueError(f"{self.address} is not an {self.family} address")
        if str(address) != self.address:
            raise ValueError(f"Address {self.address} is not in canonical form ({address})")

    @classmethod
    def parse(cls, token: str) -> 'NetworkPrefix':
        """
        Build a prefix from an address or CIDR literal.

        Bare addresses become /32 or /128 and host bits are cleared, so
        ``203.0.113.7/24`` and ``203.0.113.0/24`` compare equal.

        Raises:
            ValueError: If the token is not a valid IPv4/IPv6 literal
        """
        network = ipaddress.ip_network(token.strip(), strict=False)
        family = FAMILY_V4 if network.version == 4 else FAMILY_V6
        return cls(str(network.network_address), network.prefixlen, family)

    @property
    def network(self) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
        return ipaddress.ip_network(self.cidr)

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix_length}"

    def sort_key(self) -> Tuple[int, int, int]:
        network = self.network
        return (network.version, int(network.network_address), self.prefix_length)

    def __str__(self) -> str:
        return self.cidr


class PayloadKind(Enum):
    """Shape of an address-list payload."""
    STRUCTURED = 'structured'
    FREE_TEXT = 'free-text'
    INVALID = 'invalid'


@dataclass(frozen=True)
class ParsedPayload:
    kind: PayloadKind
    tokens: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NormalizeResult:
    """Outcome of normalizing one payload."""

    prefixes: FrozenSet[NetworkPrefix]
    invalid_count: int
    kind: PayloadKind
    family: Optional[str] = None
    area: Optional[str] = None
    filtered_count: int = 0
    from_fallback: bool = False

    def sorted_prefixes(self) -> List[NetworkPrefix]:
        return sorted(self.prefixes, key=NetworkPrefix.sort_key)

    def count(self, family: str) -> int:
        return sum(1 for prefix in self.prefixes if prefix.family == family)


def _parse_json_array(text: str) -> Optional[ParsedPayload]:
    """Strict JSON array of strings."""
    if '[' not in text or ']' not in text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, list):
        return None
    tokens = tuple(str(item).strip() for item in data if item is not None and str(item).strip())
    return ParsedPayload(PayloadKind.STRUCTURED, tokens)


def _parse_bracketed_text(text: str) -> Optional[ParsedPayload]:
    """Array-looking text that is not valid JSON: strip punctuation and split."""
    if '[' not in text or ']' not in text:
        return None
    tokens = tuple(ARRAY_PUNCTUATION.sub(' ', text).split())
    if not tokens:
        return None
    return ParsedPayload(PayloadKind.FREE_TEXT, tokens)


def _scan_free_text(text: str) -> Optional[ParsedPayload]:
    """Pick prefix literals out of arbitrary text, else treat it as one entry per line."""
    tokens = tuple(PREFIX_PATTERN.findall(text))
    if not tokens:
        tokens = tuple(
            line.strip() for line in text.splitlines()
            if not COMMENT_LINE.match(line.strip())
        )
    if not tokens:
        return None
    return ParsedPayload(PayloadKind.FREE_TEXT, tokens)


PARSE_ATTEMPTS: Tuple[Callable[[str], Optional[ParsedPayload]], ...] = (
    _parse_json_array,
    _parse_bracketed_text,
    _scan_free_text,
)


def parse_payload(text: str) -> ParsedPayload:
    """Run the parse attempts in order and return the first that yields tokens."""
    for attempt in PARSE_ATTEMPTS:
        parsed = attempt(text)
        if parsed is not None:
            logger.debug(f"Payload parsed by {attempt.__name__}: {len(parsed.tokens)} tokens")
            return parsed
    return ParsedPayload(PayloadKind.INVALID)


def normalize_payload(raw: Union[bytes, str], family: Optional[str] = None,
                      area: Optional[str] = None) -> NormalizeResult:
    """
    Normalize a raw address-list payload into a set of network prefixes.

    Args:
        raw: Response body from the data source
        family: 'v4' or 'v6' to keep one address family, None/'both' for all
        area: Area tag the payload was requested for (reported only)

    Returns:
        NormalizeResult with the distinct valid prefixes

    Raises:
        EmptyResultSetError: If no valid prefix remains
    """
    if isinstance(raw, bytes):
        raw = raw.decode('utf-8', errors='replace')
    text = raw.lstrip('\ufeff').strip()

    parsed = parse_payload(text)
    prefixes = set()
    invalid_count = 0
    filtered_count = 0

    for token in parsed.tokens:
        try:
            prefix = NetworkPrefix.parse(token)
        except ValueError:
            invalid_count += 1
            logger.debug(f"Invalid IP/CIDR ignored: {token}")
            continue
        if family in FAMILIES and prefix.family != family:
            filtered_count += 1
            continue
        prefixes.add(prefix)

    if invalid_count > 0:
        logger.warning(f"Dropped {invalid_count} invalid entries from the EdgeOne IP list")

    if not prefixes:
        raise EmptyResultSetError(
            f"No valid {family or 'IPv4/IPv6'} prefixes found in EdgeOne IP list "
            f"({parsed.kind.value} payload, {len(parsed.tokens)} tokens)"
        )

    result = NormalizeResult(
        prefixes=frozenset(prefixes),
        invalid_count=invalid_count,
        kind=parsed.kind,
        family=family,
        area=area,
        filtered_count=filtered_count,
    )
    logger.info(
        f"Normalized EdgeOne IP list: {result.count(FAMILY_V4)} IPv4, "
        f"{result.count(FAMILY_V6)} IPv6 prefixes"
    )
    return result


class EdgeOneIPSource:
    """HTTP client for the EdgeOne published IP list."""

    def __init__(self, url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.config = ProtectionConfig()
        self.url = url or self.config.EDGEONE_IPS_URL
        self.session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': self.config.USER_AGENT})
        return session

    def fetch(self, family: Optional[str] = None, area: Optional[str] = None) -> str:
        """
        Fetch the raw IP list.

        Args:
            family: Optional 'v4' or 'v6' version filter
            area: Optional area filter

        Returns:
            The response text

        Raises:
            SourceUnavailableError: On network failure, timeout or non-2xx status
            EmptyResultSetError: If the API answers with an empty body
        """
        params = {}
        if family in FAMILIES:
            params['version'] = family
        if area:
            params['area'] = area

        try:
            logger.info(f"Fetching EdgeOne IP list: {self.url} {params or ''}")
            start_time = time.time()
            response = self.session.get(
                self.url,
                params=params or None,
                timeout=(self.config.CONNECT_TIMEOUT, self.config.READ_TIMEOUT),
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceUnavailableError(f"Error fetching {self.url}: {e}") from e

        elapsed = time.time() - start_time
        logger.info(
            f"Successfully fetched EdgeOne IP list, "
            f"response size: {len(response.text)} bytes, elapsed: {elapsed:.2f}s"
        )
        if not response.text.strip():
            raise EmptyResultSetError("EdgeOne API returned an empty response")
        return response.text

    def close(self) -> None:
        self.session.close()


def load_prefixes(source: EdgeOneIPSource, family: Optional[str] = None,
                  area: Optional[str] = None) -> NormalizeResult:
    """Fetch and normalize, substituting the embedded list when the API is unreachable."""
    try:
        payload = source.fetch(family, area)
        from_fallback = False
    except SourceUnavailableError as e:
        logger.warning(f"{e}")
        logger.warning("Using embedded EdgeOne IP ranges (may not be current)")
        payload = '\n'.join(FALLBACK_PREFIXES)
        from_fallback = True

    result = normalize_payload(payload, family, area)
    return replace(result, from_fallback=from_fallback)
