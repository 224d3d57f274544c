"""Relay provider feed client."""

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx

from relayrace.core.config import RelayScheme, settings
from relayrace.core.errors import ProviderError
from relayrace.monitoring.logger import get_logger

logger = get_logger(__name__)

# Feeds spell the host field differently; first non-empty match wins
HOST_FIELDS = ("sever", "server", "ip")
EXPIRE_FORMAT = "%Y-%m-%d %H:%M:%S"
BODY_PREVIEW = 300


@dataclass(frozen=True)
class RelayCandidate:
    """Relay host/port pair announced by the provider feed."""

    host: str
    port: int

    def address(self, scheme: RelayScheme | str) -> str:
        """Build canonical relay address.

        Args:
            scheme: Relay transport scheme

        Returns:
            Address in ``scheme://host:port`` form
        """
        scheme_value = scheme.value if isinstance(scheme, RelayScheme) else str(scheme)
        return f"{scheme_value.lower()}://{self.host}:{self.port}"

    @property
    def label(self) -> str:
        """Get ``host:port`` label used in logs."""
        return f"{self.host}:{self.port}"


@dataclass
class ProviderBatch:
    """Parsed provider response."""

    candidates: list[RelayCandidate]
    safe_expire_at: float
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def addresses(self, scheme: RelayScheme | str) -> list[str]:
        """Get canonical addresses of all candidates.

        Args:
            scheme: Relay transport scheme

        Returns:
            Relay addresses in feed order
        """
        return [c.address(scheme) for c in self.candidates]


@dataclass(frozen=True)
class RelayLease:
    """Single relay with its safe expiry, ready to bind to a session."""

    candidate: RelayCandidate
    address: str
    safe_expire_at: float


def compute_safe_expiry(
    provider_expiry: float | None,
    now: float,
    refresh_advance: float,
    min_grace: float,
    default_ttl: float,
) -> float:
    """Compute the moment a relay should be treated as expired.

    Args:
        provider_expiry: Expiry reported by the feed (epoch seconds) or None
        now: Current time (epoch seconds)
        refresh_advance: Margin subtracted from the provider expiry
        min_grace: Minimum lifetime from now
        default_ttl: Lifetime assumed when the feed reports none

    Returns:
        Safe expiry timestamp
    """
    if provider_expiry is None:
        provider_expiry = now + default_ttl
    return max(now + min_grace, provider_expiry - refresh_advance)


def _parse_expire(value: Any) -> float | None:
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip(), EXPIRE_FORMAT).timestamp()
    except ValueError:
        logger.warning(f"Unparseable provider expiry: {value!r}, using default lifetime")
        return None


def _parse_candidate(item: Any) -> RelayCandidate:
    if not isinstance(item, dict):
        raise ProviderError("malformed", f"provider list item is not an object: {item!r}")

    host = ""
    for name in HOST_FIELDS:
        value = item.get(name)
        if value:
            host = str(value).strip()
            break

    port_value = item.get("port")
    if not host or port_value in (None, ""):
        raise ProviderError(
            "malformed", f'provider missing host/port, got host="{host}" port="{port_value}"'
        )

    try:
        port = int(port_value)
    except (TypeError, ValueError) as e:
        raise ProviderError("malformed", f"provider port is not numeric: {port_value!r}") from e

    if not 0 < port < 65536:
        raise ProviderError("malformed", f"provider port out of range: {port}")

    return RelayCandidate(host=host, port=port)


def _parse_count(value: Any) -> int | None:
    """Read the feed's advertised relay count.

    Only leading digits are read, so ``"2 ips"`` is 2. A missing or blank
    count reads as 0; anything else without digits is unknown (None).
    """
    text = str(value if value is not None else "").strip() or "0"
    match = re.match(r"[+-]?\d+", text)
    return int(match.group()) if match else None


def parse_provider_response(
    payload: Any,
    now: float | None = None,
    refresh_advance: float | None = None,
    min_grace: float | None = None,
    default_ttl: float | None = None,
) -> ProviderBatch:
    """Validate a decoded provider response.

    Expected shape::

        {"status": "0", "count": "2", "expire": "2025-09-17 14:44:35",
         "list": [{"sever": "1.2.3.4", "port": 8080}, ...]}

    Args:
        payload: Decoded JSON body
        now: Current time override (epoch seconds)
        refresh_advance: Expiry safety margin in seconds
        min_grace: Minimum relay lifetime in seconds
        default_ttl: Lifetime when the feed has no expiry

    Returns:
        Parsed batch

    Raises:
        ProviderError: On failure status, zero count, empty list or malformed
            candidates
    """
    if not isinstance(payload, dict):
        raise ProviderError("malformed", "provider body is not an object")

    status = str(payload.get("status", ""))
    if status != "0":
        raise ProviderError(
            "status",
            f"provider status != 0, got status: {status}",
            status=status,
            body=json.dumps(payload, ensure_ascii=False),
        )

    if _parse_count(payload.get("count")) == 0:
        raise ProviderError("empty", "provider returned count=0, no relays available", status=status)

    items = payload.get("list")
    if not isinstance(items, list) or not items:
        raise ProviderError("empty", "provider returned empty list, no relays available", status=status)

    candidates = [_parse_candidate(item) for item in items]

    now = time.time() if now is None else now
    safe_expire_at = compute_safe_expiry(
        _parse_expire(payload.get("expire")),
        now,
        settings.relay_refresh_advance if refresh_advance is None else refresh_advance,
        settings.relay_min_grace if min_grace is None else min_grace,
        settings.relay_default_ttl if default_ttl is None else default_ttl,
    )

    return ProviderBatch(candidates=candidates, safe_expire_at=safe_expire_at, raw=payload)


class RelayProviderClient:
    """Fetches relay candidates from the provider feed.

    No retries happen here; callers decide how to retry.
    """

    def __init__(
        self,
        feed_url: str | None = None,
        timeout: float | None = None,
        scheme: RelayScheme | None = None,
        refresh_advance: float | None = None,
        min_grace: float | None = None,
        default_ttl: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize provider client.

        Args:
            feed_url: Provider feed URL
            timeout: Fetch timeout in seconds
            scheme: Scheme used to build relay addresses
            refresh_advance: Expiry safety margin in seconds
            min_grace: Minimum relay lifetime in seconds
            default_ttl: Lifetime when the feed has no expiry
            transport: Optional httpx transport (tests)
            clock: Time source returning epoch seconds
        """
        self.feed_url = settings.relay_provider_url if feed_url is None else feed_url
        self.timeout = timeout or settings.relay_provider_timeout
        self.scheme = scheme or settings.relay_scheme
        self.refresh_advance = settings.relay_refresh_advance if refresh_advance is None else refresh_advance
        self.min_grace = settings.relay_min_grace if min_grace is None else min_grace
        self.default_ttl = default_ttl or settings.relay_default_ttl
        self._transport = transport
        self._clock = clock

    async def _fetch_body(self) -> Any:
        if not self.feed_url:
            raise ProviderError("unconfigured", "relay provider url not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.feed_url)
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", f"provider fetch timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError("http", f"provider unreachable: {e}") from e

        text = response.text
        if not response.is_success:
            logger.warning(f"Provider HTTP {response.status_code} | body={text[:BODY_PREVIEW]}")
            raise ProviderError(
                "http",
                f"provider HTTP {response.status_code}",
                status=response.status_code,
                body=text[:BODY_PREVIEW],
            )

        try:
            return json.loads(text) if text else {}
        except ValueError as e:
            logger.warning(f"Provider returned non-JSON body: {text[:BODY_PREVIEW]}")
            raise ProviderError("not_json", "provider returned non-JSON body", body=text[:BODY_PREVIEW]) from e

    async def fetch_candidates(self) -> ProviderBatch:
        """Fetch and parse a batch of relay candidates.

        Returns:
            Parsed provider batch

        Raises:
            ProviderError: When the feed fails or answers badly
        """
        payload = await self._fetch_body()
        try:
            batch = parse_provider_response(
                payload,
                now=self._clock(),
                refresh_advance=self.refresh_advance,
                min_grace=self.min_grace,
                default_ttl=self.default_ttl,
            )
        except ProviderError:
            logger.warning(f"Provider response (failure): {json.dumps(payload, ensure_ascii=False)[:BODY_PREVIEW]}")
            raise

        logger.debug(f"Provider batch | count={len(batch.candidates)} | safe_expire_at={batch.safe_expire_at:.0f}")
        return batch

    async def fetch_addresses(self) -> list[str]:
        """Fetch a batch and map it to canonical relay addresses.

        Returns:
            Relay addresses
        """
        batch = await self.fetch_candidates()
        return batch.addresses(self.scheme)

    async def fetch_one(self) -> RelayLease:
        """Fetch a single relay lease (first candidate of a batch).

        Returns:
            Relay lease with safe expiry
        """
        batch = await self.fetch_candidates()
        candidate = batch.candidates[0]
        return RelayLease(
            candidate=candidate,
            address=candidate.address(self.scheme),
            safe_expire_at=batch.safe_expire_at,
        )
