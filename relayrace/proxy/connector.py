"""Relay connection adapters for outbound requests."""

import ssl
from urllib.parse import urlsplit

import httpx

from relayrace.core.config import RelayScheme, settings

DIRECT_LABEL = "direct"


def relay_label(relay: str | None) -> str:
    """Format relay for journals and logs.

    Args:
        relay: Relay address or None for a direct connection

    Returns:
        ``host:port`` for a relay, ``direct`` otherwise
    """
    if not relay:
        return DIRECT_LABEL
    parts = urlsplit(relay)
    if parts.hostname:
        return f"{parts.hostname}:{parts.port or ''}"
    idx = relay.find("://")
    return relay[idx + 3:] if idx >= 0 else relay


def _insecure_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class RelayConnector:
    """Builds one httpx client per attempt, routed through a relay or direct.

    Holds no per-attempt state; callers own the returned client and must
    close it (``async with connector.connect(...) as client``).
    """

    def __init__(
        self,
        scheme: RelayScheme | None = None,
        verify_tls: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize connector.

        Args:
            scheme: Default relay scheme
            verify_tls: Validate TLS relay certificates
            transport: Transport override used instead of real sockets (tests)
        """
        self.scheme = scheme or settings.relay_scheme
        self.verify_tls = settings.relay_verify_tls if verify_tls is None else verify_tls
        self._transport = transport

    def build_proxy(self, relay: str, scheme: RelayScheme | None = None) -> httpx.Proxy:
        """Build httpx proxy definition for a relay.

        Args:
            relay: Relay address
            scheme: Relay scheme, defaults to the connector scheme

        Returns:
            httpx Proxy
        """
        scheme = scheme or self.scheme
        if scheme == RelayScheme.HTTPS and not self.verify_tls:
            # Relay certificates are often self-signed or issued for another name
            return httpx.Proxy(relay, ssl_context=_insecure_context())
        return httpx.Proxy(relay)

    def connect(
        self,
        relay: str | None,
        scheme: RelayScheme | None = None,
        timeout: float | None = None,
    ) -> httpx.AsyncClient:
        """Create a client for one attempt.

        Args:
            relay: Relay address, or None for a direct connection
            scheme: Relay scheme
            timeout: Per-attempt timeout in seconds

        Returns:
            Configured async client
        """
        timeout = timeout or settings.ticket_request_timeout

        if self._transport is not None:
            return httpx.AsyncClient(timeout=timeout, transport=self._transport)

        if relay is None:
            return httpx.AsyncClient(timeout=timeout)

        return httpx.AsyncClient(proxy=self.build_proxy(relay, scheme), timeout=timeout)
