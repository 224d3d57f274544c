"""Relay validation on acquisition."""

import time

import httpx

from relayrace.core.config import settings
from relayrace.core.errors import RelayValidationError
from relayrace.monitoring.logger import get_logger, log_relay_event

from .connector import RelayConnector, relay_label

logger = get_logger(__name__)

FALLBACK_URL = "https://httpbin.org/get"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class RelayValidator:
    """Checks a freshly acquired relay before it is bound to a session."""

    def __init__(
        self,
        connector: RelayConnector,
        target: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize validator.

        Args:
            connector: Connector used to reach the relay
            target: URL requested through the relay
            timeout: Check timeout in seconds
        """
        self.connector = connector
        self.target = target or settings.backend_target
        self.timeout = timeout or settings.relay_validation_timeout

    def checks(self) -> list[tuple[str, str, dict[str, str]]]:
        """Get validation requests in order of preference.

        Returns:
            List of (method, url, headers)
        """
        return [
            ("HEAD", self.target, {}),
            # Some targets refuse HEAD; ask for a single byte instead
            ("GET", self.target, {"Range": "bytes=0-0"}),
            ("GET", FALLBACK_URL, {}),
        ]

    async def validate(self, relay: str) -> float:
        """Validate relay.

        Args:
            relay: Relay address

        Returns:
            Response time of the accepted check in seconds

        Raises:
            RelayValidationError: If the relay is unusable
        """
        last_error: Exception | None = None
        start_time = time.time()

        async with self.connector.connect(relay, timeout=self.timeout) as client:
            for method, url, headers in self.checks():
                try:
                    response = await client.request(
                        method, url, headers={"User-Agent": USER_AGENT, **headers}
                    )
                except (httpx.TimeoutException, httpx.ConnectError, httpx.ProxyError) as e:
                    # Relay unreachable: other checks would fail the same way
                    log_relay_event(relay, "validate", success=False, error=type(e).__name__)
                    raise RelayValidationError(f"relay {relay_label(relay)} unreachable: {e}") from e
                except httpx.HTTPError as e:
                    last_error = e
                    logger.debug(f"Validation check failed | relay={relay_label(relay)} | {method} {url} | {e}")
                    continue

                if 200 <= response.status_code < 400:
                    response_time = time.time() - start_time
                    log_relay_event(relay, "validate", success=True, response_time=f"{response_time:.3f}s")
                    return response_time

                last_error = RelayValidationError(f"validate status {response.status_code}")

        log_relay_event(relay, "validate", success=False, error=str(last_error))
        raise RelayValidationError(str(last_error or "all validation checks failed"))
