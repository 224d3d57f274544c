"""Error taxonomy for relay acquisition and racing."""

from typing import Any


class RelayRaceError(Exception):
    """Base class for all relay race errors."""


class ProviderError(RelayRaceError):
    """Relay provider feed unreachable, malformed or empty.

    Attributes:
        reason: Short failure class (unconfigured, http, timeout, not_json,
            status, empty, malformed)
        status: Feed status code or HTTP status when known
        body: Raw feed body kept for diagnostics
    """

    def __init__(self, reason: str, message: str, status: Any = None, body: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status
        self.body = body


class RelayValidationError(RelayRaceError):
    """Freshly acquired relay failed every validation request."""


class AcquisitionError(RelayRaceError):
    """Registry could not materialize a relay for a session."""

    def __init__(self, session_key: str, cause: Exception) -> None:
        super().__init__(f"relay acquisition failed for session {session_key}: {cause}")
        self.session_key = session_key
        self.cause = cause


class AttemptError(RelayRaceError):
    """A single outbound attempt failed."""

    def __init__(self, relay: str | None, cause: Exception) -> None:
        super().__init__(f"attempt via {relay or 'direct'} failed: {type(cause).__name__}: {cause}")
        self.relay = relay
        self.cause = cause


class ThresholdExceeded(RelayRaceError):
    """A relay crossed a quality threshold and must be rotated."""

    def __init__(self, session_key: str, reason: str) -> None:
        super().__init__(f"session {session_key} relay exceeded threshold: {reason}")
        self.session_key = session_key
        self.reason = reason


class OperationTimeout(RelayRaceError):
    """Global deadline of a race elapsed without a winner."""

    def __init__(self, operation: str, elapsed: float) -> None:
        super().__init__(f"{operation} timed out after {elapsed:.2f}s")
        self.operation = operation
        self.elapsed = elapsed


class MalformedInput(RelayRaceError):
    """Caller payload is missing required fields."""
