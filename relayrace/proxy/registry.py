"""Session relay registry: which relay each session is bound to."""

import asyncio
import time
import weakref
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from relayrace.core.config import settings
from relayrace.core.errors import AcquisitionError, ProviderError, RelayValidationError
from relayrace.monitoring.logger import get_logger, log_relay_event

from .connector import relay_label
from .provider import RelayProviderClient
from .validator import RelayValidator

logger = get_logger(__name__)


@dataclass
class SessionRelayEntry:
    """Relay bound to one session, with lifecycle and quality counters."""

    relay: str | None
    expire_at: float
    created_at: float
    last_used: float
    request_count: int = 0
    consecutive_errors: int = 0
    performance_anomalies: int = 0
    zero_request_streak: int = 0
    first_report_emitted: bool = False

    @property
    def label(self) -> str:
        """Get ``host:port`` label of the relay."""
        return relay_label(self.relay)

    def remaining(self, now: float) -> float:
        """Get seconds left before safe expiry.

        Args:
            now: Current time

        Returns:
            Remaining seconds (negative once expired)
        """
        return self.expire_at - now

    def is_expired(self, now: float) -> bool:
        """Check whether the entry reached its safe expiry.

        Args:
            now: Current time

        Returns:
            True if expired
        """
        return now >= self.expire_at

    def to_dict(self, now: float) -> dict[str, Any]:
        """Convert to status dictionary.

        Args:
            now: Current time

        Returns:
            Dictionary representation
        """
        remaining_ms = int(self.remaining(now) * 1000)
        return {
            "proxyUrl": self.relay,
            "expiresAt": datetime.fromtimestamp(self.expire_at).isoformat(sep=" ", timespec="seconds"),
            "remainingMs": remaining_ms,
            "isExpired": remaining_ms <= 0,
            "requestCount": self.request_count,
            "consecutiveErrors": self.consecutive_errors,
        }


@dataclass(frozen=True)
class ThroughputSample:
    """Request count observed at one monitoring tick."""

    request_count: int
    timestamp: float


def is_hard_error(status_code: int | None, is_timeout: bool) -> bool:
    """Check whether an attempt outcome counts towards relay rotation.

    Args:
        status_code: HTTP status of the attempt, if any
        is_timeout: Attempt timed out or was aborted by its own timeout

    Returns:
        True for server errors and timeouts
    """
    return is_timeout or (status_code is not None and status_code >= 500)


class SessionRelayRegistry:
    """Keyed table of session relays.

    All replacements for a key are serialized by a per-key lock, so at most
    one entry is live per session. Counter updates never await and are
    therefore atomic under the event loop.
    """

    def __init__(
        self,
        provider: RelayProviderClient,
        validator: RelayValidator | None = None,
        enabled: bool | None = None,
        consecutive_error_threshold: int | None = None,
        history_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize registry.

        Args:
            provider: Provider client used to acquire relays
            validator: Optional validator probing new relays
            enabled: Initial relay usage toggle
            consecutive_error_threshold: Hard errors that trigger rotation
            history_size: Throughput samples kept per session
            clock: Time source returning epoch seconds
        """
        self.provider = provider
        self.validator = validator
        self._enabled = settings.relay_enabled if enabled is None else enabled
        self.consecutive_error_threshold = (
            consecutive_error_threshold or settings.consecutive_error_threshold
        )
        self.history_size = history_size or settings.throughput_history_size
        self.clock = clock

        self._entries: dict[str, SessionRelayEntry] = {}
        self._history: dict[str, deque[ThroughputSample]] = {}
        # Held only while a caller owns or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def enabled(self) -> bool:
        """Check if relay usage is enabled."""
        return self._enabled

    def enable(self) -> None:
        """Enable relay usage."""
        self._enabled = True
        logger.info("Relay usage enabled")

    def disable(self) -> None:
        """Disable relay usage and drop every session entry."""
        self._enabled = False
        self.clear()
        logger.info("Relay usage disabled, using direct connections")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> SessionRelayEntry | None:
        """Get entry without side effects.

        Args:
            key: Session key

        Returns:
            Entry or None
        """
        return self._entries.get(key)

    def items(self) -> list[tuple[str, SessionRelayEntry]]:
        """Get a snapshot of all entries.

        Returns:
            List of (session key, entry)
        """
        return list(self._entries.items())

    def history(self, key: str) -> list[ThroughputSample]:
        """Get monitoring history of a session.

        Args:
            key: Session key

        Returns:
            Samples, oldest first
        """
        return list(self._history.get(key, ()))

    def append_sample(self, key: str, sample: ThroughputSample) -> list[ThroughputSample]:
        """Append throughput sample, keeping only the most recent ones.

        Args:
            key: Session key
            sample: Sample to append

        Returns:
            Trimmed history, oldest first
        """
        history = self._history.setdefault(key, deque(maxlen=self.history_size))
        history.append(sample)
        return list(history)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _acquire(self, key: str) -> SessionRelayEntry:
        try:
            lease = await self.provider.fetch_one()
            if self.validator is not None:
                await self.validator.validate(lease.address)
        except (ProviderError, RelayValidationError) as e:
            log_relay_event(None, "acquire", success=False, session=key, error=str(e))
            raise AcquisitionError(key, e) from e

        now = self.clock()
        return SessionRelayEntry(
            relay=lease.address,
            expire_at=lease.safe_expire_at,
            created_at=now,
            last_used=now,
        )

    def _install(self, key: str, entry: SessionRelayEntry, old: SessionRelayEntry | None, reason: str) -> None:
        self._entries[key] = entry
        self._history.pop(key, None)
        if old is not None:
            log_relay_event(entry.relay, "rotate", session=key, previous=old.label, reason=reason)
        else:
            log_relay_event(entry.relay, "acquire", session=key)
        logger.info(f"Active relays: {len(self._entries)}")

    async def ensure_fresh(self, key: str, force: bool = False) -> SessionRelayEntry | None:
        """Get a usable relay for a session, acquiring one if needed.

        Args:
            key: Session key
            force: Replace the entry even if it is still fresh

        Returns:
            Fresh entry, or None when relay usage is disabled

        Raises:
            AcquisitionError: When no relay could be acquired; the previous
                entry, if any, is kept
        """
        if not self._enabled:
            return None

        async with self._lock_for(key):
            entry = self._entries.get(key)
            if not force and entry is not None and not entry.is_expired(self.clock()):
                return entry

            new_entry = await self._acquire(key)
            if not self._enabled:
                return None
            self._install(key, new_entry, entry, "forced" if force else "expired")
            return new_entry

    def record_outcome(
        self,
        key: str,
        success: bool,
        status_code: int | None = None,
        is_timeout: bool = False,
        relay: str | None = None,
    ) -> bool:
        """Record the outcome of one attempt made through a session relay.

        Args:
            key: Session key
            success: Attempt produced an acceptable result
            status_code: HTTP status, if a response arrived
            is_timeout: Attempt timed out
            relay: Relay used; outcomes for a relay no longer bound are ignored

        Returns:
            True exactly when this outcome brings consecutive hard errors to
            the rotation threshold
        """
        entry = self._entries.get(key)
        if entry is None or (relay is not None and entry.relay != relay):
            return False

        entry.request_count += 1
        entry.last_used = self.clock()

        if is_hard_error(status_code, is_timeout):
            entry.consecutive_errors += 1
        else:
            entry.consecutive_errors = 0

        logger.debug(
            f"Outcome | session={key} | relay={entry.label} | success={success} | "
            f"status={status_code} | timeout={is_timeout} | errors={entry.consecutive_errors}"
        )
        return entry.consecutive_errors == self.consecutive_error_threshold

    async def force_rotate(
        self, key: str, reason: str, stale: SessionRelayEntry | None = None
    ) -> SessionRelayEntry | None:
        """Replace a session relay outside the expiry cycle.

        Args:
            key: Session key
            reason: Why the relay is rotated
            stale: Entry the caller judged; if it was already replaced, the
                current entry is returned without another rotation

        Returns:
            New entry, or None if relay usage is disabled or acquisition
            failed (the old entry is then left in place)
        """
        if not self._enabled:
            return None

        async with self._lock_for(key):
            current = self._entries.get(key)
            if stale is not None and current is not None and current is not stale:
                return current

            logger.warning(f"Rotating relay | session={key} | relay={current.label if current else None} | reason={reason}")
            try:
                new_entry = await self._acquire(key)
            except AcquisitionError as e:
                logger.warning(f"Rotation failed, keeping current relay | session={key} | {e.cause}")
                return None

            if not self._enabled:
                return None
            self._install(key, new_entry, current, reason)
            return new_entry

    def evict(self, key: str) -> SessionRelayEntry | None:
        """Remove a session entry and its monitoring history.

        Args:
            key: Session key

        Returns:
            Removed entry or None
        """
        entry = self._entries.pop(key, None)
        self._history.pop(key, None)
        if entry is not None:
            log_relay_event(entry.relay, "evict", session=key)
        return entry

    def clear(self) -> None:
        """Remove every entry and all monitoring history."""
        self._entries.clear()
        self._history.clear()

    def snapshot(self) -> dict[str, Any]:
        """Get status of all active entries.

        Returns:
            Status dictionary
        """
        now = self.clock()
        sessions = {key: entry.to_dict(now) for key, entry in self._entries.items()}
        return {
            "currentTime": datetime.fromtimestamp(now).isoformat(sep=" ", timespec="seconds"),
            "sessions": sessions,
            "totalSessions": len(sessions),
            "enabled": self._enabled,
        }
