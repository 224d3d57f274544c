"""Relay re-acquisition backoff and inter-wave delay."""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from relayrace.core.errors import AcquisitionError
from relayrace.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter between relay acquisition tries."""

    max_retries: int = 2
    initial_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter_range: tuple[float, float] = (0.5, 1.5)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the pause before the next try.

        Args:
            attempt: Failed tries so far, minus one (0-indexed)

        Returns:
            Delay in seconds, capped at ``max_delay``
        """
        delay = self.initial_delay * (self.multiplier ** attempt) * random.uniform(*self.jitter_range)
        return min(delay, self.max_delay)


class AcquisitionRetry:
    """Retries a session relay acquisition while the provider keeps failing.

    Only ``AcquisitionError`` is retried; anything else is a bug and
    propagates on the first occurrence.
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        """Initialize acquisition retry.

        Args:
            policy: Backoff policy to use
        """
        self.policy = policy or RetryPolicy()

    async def run(
        self,
        session_key: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Call an acquisition until it succeeds or the retries run out.

        Args:
            session_key: Session the relay is acquired for
            func: Async acquisition to call
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            AcquisitionError: From the last try once retries are exhausted
        """
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except AcquisitionError as e:
                if attempt >= self.policy.max_retries:
                    logger.warning(
                        f"Relay acquisition gave up after {attempt + 1} tries | session={session_key} | {e.cause}"
                    )
                    raise

                delay = self.policy.calculate_delay(attempt)
                logger.info(
                    f"Relay acquisition retry {attempt + 1}/{self.policy.max_retries} | "
                    f"session={session_key} | error={type(e.cause).__name__} | delay={delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1


@dataclass(frozen=True)
class WaveDelay:
    """Pause between two waves: a fixed base plus inclusive random jitter."""

    base: float = 0.0
    jitter: float = 0.0

    def next_delay(self) -> float:
        """Get the next inter-wave pause in seconds."""
        extra = 0.0
        if self.jitter > 0:
            # Millisecond granularity, jitter bound inclusive
            extra = random.randint(0, int(round(self.jitter * 1000))) / 1000
        return self.base + extra
