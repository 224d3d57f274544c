"""Wave race engine: fire concurrent attempts, keep the first acceptable one."""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any

from relayrace.core.errors import AcquisitionError, AttemptError, OperationTimeout, ProviderError, ThresholdExceeded
from relayrace.monitoring.logger import get_logger, journal_logger, log_race_complete
from relayrace.proxy.connector import RelayConnector, relay_label
from relayrace.proxy.provider import RelayProviderClient
from relayrace.proxy.registry import SessionRelayEntry, SessionRelayRegistry

from .operations import AttemptResult, RaceOperation
from .plan import WavePlan, build_wave_plan, shuffled

logger = get_logger(__name__)


class RaceState(str, Enum):
    """Terminal states of a race."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    FATAL = "fatal"


@dataclass
class RaceOutcome:
    """Result of one raced operation."""

    state: RaceState
    operation: str
    waves: int
    elapsed: float
    payload: dict[str, Any] | None = None
    winner: AttemptResult | None = None
    message: str | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        """Check if the race produced a winner."""
        return self.state == RaceState.SUCCESS


def _discard_result(task: asyncio.Task) -> None:
    # Results of tasks nobody awaits are dropped
    if not task.cancelled():
        task.exception()


class WaveRaceEngine:
    """Runs an operation as repeated waves of concurrent attempts.

    Each wave shuffles the relay batch, builds one plan per operation target,
    starts every slot at once and returns as soon as one slot is accepted;
    the other slots are cancelled without being awaited.
    """

    def __init__(
        self,
        registry: SessionRelayRegistry,
        provider: RelayProviderClient,
        connector: RelayConnector,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize race engine.

        Args:
            registry: Session relay registry
            provider: Provider client for relay batches
            connector: Connector building per-attempt clients
            rng: Random source for shuffling
        """
        self.registry = registry
        self.provider = provider
        self.connector = connector
        self._rng = rng or random.Random()
        self._background: set[asyncio.Task] = set()
        self._acquiring: dict[str, asyncio.Task] = {}

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_discard_result)
        return task

    async def _fetch_batch(self, journal: Any) -> list[str]:
        try:
            relays = await self.provider.fetch_addresses()
        except ProviderError as e:
            journal.info(f"PROVIDER error={e}")
            logger.warning(f"Relay batch fetch failed | reason={e.reason} | {e}")
            return []
        journal.info(f"PROVIDER count={len(relays)}")
        return relays

    def _start_batch(self, journal: Any) -> asyncio.Task:
        task = asyncio.create_task(self._fetch_batch(journal))
        task.add_done_callback(_discard_result)
        return task

    async def _acquire_session(self, session_key: str, journal: Any) -> None:
        try:
            entry = await self.registry.ensure_fresh(session_key)
        except AcquisitionError as e:
            journal.info(f"SESSION relay unavailable error={e.cause}")
            logger.warning(f"Session relay unavailable, racing without it | session={session_key} | {e.cause}")
        else:
            if entry is not None:
                journal.info(f"SESSION relay={entry.label}")
        finally:
            self._acquiring.pop(session_key, None)

    def _session_relay(self, session_key: str, journal: Any) -> SessionRelayEntry | None:
        """Get the session relay if one is ready, never waiting for the provider.

        A missing or expired entry starts one background acquisition per key;
        the relay joins the pool from the first wave after it lands.
        """
        entry = self.registry.get(session_key)
        if entry is not None and not entry.is_expired(self.registry.clock()):
            return entry

        if session_key not in self._acquiring:
            self._acquiring[session_key] = self._track(
                asyncio.create_task(self._acquire_session(session_key, journal))
            )
        return None

    async def _attempt(self, operation: RaceOperation, relay: str | None, target_index: int) -> AttemptResult:
        try:
            async with self.connector.connect(relay, timeout=operation.config.request_timeout) as client:
                return await operation.attempt(client, relay, target_index)
        except Exception as e:
            # Unusable relay address or transport; the slot simply loses
            return AttemptResult(relay=relay, target_index=target_index, error=AttemptError(relay, e))

    def _rotate_later(self, session_key: str, entry: SessionRelayEntry) -> None:
        threshold = ThresholdExceeded(session_key, "consecutive errors")
        logger.warning(str(threshold))
        self._track(asyncio.create_task(self.registry.force_rotate(session_key, threshold.reason, stale=entry)))

    def _record(
        self, session_key: str, entry: SessionRelayEntry | None, result: AttemptResult, accepted: bool
    ) -> None:
        if entry is None or result.relay is None or result.relay != entry.relay:
            return
        reached = self.registry.record_outcome(
            session_key,
            accepted,
            status_code=result.status_code,
            is_timeout=result.is_timeout,
            relay=result.relay,
        )
        if reached:
            self._rotate_later(session_key, entry)

    async def run_wave(
        self,
        operation: RaceOperation,
        plans: list[WavePlan],
        deadline: float,
        session_key: str,
        session_entry: SessionRelayEntry | None = None,
        journal: Any = None,
    ) -> AttemptResult | None:
        """Race every slot of every plan once.

        Args:
            operation: Operation to perform
            plans: One plan per operation target
            deadline: Loop time after which the wave is abandoned
            session_key: Caller session key
            session_entry: Session relay whose outcomes are recorded
            journal: Journal logger

        Returns:
            Winning result or None
        """
        journal = journal or journal_logger(operation.name, session_key)
        loop = asyncio.get_running_loop()

        pending: set[asyncio.Task] = set()
        for target_index, plan in enumerate(plans):
            for relay in plan:
                task = asyncio.create_task(self._attempt(operation, relay, target_index))
                task.add_done_callback(_discard_result)
                pending.add(task)

        winner: AttemptResult | None = None
        try:
            while pending and winner is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if not done:
                    break

                for task in done:
                    result = task.result()
                    journal.info(operation.journal_line(relay_label(result.relay), result))
                    accepted = operation.accept(result)
                    self._record(session_key, session_entry, result, accepted)
                    if accepted and winner is None:
                        winner = result
        finally:
            for task in pending:
                task.cancel()

        return winner

    async def run(self, operation: RaceOperation, session_key: str) -> RaceOutcome:
        """Race an operation until a winner, the wave cap or the deadline.

        Args:
            operation: Operation to perform
            session_key: Caller session key

        Returns:
            Race outcome
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        config = operation.config
        deadline = started + config.global_timeout
        journal = journal_logger(operation.name, session_key)
        journal.info(f"START {operation.describe()}")

        waves = 0
        relays: list[str] = []
        batch: asyncio.Task | None = None
        try:
            if self.registry.enabled:
                # A slow feed delays the first wave by at most one request timeout
                batch = self._start_batch(journal)
                self._session_relay(session_key, journal)
                first_wait = min(config.request_timeout, deadline - loop.time())
                await asyncio.wait({batch}, timeout=max(0.0, first_wait))

            while loop.time() < deadline:
                if config.max_waves > 0 and waves >= config.max_waves:
                    break
                waves += 1

                if batch is not None and batch.done():
                    relays = batch.result()
                    batch = None

                session_entry = None
                pool = list(relays)
                if self.registry.enabled:
                    session_entry = self._session_relay(session_key, journal)
                    if session_entry is not None and session_entry.relay not in pool:
                        pool.append(session_entry.relay)

                order = shuffled(pool, self._rng)
                plans = [
                    build_wave_plan(order, config.concurrency, config.direct_per_wave)
                    for _ in range(operation.target_count)
                ]
                for index, plan in enumerate(plans):
                    journal.info(f"WAVE {waves} target={index + 1} plan={plan.describe()}")

                winner = await self.run_wave(operation, plans, deadline, session_key, session_entry, journal)
                if winner is not None:
                    elapsed = loop.time() - started
                    journal.info(f"DONE elapsed_ms={int(elapsed * 1000)} relay={relay_label(winner.relay)}")
                    log_race_complete(operation.name, session_key, RaceState.SUCCESS.value, waves, elapsed)
                    return RaceOutcome(
                        state=RaceState.SUCCESS,
                        operation=operation.name,
                        waves=waves,
                        elapsed=elapsed,
                        payload=operation.success_payload(winner),
                        winner=winner,
                    )

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(config.wave_delay.next_delay(), remaining))

                if not relays and batch is None and self.registry.enabled:
                    batch = self._start_batch(journal)

        except Exception as e:
            elapsed = loop.time() - started
            journal.info(f"ERROR elapsed_ms={int(elapsed * 1000)} {e}")
            logger.exception(f"Race failed | op={operation.name} | session={session_key}")
            log_race_complete(operation.name, session_key, RaceState.FATAL.value, waves, elapsed)
            return RaceOutcome(
                state=RaceState.FATAL,
                operation=operation.name,
                waves=waves,
                elapsed=elapsed,
                message=str(e) or type(e).__name__,
                error=e,
            )
        finally:
            if batch is not None and not batch.done():
                batch.cancel()

        elapsed = loop.time() - started
        timeout = OperationTimeout(operation.name, elapsed)
        journal.info(f"TIMEOUT elapsed_ms={int(elapsed * 1000)}")
        log_race_complete(operation.name, session_key, RaceState.TIMEOUT.value, waves, elapsed)
        return RaceOutcome(
            state=RaceState.TIMEOUT,
            operation=operation.name,
            waves=waves,
            elapsed=elapsed,
            message=operation.timeout_message,
            error=timeout,
        )

    async def shutdown(self, timeout: float | None = None) -> None:
        """Wait for pending background rotations and acquisitions.

        Args:
            timeout: Seconds to wait before cancelling what is still running
        """
        if not self._background:
            return
        _, pending = await asyncio.wait(set(self._background), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
