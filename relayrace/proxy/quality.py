"""Relay quality monitoring."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from relayrace.core.config import settings
from relayrace.core.errors import ThresholdExceeded
from relayrace.monitoring.logger import get_logger

from .registry import SessionRelayEntry, SessionRelayRegistry, ThroughputSample

logger = get_logger(__name__)


class Verdict(str, Enum):
    """Per-session outcome of one monitoring tick."""

    BASELINE = "baseline"
    IDLE = "idle"
    SLOW = "slow"
    HEALTHY = "healthy"
    ROTATE = "rotate"
    EVICT = "evict"


@dataclass
class SweepReport:
    """Summary of one sweep."""

    verdicts: dict[str, Verdict] = field(default_factory=dict)
    rotated: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class QualityMonitor:
    """Periodic throughput and inactivity judge over the session registry."""

    def __init__(
        self,
        registry: SessionRelayRegistry,
        performance_request_threshold: int | None = None,
        performance_anomaly_threshold: int | None = None,
        inactivity_ticks: int | None = None,
    ) -> None:
        """Initialize quality monitor.

        Args:
            registry: Registry to judge
            performance_request_threshold: Requests per interval below which a relay is slow
            performance_anomaly_threshold: Consecutive slow intervals before rotation
            inactivity_ticks: Ticks with unchanged request count before eviction
        """
        self.registry = registry
        self.performance_request_threshold = (
            performance_request_threshold or settings.performance_request_threshold
        )
        self.performance_anomaly_threshold = (
            performance_anomaly_threshold or settings.performance_anomaly_threshold
        )
        self.inactivity_ticks = inactivity_ticks or settings.inactivity_ticks
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        """Check if a sweep is in progress."""
        return self._lock.locked()

    def judge(self, key: str, entry: SessionRelayEntry, now: float) -> Verdict:
        """Update counters of one entry and decide its fate.

        Args:
            key: Session key
            entry: Registry entry
            now: Tick time

        Returns:
            Verdict for this tick
        """
        history = self.registry.history(key)
        delta = entry.request_count - history[-1].request_count if history else 0

        verdict = Verdict.BASELINE
        if not entry.first_report_emitted:
            entry.first_report_emitted = True
        elif delta == 0:
            # No traffic is not poor performance; the inactivity rule covers it
            entry.zero_request_streak += 1
            entry.performance_anomalies = 0
            verdict = Verdict.IDLE
        elif delta < self.performance_request_threshold:
            entry.performance_anomalies += 1
            entry.zero_request_streak = 0
            verdict = Verdict.SLOW
            if entry.performance_anomalies >= self.performance_anomaly_threshold:
                verdict = Verdict.ROTATE
        else:
            entry.performance_anomalies = 0
            entry.zero_request_streak = 0
            verdict = Verdict.HEALTHY

        logger.debug(
            f"Quality tick | session={key} | relay={entry.label} | delta={delta} | "
            f"anomalies={entry.performance_anomalies} | zero_streak={entry.zero_request_streak} | verdict={verdict.value}"
        )

        samples = self.registry.append_sample(key, ThroughputSample(entry.request_count, now))
        if len(samples) >= self.inactivity_ticks:
            window = samples[-self.inactivity_ticks:]
            if window[0].request_count == window[-1].request_count:
                verdict = Verdict.EVICT

        return verdict

    def sweep(self) -> tuple[SweepReport, list[tuple[str, SessionRelayEntry]]]:
        """Judge every entry and evict abandoned sessions.

        Returns:
            Report and the (key, entry) pairs that need forced rotation
        """
        report = SweepReport()
        rotations: list[tuple[str, SessionRelayEntry]] = []
        now = self.registry.clock()

        for key, entry in self.registry.items():
            verdict = self.judge(key, entry, now)
            report.verdicts[key] = verdict

            if verdict == Verdict.EVICT:
                logger.info(f"Session inactive for {self.inactivity_ticks} ticks, evicting | session={key}")
                self.registry.evict(key)
                report.evicted.append(key)
            elif verdict == Verdict.ROTATE:
                rotations.append((key, entry))

        return report, rotations

    async def run_once(self) -> SweepReport:
        """Run one sweep and then execute the collected rotations.

        Overlapping calls are skipped rather than queued.

        Returns:
            Sweep report
        """
        if self._lock.locked():
            logger.warning("Quality sweep still running, skipping tick")
            return SweepReport()

        async with self._lock:
            report, rotations = self.sweep()

            for key, entry in rotations:
                threshold = ThresholdExceeded(key, "poor performance")
                logger.warning(str(threshold))
                new_entry = await self.registry.force_rotate(key, threshold.reason, stale=entry)
                if new_entry is None:
                    logger.warning(f"Replacement failed, evicting session | session={key}")
                    self.registry.evict(key)
                    report.failed.append(key)
                else:
                    report.rotated.append(key)

            if report.rotated or report.evicted or report.failed:
                logger.info(
                    f"Quality sweep | sessions={len(report.verdicts)} | rotated={len(report.rotated)} | "
                    f"evicted={len(report.evicted)} | failed={len(report.failed)}"
                )
            return report
