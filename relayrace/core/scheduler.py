"""Background relay refresh and quality sweeps with APScheduler."""

from typing import Any, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from relayrace.core.config import settings
from relayrace.core.errors import AcquisitionError
from relayrace.core.retry import AcquisitionRetry, RetryPolicy
from relayrace.monitoring.logger import get_logger
from relayrace.proxy.quality import QualityMonitor, SweepReport
from relayrace.proxy.registry import SessionRelayRegistry

logger = get_logger(__name__)

REFRESH_JOB_ID = "relay-refresh"
QUALITY_JOB_ID = "quality-sweep"


class RefreshScheduler:
    """Owns the periodic relay refresh and quality sweep jobs."""

    def __init__(
        self,
        registry: SessionRelayRegistry,
        monitor: QualityMonitor,
        refresh_interval: float | None = None,
        quality_interval: float | None = None,
        lead_time: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize refresh scheduler.

        Args:
            registry: Session relay registry
            monitor: Quality monitor
            refresh_interval: Seconds between refresh sweeps
            quality_interval: Seconds between quality sweeps
            lead_time: Refresh entries this long before their safe expiry
            retry_policy: Retry policy for re-acquisition
        """
        self.registry = registry
        self.monitor = monitor
        self.refresh_interval = refresh_interval or settings.refresh_interval
        self.quality_interval = quality_interval or settings.quality_check_interval
        self.lead_time = settings.refresh_lead_time if lead_time is None else lead_time
        self.retry = AcquisitionRetry(retry_policy or RetryPolicy(max_retries=settings.refresh_max_retries))

        # Ticks never overlap; missed ticks collapse into one
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            }
        )
        self._setup_listeners()

    def _setup_listeners(self) -> None:
        """Setup event listeners for job monitoring."""

        def on_job_executed(event):
            logger.debug(f"Job executed | id={event.job_id}")

        def on_job_error(event):
            logger.error(f"Job error | id={event.job_id} | error={event.exception}")

        def on_job_missed(event):
            logger.warning(f"Job missed | id={event.job_id}")

        self._scheduler.add_listener(on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)

    def _add_interval_job(self, job_id: str, func: Callable, seconds: float) -> None:
        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            replace_existing=True,
        )
        logger.info(f"Added interval job | id={job_id} | interval={seconds}s")

    def start(self) -> None:
        """Register jobs and start the scheduler."""
        if self._scheduler.running:
            return
        self._add_interval_job(REFRESH_JOB_ID, self.run_refresh, self.refresh_interval)
        self._add_interval_job(QUALITY_JOB_ID, self.run_quality_sweep, self.quality_interval)
        self._scheduler.start()
        if not self.registry.enabled:
            self.pause()
        logger.info("Refresh scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Refresh scheduler stopped")

    def pause(self) -> None:
        """Pause relay jobs (relay usage disabled)."""
        for job_id in (REFRESH_JOB_ID, QUALITY_JOB_ID):
            if self._scheduler.get_job(job_id):
                self._scheduler.pause_job(job_id)
        logger.info("Relay jobs paused")

    def resume(self) -> None:
        """Resume relay jobs (relay usage enabled)."""
        for job_id in (REFRESH_JOB_ID, QUALITY_JOB_ID):
            if self._scheduler.get_job(job_id):
                self._scheduler.resume_job(job_id)
        logger.info("Relay jobs resumed")

    async def run_refresh(self) -> dict[str, list[str]]:
        """Re-acquire relays that are about to expire.

        Returns:
            Keys refreshed and keys evicted after failed refresh
        """
        result: dict[str, list[str]] = {"refreshed": [], "evicted": []}
        if not self.registry.enabled:
            return result

        now = self.registry.clock()
        for key, entry in self.registry.items():
            if now < entry.expire_at - self.lead_time:
                continue
            try:
                await self.retry.run(key, self.registry.ensure_fresh, key, force=True)
                result["refreshed"].append(key)
            except AcquisitionError as e:
                logger.warning(f"Background refresh failed, evicting | session={key} | relay={entry.label} | {e.cause}")
                self.registry.evict(key)
                result["evicted"].append(key)

        return result

    async def run_quality_sweep(self) -> SweepReport:
        """Run one quality monitor sweep.

        Returns:
            Sweep report
        """
        if not self.registry.enabled:
            return SweepReport()
        return await self.monitor.run_once()

    def get_jobs(self) -> list[dict[str, Any]]:
        """Get scheduled job information.

        Returns:
            List of job info dicts
        """
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._scheduler.running
