"""
Retention Job Scheduler

Jobs:
1. Hide completed   - every HIDE_SCAN_INTERVAL_MINUTES, roll up and hide terminal orders
2. Midnight reset   - every minute, zero today's counters on a new business day
3. Daily cleanup    - once a day at DAILY_CLEANUP_HOUR (business time), delete
                      expired orders and prune inactive customers

Ledger resyncs are manual only (run_job_now).
"""
import asyncio
import logging
from typing import Optional

from orderflow.core.config import settings
from orderflow.core.utils import business_date_string, business_local_time
from orderflow.services.ledger import BUCKET_CANCELLED, BUCKET_SELFPICK

logger = logging.getLogger(__name__)


class RetentionScheduler:
    """
    Runs the retention pipeline on fixed intervals.

    Call start() from the app lifespan, stop() on shutdown.
    """

    def __init__(self, retention, ledger_sync=None, startup_delay: float = 5.0):
        self.retention = retention
        self.ledger_sync = ledger_sync
        self.startup_delay = startup_delay
        self._tasks = []
        self._running = False
        self._last_cleanup_date: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.info("[Scheduler] Retention scheduler already running")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._run_job_loop("hide_completed", self.retention.hide_completed,
                                   interval_minutes=settings.HIDE_SCAN_INTERVAL_MINUTES)
            ),
            asyncio.create_task(self._run_job_loop("midnight_reset", self.retention.reset_today, interval_minutes=1)),
            asyncio.create_task(self._run_job_loop("daily_cleanup", self.run_daily_cleanup_if_due, interval_minutes=1)),
        ]
        logger.info(
            f"[Scheduler] Started: hide_completed every {settings.HIDE_SCAN_INTERVAL_MINUTES} min, "
            f"midnight_reset every minute, daily_cleanup at {settings.DAILY_CLEANUP_HOUR:02d}:00"
        )

    async def stop(self):
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[Scheduler] Retention scheduler stopped")

    async def _run_job_loop(self, name: str, job_func, interval_minutes: int):
        interval_seconds = interval_minutes * 60

        # Stagger job starts
        await asyncio.sleep(self.startup_delay)

        while self._running:
            try:
                await job_func()
            except Exception as e:
                logger.error(f"[Scheduler] Job {name} failed: {e}", exc_info=True)
            await asyncio.sleep(interval_seconds)

    async def run_daily_cleanup_if_due(self, now=None):
        """Run the daily cleanup once per business day, at or after the configured hour."""
        local = business_local_time(now)
        today = business_date_string(now)
        if local.hour < settings.DAILY_CLEANUP_HOUR or self._last_cleanup_date == today:
            return None
        self._last_cleanup_date = today
        logger.info(f"[Scheduler] Running daily cleanup for {today}")
        return await self.retention.run_daily_cleanup(now)

    async def run_job_now(self, job_name: str, **kwargs):
        """Manually trigger a job."""
        jobs = {
            "hide_completed": self.retention.hide_completed,
            "midnight_reset": self.retention.reset_today,
            "daily_cleanup": self.retention.run_daily_cleanup,
        }
        if self.ledger_sync is not None:
            jobs["ledger_resync_cancelled"] = lambda: self.ledger_sync.resync_bucket(BUCKET_CANCELLED)
            jobs["ledger_resync_selfpick"] = lambda: self.ledger_sync.resync_bucket(BUCKET_SELFPICK)

        if job_name not in jobs:
            raise ValueError(f"Unknown job: {job_name}. Available: {list(jobs.keys())}")

        logger.info(f"[Scheduler] Manual trigger: {job_name}")
        return await jobs[job_name](**kwargs)
