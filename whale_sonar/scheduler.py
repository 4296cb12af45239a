"""
Scheduler Module - Periodic Ingestion & Resolution Sweeps

Runs the two batch jobs on intervals:
- Ingestion: poll the trade feed, store whales, send alerts
- Resolution sync: reconcile market outcomes (default mode from settings)

Uses APScheduler for job scheduling. Each job has max_instances=1 and
coalesce=True, so a slow run is never overlapped by the next tick and
missed ticks collapse into one.
"""
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from loguru import logger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


Job = Callable[[], Awaitable[Any]]


class JobScheduler:
    """
    Manages the periodic jobs.

    Usage:
        scheduler = JobScheduler(ingest_job, resolution_job)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        ingest_job: Job,
        resolution_job: Job,
        ingest_interval_minutes: int = 15,
        resolution_interval_minutes: int = 30,
        timezone: str = "UTC"
    ):
        self.ingest_job = ingest_job
        self.resolution_job = resolution_job
        self.ingest_interval_minutes = ingest_interval_minutes
        self.resolution_interval_minutes = resolution_interval_minutes
        self.timezone = timezone

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self.last_runs: Dict[str, datetime] = {}

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the scheduler with the ingestion and resolution jobs."""
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)

        self._scheduler.add_job(
            self._run_ingestion,
            IntervalTrigger(minutes=self.ingest_interval_minutes),
            id="ingest_trades",
            name="Trade Ingestion",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self._run_resolution_sync,
            IntervalTrigger(minutes=self.resolution_interval_minutes),
            id="sync_resolutions",
            name="Resolution Sync",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        self._running = True
        logger.info("📅 Job scheduler started")
        logger.info(f"   Ingestion: every {self.ingest_interval_minutes} min")
        logger.info(f"   Resolution sync: every {self.resolution_interval_minutes} min")

    def stop(self):
        """Stop the scheduler."""
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("📅 Job scheduler stopped")

    def get_jobs(self) -> List[Dict[str, Any]]:
        if not self._scheduler:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "last_run": self.last_runs[job.id].isoformat() if job.id in self.last_runs else None,
            }
            for job in self._scheduler.get_jobs()
        ]

    async def _run_ingestion(self):
        """Internal wrapper for the ingestion job."""
        self.last_runs["ingest_trades"] = datetime.now(timezone.utc)
        try:
            await self.ingest_job()
        except Exception as e:
            logger.error(f"Error in scheduled ingestion: {e}")

    async def _run_resolution_sync(self):
        """Internal wrapper for the resolution job."""
        self.last_runs["sync_resolutions"] = datetime.now(timezone.utc)
        try:
            await self.resolution_job()
        except Exception as e:
            logger.error(f"Error in scheduled resolution sync: {e}")


# =========================================
# CONVENIENCE FUNCTION
# =========================================

def create_job_scheduler(ingest_job: Job, resolution_job: Job, settings) -> JobScheduler:
    """Create a job scheduler with intervals from settings."""
    return JobScheduler(
        ingest_job=ingest_job,
        resolution_job=resolution_job,
        ingest_interval_minutes=settings.INGEST_INTERVAL_MINUTES,
        resolution_interval_minutes=settings.RESOLUTION_INTERVAL_MINUTES,
    )
