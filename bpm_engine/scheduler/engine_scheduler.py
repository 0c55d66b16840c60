"""Engine Scheduler - APScheduler wrapper shared by the transition engine and sync

Jobs added before ``start()`` are held by APScheduler as pending jobs and
can still be looked up or removed.
"""
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence
from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import Settings, settings as default_settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EngineScheduler:
    """
    Single AsyncIOScheduler per runtime

    Responsibilities:
    - One-shot timer jobs for timer auto-transitions
    - Interval job for the condition sweep
    - Interval job for periodic sync
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or default_settings
        self.scheduler = AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": settings.timer_misfire_grace_seconds,
            },
        )
        self._is_running = False

    def start(self) -> None:
        """Start the scheduler (requires a running event loop)"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        self._is_running = True
        logger.info("Engine scheduler started", extra={"status": "running"})

    def stop(self) -> None:
        """Stop the scheduler without waiting for running jobs"""
        if self._is_running:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Engine scheduler stopped", extra={"status": "stopped"})

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    def add_interval_job(
        self,
        func: Callable[..., Any],
        seconds: float,
        job_id: str,
        name: Optional[str] = None,
        args: Optional[Sequence[Any]] = None
    ) -> Job:
        """Add (or replace) a recurring job"""
        job = self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            args=list(args or []),
            id=job_id,
            name=name or job_id,
            replace_existing=True
        )
        logger.debug(f"Interval job scheduled every {seconds}s", extra={"job_id": job_id})
        return job

    def add_date_job(
        self,
        func: Callable[..., Any],
        run_at: datetime,
        job_id: str,
        name: Optional[str] = None,
        args: Optional[Sequence[Any]] = None
    ) -> Job:
        """Add (or replace) a one-shot job"""
        self.remove_job(job_id)
        job = self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_at, timezone=timezone.utc),
            args=list(args or []),
            id=job_id,
            name=name or job_id,
            replace_existing=True
        )
        logger.debug(f"One-shot job scheduled at {run_at.isoformat()}", extra={"job_id": job_id})
        return job

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; False if it does not exist (already ran or removed)"""
        try:
            self.scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            return False

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.scheduler.get_job(job_id)

    def has_job(self, job_id: str) -> bool:
        return self.get_job(job_id) is not None

    def job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]
