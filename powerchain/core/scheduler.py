"""APScheduler-based scheduler for recurring background jobs."""
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class JobScheduler:
    """Manages recurring interval jobs using APScheduler."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    def schedule_interval(
        self,
        job_id: str,
        func: Callable[..., Any],
        seconds: float,
    ) -> Optional[datetime]:
        """
        Add or replace a job running every ``seconds``.

        Returns next run time.
        """
        job = self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            replace_existing=True,
        )
        logger.info(f"Scheduled job {job_id} every {seconds}s")
        # Pending jobs (scheduler not started yet) have no run time
        return getattr(job, "next_run_time", None)

    def remove_job(self, job_id: str) -> None:
        """Remove job from scheduler."""
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Removed job {job_id} from scheduler")
        except JobLookupError:
            pass  # Job doesn't exist

    def get_next_run_time(self, job_id: str) -> Optional[datetime]:
        """Get next scheduled run time for a job."""
        job = self.scheduler.get_job(job_id)
        return getattr(job, "next_run_time", None) if job else None

    def start(self) -> None:
        """Start scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self.scheduler.running


# Global instance
job_scheduler = JobScheduler()
