"""
APScheduler-based reconciliation loop.

Runs the reconciliation sweep on a background thread at a fixed interval.
Sweeps never overlap: a run still in progress when the next one is due is
skipped and coalesced.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "reconcile"


class ReconciliationScheduler:
    """
    Background scheduler for the reconciliation sweep

    Args:
        interval_seconds: Seconds between sweep starts
        run_immediately: Fire the first sweep as soon as the scheduler starts
    """

    def __init__(self, interval_seconds: float, run_immediately: bool = True):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")

        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.scheduler = BackgroundScheduler(timezone=UTC)
        self.jobs = []

    def add_reconcile_job(self, job_func: Callable, job_id: str = RECONCILE_JOB_ID, **kwargs) -> None:
        """
        Schedule the sweep

        Args:
            job_func: Function to execute
            job_id: Unique identifier for the job
            **kwargs: Additional arguments to pass to job_func
        """
        trigger = IntervalTrigger(seconds=self.interval_seconds)

        # next_run_time=None would add the job paused, so only pass it to fire now
        options = {"next_run_time": datetime.now(UTC)} if self.run_immediately else {}

        job = self.scheduler.add_job(
            job_func,
            trigger=trigger,
            id=job_id,
            kwargs=kwargs,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            **options,
        )

        self.jobs.append(job)
        logger.info(f"Added reconciliation job '{job_id}' every {self.interval_seconds:g}s")

    def start(self) -> None:
        """Start the scheduler thread (non-blocking)"""
        logger.info(f"Starting reconciliation scheduler with {len(self.jobs)} job(s)")
        self.scheduler.start()

    def stop(self) -> None:
        """Stop the scheduler without waiting for a running sweep"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def list_jobs(self) -> List[Dict[str, Any]]:
        """
        List all scheduled jobs

        Returns:
            List of job information dictionaries
        """
        job_list = []

        for job in self.scheduler.get_jobs():
            job_list.append({
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            })

        return job_list
