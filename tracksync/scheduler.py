"""Background scheduler for periodic sync"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracksync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

JOB_ID = "periodic_sync"


class SyncScheduler:
    """Scheduler for periodic pull/push runs"""

    def __init__(self, engine: SyncEngine, interval_minutes: int):
        self.scheduler = BackgroundScheduler()
        self.engine = engine
        self.interval_minutes = interval_minutes

    def start(self):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule_sync(self.interval_minutes)

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    def schedule_sync(self, interval_minutes: int):
        """(Re)schedule the periodic run. An interval of 0 disables it."""
        self.unschedule()
        self.interval_minutes = interval_minutes
        if interval_minutes <= 0:
            logger.info("Periodic sync disabled")
            return

        self.scheduler.add_job(
            func=self._sync_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled sync every {interval_minutes} minutes")

    def unschedule(self):
        existing = self.scheduler.get_job(JOB_ID)
        if existing is not None:
            self.scheduler.remove_job(JOB_ID)

    def next_run_time(self) -> Optional[str]:
        job = self.scheduler.get_job(JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    def _sync_job(self):
        """Job function to run a sync"""
        if self.engine.paused:
            logger.info("Skipping scheduled sync: engine is paused")
            return
        try:
            logger.info("Running scheduled sync")
            result = self.engine.trigger_sync().result()
            logger.info(f"Scheduled sync finished: {result.status.value} {result.stats}")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")
