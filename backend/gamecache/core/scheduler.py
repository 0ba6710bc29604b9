"""
Background Job Scheduler

Manages periodic cache maintenance using APScheduler:
stale-entry refresh on an interval and a daily age-based purge.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from gamecache.core.config import Settings
from gamecache.services.game_cache_service import GameCacheService

logger = logging.getLogger(__name__)

STALE_REFRESH_JOB_ID = "stale-metadata-refresh"
PURGE_JOB_ID = "metadata-purge"


class BackgroundScheduler:
    """Manages background job scheduling for the game cache"""

    def __init__(self, game_cache: GameCacheService, settings: Settings):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.game_cache = game_cache
        self.settings = settings
        self.is_running = False

    async def start(self):
        """Start the background scheduler"""
        if self.is_running:
            return

        try:
            self.scheduler = AsyncIOScheduler(
                timezone='UTC',
                job_defaults={
                    'coalesce': True,  # Combine multiple pending executions into one
                    'max_instances': 1,  # Only one instance of each job at a time
                    'misfire_grace_time': 300  # 5 minutes grace period
                }
            )

            self.scheduler.add_listener(
                self._job_executed_listener,
                EVENT_JOB_EXECUTED
            )
            self.scheduler.add_listener(
                self._job_error_listener,
                EVENT_JOB_ERROR
            )

            self.scheduler.add_job(
                func=self._refresh_stale_job,
                trigger=IntervalTrigger(minutes=self.settings.STALE_REFRESH_INTERVAL_MINUTES),
                id=STALE_REFRESH_JOB_ID,
                name='Stale Game Metadata Refresh',
                replace_existing=True
            )

            self.scheduler.add_job(
                func=self._purge_job,
                trigger=CronTrigger(hour=2, minute=0),  # 2 AM UTC daily
                id=PURGE_JOB_ID,
                name='Daily Game Metadata Purge',
                replace_existing=True
            )

            self.scheduler.start()
            self.is_running = True

            logger.info("Background scheduler started successfully")
            logger.info(f"Scheduled jobs: {[job.id for job in self.scheduler.get_jobs()]}")

        except Exception as e:
            logger.error(f"Failed to start background scheduler: {str(e)}", exc_info=True)
            raise

    async def stop(self):
        """Stop the background scheduler"""
        if not self.is_running or not self.scheduler:
            return

        try:
            self.scheduler.shutdown(wait=True)
            self.is_running = False
            logger.info("Background scheduler stopped successfully")

        except Exception as e:
            logger.error(f"Error stopping background scheduler: {str(e)}", exc_info=True)

    async def _refresh_stale_job(self) -> Dict[str, int]:
        """Re-fetch a batch of stale or force-flagged games"""
        job_start = datetime.now(timezone.utc)
        logger.info("Starting stale game metadata refresh job")

        summary = await self.game_cache.refresh_stale_batch(self.settings.STALE_REFRESH_BATCH_SIZE)

        duration = (datetime.now(timezone.utc) - job_start).total_seconds()
        logger.info(
            f"Stale refresh job finished in {duration:.1f}s: "
            f"{summary['refreshed']} refreshed, {summary['failed']} failed"
        )
        return summary

    async def _purge_job(self) -> int:
        """Delete cache rows past the retention window"""
        logger.info("Starting daily game metadata purge job")
        deleted = await self.game_cache.purge()
        logger.info(f"Daily purge removed {deleted} cached game(s)")
        return deleted

    def _job_executed_listener(self, event):
        """Listener for successful job executions"""
        logger.info(f"Job '{event.job_id}' executed successfully")

    def _job_error_listener(self, event):
        """Listener for job execution errors"""
        logger.error(
            f"Job '{event.job_id}' failed: {event.exception}",
            exc_info=event.exception
        )

    def get_job_status(self) -> Dict[str, Any]:
        """Get status of all scheduled jobs"""
        if not self.scheduler:
            return {"status": "not_started", "jobs": []}

        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger)
            })

        return {
            "status": "running" if self.is_running else "stopped",
            "jobs": jobs,
            "scheduler_state": str(self.scheduler.state)
        }

    async def trigger_job(self, job_id: str) -> Dict[str, Any]:
        """Manually trigger a scheduled job to run now"""
        if not self.scheduler:
            return {"success": False, "message": "Scheduler not running"}

        try:
            job = self.scheduler.get_job(job_id)
            if job:
                self.scheduler.modify_job(job_id, next_run_time=datetime.now(timezone.utc))
                logger.info(f"Manually triggered job {job_id}")
                return {"success": True, "message": "Job triggered successfully"}
            else:
                return {"success": False, "message": "Job not found"}

        except Exception as e:
            logger.error(f"Error triggering job {job_id}: {str(e)}")
            return {"success": False, "message": str(e)}
