"""Cron-style trigger for scheduled syncs."""

from typing import Dict, Any, Optional
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MISSED

from ..config.manager import ConfigManager
from ..config.schema import ScheduleConfig
from ..core.sync_engine import SyncEngine, SyncResult
from ..utils.logging import get_logger, timed


SYNC_JOB_ID = "scheduled_sync"


class SchedulerError(Exception):
    """Raised when scheduler operations fail."""
    pass


class SyncScheduler:
    """Runs ``start_sync("scheduled")`` on the stored schedule."""

    def __init__(
        self,
        engine: SyncEngine,
        config_manager: ConfigManager,
        misfire_grace_seconds: int = 300
    ):
        """Initialize sync scheduler.

        Args:
            engine: Sync engine to trigger
            config_manager: Source and sink of the stored schedule
            misfire_grace_seconds: How late a tick may still fire
        """
        self.engine = engine
        self.config_manager = config_manager
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': misfire_grace_seconds
            }
        )

        self.schedule: Optional[ScheduleConfig] = None
        self.job_stats: Dict[str, Any] = {
            "run_count": 0,
            "success_count": 0,
            "error_count": 0,
            "skipped_count": 0,
            "last_run": None,
            "last_result": None
        }

        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

    @timed
    async def start(self):
        """Start the scheduler and schedule the stored frequency."""
        if self.scheduler.running:
            self.logger.warning("Scheduler is already running")
            return

        try:
            self.scheduler.start()
            self.apply_schedule(self.config_manager.get_schedule())
            self.logger.info("Sync scheduler started", next_run=self.next_run_time)
        except Exception as e:
            self.logger.error("Failed to start scheduler", error=str(e))
            raise SchedulerError(f"Failed to start scheduler: {e}")

    async def stop(self, wait: bool = True):
        """Stop the scheduler."""
        if not self.scheduler.running:
            return

        self.scheduler.shutdown(wait=wait)
        self.logger.info("Sync scheduler stopped")

    def update_schedule(self, schedule: ScheduleConfig) -> None:
        """Persist a new schedule and restart the job with it."""
        self.config_manager.set_schedule(schedule)
        self.apply_schedule(schedule)

    def apply_schedule(self, schedule: ScheduleConfig) -> None:
        """Replace the scheduled job. Manual schedules leave no job."""
        self.schedule = schedule

        if self.scheduler.get_job(SYNC_JOB_ID):
            self.scheduler.remove_job(SYNC_JOB_ID)

        trigger = self._create_trigger(schedule)
        if trigger is None:
            self.logger.info("Manual schedule, no job scheduled")
            return

        self.scheduler.add_job(
            self._execute_scheduled_sync,
            trigger=trigger,
            id=SYNC_JOB_ID,
            name="Scheduled sync",
            replace_existing=True
        )

        self.logger.info(
            "Sync job scheduled",
            frequency=schedule.frequency.value,
            cron=schedule.to_cron_expression()
        )

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(SYNC_JOB_ID)
        return job.next_run_time if job else None

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.scheduler.running,
            "frequency": self.schedule.frequency.value if self.schedule else None,
            "next_run": self.next_run_time.isoformat() if self.next_run_time else None,
            **self.job_stats
        }

    async def _execute_scheduled_sync(self) -> Optional[SyncResult]:
        """Job body. Skips the tick while a run is active."""
        if self.engine.is_running():
            self.job_stats["skipped_count"] += 1
            self.logger.info("Sync already running, skipping scheduled tick")
            return None

        result = await self.engine.start_sync("scheduled")

        if result.success:
            self.logger.info("Scheduled sync completed", sync_run_id=result.sync_run_id, status=result.status.value)
        else:
            self.logger.error("Scheduled sync failed", error=result.error)

        return result

    def _create_trigger(self, schedule: ScheduleConfig) -> Optional[CronTrigger]:
        """Build a cron trigger (minute hour day month day_of_week) or None for manual."""
        cron_expression = schedule.to_cron_expression()
        if cron_expression is None:
            return None

        parts = cron_expression.split()
        if len(parts) != 5:
            raise SchedulerError(f"Invalid cron expression: {cron_expression}")

        return CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=parts[4]
        )

    def _job_executed(self, event):
        if event.job_id != SYNC_JOB_ID:
            return

        result = getattr(event, 'retval', None)
        if result is None:
            return

        self.job_stats["run_count"] += 1
        self.job_stats["last_run"] = datetime.now(timezone.utc).isoformat()
        self.job_stats["last_result"] = {
            "success": result.success,
            "sync_run_id": result.sync_run_id,
            "error": result.error
        }
        if result.success:
            self.job_stats["success_count"] += 1
        else:
            self.job_stats["error_count"] += 1

    def _job_error(self, event):
        self.job_stats["run_count"] += 1
        self.job_stats["error_count"] += 1
        self.job_stats["last_run"] = datetime.now(timezone.utc).isoformat()

        self.logger.error("Scheduled job failed", job_id=event.job_id, error=str(event.exception))

    def _job_missed(self, event):
        self.logger.warning(
            "Scheduled job missed",
            job_id=event.job_id,
            scheduled_run_time=event.scheduled_run_time
        )
