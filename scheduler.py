import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import ExecutionSummary, local_today
from services import RecurringSeriesService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Runs due recurring series in the background.

    A daily pass at 03:15 local time does the real work; the hourly pass
    catches anything missed while the process was down.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.last_summary: Optional[ExecutionSummary] = None

    def run_once(self, source: str = "manual") -> int:
        today = local_today()
        with session_scope() as session:
            summary = RecurringSeriesService(session).run_due(today)
        self.last_summary = summary
        logger.info(
            f"scheduler_run: source={source} today={today} "
            f"posted={summary.successful_executions} "
            f"failed={summary.failed_executions}"
        )
        for failure in summary.failed:
            logger.warning(
                f"scheduler_series_failed: series_id={failure.series_id} "
                f"error={failure.error}"
            )
        return summary.successful_executions

    def _schedule(self, job_id: str, trigger, source: str, grace: int) -> None:
        self.scheduler.add_job(
            self.run_once,
            trigger,
            args=[source],
            id=job_id,
            replace_existing=True,
            misfire_grace_time=grace,
            coalesce=True,
            max_instances=1,
        )

    def start(self) -> None:
        if not self.enabled:
            logger.info("scheduler_disabled")
            return
        self.run_once("startup")
        self._schedule("series_daily", CronTrigger(hour=3, minute=15), "daily", 3600)
        self._schedule("series_hourly", IntervalTrigger(hours=1), "hourly", 300)
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={len(self.scheduler.get_jobs())}")

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
