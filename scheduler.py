import logging
from contextlib import AbstractContextManager
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def posting_jobs(timezone: str) -> list[tuple[str, BaseTrigger, int]]:
    """(job id, trigger, misfire grace in seconds) for each posting job."""
    return [
        ("recurring_daily", CronTrigger(hour=3, minute=15, timezone=timezone), 3600),
        ("recurring_hourly_safety", IntervalTrigger(hours=1, timezone=timezone), 300),
    ]


class SchedulerManager:
    """Posts due recurring occurrences in the background.

    Every run is a full catch-up, so overlapping or missed runs are harmless:
    already posted occurrences are skipped by the engine.
    """

    def __init__(self, sessions: Optional[SessionFactory] = None) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.timezone = settings.timezone
        self.sessions = sessions or session_scope
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_posting(self, source: str = "manual") -> int:
        with self.sessions() as session:
            count = RecurringEngine(session).post_due_rules()
        logger.info(f"scheduler_run: source={source} occurrences_posted={count}")
        return count

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled by LEDGER_SCHEDULER_ENABLED")
            return

        self.run_posting("startup")
        job_ids = []
        for job_id, trigger, grace in posting_jobs(self.timezone):
            self.scheduler.add_job(
                self.run_posting,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )
            job_ids.append(job_id)
        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={','.join(job_ids)}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
