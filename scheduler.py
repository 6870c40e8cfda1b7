import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from automation import MonthEndAutomation
from config import get_settings
from database import SessionLocal, session_scope
from events import EventSink, LoggingEventSink
from recurrence import RecurringEngine
from schemas import MonthEndReport, ProcessingReport


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        events: Optional[EventSink] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory or SessionLocal
        self.events = events or LoggingEventSink()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_daily(self, source: str = "manual") -> ProcessingReport:
        logger.info(f"scheduler_run: job=daily source={source}")
        with session_scope(self.session_factory) as session:
            engine = RecurringEngine(session, events=self.events, settings=self.settings)
            # Reminders read next_occurrence before processing advances it.
            reminded = engine.send_due_reminders()
            report = engine.process_due_obligations()
        logger.info(
            f"scheduler_run: job=daily source={source} "
            f"occurrences_posted={report.posted_count} expired={len(report.expired)} "
            f"errors={len(report.errors)} reminders={len(reminded)}"
        )
        return report

    def run_monthly(self, source: str = "manual") -> list[MonthEndReport]:
        logger.info(f"scheduler_run: job=monthly source={source}")
        automation = MonthEndAutomation(
            self.session_factory, events=self.events, settings=self.settings
        )
        reports = automation.perform_month_end_automation_for_all_users()
        failed = sum(1 for report in reports if not report.success)
        logger.info(
            f"scheduler_run: job=monthly source={source} users={len(reports)} failed={failed}"
        )
        return reports

    def start(self) -> None:
        self.run_daily("startup")

        daily_at = self.settings.daily_run_at
        self.scheduler.add_job(
            self.run_daily,
            CronTrigger(hour=daily_at.hour, minute=daily_at.minute),
            args=["daily"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=2,
        )

        monthly_at = self.settings.monthly_run_at
        self.scheduler.add_job(
            self.run_monthly,
            CronTrigger(day=1, hour=monthly_at.hour, minute=monthly_at.minute),
            args=["monthly"],
            id="month_end_monthly",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
            coalesce=True,
            max_instances=2,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {daily_at:%H:%M} and monthly "
            f"day-1 {monthly_at:%H:%M} jobs"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
