import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from database import SessionLocal, session_scope
from events import ROLLOVER_COMPLETED, EventSink, LoggingEventSink, safe_emit
from periods import MonthRef, local_now
from recurrence import RecurringEngine
from schemas import BudgetPeriodOut, MonthEndReport
from services import AccountService, BudgetService, list_user_ids, require_user

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MonthEndAutomation:
    """Month boundary procedure: rollover, budget carry-over, recurring catch-up.

    Every step runs in its own session so a failed step leaves the others
    free to run; failures end up in the owner's report instead of raising.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        *,
        events: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.events = events or LoggingEventSink()
        self.settings = settings or get_settings()
        self.max_workers = max_workers or self.settings.sweep_workers

    def perform_month_end_automation(
        self, user_id: int, now: Optional[datetime] = None
    ) -> MonthEndReport:
        now = now or local_now()
        with session_scope(self.session_factory) as session:
            require_user(session, user_id)

        logger.info(f"month_end_start: user_id={user_id} now={now.isoformat()}")
        report = MonthEndReport(user_id=user_id)
        month = MonthRef.of(now.date())

        report.rollover = self._step(
            report,
            "Rollover",
            lambda session: AccountService(session, user_id).rollover(now),
        )
        if report.rollover is not None and report.rollover.status != "skipped":
            safe_emit(
                self.events,
                ROLLOVER_COMPLETED,
                user_id,
                amount_cents=report.rollover.amount_cents,
                main_balance_cents=report.rollover.main_balance_cents,
            )

        report.budgets = self._step(
            report,
            "Budget copy",
            lambda session: [
                BudgetPeriodOut.model_validate(budget)
                for budget in BudgetService(session, user_id).copy_budgets_to_new_month(
                    month.month, month.year
                )
            ],
        )

        report.recurring = self._step(
            report,
            "Recurring transactions",
            lambda session: RecurringEngine(
                session, events=self.events, settings=self.settings
            ).process_due_obligations(now.date(), user_id=user_id),
        )

        logger.info(
            f"month_end_done: user_id={user_id} errors={len(report.errors)}"
        )
        return report

    def _step(
        self,
        report: MonthEndReport,
        label: str,
        action: Callable[[Session], T],
    ) -> Optional[T]:
        try:
            with session_scope(self.session_factory) as session:
                return action(session)
        except Exception as exc:
            logger.exception(
                f"month_end_step_failed: user_id={report.user_id} step={label}"
            )
            report.errors.append(f"{label} failed: {exc}")
            return None

    def perform_month_end_automation_for_all_users(
        self, now: Optional[datetime] = None
    ) -> list[MonthEndReport]:
        now = now or local_now()
        with session_scope(self.session_factory) as session:
            user_ids = list_user_ids(session)
        logger.info(
            f"month_end_sweep_start: users={len(user_ids)} workers={self.max_workers}"
        )

        reports: dict[int, MonthEndReport] = {}
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="month-end"
        ) as pool:
            futures = {
                pool.submit(self.perform_month_end_automation, user_id, now): user_id
                for user_id in user_ids
            }
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    reports[user_id] = future.result()
                except Exception as exc:
                    logger.exception(f"month_end_user_failed: user_id={user_id}")
                    reports[user_id] = MonthEndReport(user_id=user_id, error=str(exc))

        failed = sum(1 for report in reports.values() if not report.success)
        logger.info(f"month_end_sweep_done: users={len(reports)} failed={failed}")
        return [reports[user_id] for user_id in user_ids]
