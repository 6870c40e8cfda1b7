import logging
from datetime import date, datetime, timedelta
from typing import Optional, Union

from sqlalchemy import String, select, type_coerce, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from events import (
    OBLIGATION_DEACTIVATED,
    OBLIGATION_DEAD_LETTERED,
    OBLIGATION_OVERDUE,
    OBLIGATION_REMINDER,
    TRANSACTION_MATERIALIZED,
    EventSink,
    LoggingEventSink,
    safe_emit,
)
from models import (
    AccountTag,
    Frequency,
    LedgerTransaction,
    RecurringObligation,
    TransactionType,
)
from periods import MonthRef, add_months, local_today
from schemas import (
    DueObligation,
    MaterializedOccurrence,
    ObligationError,
    ProcessingReport,
)

logger = logging.getLogger(__name__)


def calculate_next_occurrence(
    current: date,
    frequency: Union[Frequency, str],
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Return the occurrence that follows ``current`` for ``frequency``.

    Month based frequencies clamp to the end of shorter months (see
    ``periods.add_months``); pass the series' start day as ``anchor_day``
    to keep a month-end series from drifting to the 28th.
    """
    frequency = Frequency(frequency)
    if frequency == Frequency.daily:
        return current + timedelta(days=1)
    elif frequency == Frequency.weekly:
        return current + timedelta(weeks=1)
    elif frequency == Frequency.biweekly:
        return current + timedelta(weeks=2)
    elif frequency == Frequency.monthly:
        return add_months(current, 1, anchor_day=anchor_day)
    elif frequency == Frequency.quarterly:
        return add_months(current, 3, anchor_day=anchor_day)
    return add_months(current, 12, anchor_day=anchor_day)


def _snapshot(row) -> DueObligation:
    amount = row.amount_cents
    if amount is None or amount <= 0:
        raise ValueError("Obligation amount must be positive")
    if not row.category or not row.category.strip():
        raise ValueError("Obligation category is missing")
    try:
        frequency = Frequency(row.frequency)
    except ValueError as exc:
        raise ValueError(f"Unknown frequency: {row.frequency}") from exc
    try:
        txn_type = TransactionType(row.type)
    except ValueError as exc:
        raise ValueError(f"Unknown direction: {row.type}") from exc
    return DueObligation(
        id=row.id,
        user_id=row.user_id,
        amount_cents=amount,
        type=txn_type,
        category=row.category,
        description=row.description,
        frequency=frequency,
        start_date=row.start_date,
        end_date=row.end_date,
        next_occurrence=row.next_occurrence,
    )


class RecurringEngine:
    def __init__(
        self,
        session: Session,
        *,
        events: Optional[EventSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.events = events or LoggingEventSink()
        settings = settings or get_settings()
        self.max_failures = settings.max_obligation_failures
        self.max_catch_up = settings.max_catch_up

    def _due_rows(self, today: date, user_id: Optional[int]) -> list:
        # Enum columns are read as plain strings so one bad row cannot break
        # the whole selection.
        stmt = (
            select(
                RecurringObligation.id,
                RecurringObligation.user_id,
                RecurringObligation.amount_cents,
                type_coerce(RecurringObligation.type, String).label("type"),
                RecurringObligation.category,
                RecurringObligation.description,
                type_coerce(RecurringObligation.frequency, String).label("frequency"),
                RecurringObligation.start_date,
                RecurringObligation.end_date,
                RecurringObligation.next_occurrence,
            )
            .where(
                RecurringObligation.is_active.is_(True),
                RecurringObligation.dead_lettered_at.is_(None),
                RecurringObligation.next_occurrence <= today,
            )
            .order_by(RecurringObligation.next_occurrence, RecurringObligation.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringObligation.user_id == user_id)
        return self.session.execute(stmt).all()

    def due_obligations(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> list[DueObligation]:
        today = today or local_today()
        due: list[DueObligation] = []
        for row in self._due_rows(today, user_id):
            try:
                due.append(_snapshot(row))
            except ValueError as exc:
                logger.warning(f"recurring_invalid: obligation_id={row.id} error={exc}")
        return due

    def process_due_obligations(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> ProcessingReport:
        today = today or local_today()
        report = ProcessingReport()
        rows = self._due_rows(today, user_id)
        logger.info(f"recurring_run: today={today} user_id={user_id} due={len(rows)}")
        valid: list[DueObligation] = []
        for row in rows:
            try:
                valid.append(_snapshot(row))
            except ValueError as exc:
                self._record_failure(row.id, str(exc), report)
        self.process_snapshots(valid, today, report)
        logger.info(
            f"recurring_run: today={today} posted={report.posted_count} "
            f"expired={len(report.expired)} skipped={len(report.skipped)} "
            f"errors={len(report.errors)}"
        )
        return report

    def process_snapshots(
        self,
        items: list[DueObligation],
        today: date,
        report: Optional[ProcessingReport] = None,
    ) -> ProcessingReport:
        report = report if report is not None else ProcessingReport()
        for item in items:
            try:
                self._process_one(item, today, report)
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"recurring_item_failed: obligation_id={item.id}")
                self._record_failure(item.id, str(exc) or type(exc).__name__, report)
        return report

    def _process_one(
        self, item: DueObligation, today: date, report: ProcessingReport
    ) -> None:
        if item.end_date is not None and item.end_date < today:
            self._expire(item, report)
            return

        posted: list[MaterializedOccurrence] = []
        seen = item.next_occurrence
        while seen <= today and len(posted) < self.max_catch_up:
            if item.end_date is not None and seen > item.end_date:
                break
            advanced = calculate_next_occurrence(
                seen, item.frequency, anchor_day=item.start_date.day
            )
            if not self._claim(item.id, seen, advanced):
                break
            txn = LedgerTransaction(
                user_id=item.user_id,
                date=seen,
                type=item.type,
                amount_cents=item.amount_cents,
                category=item.category,
                description=item.description,
                account_tag=AccountTag.current,
                obligation_id=item.id,
                occurrence_date=seen,
            )
            self.session.add(txn)
            self.session.flush()
            posted.append(
                MaterializedOccurrence(
                    obligation_id=item.id,
                    transaction_id=txn.id,
                    user_id=item.user_id,
                    amount_cents=item.amount_cents,
                    type=item.type,
                    occurrence_date=seen,
                )
            )
            seen = advanced

        if not posted:
            self.session.rollback()
            report.skipped.append(item.id)
            logger.info(f"recurring_skip: obligation_id={item.id} reason=claimed")
            return

        self._after_posting(item, posted)
        self.session.commit()
        report.success.extend(posted)
        for occurrence in posted:
            safe_emit(
                self.events,
                TRANSACTION_MATERIALIZED,
                item.user_id,
                obligation_id=item.id,
                transaction_id=occurrence.transaction_id,
                amount_cents=occurrence.amount_cents,
                occurrence_date=occurrence.occurrence_date.isoformat(),
            )

    def _claim(self, obligation_id: int, seen: date, advanced: date) -> bool:
        result = self.session.execute(
            update(RecurringObligation)
            .where(
                RecurringObligation.id == obligation_id,
                RecurringObligation.next_occurrence == seen,
                RecurringObligation.is_active.is_(True),
                RecurringObligation.dead_lettered_at.is_(None),
            )
            .values(next_occurrence=advanced, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _after_posting(
        self, item: DueObligation, posted: list[MaterializedOccurrence]
    ) -> None:
        from services import AccountService, BudgetService

        self.session.execute(
            update(RecurringObligation)
            .where(
                RecurringObligation.id == item.id,
                RecurringObligation.failure_count != 0,
            )
            .values(failure_count=0, last_error=None)
            .execution_options(synchronize_session=False)
        )
        AccountService(self.session, item.user_id).recompute_balance(
            AccountTag.current
        )
        budgets = BudgetService(self.session, item.user_id)
        for month in sorted({MonthRef.of(o.occurrence_date) for o in posted}):
            budgets.refresh_spent(month.month, month.year)

    def _expire(self, item: DueObligation, report: ProcessingReport) -> None:
        result = self.session.execute(
            update(RecurringObligation)
            .where(
                RecurringObligation.id == item.id,
                RecurringObligation.is_active.is_(True),
            )
            .values(is_active=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount != 1:
            report.skipped.append(item.id)
            return
        report.expired.append(item.id)
        logger.info(
            f"recurring_expired: obligation_id={item.id} end_date={item.end_date}"
        )
        safe_emit(
            self.events,
            OBLIGATION_DEACTIVATED,
            item.user_id,
            obligation_id=item.id,
            reason="end_date_passed",
        )

    def _record_failure(
        self, obligation_id: int, message: str, report: ProcessingReport
    ) -> None:
        report.errors.append(ObligationError(obligation_id=obligation_id, message=message))
        try:
            self.session.execute(
                update(RecurringObligation)
                .where(RecurringObligation.id == obligation_id)
                .values(
                    failure_count=RecurringObligation.failure_count + 1,
                    last_error=message[:500],
                )
                .execution_options(synchronize_session=False)
            )
            row = self.session.execute(
                select(
                    RecurringObligation.user_id,
                    RecurringObligation.failure_count,
                    RecurringObligation.dead_lettered_at,
                ).where(RecurringObligation.id == obligation_id)
            ).one_or_none()
            if row is None:
                self.session.rollback()
                return
            dead_lettered = (
                row.failure_count >= self.max_failures and row.dead_lettered_at is None
            )
            if dead_lettered:
                self.session.execute(
                    update(RecurringObligation)
                    .where(RecurringObligation.id == obligation_id)
                    .values(dead_lettered_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                f"recurring_failure_not_recorded: obligation_id={obligation_id}"
            )
            return
        logger.warning(
            f"recurring_failure: obligation_id={obligation_id} "
            f"failures={row.failure_count} error={message}"
        )
        if dead_lettered:
            report.dead_lettered.append(obligation_id)
            safe_emit(
                self.events,
                OBLIGATION_DEAD_LETTERED,
                row.user_id,
                obligation_id=obligation_id,
                failures=row.failure_count,
                last_error=message,
            )

    def send_due_reminders(self, today: Optional[date] = None) -> list[int]:
        today = today or local_today()
        obligations = self.session.scalars(
            select(RecurringObligation).where(
                RecurringObligation.is_active.is_(True),
                RecurringObligation.reminder_enabled.is_(True),
                RecurringObligation.dead_lettered_at.is_(None),
            )
        ).all()
        notified: list[int] = []
        for obligation in obligations:
            days_until = (obligation.next_occurrence - today).days
            if days_until == obligation.reminder_days_before:
                event = OBLIGATION_REMINDER
            elif days_until < 0:
                event = OBLIGATION_OVERDUE
            else:
                continue
            safe_emit(
                self.events,
                event,
                obligation.user_id,
                obligation_id=obligation.id,
                description=obligation.description,
                amount_cents=obligation.amount_cents,
                due_on=obligation.next_occurrence.isoformat(),
                days_until=days_until,
            )
            notified.append(obligation.id)
        return notified
