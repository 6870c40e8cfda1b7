from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Optional, Sequence
from uuid import uuid4

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    TRANSFER_CATEGORY,
    Account,
    AccountTag,
    BudgetPeriod,
    Frequency,
    LedgerTransaction,
    RecurringObligation,
    TransactionType,
    User,
)
from periods import MonthRef, local_now, local_today
from recurrence import calculate_next_occurrence
from schemas import (
    BudgetPeriodIn,
    LedgerTransactionIn,
    RecurringObligationIn,
    RolloverResult,
)

logger = logging.getLogger(__name__)


class OwnerNotFound(ValueError):
    pass


class ObligationInactive(ValueError):
    pass


def create_user(session: Session, name: str) -> User:
    user = User(name=name)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def list_user_ids(session: Session) -> list[int]:
    return list(session.scalars(select(User.id).order_by(User.id)).all())


def require_user(session: Session, user_id: int) -> None:
    if session.get(User, user_id) is None:
        raise OwnerNotFound(f"Owner {user_id} not found")


def _insert_ignoring_conflicts(
    session: Session,
    model: type,
    rows: Sequence[dict[str, Any]],
    index_elements: list[str],
) -> None:
    """Insert rows, leaving any row that collides with a unique key alone."""
    if not rows:
        return
    dialect = session.get_bind().dialect.name
    if dialect in ("sqlite", "postgresql"):
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        stmt = (
            dialect_insert(model)
            .values(list(rows))
            .on_conflict_do_nothing(index_elements=index_elements)
        )
        session.execute(stmt)
        return
    for row in rows:
        try:
            with session.begin_nested():
                session.add(model(**row))
        except IntegrityError:
            continue


def _signed_amount():
    return case(
        (LedgerTransaction.type == TransactionType.income, LedgerTransaction.amount_cents),
        else_=-LedgerTransaction.amount_cents,
    )


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def ensure_accounts(self) -> dict[AccountTag, Account]:
        require_user(self.session, self.user_id)
        now = datetime.utcnow()
        _insert_ignoring_conflicts(
            self.session,
            Account,
            [
                {
                    "user_id": self.user_id,
                    "tag": tag,
                    "balance_cents": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                for tag in AccountTag
            ],
            ["user_id", "tag"],
        )
        accounts = self.session.scalars(
            select(Account).where(Account.user_id == self.user_id)
        ).all()
        return {account.tag: account for account in accounts}

    def get_account(self, tag: AccountTag) -> Account:
        return self.ensure_accounts()[AccountTag(tag)]

    def ledger_balance(self, tag: AccountTag, *, before: Optional[date] = None) -> int:
        stmt = select(func.coalesce(func.sum(_signed_amount()), 0)).where(
            LedgerTransaction.user_id == self.user_id,
            LedgerTransaction.account_tag == AccountTag(tag),
            LedgerTransaction.deleted_at.is_(None),
        )
        if before is not None:
            stmt = stmt.where(LedgerTransaction.date < before)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def recompute_balance(
        self, tag: AccountTag, *, rollover_at: Optional[datetime] = None
    ) -> int:
        """Rewrite the stored balance from the ledger without committing."""
        account = self.get_account(tag)
        balance = self.ledger_balance(tag)
        account.balance_cents = balance
        if rollover_at is not None:
            account.last_rollover_at = rollover_at
        self.session.flush()
        return balance

    def sync_account_balance(
        self, tag: AccountTag, *, rollover_at: Optional[datetime] = None
    ) -> int:
        balance = self.recompute_balance(tag, rollover_at=rollover_at)
        self.session.commit()
        return balance

    def balances(self) -> dict[str, int]:
        return {
            tag.value: account.balance_cents
            for tag, account in self.ensure_accounts().items()
        }

    def rollover(self, now: Optional[datetime] = None) -> RolloverResult:
        now = now or local_now()
        accounts = self.ensure_accounts()
        current = accounts[AccountTag.current]
        month = MonthRef.of(now.date())
        month_start = datetime.combine(month.start, datetime.min.time())

        # Stamping the current account first serialises concurrent rollovers:
        # only one caller per month gets past this update.
        claimed = self.session.execute(
            update(Account)
            .where(
                Account.id == current.id,
                or_(
                    Account.last_rollover_at.is_(None),
                    Account.last_rollover_at < month_start,
                ),
            )
            .values(last_rollover_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            balances = self.balances()
            logger.info(f"rollover_skip: user_id={self.user_id} month={month}")
            return RolloverResult(
                status="skipped",
                amount_cents=0,
                main_balance_cents=balances[AccountTag.main.value],
                current_balance_cents=balances[AccountTag.current.value],
                rolled_over_at=now,
                message=f"Rollover for {month} already performed.",
            )

        # Rows already dated in the new month belong to it and stay on current.
        amount = self.ledger_balance(AccountTag.current, before=month.start)
        label = str(month.previous())
        if amount != 0:
            group = str(uuid4())
            magnitude = abs(amount)
            out_type, in_type = (
                (TransactionType.expense, TransactionType.income)
                if amount > 0
                else (TransactionType.income, TransactionType.expense)
            )
            self.session.add_all(
                [
                    LedgerTransaction(
                        user_id=self.user_id,
                        date=now.date(),
                        type=out_type,
                        amount_cents=magnitude,
                        category=TRANSFER_CATEGORY,
                        description=f"Month-end rollover {label}: current to main",
                        account_tag=AccountTag.current,
                        transfer_group=group,
                    ),
                    LedgerTransaction(
                        user_id=self.user_id,
                        date=now.date(),
                        type=in_type,
                        amount_cents=magnitude,
                        category=TRANSFER_CATEGORY,
                        description=f"Month-end rollover {label}: from current",
                        account_tag=AccountTag.main,
                        transfer_group=group,
                    ),
                ]
            )
            self.session.flush()

        current_balance = self.recompute_balance(AccountTag.current, rollover_at=now)
        main_balance = self.recompute_balance(AccountTag.main, rollover_at=now)
        self.session.commit()
        logger.info(
            f"rollover_done: user_id={self.user_id} amount_cents={amount} "
            f"main_cents={main_balance} current_cents={current_balance}"
        )
        if amount == 0:
            message = "Balance was 0, no transfer needed."
        elif amount > 0:
            message = "Surplus transferred to main account."
        else:
            message = "Deficit covered by main account."
        return RolloverResult(
            status="transferred" if amount else "zero",
            amount_cents=amount,
            main_balance_cents=main_balance,
            current_balance_cents=current_balance,
            rolled_over_at=now,
            message=message,
        )


class LedgerService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: LedgerTransactionIn) -> LedgerTransaction:
        require_user(self.session, self.user_id)
        txn = LedgerTransaction(
            user_id=self.user_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category=data.category,
            description=data.description,
            account_tag=data.account_tag,
        )
        self.session.add(txn)
        self.session.flush()
        self._resync(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> LedgerTransaction:
        stmt = select(LedgerTransaction).where(
            LedgerTransaction.user_id == self.user_id,
            LedgerTransaction.id == transaction_id,
        )
        if not include_deleted:
            stmt = stmt.where(LedgerTransaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is not None:
            return
        txn.deleted_at = datetime.utcnow()
        self.session.flush()
        self._resync(txn)
        self.session.commit()

    def list_for_account(self, tag: AccountTag) -> list[LedgerTransaction]:
        stmt = (
            select(LedgerTransaction)
            .where(
                LedgerTransaction.user_id == self.user_id,
                LedgerTransaction.account_tag == AccountTag(tag),
                LedgerTransaction.deleted_at.is_(None),
            )
            .order_by(LedgerTransaction.date.desc(), LedgerTransaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def list_for_category(
        self, category: str, start: date, end: date
    ) -> list[LedgerTransaction]:
        stmt = (
            select(LedgerTransaction)
            .where(
                LedgerTransaction.user_id == self.user_id,
                LedgerTransaction.category == category,
                LedgerTransaction.date.between(start, end),
                LedgerTransaction.deleted_at.is_(None),
            )
            .order_by(LedgerTransaction.date, LedgerTransaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _resync(self, txn: LedgerTransaction) -> None:
        AccountService(self.session, self.user_id).recompute_balance(txn.account_tag)
        month = MonthRef.of(txn.date)
        BudgetService(self.session, self.user_id).refresh_spent(month.month, month.year)


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def budgets_for_month(self, month: int, year: int) -> list[BudgetPeriod]:
        stmt = (
            select(BudgetPeriod)
            .where(
                BudgetPeriod.user_id == self.user_id,
                BudgetPeriod.month == month,
                BudgetPeriod.year == year,
            )
            .order_by(BudgetPeriod.category)
        )
        return list(self.session.scalars(stmt).all())

    def upsert_budget(self, data: BudgetPeriodIn) -> BudgetPeriod:
        require_user(self.session, self.user_id)
        existing = self.session.scalar(
            select(BudgetPeriod).where(
                BudgetPeriod.user_id == self.user_id,
                BudgetPeriod.category == data.category,
                BudgetPeriod.month == data.month,
                BudgetPeriod.year == data.year,
            )
        )
        if existing:
            existing.limit_cents = data.limit_cents
            existing.icon = data.icon
            existing.is_template = data.is_template
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = BudgetPeriod(
            user_id=self.user_id,
            category=data.category,
            limit_cents=data.limit_cents,
            spent_cents=0,
            month=data.month,
            year=data.year,
            icon=data.icon,
            is_template=data.is_template,
        )
        self.session.add(budget)
        self.session.flush()
        self.refresh_spent(data.month, data.year)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def copy_budgets_to_new_month(self, month: int, year: int) -> list[BudgetPeriod]:
        target = MonthRef(year, month)
        return self._carry_forward(target.previous(), target)

    def get_current_month_budgets(
        self, today: Optional[date] = None
    ) -> list[BudgetPeriod]:
        target = MonthRef.of(today or local_today())
        budgets = self.budgets_for_month(target.month, target.year)
        if not budgets:
            source = self._latest_month_with_budgets(before=target)
            if source is None:
                return []
            self._carry_forward(source, target)
        self.refresh_spent(target.month, target.year)
        self.session.commit()
        return self.budgets_for_month(target.month, target.year)

    def _latest_month_with_budgets(self, *, before: MonthRef) -> Optional[MonthRef]:
        row = self.session.execute(
            select(BudgetPeriod.year, BudgetPeriod.month)
            .where(
                BudgetPeriod.user_id == self.user_id,
                or_(
                    BudgetPeriod.year < before.year,
                    (BudgetPeriod.year == before.year)
                    & (BudgetPeriod.month < before.month),
                ),
            )
            .order_by(BudgetPeriod.year.desc(), BudgetPeriod.month.desc())
            .limit(1)
        ).first()
        if row is None:
            return None
        return MonthRef(row.year, row.month)

    def _carry_forward(self, source: MonthRef, target: MonthRef) -> list[BudgetPeriod]:
        previous = self.budgets_for_month(source.month, source.year)
        if not previous:
            logger.info(f"budget_carry_skip: user_id={self.user_id} source={source} reason=empty")
            return []

        existing = self.budgets_for_month(target.month, target.year)
        if existing:
            logger.info(f"budget_carry_skip: user_id={self.user_id} target={target} reason=exists")
            return existing

        now = datetime.utcnow()
        _insert_ignoring_conflicts(
            self.session,
            BudgetPeriod,
            [
                {
                    "user_id": self.user_id,
                    "category": budget.category,
                    "limit_cents": budget.limit_cents,
                    "spent_cents": 0,
                    "icon": budget.icon,
                    "month": target.month,
                    "year": target.year,
                    "is_template": False,
                    "created_at": now,
                    "updated_at": now,
                }
                for budget in previous
            ],
            ["user_id", "category", "year", "month"],
        )
        self.session.commit()
        created = self.budgets_for_month(target.month, target.year)
        logger.info(
            f"budget_carry: user_id={self.user_id} source={source} "
            f"target={target} count={len(created)}"
        )
        return created

    def spent_by_category_for_month(self, month: int, year: int) -> dict[str, int]:
        period = MonthRef(year, month)
        stmt = (
            select(
                LedgerTransaction.category,
                func.coalesce(func.sum(LedgerTransaction.amount_cents), 0).label("spent"),
            )
            .where(
                LedgerTransaction.user_id == self.user_id,
                LedgerTransaction.deleted_at.is_(None),
                LedgerTransaction.type == TransactionType.expense,
                LedgerTransaction.transfer_group.is_(None),
                LedgerTransaction.date.between(period.start, period.end),
            )
            .group_by(LedgerTransaction.category)
        )
        return {row.category: int(row.spent or 0) for row in self.session.execute(stmt)}

    def refresh_spent(self, month: int, year: int) -> None:
        budgets = self.budgets_for_month(month, year)
        if not budgets:
            return
        spent = self.spent_by_category_for_month(month, year)
        for budget in budgets:
            budget.spent_cents = spent.get(budget.category, 0)
        self.session.flush()


# Average number of occurrences per month, used for the summary view.
_MONTHLY_FACTOR = {
    Frequency.daily: 30.44,
    Frequency.weekly: 4.35,
    Frequency.biweekly: 2.17,
    Frequency.monthly: 1.0,
    Frequency.quarterly: 1 / 3,
    Frequency.yearly: 1 / 12,
}


class RecurringObligationService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, obligation_id: int) -> RecurringObligation:
        # The engine advances next_occurrence with Core updates.
        obligation = self.session.get(
            RecurringObligation, obligation_id, populate_existing=True
        )
        if not obligation or obligation.user_id != self.user_id:
            raise ValueError("Obligation not found")
        return obligation

    def list(self, *, include_inactive: bool = True) -> list[RecurringObligation]:
        stmt = (
            select(RecurringObligation)
            .where(RecurringObligation.user_id == self.user_id)
            .order_by(RecurringObligation.next_occurrence, RecurringObligation.id)
        )
        if not include_inactive:
            stmt = stmt.where(RecurringObligation.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringObligationIn) -> RecurringObligation:
        require_user(self.session, self.user_id)
        obligation = RecurringObligation(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            type=data.type,
            category=data.category,
            description=data.description,
            frequency=data.frequency,
            start_date=data.start_date,
            end_date=data.end_date,
            next_occurrence=data.start_date,
            is_active=True,
            reminder_enabled=data.reminder_enabled,
            reminder_days_before=data.reminder_days_before,
        )
        self.session.add(obligation)
        self.session.commit()
        self.session.refresh(obligation)
        return obligation

    def update(self, obligation_id: int, data: RecurringObligationIn) -> RecurringObligation:
        obligation = self.get(obligation_id)
        if not obligation.is_active:
            raise ObligationInactive("Inactive obligations cannot be edited")
        reschedule = (
            data.frequency != obligation.frequency
            or data.start_date != obligation.start_date
        )
        for field, value in data.model_dump().items():
            setattr(obligation, field, value)
        if reschedule:
            obligation.next_occurrence = self._first_unposted_occurrence(obligation)
        self.session.commit()
        self.session.refresh(obligation)
        return obligation

    def _first_unposted_occurrence(self, obligation: RecurringObligation) -> date:
        # Soft-deleted postings still hold their (obligation, occurrence) key.
        last_posted = self.session.scalar(
            select(func.max(LedgerTransaction.occurrence_date)).where(
                LedgerTransaction.obligation_id == obligation.id
            )
        )
        candidate = obligation.start_date
        if last_posted is None:
            return candidate
        while candidate <= last_posted:
            candidate = calculate_next_occurrence(
                candidate, obligation.frequency, anchor_day=obligation.start_date.day
            )
        return candidate

    def deactivate(self, obligation_id: int) -> RecurringObligation:
        obligation = self.get(obligation_id)
        if obligation.is_active:
            obligation.is_active = False
            self.session.commit()
            self.session.refresh(obligation)
        return obligation

    def toggle_active(self, obligation_id: int, is_active: bool) -> RecurringObligation:
        obligation = self.get(obligation_id)
        if not is_active:
            return self.deactivate(obligation_id)
        if not obligation.is_active:
            raise ObligationInactive("Inactive obligations cannot be reactivated")
        return obligation

    def delete(self, obligation_id: int) -> None:
        obligation = self.get(obligation_id)
        self.session.execute(
            update(LedgerTransaction)
            .where(LedgerTransaction.obligation_id == obligation.id)
            .values(obligation_id=None)
            .execution_options(synchronize_session=False)
        )
        self.session.delete(obligation)
        self.session.commit()

    def monthly_summary(self) -> dict[str, object]:
        total_income = 0
        total_expenses = 0
        expense_by_category: dict[str, int] = {}
        for obligation in self.list(include_inactive=False):
            monthly = round(obligation.amount_cents * _MONTHLY_FACTOR[obligation.frequency])
            if obligation.type == TransactionType.income:
                total_income += monthly
            else:
                total_expenses += monthly
                expense_by_category[obligation.category] = (
                    expense_by_category.get(obligation.category, 0) + monthly
                )
        return {
            "total_monthly_income": total_income,
            "total_monthly_expenses": total_expenses,
            "net_monthly": total_income - total_expenses,
            "expense_breakdown": sorted(
                expense_by_category.items(), key=lambda item: item[1], reverse=True
            ),
        }
