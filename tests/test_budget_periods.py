from datetime import date, datetime

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import BudgetPeriod, TransactionType
from schemas import BudgetPeriodIn, LedgerTransactionIn
from services import (
    AccountService,
    BudgetService,
    LedgerService,
    _insert_ignoring_conflicts,
    create_user,
)


def _expense(day: date, category: str, amount_cents: int) -> LedgerTransactionIn:
    return LedgerTransactionIn(
        date=day,
        type=TransactionType.expense,
        amount_cents=amount_cents,
        category=category,
    )


def _february_budgets(session: Session, user_id: int) -> BudgetService:
    budgets = BudgetService(session, user_id)
    budgets.upsert_budget(
        BudgetPeriodIn(category="Food", limit_cents=50_000, month=2, year=2025, icon="utensils")
    )
    budgets.upsert_budget(
        BudgetPeriodIn(category="Transport", limit_cents=30_000, month=2, year=2025)
    )
    ledger = LedgerService(session, user_id)
    ledger.create(_expense(date(2025, 2, 4), "Food", 35_000))
    ledger.create(_expense(date(2025, 2, 6), "Transport", 30_000))
    return budgets


def test_budgets_carry_forward_with_spent_reset() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = _february_budgets(session, user.id)
        february = {b.category: b.spent_cents for b in budgets.budgets_for_month(2, 2025)}
        assert february == {"Food": 35_000, "Transport": 30_000}

        created = budgets.copy_budgets_to_new_month(3, 2025)

        assert [(b.category, b.limit_cents, b.spent_cents) for b in created] == [
            ("Food", 50_000, 0),
            ("Transport", 30_000, 0),
        ]
        assert all((b.month, b.year) == (3, 2025) for b in created)
        assert all(b.is_template is False for b in created)
        assert created[0].icon == "utensils"


def test_copy_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = _february_budgets(session, user.id)

        first = budgets.copy_budgets_to_new_month(3, 2025)
        second = budgets.copy_budgets_to_new_month(3, 2025)

        assert [b.id for b in first] == [b.id for b in second]
        count = session.scalar(
            select(func.count(BudgetPeriod.id)).where(
                BudgetPeriod.month == 3, BudgetPeriod.year == 2025
            )
        )
        assert count == 2


def test_copy_without_previous_month_is_a_no_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")

        assert BudgetService(session, user.id).copy_budgets_to_new_month(3, 2025) == []
        assert session.scalar(select(func.count(BudgetPeriod.id))) == 0


def test_existing_target_budgets_are_left_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = _february_budgets(session, user.id)
        budgets.upsert_budget(
            BudgetPeriodIn(category="Food", limit_cents=99_900, month=3, year=2025)
        )

        result = budgets.copy_budgets_to_new_month(3, 2025)

        assert [(b.category, b.limit_cents) for b in result] == [("Food", 99_900)]


def test_copy_into_january_reads_previous_december() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = BudgetService(session, user.id)
        budgets.upsert_budget(
            BudgetPeriodIn(category="Gifts", limit_cents=20_000, month=12, year=2024)
        )

        created = budgets.copy_budgets_to_new_month(1, 2025)

        assert [(b.category, b.month, b.year) for b in created] == [("Gifts", 1, 2025)]


def test_current_month_is_filled_from_latest_earlier_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = BudgetService(session, user.id)
        budgets.upsert_budget(
            BudgetPeriodIn(category="Food", limit_cents=40_000, month=10, year=2024)
        )
        budgets.upsert_budget(
            BudgetPeriodIn(category="Food", limit_cents=45_000, month=11, year=2024)
        )
        LedgerService(session, user.id).create(_expense(date(2025, 2, 3), "Food", 1_250))

        current = budgets.get_current_month_budgets(today=date(2025, 2, 14))

        assert [(b.category, b.limit_cents, b.spent_cents, b.month, b.year) for b in current] == [
            ("Food", 45_000, 1_250, 2, 2025)
        ]


def test_current_month_without_any_budgets_is_empty() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")

        assert BudgetService(session, user.id).get_current_month_budgets(date(2025, 2, 14)) == []


def test_spent_ignores_income_transfers_and_deleted_entries() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        budgets = BudgetService(session, user.id)
        budgets.upsert_budget(
            BudgetPeriodIn(category="Food", limit_cents=40_000, month=1, year=2025)
        )
        ledger = LedgerService(session, user.id)
        ledger.create(_expense(date(2025, 1, 3), "Food", 1_200))
        ledger.create(
            LedgerTransactionIn(
                date=date(2025, 1, 4),
                type=TransactionType.income,
                amount_cents=500,
                category="Food",
            )
        )
        mistake = ledger.create(_expense(date(2025, 1, 5), "Food", 9_999))
        ledger.delete(mistake.id)
        ledger.create(_expense(date(2025, 2, 1), "Food", 777))
        AccountService(session, user.id).rollover(datetime(2025, 2, 1, 0, 5))

        [january] = budgets.budgets_for_month(1, 2025)

        assert budgets.spent_by_category_for_month(1, 2025) == {"Food": 1_200}
        assert january.spent_cents == 1_200
        assert budgets.spent_by_category_for_month(2, 2025) == {"Food": 777}


def test_conflicting_rows_are_skipped_on_insert() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = create_user(session, "Ada")
        row = {
            "user_id": user.id,
            "category": "Food",
            "limit_cents": 10_000,
            "spent_cents": 0,
            "month": 3,
            "year": 2025,
            "icon": "tag",
            "is_template": False,
            "created_at": datetime(2025, 3, 1),
            "updated_at": datetime(2025, 3, 1),
        }

        _insert_ignoring_conflicts(
            session, BudgetPeriod, [row], ["user_id", "category", "year", "month"]
        )
        _insert_ignoring_conflicts(
            session,
            BudgetPeriod,
            [dict(row, limit_cents=1)],
            ["user_id", "category", "year", "month"],
        )
        session.commit()

        [budget] = session.scalars(select(BudgetPeriod)).all()
        assert budget.limit_cents == 10_000
