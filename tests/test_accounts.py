from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import TRANSFER_CATEGORY, Account, AccountTag, LedgerTransaction, TransactionType
from schemas import LedgerTransactionIn
from services import AccountService, LedgerService, OwnerNotFound, create_user


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _entry(
    day: date,
    type_: TransactionType,
    amount_cents: int,
    tag: AccountTag = AccountTag.current,
    category: str = "General",
) -> LedgerTransactionIn:
    return LedgerTransactionIn(
        date=day,
        type=type_,
        amount_cents=amount_cents,
        category=category,
        account_tag=tag,
    )


def _seed(session, user_id: int) -> None:
    ledger = LedgerService(session, user_id)
    ledger.create(_entry(date(2025, 1, 10), TransactionType.income, 5_000))
    ledger.create(_entry(date(2025, 1, 12), TransactionType.expense, 1_200))
    ledger.create(_entry(date(2025, 1, 2), TransactionType.income, 999, AccountTag.main))


def test_sync_with_empty_ledger_creates_zero_account() -> None:
    session = make_session()
    user = create_user(session, "Ada")

    balance = AccountService(session, user.id).sync_account_balance(AccountTag.current)

    assert balance == 0
    account = session.scalar(
        select(Account).where(Account.user_id == user.id, Account.tag == AccountTag.current)
    )
    assert account is not None
    assert account.balance_cents == 0
    assert account.last_rollover_at is None


def test_ledger_writes_keep_balances_in_step() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    _seed(session, user.id)

    accounts = AccountService(session, user.id)
    assert accounts.balances() == {"main": 999, "current": 3_800}
    assert accounts.sync_account_balance(AccountTag.current) == 3_800
    assert accounts.sync_account_balance(AccountTag.main) == 999


def test_deleted_entries_are_excluded() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    ledger = LedgerService(session, user.id)
    ledger.create(_entry(date(2025, 1, 10), TransactionType.income, 5_000))
    lunch = ledger.create(_entry(date(2025, 1, 11), TransactionType.expense, 800))

    ledger.delete(lunch.id)
    ledger.delete(lunch.id)

    assert AccountService(session, user.id).sync_account_balance(AccountTag.current) == 5_000
    assert lunch.id not in [t.id for t in ledger.list_for_account(AccountTag.current)]
    with pytest.raises(ValueError):
        ledger.get(lunch.id)


def test_sync_repairs_a_drifted_balance() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    _seed(session, user.id)
    accounts = AccountService(session, user.id)
    drifted = accounts.get_account(AccountTag.current)
    drifted.balance_cents = 123_456
    session.commit()

    assert accounts.sync_account_balance(AccountTag.current) == 3_800
    session.refresh(drifted)
    assert drifted.balance_cents == 3_800


def test_unknown_owner_is_rejected() -> None:
    session = make_session()

    with pytest.raises(OwnerNotFound):
        AccountService(session, 42).sync_account_balance(AccountTag.current)
    with pytest.raises(OwnerNotFound):
        LedgerService(session, 42).create(
            _entry(date(2025, 1, 1), TransactionType.income, 100)
        )


def test_rollover_moves_surplus_to_main() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    _seed(session, user.id)
    now = datetime(2025, 2, 1, 0, 5)

    result = AccountService(session, user.id).rollover(now)

    assert result.status == "transferred"
    assert result.amount_cents == 3_800
    assert result.current_balance_cents == 0
    assert result.main_balance_cents == 999 + 3_800
    assert result.rolled_over_at == now

    legs = session.scalars(
        select(LedgerTransaction).where(LedgerTransaction.transfer_group.is_not(None))
    ).all()
    assert len(legs) == 2
    assert {leg.transfer_group for leg in legs} == {legs[0].transfer_group}
    assert {(leg.account_tag, leg.type) for leg in legs} == {
        (AccountTag.current, TransactionType.expense),
        (AccountTag.main, TransactionType.income),
    }
    assert all(leg.category == TRANSFER_CATEGORY for leg in legs)
    assert all(leg.amount_cents == 3_800 for leg in legs)
    assert all("2025-01" in leg.description for leg in legs)

    accounts = AccountService(session, user.id).ensure_accounts()
    assert accounts[AccountTag.current].last_rollover_at == now
    assert accounts[AccountTag.main].last_rollover_at == now


def test_rollover_covers_deficit_from_main() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    ledger = LedgerService(session, user.id)
    ledger.create(_entry(date(2025, 1, 5), TransactionType.income, 1_000, AccountTag.main))
    ledger.create(_entry(date(2025, 1, 6), TransactionType.expense, 700))

    result = AccountService(session, user.id).rollover(datetime(2025, 2, 1, 0, 5))

    assert result.amount_cents == -700
    assert result.main_balance_cents == 300
    assert result.current_balance_cents == 0
    assert result.main_balance_cents + result.current_balance_cents == 1_000 - 700


def test_rollover_with_zero_balance_still_stamps() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    now = datetime(2025, 2, 1, 0, 5)

    result = AccountService(session, user.id).rollover(now)

    assert result.status == "zero"
    assert result.amount_cents == 0
    assert session.scalars(select(LedgerTransaction)).all() == []
    current = AccountService(session, user.id).get_account(AccountTag.current)
    assert current.last_rollover_at == now


def test_rollover_runs_once_per_month() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    _seed(session, user.id)
    accounts = AccountService(session, user.id)

    first = accounts.rollover(datetime(2025, 2, 1, 0, 5))
    LedgerService(session, user.id).create(
        _entry(date(2025, 2, 3), TransactionType.income, 250)
    )
    repeat = accounts.rollover(datetime(2025, 2, 1, 9, 0))

    assert first.status == "transferred"
    assert repeat.status == "skipped"
    assert repeat.amount_cents == 0
    assert repeat.main_balance_cents == 999 + 3_800
    assert repeat.current_balance_cents == 250

    following = accounts.rollover(datetime(2025, 3, 1, 0, 5))
    assert following.status == "transferred"
    assert following.amount_cents == 250
    assert following.main_balance_cents == 999 + 3_800 + 250


def test_sync_does_not_stamp_rollover_time() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    _seed(session, user.id)

    AccountService(session, user.id).sync_account_balance(AccountTag.current)

    current = AccountService(session, user.id).get_account(AccountTag.current)
    assert current.last_rollover_at is None


def test_rollover_leaves_new_month_entries_on_current() -> None:
    session = make_session()
    user = create_user(session, "Ada")
    ledger = LedgerService(session, user.id)
    ledger.create(_entry(date(2025, 10, 20), TransactionType.income, 4_000))
    ledger.create(_entry(date(2025, 11, 1), TransactionType.income, 300_000))

    result = AccountService(session, user.id).rollover(datetime(2025, 11, 1, 0, 5))

    assert result.amount_cents == 4_000
    assert result.main_balance_cents == 4_000
    assert result.current_balance_cents == 300_000
