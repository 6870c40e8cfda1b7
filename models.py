from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "bi-weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


FREQUENCY_ENUM = SAEnum(
    Frequency,
    name="frequency",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class AccountTag(str, Enum):
    main = "main"
    current = "current"


TRANSFER_CATEGORY = "Transfer"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    obligations: Mapped[list["RecurringObligation"]] = relationship(
        "RecurringObligation", back_populates="user"
    )
    accounts: Mapped[list["Account"]] = relationship("Account", back_populates="user")


class RecurringObligation(Base, TimestampMixin):
    __tablename__ = "recurring_obligations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    next_occurrence: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reminder_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    reminder_days_before: Mapped[int] = mapped_column(
        Integer, default=3, nullable=False
    )
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    dead_lettered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="obligations")
    transactions: Mapped[list["LedgerTransaction"]] = relationship(
        "LedgerTransaction", back_populates="obligation"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
        CheckConstraint(
            "next_occurrence >= start_date", name="ck_obligation_next_after_start"
        ),
        CheckConstraint(
            "reminder_days_before >= 0", name="ck_obligation_reminder_days"
        ),
        Index(
            "ix_obligations_user_active_next", "user_id", "is_active", "next_occurrence"
        ),
    )


class LedgerTransaction(Base, TimestampMixin):
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    account_tag: Mapped[AccountTag] = mapped_column(
        SAEnum(AccountTag), nullable=False
    )
    obligation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_obligations.id")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)
    transfer_group: Mapped[Optional[str]] = mapped_column(String(36))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    obligation: Mapped[Optional["RecurringObligation"]] = relationship(
        "RecurringObligation", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "obligation_id",
            "occurrence_date",
            name="uq_ledger_obligation_occurrence",
        ),
        Index("ix_ledger_user_tag", "user_id", "account_tag"),
        Index("ix_ledger_user_category_date", "user_id", "category", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    tag: Mapped[AccountTag] = mapped_column(SAEnum(AccountTag), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_rollover_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="accounts")

    __table_args__ = (UniqueConstraint("user_id", "tag", name="uq_account_user_tag"),)


class BudgetPeriod(Base, TimestampMixin):
    __tablename__ = "budget_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    icon: Mapped[str] = mapped_column(String(40), nullable=False, default="tag")
    is_template: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "category",
            "year",
            "month",
            name="uq_budget_period_user_category_month",
        ),
        Index("ix_budget_period_user_month", "user_id", "year", "month"),
        CheckConstraint("limit_cents >= 0", name="ck_budget_period_limit_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_period_month"),
    )
