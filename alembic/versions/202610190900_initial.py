"""initial scheduler and ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
ACCOUNT_TAG = sa.Enum("main", "current", name="accounttag")
FREQUENCY = sa.Enum(
    "daily", "weekly", "bi-weekly", "monthly", "quarterly", "yearly", name="frequency"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "recurring_obligations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("description", sa.String(200), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("next_occurrence", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "reminder_days_before", sa.Integer(), nullable=False, server_default="3"
        ),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dead_lettered_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
        sa.CheckConstraint(
            "next_occurrence >= start_date", name="ck_obligation_next_after_start"
        ),
        sa.CheckConstraint(
            "reminder_days_before >= 0", name="ck_obligation_reminder_days"
        ),
    )
    op.create_index(
        "ix_obligations_user_active_next",
        "recurring_obligations",
        ["user_id", "is_active", "next_occurrence"],
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("account_tag", ACCOUNT_TAG, nullable=False),
        sa.Column(
            "obligation_id",
            sa.Integer(),
            sa.ForeignKey("recurring_obligations.id"),
            nullable=True,
        ),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        sa.Column("transfer_group", sa.String(36), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "obligation_id", "occurrence_date", name="uq_ledger_obligation_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_ledger_amount_positive"),
    )
    op.create_index(
        "ix_ledger_user_tag", "ledger_transactions", ["user_id", "account_tag"]
    )
    op.create_index(
        "ix_ledger_user_category_date",
        "ledger_transactions",
        ["user_id", "category", "date"],
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tag", ACCOUNT_TAG, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_rollover_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "tag", name="uq_account_user_tag"),
    )

    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("icon", sa.String(40), nullable=False, server_default="tag"),
        sa.Column(
            "is_template", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "category",
            "year",
            "month",
            name="uq_budget_period_user_category_month",
        ),
        sa.CheckConstraint(
            "limit_cents >= 0", name="ck_budget_period_limit_positive"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_period_month"),
    )
    op.create_index(
        "ix_budget_period_user_month", "budget_periods", ["user_id", "year", "month"]
    )


def downgrade() -> None:
    op.drop_index("ix_budget_period_user_month", table_name="budget_periods")
    op.drop_table("budget_periods")
    op.drop_table("accounts")
    op.drop_index("ix_ledger_user_category_date", table_name="ledger_transactions")
    op.drop_index("ix_ledger_user_tag", table_name="ledger_transactions")
    op.drop_table("ledger_transactions")
    op.drop_index(
        "ix_obligations_user_active_next", table_name="recurring_obligations"
    )
    op.drop_table("recurring_obligations")
    op.drop_table("users")
