# ruff: noqa: I001
"""Expense sync core tables: expenses, budgets, chat history and SMS inbox.

Revision ID: 0001_expense_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_expense_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_BigIntPk = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    # expenses
    op.create_table(
        "expenses",
        sa.Column("id", _BigIntPk, primary_key=True, autoincrement=True),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'QAR'")),
        sa.Column("merchant", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column(
            "payment_status", sa.String(), nullable=False, server_default=sa.text("'PENDING'")
        ),
        sa.Column(
            "recurring_type", sa.String(), nullable=False, server_default=sa.text("'NONE'")
        ),
        sa.Column("payment_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_recurring_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "to_be_cancelled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("source_message_id", sa.String(), nullable=True, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint(
            "currency in ('QAR','USD','EUR','GBP','BDT')", name="ck_expenses_currency"
        ),
        sa.CheckConstraint(
            "payment_status in ('PENDING','PAID','OVERDUE','CANCELLED')",
            name="ck_expenses_payment_status",
        ),
        sa.CheckConstraint(
            "recurring_type in ('NONE','DAILY','WEEKLY','MONTHLY','YEARLY')",
            name="ck_expenses_recurring_type",
        ),
        sa.CheckConstraint(
            "recurring_type <> 'NONE' OR next_recurring_date IS NULL",
            name="ck_expenses_next_requires_recurring",
        ),
        sa.CheckConstraint(
            "recurring_type <> 'NONE' OR NOT to_be_cancelled",
            name="ck_expenses_cancel_requires_recurring",
        ),
    )
    op.create_index("ix_expenses_payment_date", "expenses", ["payment_date"])
    op.create_index("ix_expenses_merchant", "expenses", ["merchant"])

    # budgets
    op.create_table(
        "budgets",
        sa.Column("month", sa.Date(), primary_key=True),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("amount > 0", name="ck_budgets_amount_positive"),
    )

    # chat_messages
    op.create_table(
        "chat_messages",
        sa.Column("id", _BigIntPk, primary_key=True, autoincrement=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("is_from_user", sa.Boolean(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_chat_messages_timestamp", "chat_messages", ["timestamp"])

    # sms_inbox
    op.create_table(
        "sms_inbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("address", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("timestamp_ms", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_sms_inbox_timestamp_ms", "sms_inbox", ["timestamp_ms"])


def downgrade() -> None:
    op.drop_index("ix_sms_inbox_timestamp_ms", table_name="sms_inbox")
    op.drop_table("sms_inbox")
    op.drop_index("ix_chat_messages_timestamp", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_table("budgets")
    op.drop_index("ix_expenses_merchant", table_name="expenses")
    op.drop_index("ix_expenses_payment_date", table_name="expenses")
    op.drop_table("expenses")
