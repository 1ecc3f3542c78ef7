from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY; keep BIGINT on Postgres.
_BigIntPk = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: expenses
# ---------------------------


class ExpenseEntity(Base):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'QAR'"))
    merchant: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'PENDING'")
    )
    recurring_type: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'NONE'")
    )
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_recurring_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    to_be_cancelled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    # Identity of the inbound message this row was extracted from; re-syncing
    # the same message is a no-op.
    source_message_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "currency in ('QAR','USD','EUR','GBP','BDT')", name="ck_expenses_currency"
        ),
        CheckConstraint(
            "payment_status in ('PENDING','PAID','OVERDUE','CANCELLED')",
            name="ck_expenses_payment_status",
        ),
        CheckConstraint(
            "recurring_type in ('NONE','DAILY','WEEKLY','MONTHLY','YEARLY')",
            name="ck_expenses_recurring_type",
        ),
        CheckConstraint(
            "recurring_type <> 'NONE' OR next_recurring_date IS NULL",
            name="ck_expenses_next_requires_recurring",
        ),
        CheckConstraint(
            "recurring_type <> 'NONE' OR NOT to_be_cancelled",
            name="ck_expenses_cancel_requires_recurring",
        ),
        Index("ix_expenses_payment_date", "payment_date"),
        Index("ix_expenses_merchant", "merchant"),
    )


# ---------------------------
# Budgets (one row per month)
# ---------------------------


class BudgetEntity(Base):
    __tablename__ = "budgets"

    # First day of the month the budget applies to.
    month: Mapped[date] = mapped_column(Date, primary_key=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    __table_args__ = (CheckConstraint("amount > 0", name="ck_budgets_amount_positive"),)


# ---------------------------
# Chat history
# ---------------------------


class ChatMessageEntity(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(_BigIntPk, primary_key=True, autoincrement=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_from_user: Mapped[bool] = mapped_column(Boolean, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_chat_messages_timestamp", "timestamp"),)


# ---------------------------
# Local SMS inbox
# ---------------------------


class SmsMessageEntity(Base):
    """Device messages imported for syncing.

    The sync pipeline only reads this table; rows arrive through
    ``expense-sync import-messages`` or a host integration.
    """

    __tablename__ = "sms_inbox"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    address: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_sms_inbox_timestamp_ms", "timestamp_ms"),)
