# ruff: noqa: I001
"""Persistence integration for expense_sync.

Functions here read and write the shared database owned by ``libs/db``. Each
takes an explicit SQLAlchemy ``Session``; :class:`SqlExpenseStore` wraps them
in ``db.client.session_scope`` so every public call is one transaction.

Scope:
- Insert extracted expenses, skipping messages that were already synced.
- Recurrence updates per merchant (type, next date, cancellation flag).
- Spending aggregates (totals, per category/merchant, running sum).
- Budgets keyed by month and chat history.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.expenses import BudgetEntity, ChatMessageEntity, ExpenseEntity
from .dates import ensure_aware
from .models import (
    Budget,
    Category,
    ChatMessage,
    CumulativePoint,
    Currency,
    Expense,
    PaymentStatus,
    RecurringType,
    SpendingShare,
)


class ExpenseStore(Protocol):
    """What the sync, recurrence, budget and chat services need from storage."""

    def last_expense_time(self) -> datetime | None: ...

    def insert_expense(self, expense: Expense) -> Expense | None: ...

    def merchant_history(self, merchant: str) -> list[Expense]: ...

    def update_recurrence(
        self,
        merchant: str,
        recurring_type: RecurringType,
        next_recurring_date: datetime | None,
    ) -> int: ...

    def set_cancellation(self, merchant: str, to_be_cancelled: bool) -> int: ...

    def recurring_expenses(self) -> list[Expense]: ...

    def total_spending(self, start: datetime, end: datetime) -> float: ...

    def top_categories(self, start: datetime, end: datetime, n: int) -> list[SpendingShare]: ...

    def top_merchants(self, start: datetime, end: datetime, n: int) -> list[SpendingShare]: ...

    def get_budget(self, month: date) -> Budget | None: ...

    def add_chat_message(self, message: ChatMessage) -> ChatMessage: ...

    def recent_chat_messages(self, limit: int) -> list[ChatMessage]: ...


# ---- Row mapping -------------------------------------------------------------


def _utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(UTC)


def _to_expense(row: ExpenseEntity) -> Expense:
    return Expense(
        id=row.id,
        amount=float(row.amount),
        currency=Currency(row.currency),
        merchant=row.merchant,
        category=Category(row.category),
        payment_status=PaymentStatus(row.payment_status),
        recurring_type=RecurringType(row.recurring_type),
        payment_date=ensure_aware(row.payment_date),
        due_date=_utc(row.due_date),
        next_recurring_date=_utc(row.next_recurring_date),
        to_be_cancelled=bool(row.to_be_cancelled),
        created_at=_utc(row.created_at),
        source_message_id=row.source_message_id,
    )


def _expense_values(expense: Expense) -> dict[str, object]:
    values: dict[str, object] = {
        "amount": expense.amount,
        "currency": expense.currency.value,
        "merchant": expense.merchant,
        "category": expense.category.value,
        "payment_status": expense.payment_status.value,
        "recurring_type": expense.recurring_type.value,
        "payment_date": _utc(expense.payment_date),
        "due_date": _utc(expense.due_date),
        "next_recurring_date": _utc(expense.next_recurring_date),
        "to_be_cancelled": expense.to_be_cancelled,
        "source_message_id": expense.source_message_id,
    }
    if expense.created_at is not None:
        values["created_at"] = _utc(expense.created_at)
    return values


# ---- Expenses ----------------------------------------------------------------


def insert_expense(session: Session, expense: Expense) -> Expense | None:
    """Insert one expense; return it with its id, or ``None`` when already stored.

    Rows are deduplicated on ``source_message_id``. Postgres and SQLite use
    ``INSERT .. ON CONFLICT DO NOTHING``; other dialects fall back to a lookup.
    """

    values = _expense_values(expense)
    dialect = session.get_bind().dialect.name
    if expense.source_message_id is not None and dialect in ("postgresql", "sqlite"):
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            insert_fn(ExpenseEntity)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[ExpenseEntity.source_message_id])
            .returning(ExpenseEntity.id)
        )
        new_id = session.execute(stmt).scalar_one_or_none()
        if new_id is None:
            return None
    else:
        if expense.source_message_id is not None:
            existing = session.execute(
                select(ExpenseEntity.id).where(
                    ExpenseEntity.source_message_id == expense.source_message_id
                )
            ).scalar_one_or_none()
            if existing is not None:
                return None
        row = ExpenseEntity(**values)
        session.add(row)
        session.flush()
        new_id = row.id
    stored = session.get(ExpenseEntity, new_id)
    if stored is None:
        raise RuntimeError(f"expense {new_id} missing right after insert")
    return _to_expense(stored)


def get_expense(session: Session, expense_id: int) -> Expense | None:
    row = session.get(ExpenseEntity, expense_id)
    return _to_expense(row) if row is not None else None


def list_expenses(session: Session, start: datetime, end: datetime) -> list[Expense]:
    rows = session.scalars(
        select(ExpenseEntity)
        .where(ExpenseEntity.payment_date.between(_utc(start), _utc(end)))
        .order_by(ExpenseEntity.payment_date.desc(), ExpenseEntity.id.desc())
    ).all()
    return [_to_expense(r) for r in rows]


def update_expense(
    session: Session,
    expense_id: int,
    *,
    category: Category | None = None,
    payment_status: PaymentStatus | None = None,
) -> bool:
    """Apply user edits to one expense. Returns ``False`` when the id is unknown."""

    changes: dict[str, str] = {}
    if category is not None:
        changes["category"] = category.value
    if payment_status is not None:
        changes["payment_status"] = payment_status.value
    if not changes:
        return session.get(ExpenseEntity, expense_id) is not None
    res = session.execute(
        update(ExpenseEntity).where(ExpenseEntity.id == expense_id).values(**changes)
    )
    return bool(res.rowcount)


def delete_expense(session: Session, expense_id: int) -> bool:
    res = session.execute(delete(ExpenseEntity).where(ExpenseEntity.id == expense_id))
    return bool(res.rowcount)


def last_expense_time(session: Session) -> datetime | None:
    latest = session.execute(select(func.max(ExpenseEntity.payment_date))).scalar_one_or_none()
    return _utc(latest)


def merchant_history(session: Session, merchant: str) -> list[Expense]:
    rows = session.scalars(
        select(ExpenseEntity)
        .where(ExpenseEntity.merchant == merchant)
        .order_by(ExpenseEntity.payment_date.asc(), ExpenseEntity.id.asc())
    ).all()
    return [_to_expense(r) for r in rows]


def update_recurrence(
    session: Session,
    merchant: str,
    recurring_type: RecurringType,
    next_recurring_date: datetime | None,
) -> int:
    """Set the recurrence of every expense of ``merchant``.

    ``NONE`` clears the next date and the cancellation flag so that the row
    invariants hold.
    """

    values: dict[str, object] = {
        "recurring_type": recurring_type.value,
        "next_recurring_date": _utc(next_recurring_date),
    }
    if recurring_type is RecurringType.NONE:
        values["next_recurring_date"] = None
        values["to_be_cancelled"] = False
    res = session.execute(
        update(ExpenseEntity).where(ExpenseEntity.merchant == merchant).values(**values)
    )
    return int(res.rowcount or 0)


def set_cancellation(session: Session, merchant: str, to_be_cancelled: bool) -> int:
    res = session.execute(
        update(ExpenseEntity)
        .where(ExpenseEntity.merchant == merchant)
        .values(to_be_cancelled=to_be_cancelled)
    )
    return int(res.rowcount or 0)


def recurring_expenses(session: Session) -> list[Expense]:
    """Latest expense per recurring merchant, soonest next payment first."""

    ranked = (
        select(
            ExpenseEntity.id,
            func.row_number()
            .over(
                partition_by=ExpenseEntity.merchant,
                order_by=(ExpenseEntity.payment_date.desc(), ExpenseEntity.id.desc()),
            )
            .label("row_rank"),
        )
        .where(ExpenseEntity.recurring_type != RecurringType.NONE.value)
        .subquery()
    )
    rows = session.scalars(
        select(ExpenseEntity)
        .join(ranked, ExpenseEntity.id == ranked.c.id)
        .where(ranked.c.row_rank == 1)
        .order_by(ExpenseEntity.next_recurring_date.asc(), ExpenseEntity.merchant.asc())
    ).all()
    return [_to_expense(r) for r in rows]


# ---- Aggregates --------------------------------------------------------------


def _period(stmt, start: datetime, end: datetime):
    return stmt.where(ExpenseEntity.payment_date.between(_utc(start), _utc(end)))


def total_spending(session: Session, start: datetime, end: datetime) -> float:
    stmt = _period(select(func.coalesce(func.sum(ExpenseEntity.amount), 0.0)), start, end)
    return float(session.execute(stmt).scalar_one())


def _shares(session: Session, column, start: datetime, end: datetime, n: int | None):
    total = total_spending(session, start, end)
    summed = func.sum(ExpenseEntity.amount).label("total")
    stmt = _period(select(column, summed), start, end).group_by(column).order_by(summed.desc())
    if n is not None:
        stmt = stmt.limit(n)
    out: list[SpendingShare] = []
    for key, amount in session.execute(stmt).all():
        pct = (float(amount) / total * 100.0) if total > 0 else 0.0
        out.append(SpendingShare(key=str(key), total=float(amount), percentage=pct))
    return out


def spending_by_category(
    session: Session, start: datetime, end: datetime, n: int | None = None
) -> list[SpendingShare]:
    return _shares(session, ExpenseEntity.category, start, end, n)


def spending_by_merchant(
    session: Session, start: datetime, end: datetime, n: int | None = None
) -> list[SpendingShare]:
    return _shares(session, ExpenseEntity.merchant, start, end, n)


def cumulative_expenses(session: Session, start: datetime, end: datetime) -> list[CumulativePoint]:
    """Running sum of spend ordered by payment date."""

    running = func.sum(ExpenseEntity.amount).over(
        order_by=(ExpenseEntity.payment_date, ExpenseEntity.id)
    )
    stmt = _period(select(ExpenseEntity.payment_date, running), start, end).order_by(
        ExpenseEntity.payment_date, ExpenseEntity.id
    )
    return [
        CumulativePoint(payment_date=ensure_aware(d), cumulative=float(c))
        for d, c in session.execute(stmt).all()
    ]


# ---- Budgets -----------------------------------------------------------------


def get_budget(session: Session, month: date) -> Budget | None:
    row = session.get(BudgetEntity, month)
    if row is None:
        return None
    return Budget(month=row.month, amount=float(row.amount), description=row.description)


def set_budget(session: Session, budget: Budget) -> Budget:
    if budget.month.day != 1:
        raise ValueError("budget month must be the first day of a month")
    if budget.amount <= 0:
        raise ValueError("budget amount must be positive")
    row = session.get(BudgetEntity, budget.month)
    if row is None:
        row = BudgetEntity(month=budget.month, amount=budget.amount)
        session.add(row)
    row.amount = budget.amount
    row.description = budget.description
    row.updated_at = datetime.now(UTC)
    session.flush()
    return budget


def delete_budget(session: Session, month: date) -> bool:
    res = session.execute(delete(BudgetEntity).where(BudgetEntity.month == month))
    return bool(res.rowcount)


# ---- Chat --------------------------------------------------------------------


def add_chat_message(session: Session, message: ChatMessage) -> ChatMessage:
    row = ChatMessageEntity(
        text=message.text,
        is_from_user=message.is_from_user,
        timestamp=_utc(message.timestamp),
    )
    session.add(row)
    session.flush()
    return ChatMessage(
        id=row.id, text=row.text, is_from_user=row.is_from_user, timestamp=message.timestamp
    )


def recent_chat_messages(session: Session, limit: int) -> list[ChatMessage]:
    """The ``limit`` newest messages, returned oldest first."""

    rows = session.scalars(
        select(ChatMessageEntity)
        .order_by(ChatMessageEntity.timestamp.desc(), ChatMessageEntity.id.desc())
        .limit(limit)
    ).all()
    return [
        ChatMessage(
            id=r.id, text=r.text, is_from_user=r.is_from_user, timestamp=ensure_aware(r.timestamp)
        )
        for r in reversed(rows)
    ]


def clear_chat(session: Session) -> int:
    res = session.execute(delete(ChatMessageEntity))
    return int(res.rowcount or 0)


# ---- Store facade ------------------------------------------------------------


class SqlExpenseStore:
    """:class:`ExpenseStore` backed by ``db.client.session_scope``."""

    def __init__(self, *, database_url: str | None = None) -> None:
        self._database_url = database_url

    def _scope(self):
        return session_scope(database_url=self._database_url)

    def last_expense_time(self) -> datetime | None:
        with self._scope() as s:
            return last_expense_time(s)

    def insert_expense(self, expense: Expense) -> Expense | None:
        with self._scope() as s:
            return insert_expense(s, expense)

    def get_expense(self, expense_id: int) -> Expense | None:
        with self._scope() as s:
            return get_expense(s, expense_id)

    def list_expenses(self, start: datetime, end: datetime) -> list[Expense]:
        with self._scope() as s:
            return list_expenses(s, start, end)

    def update_expense(
        self,
        expense_id: int,
        *,
        category: Category | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> bool:
        with self._scope() as s:
            return update_expense(s, expense_id, category=category, payment_status=payment_status)

    def delete_expense(self, expense_id: int) -> bool:
        with self._scope() as s:
            return delete_expense(s, expense_id)

    def merchant_history(self, merchant: str) -> list[Expense]:
        with self._scope() as s:
            return merchant_history(s, merchant)

    def update_recurrence(
        self,
        merchant: str,
        recurring_type: RecurringType,
        next_recurring_date: datetime | None,
    ) -> int:
        with self._scope() as s:
            return update_recurrence(s, merchant, recurring_type, next_recurring_date)

    def set_cancellation(self, merchant: str, to_be_cancelled: bool) -> int:
        with self._scope() as s:
            return set_cancellation(s, merchant, to_be_cancelled)

    def recurring_expenses(self) -> list[Expense]:
        with self._scope() as s:
            return recurring_expenses(s)

    def total_spending(self, start: datetime, end: datetime) -> float:
        with self._scope() as s:
            return total_spending(s, start, end)

    def top_categories(self, start: datetime, end: datetime, n: int) -> list[SpendingShare]:
        with self._scope() as s:
            return spending_by_category(s, start, end, n)

    def top_merchants(self, start: datetime, end: datetime, n: int) -> list[SpendingShare]:
        with self._scope() as s:
            return spending_by_merchant(s, start, end, n)

    def cumulative_expenses(self, start: datetime, end: datetime) -> list[CumulativePoint]:
        with self._scope() as s:
            return cumulative_expenses(s, start, end)

    def get_budget(self, month: date) -> Budget | None:
        with self._scope() as s:
            return get_budget(s, month)

    def set_budget(self, budget: Budget) -> Budget:
        with self._scope() as s:
            return set_budget(s, budget)

    def delete_budget(self, month: date) -> bool:
        with self._scope() as s:
            return delete_budget(s, month)

    def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        with self._scope() as s:
            return add_chat_message(s, message)

    def recent_chat_messages(self, limit: int) -> list[ChatMessage]:
        with self._scope() as s:
            return recent_chat_messages(s, limit)

    def clear_chat(self) -> int:
        with self._scope() as s:
            return clear_chat(s)


__all__ = [
    "ExpenseStore",
    "SqlExpenseStore",
    "add_chat_message",
    "clear_chat",
    "cumulative_expenses",
    "delete_budget",
    "delete_expense",
    "get_budget",
    "get_expense",
    "insert_expense",
    "last_expense_time",
    "list_expenses",
    "merchant_history",
    "recent_chat_messages",
    "recurring_expenses",
    "set_budget",
    "set_cancellation",
    "spending_by_category",
    "spending_by_merchant",
    "total_spending",
    "update_expense",
    "update_recurrence",
]
