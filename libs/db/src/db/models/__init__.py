"""Shared SQLAlchemy models registry for the expense-sync database."""

from .expenses import Base, BudgetEntity, ChatMessageEntity, ExpenseEntity, SmsMessageEntity

__all__ = [
    "Base",
    "BudgetEntity",
    "ChatMessageEntity",
    "ExpenseEntity",
    "SmsMessageEntity",
]
