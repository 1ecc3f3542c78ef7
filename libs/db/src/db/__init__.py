"""db: shared database library (SQLAlchemy/Alembic).

Public exports
--------------
- ``Base`` and ``metadata`` for Alembic autogenerate/targeting
- ORM models in ``db.models.expenses`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.expenses import (
    Base,
    BudgetEntity,
    ChatMessageEntity,
    ExpenseEntity,
    SmsMessageEntity,
)

# Re-export SQLAlchemy metadata for Alembic's env.py
metadata = Base.metadata

__all__ = [
    "Base",
    "metadata",
    "BudgetEntity",
    "ChatMessageEntity",
    "ExpenseEntity",
    "SmsMessageEntity",
]
