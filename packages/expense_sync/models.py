"""Data models for ``expense_sync``.

Plain value objects are frozen, slotted dataclasses. The model-facing payload
(:class:`ExpenseDraft`) is a pydantic model so that the JSON returned by the
extraction service can be validated and coerced in one place.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------


class Currency(StrEnum):
    QAR = "QAR"
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    BDT = "BDT"


class Category(StrEnum):
    FOOD = "FOOD"
    ESSENTIAL = "ESSENTIAL"
    LIFESTYLE = "LIFESTYLE"
    TRANSPORTATION = "TRANSPORTATION"
    HEALTHCARE = "HEALTHCARE"
    SAVINGS = "SAVINGS"
    DEBT = "DEBT"
    EDUCATION = "EDUCATION"
    OTHERS = "OTHERS"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class RecurringType(StrEnum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SyncState(StrEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.COMPLETED, SyncState.FAILED, SyncState.CANCELLED)


class ReminderKind(StrEnum):
    PAYMENT = "PAYMENT"
    CANCELLATION = "CANCELLATION"
    BUDGET = "BUDGET"


class EnqueuePolicy(StrEnum):
    """Collision policy for named deferred tasks.

    ``REPLACE`` supersedes a pending task of the same name; ``KEEP`` ignores the
    new request while one is pending.
    """

    REPLACE = "REPLACE"
    KEEP = "KEEP"


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CandidateMessage:
    """An inbound bank message eligible for extraction."""

    id: str
    address: str
    body: str
    timestamp_millis: int

    @property
    def sent_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_millis / 1000.0, tz=UTC)


class ExpenseDraft(BaseModel):
    """Typed view of one extraction response.

    Validation is lenient on purpose: unknown keys are ignored, numeric strings
    are accepted for ``amount`` and out-of-vocabulary enum values fall back to
    the declared defaults. Only a missing or unusable ``amount`` is rejected.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    amount: float
    currency: Currency = Currency.QAR
    merchant: str = "Unknown"
    category: Category = Category.OTHERS
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, alias="paymentStatus")
    recurring_type: RecurringType = Field(default=RecurringType.NONE, alias="recurringType")
    payment_date: date | None = Field(default=None, alias="paymentDate")

    @model_validator(mode="before")
    @classmethod
    def _merchant_from_description(cls, data: Any) -> Any:
        # Older prompts asked for "description" instead of "merchant".
        if isinstance(data, dict) and not data.get("merchant") and data.get("description"):
            return {**data, "merchant": data["description"]}
        return data

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_positive_finite(cls, v: Any) -> float:
        if isinstance(v, bool):
            raise ValueError("amount must be numeric")
        if isinstance(v, str):
            v = v.replace(",", "").strip()
        try:
            out = float(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"amount must be numeric, got {v!r}") from e
        if not math.isfinite(out) or out <= 0:
            raise ValueError(f"amount must be a positive finite number, got {out!r}")
        return out

    @field_validator("merchant", mode="before")
    @classmethod
    def _merchant_non_blank(cls, v: Any) -> str:
        s = " ".join(str(v).split()) if v is not None else ""
        return s or "Unknown"

    @field_validator("currency", "category", "payment_status", "recurring_type", mode="before")
    @classmethod
    def _enum_or_default(cls, v: Any, info: ValidationInfo) -> Any:
        enum_type, default = _ENUM_FIELDS[info.field_name]
        if v is None:
            return default
        key = str(v).strip().upper()
        if info.field_name == "recurring_type" and key in ("ONETIME", "ONE_TIME"):
            return RecurringType.NONE
        try:
            return enum_type(key)
        except ValueError:
            return default

    @field_validator("payment_date", mode="before")
    @classmethod
    def _lenient_date(cls, v: Any) -> date | None:
        if v is None or isinstance(v, date):
            return v
        s = str(v).strip()
        if not s:
            return None
        try:
            return date.fromisoformat(s[:10])
        except ValueError:
            return None


_ENUM_FIELDS: dict[str, tuple[type[StrEnum], StrEnum]] = {
    "currency": (Currency, Currency.QAR),
    "category": (Category, Category.OTHERS),
    "payment_status": (PaymentStatus, PaymentStatus.PENDING),
    "recurring_type": (RecurringType, RecurringType.NONE),
}


@dataclass(frozen=True, slots=True)
class Expense:
    """A persisted expense.

    Invariants
    ----------
    - ``recurring_type == NONE`` implies ``next_recurring_date is None``.
    - ``to_be_cancelled`` implies ``recurring_type != NONE``.
    """

    amount: float
    currency: Currency
    merchant: str
    category: Category
    payment_status: PaymentStatus
    recurring_type: RecurringType
    payment_date: datetime
    id: int | None = None
    due_date: datetime | None = None
    next_recurring_date: datetime | None = None
    to_be_cancelled: bool = False
    created_at: datetime | None = None
    source_message_id: str | None = None

    def __post_init__(self) -> None:
        if not math.isfinite(self.amount) or self.amount <= 0:
            raise ValueError(f"amount must be a positive finite number, got {self.amount!r}")
        if self.recurring_type is RecurringType.NONE and self.next_recurring_date is not None:
            raise ValueError("non-recurring expense cannot carry a next_recurring_date")
        if self.to_be_cancelled and self.recurring_type is RecurringType.NONE:
            raise ValueError("only recurring expenses can be marked for cancellation")

    @classmethod
    def from_draft(cls, draft: ExpenseDraft, message: CandidateMessage) -> Expense:
        """Build a new expense from an extraction result.

        The payment date is the message timestamp; the model's own date is a
        hint only and is never trusted over the carrier's clock.
        """

        return cls(
            amount=draft.amount,
            currency=draft.currency,
            merchant=draft.merchant,
            category=draft.category,
            payment_status=draft.payment_status,
            recurring_type=draft.recurring_type,
            payment_date=message.sent_at,
            source_message_id=message.id,
        )


@dataclass(frozen=True, slots=True)
class SyncProgress:
    total: int = 0
    current: int = 0
    skipped: int = 0
    message: str | None = None


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of one orchestrator run."""

    state: SyncState
    progress: SyncProgress
    persisted: tuple[Expense, ...] = ()
    error: BaseException | None = None


@dataclass(frozen=True, slots=True)
class ReminderTask:
    kind: ReminderKind
    fire_at: datetime
    merchant: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return task_name(self.kind, self.merchant)


def task_name(kind: ReminderKind, merchant: str | None = None) -> str:
    """Return the unique scheduler key for a ``(kind, merchant)`` pair.

    Merchants are keyed exactly as stored, matching how expense rows are grouped.
    """

    if merchant is None:
        return f"reminder:{kind.value.lower()}"
    return f"reminder:{kind.value.lower()}:{merchant}"


# ---------------------------------------------------------------------------
# Budgets, chat, aggregates
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Budget:
    month: date
    amount: float
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ChatMessage:
    text: str
    is_from_user: bool
    timestamp: datetime
    id: int | None = None


@dataclass(frozen=True, slots=True)
class MonthInfo:
    start: datetime
    end: datetime


@dataclass(frozen=True, slots=True)
class SpendingShare:
    """Total spend for one category or merchant plus its share of the period."""

    key: str
    total: float
    percentage: float


@dataclass(frozen=True, slots=True)
class CumulativePoint:
    payment_date: datetime
    cumulative: float


__all__ = [
    "Budget",
    "CandidateMessage",
    "Category",
    "ChatMessage",
    "CumulativePoint",
    "Currency",
    "EnqueuePolicy",
    "Expense",
    "ExpenseDraft",
    "MonthInfo",
    "PaymentStatus",
    "RecurringType",
    "ReminderKind",
    "ReminderTask",
    "SpendingShare",
    "SyncProgress",
    "SyncResult",
    "SyncState",
    "task_name",
]
