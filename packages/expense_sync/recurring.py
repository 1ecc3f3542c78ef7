"""Recurring-payment detection and reminder scheduling.

For every merchant that recurs, all of its expense rows carry the same
``recurring_type`` and ``next_recurring_date``. The next date is one cadence
step past the latest payment, counted from the start of the current run of
payments (see :func:`next_due_date`). A step is a calendar offset
(``relativedelta``), not a fixed number of seconds.

A merchant becomes recurring in one of three ways:

- the extractor labels a new expense with a cadence;
- the payment history shows at least ``MIN_OCCURRENCES`` payments spaced by one
  cadence (within a tolerance);
- the user sets it explicitly via :meth:`RecurringDetector.set_recurring_type`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import SyncConfig
from .dates import add_cadence, ensure_aware, utc_now
from .logging_setup import get_logger, log_event
from .models import EnqueuePolicy, Expense, RecurringType, ReminderKind, ReminderTask, task_name
from .persistence import ExpenseStore
from .scheduler import TaskScheduler

_logger = get_logger("expense_sync.recurring")

MIN_OCCURRENCES = 3

# How far a payment may drift from the exact calendar step and still count.
_TOLERANCE: dict[RecurringType, timedelta] = {
    RecurringType.DAILY: timedelta(hours=6),
    RecurringType.WEEKLY: timedelta(days=1),
    RecurringType.MONTHLY: timedelta(days=3),
    RecurringType.YEARLY: timedelta(days=3),
}


def _step_matches(prev: datetime, cur: datetime, recurring_type: RecurringType) -> bool:
    expected = add_cadence(prev, recurring_type)
    return abs(ensure_aware(cur) - expected) <= _TOLERANCE[recurring_type]


def infer_cadence(
    payment_dates: Sequence[datetime], *, min_occurrences: int = MIN_OCCURRENCES
) -> RecurringType:
    """Infer a cadence from payment dates, or ``NONE``.

    Looks at the most recent payments: the cadence is the one that every gap
    between the last ``min_occurrences`` payments matches.
    """

    if len(payment_dates) < min_occurrences:
        return RecurringType.NONE
    recent = sorted(ensure_aware(d) for d in payment_dates)[-min_occurrences:]
    for candidate in _TOLERANCE:
        if all(_step_matches(a, b, candidate) for a, b in zip(recent, recent[1:])):
            return candidate
    return RecurringType.NONE


def next_due_date(payment_dates: Sequence[datetime], recurring_type: RecurringType) -> datetime:
    """Next expected payment for a merchant paying on ``recurring_type``.

    The step is counted from the first payment of the latest unbroken run, so
    a schedule anchored on the 31st comes back to the 31st after a short
    month. If the run has drifted away from its anchor, the latest payment
    plus one step wins.
    """

    dates = sorted(ensure_aware(d) for d in payment_dates)
    latest = dates[-1]
    fallback = add_cadence(latest, recurring_type)
    start = len(dates) - 1
    while start > 0 and _step_matches(dates[start - 1], dates[start], recurring_type):
        start -= 1
    anchored = add_cadence(dates[start], recurring_type, times=len(dates) - start)
    if abs(anchored - fallback) <= _TOLERANCE[recurring_type]:
        return anchored
    return fallback


@dataclass(frozen=True, slots=True)
class RecurrenceUpdate:
    merchant: str
    recurring_type: RecurringType
    next_recurring_date: datetime | None
    reminder: ReminderTask | None = None


class RecurringDetector:
    """Keeps per-merchant recurrence state and its reminders current."""

    def __init__(
        self,
        store: ExpenseStore,
        scheduler: TaskScheduler,
        *,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._config = config or SyncConfig()
        self._clock = clock

    # ---- Triggers --------------------------------------------------------

    def on_expense_persisted(self, expense: Expense) -> RecurrenceUpdate | None:
        """Advance the merchant's recurrence after a new expense was stored.

        Returns ``None`` when the merchant does not recur.
        """

        history = self._store.merchant_history(expense.merchant)
        if not any(e.id == expense.id for e in history):
            history = [*history, expense]

        recurring_type = expense.recurring_type
        source = "extracted"
        if recurring_type is RecurringType.NONE:
            recurring_type = infer_cadence([e.payment_date for e in history])
            source = "inferred"
        if recurring_type is RecurringType.NONE:
            known = [e for e in history if e.recurring_type is not RecurringType.NONE]
            if not known:
                return None
            recurring_type = known[-1].recurring_type
            source = "existing"

        log_event(
            _logger,
            logging.INFO,
            "recurring:detected",
            merchant=expense.merchant,
            type=recurring_type,
            source=source,
        )
        return self._apply(expense.merchant, recurring_type, history)

    def set_recurring_type(self, merchant: str, recurring_type: RecurringType) -> RecurrenceUpdate:
        """User override of a merchant's cadence. ``NONE`` stops recurrence."""

        history = self._require_history(merchant)
        if recurring_type is RecurringType.NONE:
            self._store.update_recurrence(merchant, RecurringType.NONE, None)
            for kind in (ReminderKind.PAYMENT, ReminderKind.CANCELLATION):
                self._scheduler.cancel(task_name(kind, merchant))
            log_event(_logger, logging.INFO, "recurring:cleared", merchant=merchant)
            return RecurrenceUpdate(merchant, RecurringType.NONE, None)
        return self._apply(merchant, recurring_type, history)

    def set_cancellation(self, merchant: str, to_be_cancelled: bool) -> RecurrenceUpdate:
        """Mark (or unmark) a recurring merchant for cancellation and reschedule."""

        history = self._require_history(merchant)
        latest = history[-1]
        if latest.recurring_type is RecurringType.NONE:
            raise ValueError(f"merchant {merchant!r} is not recurring")
        self._store.set_cancellation(merchant, to_be_cancelled)
        next_date = latest.next_recurring_date or next_due_date(
            [e.payment_date for e in history], latest.recurring_type
        )
        reminder = self.schedule_reminder(merchant, next_date, to_be_cancelled=to_be_cancelled)
        return RecurrenceUpdate(merchant, latest.recurring_type, next_date, reminder)

    def upcoming(self, now: datetime | None = None) -> list[Expense]:
        """Recurring merchants whose next payment is still ahead, soonest first."""

        now = ensure_aware(now or self._clock())
        out = [
            e
            for e in self._store.recurring_expenses()
            if e.next_recurring_date is not None and e.next_recurring_date >= now
        ]
        return sorted(out, key=lambda e: e.next_recurring_date or now)

    def reschedule_all(self) -> list[ReminderTask]:
        """Re-create reminders for every recurring merchant from stored state.

        Used at process start, since the in-process scheduler keeps nothing
        across restarts.
        """

        scheduled: list[ReminderTask] = []
        for e in self._store.recurring_expenses():
            if e.next_recurring_date is None:
                continue
            task = self.schedule_reminder(
                e.merchant, e.next_recurring_date, to_be_cancelled=e.to_be_cancelled
            )
            if task is not None:
                scheduled.append(task)
        return scheduled

    # ---- Scheduling ------------------------------------------------------

    def schedule_reminder(
        self, merchant: str, next_date: datetime, *, to_be_cancelled: bool
    ) -> ReminderTask | None:
        """Schedule the merchant's reminder for ``next_date``.

        A cancellation reminder replaces the payment reminder and vice versa.
        Nothing is scheduled when the fire time is not strictly in the future.
        """

        if to_be_cancelled:
            kind, other = ReminderKind.CANCELLATION, ReminderKind.PAYMENT
            lead = self._config.cancellation_reminder_lead
        else:
            kind, other = ReminderKind.PAYMENT, ReminderKind.CANCELLATION
            lead = self._config.payment_reminder_lead

        self._scheduler.cancel(task_name(other, merchant))
        next_date = ensure_aware(next_date)
        fire_at = next_date - lead
        now = ensure_aware(self._clock())
        if fire_at <= now:
            log_event(
                _logger,
                logging.INFO,
                "recurring:reminder_skipped_past",
                merchant=merchant,
                kind=kind,
                fire_at=fire_at,
            )
            return None
        task = ReminderTask(
            kind=kind,
            fire_at=fire_at,
            merchant=merchant,
            payload={"next_recurring_date": next_date},
        )
        self._scheduler.enqueue_unique(task.name, EnqueuePolicy.REPLACE, fire_at, task)
        return task

    # ---- Internals -------------------------------------------------------

    def _require_history(self, merchant: str) -> list[Expense]:
        history = self._store.merchant_history(merchant)
        if not history:
            raise ValueError(f"no expenses recorded for merchant {merchant!r}")
        return history

    def _apply(
        self, merchant: str, recurring_type: RecurringType, history: Sequence[Expense]
    ) -> RecurrenceUpdate:
        next_date = next_due_date([e.payment_date for e in history], recurring_type)
        self._store.update_recurrence(merchant, recurring_type, next_date)
        to_be_cancelled = any(e.to_be_cancelled for e in history)
        if to_be_cancelled:
            # New rows arrive unflagged; keep the merchant's rows consistent.
            self._store.set_cancellation(merchant, True)
        reminder = self.schedule_reminder(merchant, next_date, to_be_cancelled=to_be_cancelled)
        log_event(
            _logger,
            logging.INFO,
            "recurring:updated",
            merchant=merchant,
            type=recurring_type,
            next=next_date,
            reminder=reminder.kind if reminder else None,
        )
        return RecurrenceUpdate(merchant, recurring_type, next_date, reminder)


__all__ = [
    "MIN_OCCURRENCES",
    "RecurrenceUpdate",
    "RecurringDetector",
    "infer_cadence",
    "next_due_date",
]
