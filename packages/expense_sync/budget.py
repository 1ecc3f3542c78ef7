"""Budget threshold warnings.

A warning is a ``BUDGET`` reminder enqueued with the ``KEEP`` policy: while one
is pending, further threshold crossings are ignored, so repeated checks in the
same period never stack notifications.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from .dates import ensure_aware, month_info, month_key, utc_now
from .logging_setup import get_logger
from .models import EnqueuePolicy, ReminderKind, ReminderTask
from .persistence import ExpenseStore
from .scheduler import TaskScheduler

_logger = get_logger("expense_sync.budget")


class BudgetNotifier:
    def __init__(
        self,
        scheduler: TaskScheduler,
        *,
        store: ExpenseStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._clock = clock

    def check(self, budget: float, current: float) -> bool:
        """Enqueue a warning when ``current >= budget``.

        Returns ``True`` only when a new warning was actually enqueued.
        Raises ``ValueError`` for a non-positive budget or spend.
        """

        if budget <= 0 or current <= 0:
            raise ValueError(f"budget and current spend must be positive, got {budget=} {current=}")
        if current < budget:
            return False
        task = ReminderTask(
            kind=ReminderKind.BUDGET,
            fire_at=ensure_aware(self._clock()),
            payload={"budget": budget, "current": current},
        )
        enqueued = self._scheduler.enqueue_unique(
            task.name, EnqueuePolicy.KEEP, task.fire_at, task
        )
        _logger.info(
            "budget:threshold_crossed budget=%.2f current=%.2f enqueued=%s",
            budget,
            current,
            enqueued,
        )
        return enqueued

    def check_month(self, now: datetime | None = None) -> bool:
        """Check the month containing ``now`` against its stored budget.

        Months without a budget, or with no spend yet, are skipped.
        """

        if self._store is None:
            raise RuntimeError("check_month() requires a store")
        now = ensure_aware(now or self._clock())
        budget = self._store.get_budget(month_key(now))
        if budget is None:
            _logger.debug("budget:no_budget month=%s", month_key(now).isoformat())
            return False
        month = month_info(now)
        current = self._store.total_spending(month.start, month.end)
        if current <= 0:
            return False
        return self.check(budget.amount, current)


__all__ = ["BudgetNotifier"]
