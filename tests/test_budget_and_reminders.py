# ruff: noqa: E402, I001
from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from expense_sync.budget import BudgetNotifier
from expense_sync.models import Budget, EnqueuePolicy, ReminderKind, ReminderTask, task_name
from expense_sync.notifications import (
    BUDGET_CHANNEL,
    REMINDER_CHANNEL,
    ReminderDispatcher,
    build_notification,
)
from expense_sync.persistence import SqlExpenseStore
from expense_sync.scheduler import InMemoryTaskScheduler

from tests.helpers.db import make_expense, seed_expenses
from tests.helpers.fakes import FakeClock

_NOW = datetime(2025, 3, 15, 9, 0, tzinfo=UTC)


class _RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.shown: list[tuple[str, str, str]] = []

    def show(self, channel, title, body, icon, tap_intent) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.shown.append((channel, title, body))


# ---- Scheduler -----------------------------------------------------------------


def test_replace_policy_supersedes_pending_task():
    sched = InMemoryTaskScheduler()
    assert sched.enqueue_unique("t", EnqueuePolicy.REPLACE, _NOW, "first")
    assert sched.enqueue_unique("t", EnqueuePolicy.REPLACE, _NOW + timedelta(hours=1), "second")

    pending = sched.pending("t")

    assert pending is not None
    assert pending.payload == "second"
    assert len(sched.all_pending()) == 1


def test_keep_policy_ignores_new_request_while_pending():
    sched = InMemoryTaskScheduler()
    assert sched.enqueue_unique("t", EnqueuePolicy.KEEP, _NOW, "first")
    assert not sched.enqueue_unique("t", EnqueuePolicy.KEEP, _NOW, "second")

    pending = sched.pending("t")
    assert pending is not None and pending.payload == "first"

    assert sched.cancel("t")
    assert not sched.cancel("t")
    assert sched.enqueue_unique("t", EnqueuePolicy.KEEP, _NOW, "third")


def test_pop_due_returns_only_due_tasks_in_order():
    sched = InMemoryTaskScheduler()
    sched.enqueue_unique("later", EnqueuePolicy.REPLACE, _NOW + timedelta(days=2))
    sched.enqueue_unique("b", EnqueuePolicy.REPLACE, _NOW)
    sched.enqueue_unique("a", EnqueuePolicy.REPLACE, _NOW - timedelta(hours=1))

    due = sched.pop_due(_NOW)

    assert [t.name for t in due] == ["a", "b"]
    assert [t.name for t in sched.all_pending()] == ["later"]


# ---- Budget --------------------------------------------------------------------


def test_budget_warning_is_enqueued_once_per_pending_period():
    clock = FakeClock(_NOW)
    sched = InMemoryTaskScheduler()
    notifier = BudgetNotifier(sched, clock=clock.now)

    assert notifier.check(1000.0, 999.0) is False
    assert notifier.check(1000.0, 1000.0) is True
    assert notifier.check(1000.0, 1200.0) is False

    pending = sched.pending(task_name(ReminderKind.BUDGET))
    assert pending is not None
    assert pending.payload.payload == {"budget": 1000.0, "current": 1000.0}


@pytest.mark.parametrize("budget,current", [(0.0, 10.0), (-5.0, 10.0), (100.0, 0.0)])
def test_budget_check_rejects_non_positive_amounts(budget: float, current: float):
    notifier = BudgetNotifier(InMemoryTaskScheduler())

    with pytest.raises(ValueError):
        notifier.check(budget, current)


def test_check_month_reads_budget_and_spend_from_store(database_url: str):
    clock = FakeClock(_NOW)
    store = SqlExpenseStore(database_url=database_url)
    sched = InMemoryTaskScheduler()
    notifier = BudgetNotifier(sched, store=store, clock=clock.now)

    # No budget yet: nothing to compare against.
    assert notifier.check_month() is False

    store.set_budget(Budget(month=date(2025, 3, 1), amount=500.0))
    seed_expenses(
        database_url,
        [
            make_expense("Carrefour", 300, payment_date=datetime(2025, 3, 2, tzinfo=UTC)),
            make_expense("Lulu", 250, payment_date=datetime(2025, 3, 14, tzinfo=UTC)),
            # Previous month does not count.
            make_expense("Lulu", 900, payment_date=datetime(2025, 2, 27, tzinfo=UTC)),
        ],
    )

    assert notifier.check_month() is True
    pending = sched.pending(task_name(ReminderKind.BUDGET))
    assert pending is not None
    assert pending.payload.payload["current"] == pytest.approx(550.0)


def test_check_month_without_store_is_a_programming_error():
    with pytest.raises(RuntimeError):
        BudgetNotifier(InMemoryTaskScheduler()).check_month(_NOW)


# ---- Notifications -------------------------------------------------------------


def test_payment_and_cancellation_notifications():
    nxt = datetime(2025, 4, 10, 12, tzinfo=UTC)
    pay = ReminderTask(ReminderKind.PAYMENT, _NOW, "Netflix", {"next_recurring_date": nxt})
    cancel = ReminderTask(ReminderKind.CANCELLATION, _NOW, "Netflix", {"next_recurring_date": nxt})

    p = build_notification(pay)
    c = build_notification(cancel)

    assert p.channel == c.channel == REMINDER_CHANNEL
    assert "Netflix" in p.body and "10 Apr 2025" in p.body
    assert c.title == "Cancel subscription"
    assert "before 10 Apr 2025" in c.body


def test_budget_notification_requires_positive_amounts():
    ok = ReminderTask(ReminderKind.BUDGET, _NOW, payload={"budget": 500.0, "current": 550.0})
    stale = ReminderTask(ReminderKind.BUDGET, _NOW, payload={"budget": 0, "current": 550.0})

    assert build_notification(ok).channel == BUDGET_CHANNEL
    with pytest.raises(ValueError):
        build_notification(stale)


def test_dispatcher_shows_due_reminders_and_skips_invalid_ones():
    sched = InMemoryTaskScheduler()
    sink = _RecordingSink()
    for task in (
        ReminderTask(ReminderKind.PAYMENT, _NOW - timedelta(minutes=1), "Netflix"),
        ReminderTask(ReminderKind.BUDGET, _NOW, payload={"budget": -1, "current": 5}),
        ReminderTask(ReminderKind.PAYMENT, _NOW + timedelta(days=1), "Spotify"),
    ):
        sched.enqueue_unique(task.name, EnqueuePolicy.REPLACE, task.fire_at, task)

    shown = ReminderDispatcher(sched, sink).run_due(_NOW)

    assert [n.title for n in shown] == ["Upcoming payment"]
    assert len(sink.shown) == 1
    assert [t.name for t in sched.all_pending()] == [task_name(ReminderKind.PAYMENT, "Spotify")]


def test_dispatcher_survives_sink_failures():
    sched = InMemoryTaskScheduler()
    task = ReminderTask(ReminderKind.PAYMENT, _NOW, "Netflix")
    sched.enqueue_unique(task.name, EnqueuePolicy.REPLACE, task.fire_at, task)

    assert ReminderDispatcher(sched, _RecordingSink(fail=True)).run_due(_NOW) == []
    assert sched.all_pending() == []
