"""Turn due reminder tasks into user notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .logging_setup import get_logger, log_event
from .models import ReminderKind, ReminderTask
from .scheduler import InMemoryTaskScheduler

_logger = get_logger("expense_sync.notifications")

REMINDER_CHANNEL = "reminders"
BUDGET_CHANNEL = "budget"


class NotificationSink(Protocol):
    def show(
        self, channel: str, title: str, body: str, icon: str | None, tap_intent: str | None
    ) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes notifications to the package logger."""

    def show(
        self, channel: str, title: str, body: str, icon: str | None, tap_intent: str | None
    ) -> None:
        log_event(
            _logger, logging.INFO, "notifications:show", channel=channel, title=title, body=body
        )


@dataclass(frozen=True, slots=True)
class Notification:
    channel: str
    title: str
    body: str
    icon: str | None = None
    tap_intent: str | None = None


def _fmt_date(dt: datetime | None) -> str:
    return dt.strftime("%d %b %Y") if dt is not None else "soon"


def build_notification(task: ReminderTask) -> Notification:
    """Render a reminder task.

    Raises ``ValueError`` for a budget task without positive amounts; such a
    task is stale and must not produce a warning.
    """

    payload = task.payload
    if task.kind is ReminderKind.PAYMENT:
        return Notification(
            channel=REMINDER_CHANNEL,
            title="Upcoming payment",
            body=f"{task.merchant} is due on {_fmt_date(payload.get('next_recurring_date'))}",
            icon="ic_payment",
            tap_intent="subscriptions",
        )
    if task.kind is ReminderKind.CANCELLATION:
        return Notification(
            channel=REMINDER_CHANNEL,
            title="Cancel subscription",
            body=(
                f"Cancel {task.merchant} before "
                f"{_fmt_date(payload.get('next_recurring_date'))} to avoid the next charge"
            ),
            icon="ic_cancel",
            tap_intent="subscriptions",
        )
    budget = float(payload.get("budget") or 0)
    current = float(payload.get("current") or 0)
    if budget <= 0 or current <= 0:
        raise ValueError(f"budget reminder needs positive amounts, got {budget=} {current=}")
    return Notification(
        channel=BUDGET_CHANNEL,
        title="Budget exceeded",
        body=f"You have spent {current:,.2f} of your {budget:,.2f} budget this month",
        icon="ic_budget",
        tap_intent="budget",
    )


class ReminderDispatcher:
    """Pop due tasks from the scheduler and show them on the sink."""

    def __init__(self, scheduler: InMemoryTaskScheduler, sink: NotificationSink) -> None:
        self._scheduler = scheduler
        self._sink = sink

    def run_due(self, now: datetime) -> list[Notification]:
        shown: list[Notification] = []
        for task in self._scheduler.pop_due(now):
            reminder = task.payload
            if not isinstance(reminder, ReminderTask):
                _logger.warning("notifications:skip_foreign_task name=%s", task.name)
                continue
            try:
                note = build_notification(reminder)
            except ValueError as e:
                _logger.warning("notifications:invalid_task name=%s error=%s", task.name, e)
                continue
            try:
                self._sink.show(note.channel, note.title, note.body, note.icon, note.tap_intent)
            except Exception as e:  # noqa: BLE001 - sink is fire-and-forget
                _logger.error(
                    "notifications:sink_failed name=%s error=%s", task.name, e.__class__.__name__
                )
                continue
            shown.append(note)
        return shown


__all__ = [
    "BUDGET_CHANNEL",
    "LoggingNotificationSink",
    "Notification",
    "NotificationSink",
    "REMINDER_CHANNEL",
    "ReminderDispatcher",
    "build_notification",
]
