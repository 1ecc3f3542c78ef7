"""Calendar helpers shared by the sync, recurrence and budget code.

All datetimes handled here are timezone-aware. Naive inputs are assumed to be
UTC, which is also how SQLite hands them back.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

from dateutil.relativedelta import relativedelta

from .models import MonthInfo, RecurringType

_CADENCE: dict[RecurringType, relativedelta] = {
    RecurringType.DAILY: relativedelta(days=1),
    RecurringType.WEEKLY: relativedelta(weeks=1),
    RecurringType.MONTHLY: relativedelta(months=1),
    RecurringType.YEARLY: relativedelta(years=1),
}


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def to_millis(dt: datetime) -> int:
    return int(ensure_aware(dt).timestamp() * 1000)


def from_millis(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=UTC)


def cadence(recurring_type: RecurringType) -> relativedelta:
    """Return the calendar offset for a recurrence type.

    Raises ``ValueError`` for ``NONE``, which has no cadence.
    """

    try:
        return _CADENCE[recurring_type]
    except KeyError:
        raise ValueError(f"recurring type {recurring_type} has no cadence") from None


def add_cadence(dt: datetime, recurring_type: RecurringType, times: int = 1) -> datetime:
    """Advance ``dt`` by ``times`` cadence steps.

    Steps are taken from the original date in one shot (``dt + 3 months``), not
    chained, so a payment on Jan 31 recurs on Feb 28/29, Mar 31, Apr 30.
    """

    step = cadence(recurring_type)
    return ensure_aware(dt) + step * times


def month_info(now: datetime, offset: int = 0) -> MonthInfo:
    """Return ``[start, end]`` of the month ``offset`` months from ``now``.

    ``end`` is the last microsecond of the month so that ``BETWEEN`` style
    comparisons include the whole final day.
    """

    anchor = ensure_aware(now).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    start = anchor + relativedelta(months=offset)
    end = start + relativedelta(months=1) - timedelta(microseconds=1)
    return MonthInfo(start=start, end=end)


def month_key(now: datetime | date) -> date:
    """First day of the month containing ``now``; the key budgets are stored under."""

    return date(now.year, now.month, 1)


def format_message_date(dt: datetime) -> str:
    """Render a timestamp the way bank messages are shown to the extractor."""

    return ensure_aware(dt).strftime("%d/%m/%Y %H:%M:%S")


__all__ = [
    "add_cadence",
    "cadence",
    "ensure_aware",
    "format_message_date",
    "from_millis",
    "month_info",
    "month_key",
    "to_millis",
    "utc_now",
]
