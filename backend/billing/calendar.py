"""Clock and month arithmetic used by the billing engine.

Every date decision in billing goes through a ``Clock`` so tests can pin
"now" with ``FixedClock``. Month helpers operate on ``datetime.date`` values
in UTC calendar terms.
"""

from __future__ import annotations

import calendar as _calendar
from datetime import date, datetime, timedelta
from typing import Protocol

from django.utils import timezone


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    def now(self) -> datetime:
        return timezone.now()

    def today(self) -> date:
        return timezone.localdate()


class FixedClock:
    def __init__(self, moment: datetime | date):
        if not isinstance(moment, datetime):
            moment = datetime(moment.year, moment.month, moment.day, 12, 0)
        if timezone.is_naive(moment):
            moment = timezone.make_aware(moment, timezone.get_fixed_timezone(0))
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def today(self) -> date:
        return self._moment.date()

    def advance(self, *, days: int = 0, seconds: int = 0) -> None:
        self._moment = self._moment + timedelta(days=days, seconds=seconds)


system_clock = SystemClock()


def days_in_month(value: date) -> int:
    return _calendar.monthrange(value.year, value.month)[1]


def last_day_of_month(value: date) -> date:
    return value.replace(day=days_in_month(value))


def first_day_of_next_month(value: date) -> date:
    if value.month == 12:
        return date(value.year + 1, 1, 1)
    return date(value.year, value.month + 1, 1)


def add_months(value: date, months: int) -> date:
    """Shift ``value`` by ``months``, clamping the day to the target month."""
    month_index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, _calendar.monthrange(year, month)[1])
    return date(year, month, day)
