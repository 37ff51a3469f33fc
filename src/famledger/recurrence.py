"""Occurrence arithmetic for recurring transaction rules."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional

from .models import Frequency, Horizon


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole calendar months, clamping to the month's last day."""

    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def horizon_target(horizon: Horizon, now: datetime) -> datetime:
    """Return the latest instant that ``horizon`` allows generating up to."""

    if horizon is Horizon.NEXT_WEEK:
        return now + timedelta(days=7)
    if horizon is Horizon.NEXT_MONTH:
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return add_months(midnight, 1)
    return now


@dataclass(slots=True, frozen=True)
class RecurrenceSchedule:
    """Occurrence dates of a rule, always counted from its start date.

    Occurrence ``k`` is ``start + k`` steps. Month and year steps go through
    :func:`add_months`, so a rule anchored on the 31st fires on the last day of
    shorter months and returns to the 31st afterwards.
    """

    frequency: Frequency
    start: datetime
    end: Optional[datetime] = None

    def occurrence(self, index: int) -> datetime:
        if index < 0:
            raise ValueError("Occurrence index must be zero or greater.")
        if self.frequency is Frequency.DAILY:
            return self.start + timedelta(days=index)
        if self.frequency is Frequency.WEEKLY:
            return self.start + timedelta(weeks=index)
        if self.frequency is Frequency.MONTHLY:
            return add_months(self.start, index)
        return add_months(self.start, 12 * index)

    def occurrences(self, until: datetime) -> Iterator[datetime]:
        """Yield occurrences up to and including ``until`` and the end date."""

        index = 0
        while True:
            moment = self.occurrence(index)
            if moment > until:
                return
            if self.end is not None and moment > self.end:
                return
            yield moment
            index += 1

    def count_until(self, until: datetime) -> int:
        return sum(1 for _ in self.occurrences(until))


__all__ = ["RecurrenceSchedule", "add_months", "horizon_target"]
