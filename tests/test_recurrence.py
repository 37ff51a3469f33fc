from datetime import datetime

import pytest

from famledger.models import Frequency, Horizon
from famledger.recurrence import RecurrenceSchedule, add_months, horizon_target


def test_add_months_clamps_to_last_day() -> None:
    assert add_months(datetime(2024, 1, 31, 9, 30), 1) == datetime(2024, 2, 29, 9, 30)
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)
    assert add_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)


def test_horizon_targets() -> None:
    now = datetime(2024, 1, 31, 15, 30)
    assert horizon_target(Horizon.TODAY, now) == now
    assert horizon_target(Horizon.NEXT_WEEK, now) == datetime(2024, 2, 7, 15, 30)
    assert horizon_target(Horizon.NEXT_MONTH, now) == datetime(2024, 2, 29)


def test_monthly_schedule_does_not_drift_after_short_month() -> None:
    schedule = RecurrenceSchedule(Frequency.MONTHLY, datetime(2024, 1, 31, 8, 0))
    dates = list(schedule.occurrences(datetime(2024, 5, 31, 8, 0)))
    assert dates == [
        datetime(2024, 1, 31, 8, 0),
        datetime(2024, 2, 29, 8, 0),
        datetime(2024, 3, 31, 8, 0),
        datetime(2024, 4, 30, 8, 0),
        datetime(2024, 5, 31, 8, 0),
    ]


def test_yearly_schedule_on_leap_day() -> None:
    schedule = RecurrenceSchedule(Frequency.YEARLY, datetime(2024, 2, 29))
    assert schedule.occurrence(1) == datetime(2025, 2, 28)
    assert schedule.occurrence(4) == datetime(2028, 2, 29)


def test_schedule_is_bounded_by_until_and_end_date() -> None:
    start = datetime(2024, 1, 1, 9, 0)
    open_ended = RecurrenceSchedule(Frequency.DAILY, start)
    assert open_ended.count_until(datetime(2024, 1, 5, 9, 0)) == 5
    assert open_ended.count_until(datetime(2024, 1, 5, 8, 59)) == 4

    bounded = RecurrenceSchedule(Frequency.WEEKLY, start, end=datetime(2024, 1, 20))
    assert list(bounded.occurrences(datetime(2024, 12, 31))) == [
        datetime(2024, 1, 1, 9, 0),
        datetime(2024, 1, 8, 9, 0),
        datetime(2024, 1, 15, 9, 0),
    ]


def test_schedule_before_start_is_empty() -> None:
    schedule = RecurrenceSchedule(Frequency.DAILY, datetime(2024, 2, 1))
    assert schedule.count_until(datetime(2024, 1, 31)) == 0
    with pytest.raises(ValueError):
        schedule.occurrence(-1)
