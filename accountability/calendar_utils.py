# accountability/calendar_utils.py
"""
Business-day and sprint-window arithmetic.

Everything here is pure: plain `datetime.date` in, `date`/int out. Weekends
(Saturday, Sunday) are the only non-business days; holidays are not modelled.
"""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

SPRINT_DURATION_DAYS = 7


def is_business_day(day: date) -> bool:
    # Monday=0 ... Saturday=5, Sunday=6
    return day.weekday() < 5


def add_business_days(day: date, n: int) -> date:
    """
    Move `n` business days away from `day` (backwards when n is negative).
    The start day itself is never counted, so add_business_days(friday, 1)
    is the following Monday.
    """
    if n == 0:
        return day

    step = timedelta(days=1 if n > 0 else -1)
    remaining = abs(n)
    current = day
    while remaining > 0:
        current += step
        if is_business_day(current):
            remaining -= 1
    return current


def next_business_day(day: date) -> date:
    return add_business_days(day, 1)


def business_days_between(start: date, end: date) -> int:
    """
    Business days in (start, end]; negative when end precedes start.
    """
    if end == start:
        return 0

    step = timedelta(days=1 if end > start else -1)
    count = 0
    current = start
    while current != end:
        current += step
        if is_business_day(current):
            count += 1
    return count if end > start else -count


def _check_length(sprint_length: int) -> None:
    if sprint_length <= 0:
        raise ValueError(f"sprint_length must be positive, got {sprint_length}")


def sprint_window(
    sprint_number: int,
    workspace_start: date,
    sprint_length: int = SPRINT_DURATION_DAYS,
) -> Tuple[date, date]:
    """Inclusive (start, end) of a sprint."""
    _check_length(sprint_length)
    start = workspace_start + timedelta(days=(sprint_number - 1) * sprint_length)
    end = start + timedelta(days=sprint_length - 1)
    return start, end


def current_sprint_number(
    today: date,
    workspace_start: date,
    sprint_length: int = SPRINT_DURATION_DAYS,
) -> int:
    """
    floor((today - workspace_start) / sprint_length) + 1.

    Dates before the workspace start give 0 or a negative number; callers
    treat anything below 1 as "no current sprint".
    """
    _check_length(sprint_length)
    return (today - workspace_start).days // sprint_length + 1


def sprint_number_for(
    day: date,
    workspace_start: date,
    sprint_length: int = SPRINT_DURATION_DAYS,
) -> Optional[int]:
    number = current_sprint_number(day, workspace_start, sprint_length)
    return number if number >= 1 else None


def utc_today(now: datetime) -> date:
    return now.date()


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """[00:00, next 00:00) of `day`, as naive UTC datetimes."""
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)
