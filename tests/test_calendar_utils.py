"""Tests for calendar_utils module."""

from datetime import date, datetime

import pytest

from accountability.calendar_utils import (
    add_business_days,
    business_days_between,
    current_sprint_number,
    day_bounds,
    is_business_day,
    next_business_day,
    sprint_number_for,
    sprint_window,
)

WORKSPACE_START = date(2024, 1, 1)  # a Monday


class TestIsBusinessDay:
    """Tests for is_business_day()."""

    def test_weekdays_are_business_days(self):
        for day in range(1, 6):  # 2024-01-01 .. 2024-01-05, Mon..Fri
            assert is_business_day(date(2024, 1, day))

    def test_weekend_is_not(self):
        assert not is_business_day(date(2024, 1, 6))
        assert not is_business_day(date(2024, 1, 7))


class TestAddBusinessDays:
    """Tests for add_business_days()."""

    def test_zero_returns_same_day(self):
        assert add_business_days(date(2024, 1, 6), 0) == date(2024, 1, 6)

    def test_friday_plus_one_is_monday(self):
        assert add_business_days(date(2024, 1, 12), 1) == date(2024, 1, 15)

    def test_sunday_plus_one_is_monday(self):
        assert add_business_days(date(2024, 1, 7), 1) == date(2024, 1, 8)

    def test_spans_weekends(self):
        assert add_business_days(date(2024, 1, 3), 5) == date(2024, 1, 10)

    def test_negative_goes_backwards(self):
        assert add_business_days(date(2024, 1, 15), -1) == date(2024, 1, 12)

    def test_next_business_day(self):
        assert next_business_day(date(2024, 1, 5)) == date(2024, 1, 8)


class TestBusinessDaysBetween:
    """Tests for business_days_between()."""

    def test_same_day(self):
        assert business_days_between(date(2024, 1, 3), date(2024, 1, 3)) == 0

    def test_excludes_start_includes_end(self):
        # Fri -> Mon: only Monday counts
        assert business_days_between(date(2024, 1, 12), date(2024, 1, 15)) == 1

    def test_full_week(self):
        assert business_days_between(date(2024, 1, 7), date(2024, 1, 14)) == 5

    def test_backwards_is_negative(self):
        assert business_days_between(date(2024, 1, 15), date(2024, 1, 12)) == -1


class TestSprintWindow:
    """Tests for sprint_window() and current_sprint_number()."""

    def test_first_sprint(self):
        assert sprint_window(1, WORKSPACE_START, 7) == (date(2024, 1, 1), date(2024, 1, 7))

    def test_second_sprint(self):
        assert sprint_window(2, WORKSPACE_START, 7) == (date(2024, 1, 8), date(2024, 1, 14))

    def test_window_crosses_month(self):
        assert sprint_window(5, WORKSPACE_START) == (date(2024, 1, 29), date(2024, 2, 4))

    def test_current_sprint_on_boundaries(self):
        assert current_sprint_number(date(2024, 1, 1), WORKSPACE_START, 7) == 1
        assert current_sprint_number(date(2024, 1, 7), WORKSPACE_START, 7) == 1
        assert current_sprint_number(date(2024, 1, 8), WORKSPACE_START, 7) == 2

    def test_current_sprint_lies_inside_its_window(self):
        today = date(2024, 3, 13)
        number = current_sprint_number(today, WORKSPACE_START)
        start, end = sprint_window(number, WORKSPACE_START)
        assert start <= today <= end

    def test_before_workspace_start_is_not_positive(self):
        assert current_sprint_number(date(2023, 12, 31), WORKSPACE_START, 7) == 0
        assert current_sprint_number(date(2023, 12, 20), WORKSPACE_START, 7) == -1

    def test_sprint_number_for_before_start_is_none(self):
        assert sprint_number_for(date(2023, 12, 31), WORKSPACE_START) is None
        assert sprint_number_for(date(2024, 1, 8), WORKSPACE_START) == 2

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            sprint_window(1, WORKSPACE_START, 0)
        with pytest.raises(ValueError):
            current_sprint_number(date(2024, 1, 8), WORKSPACE_START, -7)


class TestDayBounds:
    def test_half_open_utc_day(self):
        assert day_bounds(date(2024, 1, 8)) == (datetime(2024, 1, 8), datetime(2024, 1, 9))
