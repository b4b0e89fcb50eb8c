"""
Unit tests for time windows.
"""

from datetime import date, datetime

import pytest

from exceptions import InvalidWindowError
from windows import (
    DateRangeWindow,
    MonthWindow,
    end_of_day,
    iter_months,
    month_bounds,
    month_label,
    parse_date,
    previous_month,
    shift_month,
    trailing_months,
)


class TestParsing:
    """Tests for parse_date and end_of_day."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("2024-03-10", datetime(2024, 3, 10)),
            ("2024-03-10T08:30:00Z", datetime(2024, 3, 10, 8, 30)),
            (date(2024, 3, 10), datetime(2024, 3, 10)),
            (datetime(2024, 3, 10, 9, 15), datetime(2024, 3, 10, 9, 15)),
        ],
    )
    def test_parse_date(self, value, expected):
        assert parse_date(value) == expected

    @pytest.mark.parametrize("value", ["10/03/2024", "", 20240310])
    def test_parse_date_rejects(self, value):
        with pytest.raises(InvalidWindowError):
            parse_date(value)

    def test_end_of_day(self):
        assert end_of_day(datetime(2024, 3, 10, 8)) == datetime(2024, 3, 10, 23, 59, 59, 999999)


class TestMonths:
    """Month arithmetic helpers."""

    def test_month_bounds_leap_february(self):
        start, end = month_bounds(2024, 2)

        assert start == datetime(2024, 2, 1)
        assert end == datetime(2024, 2, 29, 23, 59, 59, 999999)

    @pytest.mark.parametrize("month", [0, 13])
    def test_month_bounds_rejects_bad_month(self, month):
        with pytest.raises(InvalidWindowError):
            month_bounds(2024, month)

    def test_previous_month_wraps_january(self):
        assert previous_month(2024, 1) == (2023, 12)
        assert previous_month(2024, 7) == (2024, 6)

    @pytest.mark.parametrize(
        "offset, expected",
        [(0, (2024, 3)), (-3, (2023, 12)), (10, (2025, 1)), (-27, (2021, 12))],
    )
    def test_shift_month(self, offset, expected):
        assert shift_month(2024, 3, offset) == expected

    def test_month_label(self):
        assert month_label(2023, 10) == "Oct 2023"


class TestWindows:
    """MonthWindow and DateRangeWindow."""

    def test_month_window(self):
        window = MonthWindow(2024, 3)

        assert window.start == datetime(2024, 3, 1)
        assert window.end.date() == date(2024, 3, 31)
        assert window.label == "Mar 2024"
        assert MonthWindow.containing("2024-03-31T23:00:00") == window

    def test_month_window_validates(self):
        with pytest.raises(InvalidWindowError):
            MonthWindow(2024, 13)

    def test_range_includes_whole_last_day(self):
        window = DateRangeWindow.from_values("2024-01-15", date(2024, 3, 10))

        assert window.start == datetime(2024, 1, 15)
        assert window.end == datetime(2024, 3, 10, 23, 59, 59, 999999)
        assert window.label == "2024-01-15..2024-03-10"

    def test_single_day_range(self):
        window = DateRangeWindow.from_values("2024-03-10", "2024-03-10")

        assert window.start.date() == window.end.date()

    def test_inverted_range(self):
        with pytest.raises(InvalidWindowError):
            DateRangeWindow.from_values("2024-03-10", "2024-03-09")


class TestIteration:
    """iter_months and trailing_months."""

    def test_iter_months_counts_partial_months(self):
        months = list(iter_months(datetime(2023, 11, 20), datetime(2024, 2, 1)))

        assert [(m.year, m.month) for m in months] == [(2023, 11), (2023, 12), (2024, 1), (2024, 2)]

    def test_iter_months_rejects_inverted(self):
        with pytest.raises(InvalidWindowError):
            list(iter_months(datetime(2024, 2, 1), datetime(2024, 1, 1)))

    def test_trailing_months_crosses_year(self):
        months = trailing_months(6, date(2024, 3, 10))

        assert [m.label for m in months] == ["Oct 2023", "Nov 2023", "Dec 2023", "Jan 2024", "Feb 2024", "Mar 2024"]

    def test_trailing_months_requires_positive_count(self):
        with pytest.raises(InvalidWindowError):
            trailing_months(0, date(2024, 3, 10))
