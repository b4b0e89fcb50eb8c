"""
Time windows used to scope aggregation queries.

A window is either a calendar month (``MonthWindow``) or an explicit,
inclusive date range (``DateRangeWindow``). Both expose ``start``/``end``
datetimes so query code never has to care which one it was given.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterator, List, Optional, Tuple, Union

from exceptions import InvalidWindowError

logger = logging.getLogger(__name__)

MONTH_ABBREVIATIONS = (
    "", "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)

DateLike = Union[str, date, datetime]


def parse_date(value: DateLike, field: str = "date") -> datetime:
    """
    Coerce a string (ISO format), date or datetime into a naive datetime.

    Raises:
        InvalidWindowError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidWindowError(
                f"Invalid {field}: expected YYYY-MM-DD",
                details={field: value},
                original_error=e
            ) from e
        return parsed.replace(tzinfo=None)
    raise InvalidWindowError(
        f"Unsupported {field} type",
        details={field: repr(value), "type": type(value).__name__}
    )


def end_of_day(value: datetime) -> datetime:
    """Return the last representable instant of ``value``'s day."""
    return datetime.combine(value.date(), datetime.max.time())


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """
    Get the first and last instant of a calendar month.

    Raises:
        InvalidWindowError: If month is outside 1..12
    """
    if not 1 <= int(month) <= 12:
        raise InvalidWindowError(
            "Month must be between 1 and 12",
            details={"year": year, "month": month}
        )
    last_day = calendar.monthrange(year, month)[1]
    start = datetime(year, month, 1)
    end = datetime.combine(date(year, month, last_day), datetime.max.time())
    return start, end


def previous_month(year: int, month: int) -> Tuple[int, int]:
    """Return the (year, month) preceding the given one, wrapping January to December."""
    if month == 1:
        return year - 1, 12
    return year, month - 1


def shift_month(year: int, month: int, offset: int) -> Tuple[int, int]:
    """Move ``offset`` months forward (positive) or backward (negative)."""
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def month_label(year: int, month: int) -> str:
    return f"{MONTH_ABBREVIATIONS[month]} {year}"


@dataclass(frozen=True)
class MonthWindow:
    """A single calendar month bucket."""
    year: int
    month: int

    def __post_init__(self) -> None:
        month_bounds(self.year, self.month)

    @property
    def start(self) -> datetime:
        return month_bounds(self.year, self.month)[0]

    @property
    def end(self) -> datetime:
        return month_bounds(self.year, self.month)[1]

    @property
    def label(self) -> str:
        return month_label(self.year, self.month)

    @classmethod
    def containing(cls, value: DateLike) -> "MonthWindow":
        """Return the month window that ``value`` falls into."""
        moment = parse_date(value)
        return cls(moment.year, moment.month)


@dataclass(frozen=True)
class DateRangeWindow:
    """
    An explicit inclusive range.

    ``end`` is normalised to the end of its day so that a range given as
    plain dates includes everything recorded on the last day.
    """
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise InvalidWindowError(
                "Window end is before its start",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()}
            )

    @classmethod
    def from_values(cls, start: DateLike, end: DateLike) -> "DateRangeWindow":
        """Build a range from strings, dates or datetimes, normalising ``end``."""
        start_dt = parse_date(start, "start_date")
        end_dt = end_of_day(parse_date(end, "end_date"))
        return cls(start_dt, end_dt)

    @property
    def label(self) -> str:
        return f"{self.start.date().isoformat()}..{self.end.date().isoformat()}"


Window = Union[MonthWindow, DateRangeWindow]


def iter_months(start: datetime, end: datetime) -> Iterator[MonthWindow]:
    """
    Yield every calendar month intersecting ``[start, end]``, oldest first.

    Partial months at both ends are included as whole months.
    """
    if end < start:
        raise InvalidWindowError(
            "Window end is before its start",
            details={"start": start.isoformat(), "end": end.isoformat()}
        )
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield MonthWindow(year, month)
        year, month = shift_month(year, month, 1)


def trailing_months(count: int, today: Optional[date] = None) -> List[MonthWindow]:
    """Return ``count`` calendar months ending with the month of ``today``, oldest first."""
    if count < 1:
        raise InvalidWindowError("Trend month count must be positive", details={"count": count})
    today = today or date.today()
    windows = []
    for offset in range(count - 1, -1, -1):
        year, month = shift_month(today.year, today.month, -offset)
        windows.append(MonthWindow(year, month))
    return windows
