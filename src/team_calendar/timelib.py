"""
Month/date arithmetic shared by both event sources.

All calendar entries are all-day, so everything here works on
``datetime.date``.  Ranges passed between modules are half-open
``[start, end)`` unless a name says otherwise.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import timedelta
from typing import Iterator

ONE_DAY = timedelta(days=1)

# Month view always renders six full weeks.
GRID_DAYS = 42

_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


@dataclass(frozen=True, order=True)
class MonthAndYear:
    year: int
    month: int  # 1..12

    @classmethod
    def from_date(cls, d: date) -> "MonthAndYear":
        return cls(d.year, d.month)

    @classmethod
    def today(cls) -> "MonthAndYear":
        return cls.from_date(date.today())

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])


def calc_months(current: MonthAndYear, month_delta: int) -> MonthAndYear:
    """Shift *current* by *month_delta* months (negative goes back)."""
    index = current.year * 12 + (current.month - 1) + month_delta
    return MonthAndYear(index // 12, index % 12 + 1)


def month_and_year_to_string(value: MonthAndYear) -> str:
    """``MonthAndYear(2024, 3)`` → ``'March 2024'``."""
    return f"{calendar.month_name[value.month]} {value.year}"


def month_picker_options(current: MonthAndYear, list_size: int = 3) -> list[MonthAndYear]:
    """Months from ``current - list_size`` to ``current + list_size``."""
    return [calc_months(current, i) for i in range(-list_size, list_size + 1)]


def parse_month(value: str) -> MonthAndYear:
    """Parse ``YYYY-MM``; raises ValueError on anything else."""
    m = _MONTH_RE.match(value.strip())
    if not m:
        raise ValueError(f"Expected YYYY-MM, got {value!r}")
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range in {value!r}")
    return MonthAndYear(year, month)


def month_key(value: date | MonthAndYear) -> str:
    """Persistence partition key, ``YYYY-MM``."""
    return f"{value.year:04d}-{value.month:02d}"


def months_in_range(start: date, end: date) -> list[MonthAndYear]:
    """Every month touched by the half-open range ``[start, end)``.

    An empty range (``start >= end``) still yields the start month so that a
    single-day query is never a no-op.
    """
    last = end - ONE_DAY if end > start else start
    current = MonthAndYear.from_date(start)
    stop = MonthAndYear.from_date(last)
    months = []
    while current <= stop:
        months.append(current)
        current = calc_months(current, 1)
    return months


def month_keys_in_range(start: date, end: date) -> list[str]:
    return [month_key(m) for m in months_in_range(start, end)]


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield each date in ``[start, end)``."""
    current = start
    while current < end:
        yield current
        current += ONE_DAY


def month_grid_range(month: MonthAndYear, first_day_of_week: int = 0) -> tuple[date, date]:
    """Half-open range covered by a six-week month grid.

    ``first_day_of_week`` follows ``date.weekday()`` (0 = Monday).
    """
    first = month.first_day
    lead = (first.weekday() - first_day_of_week) % 7
    start = first - timedelta(days=lead)
    return start, start + timedelta(days=GRID_DAYS)


def overlaps(start: date, end: date, range_start: date, range_end: date) -> bool:
    """True when half-open ``[start, end)`` intersects ``[range_start, range_end)``.

    A zero-length interval is treated as covering its start date. An empty
    query range intersects nothing.
    """
    if range_end <= range_start:
        return False
    if end <= start:
        end = start + ONE_DAY
    return start < range_end and range_start < end


def to_exclusive_end(inclusive_end: date) -> date:
    return inclusive_end + ONE_DAY


def to_inclusive_end(exclusive_end: date | None, start: date) -> date:
    """Convert a calendar-surface end back to the user's inclusive end."""
    if exclusive_end is None or exclusive_end <= start:
        return start
    return exclusive_end - ONE_DAY


def parse_date(value) -> date:
    """Accept a ``date``, ``datetime`` or ISO-8601 string (``Z`` suffix allowed)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"Not a date: {value!r}")
    text = value.strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text).date()


def format_date(d: date) -> str:
    """Summary-panel format, ``MM/DD/YYYY``."""
    return f"{d.month:02d}/{d.day:02d}/{d.year:04d}"


def format_range(start: date, inclusive_end: date) -> str:
    if start == inclusive_end:
        return format_date(start)
    return f"{format_date(start)} - {format_date(inclusive_end)}"
