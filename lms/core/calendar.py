"""
Date helpers shared by the validator, the ledger and the jobs
"""
import calendar
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Tuple
from zoneinfo import ZoneInfo


def to_date(value) -> date:
    """Normalise a datetime (as stored by Mongo) to a calendar date"""
    if isinstance(value, datetime):
        return value.date()
    return value


def to_datetime(value: date) -> datetime:
    """Midnight datetime for a calendar date (Mongo has no date type)"""
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def local_today(tz_name: str) -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def daterange(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def inclusive_days(start: date, end: date) -> int:
    """Calendar days from start to end, both included (23rd..28th == 6)"""
    return (end - start).days + 1


def working_days(
    start: date,
    end: date,
    weekend_days: Iterable[int] = (),
    holidays: Iterable[date] = (),
) -> int:
    """Days in the range that are neither weekend days nor holidays"""
    weekend = set(weekend_days)
    closed = set(holidays)
    return sum(1 for day in daterange(start, end) if day.weekday() not in weekend and day not in closed)


def count_leave_days(
    start: date,
    end: date,
    working_days_only: bool,
    weekend_days: Iterable[int] = (),
    holidays: Iterable[date] = (),
) -> int:
    """Leave length under the policy's counting rule"""
    if working_days_only:
        return working_days(start, end, weekend_days, holidays)
    return inclusive_days(start, end)


def months_between(earlier: date, later: date) -> int:
    """Whole months elapsed from earlier to later"""
    months = (later.year - earlier.year) * 12 + (later.month - earlier.month)
    if later.day < earlier.day:
        months -= 1
    return months


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def previous_month(as_of: date) -> Tuple[int, int]:
    """(year, month) of the calendar month before as_of"""
    first = as_of.replace(day=1)
    last_of_previous = first - timedelta(days=1)
    return last_of_previous.year, last_of_previous.month


def overlap_days(start: date, end: date, window_start: date, window_end: date) -> int:
    """Inclusive day count of the overlap between two ranges (0 when disjoint)"""
    lo = max(start, window_start)
    hi = min(end, window_end)
    if hi < lo:
        return 0
    return inclusive_days(lo, hi)

