"""
Analysis windows and time buckets.

Presets are anchored on the latest charge date in scope (never after ``as_of``)
rather than on the wall clock, so a dataset that stopped a week ago still shows
a full window of data.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from app.shared.core.exceptions import InvalidScopeError

PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90}


@dataclass(frozen=True)
class DateWindow:
    """Inclusive calendar-date window."""
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def shift_years(day: date, years: int) -> date:
    """Same calendar date ``years`` away; Feb 29 falls back to Feb 28."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


@dataclass(frozen=True)
class AnalysisWindows:
    current: DateWindow
    previous: Optional[DateWindow]
    compare_to: str
    anchor: date

    @property
    def read_windows(self) -> List[DateWindow]:
        """Windows the store read must cover, current first."""
        if self.previous is None:
            return [self.current]
        return [self.current, self.previous]

    def align_to_current(self, day: date) -> date:
        """Map a previous-period date onto the current-period date it compares against."""
        if self.compare_to == "year_over_year":
            return shift_years(day, 1)
        return day + timedelta(days=self.current.days)


def resolve_windows(
    time_range: str,
    compare_to: str,
    as_of: date,
    latest_data_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> AnalysisWindows:
    anchor = min(latest_data_date, as_of) if latest_data_date else as_of

    if time_range == "custom":
        if start_date is None or end_date is None:
            raise InvalidScopeError("Custom time range requires startDate and endDate")
        if start_date > end_date:
            raise InvalidScopeError("startDate must not be after endDate")
        current = DateWindow(start_date, end_date)
    elif time_range in PRESET_DAYS:
        current = DateWindow(anchor - timedelta(days=PRESET_DAYS[time_range] - 1), anchor)
    elif time_range == "mtd":
        current = DateWindow(anchor.replace(day=1), anchor)
    elif time_range == "qtd":
        quarter_month = 3 * ((anchor.month - 1) // 3) + 1
        current = DateWindow(anchor.replace(month=quarter_month, day=1), anchor)
    elif time_range == "ytd":
        current = DateWindow(anchor.replace(month=1, day=1), anchor)
    else:
        raise InvalidScopeError(f"Unknown time range: {time_range}", details={"timeRange": time_range})

    if compare_to == "previous_period":
        previous_end = current.start - timedelta(days=1)
        previous: Optional[DateWindow] = DateWindow(
            previous_end - timedelta(days=current.days - 1), previous_end
        )
    elif compare_to == "year_over_year":
        previous = DateWindow(shift_years(current.start, -1), shift_years(current.end, -1))
    elif compare_to == "none":
        previous = None
    else:
        raise InvalidScopeError(f"Unknown compare mode: {compare_to}", details={"compareTo": compare_to})

    return AnalysisWindows(current=current, previous=previous, compare_to=compare_to, anchor=anchor)


def bucket_start(day: date, granularity: str) -> date:
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    return day


def next_bucket(bucket: date, granularity: str) -> date:
    if granularity == "week":
        return bucket + timedelta(days=7)
    if granularity == "month":
        if bucket.month == 12:
            return date(bucket.year + 1, 1, 1)
        return date(bucket.year, bucket.month + 1, 1)
    return bucket + timedelta(days=1)


def bucket_range(window: DateWindow, granularity: str) -> List[date]:
    """Every bucket start touching the window, in order."""
    buckets = []
    current = bucket_start(window.start, granularity)
    while current <= window.end:
        buckets.append(current)
        current = next_bucket(current, granularity)
    return buckets
