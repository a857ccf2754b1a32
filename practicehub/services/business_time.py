"""
Business-hours arithmetic for stage timers and overdue reporting.

Everything here is pure: the working calendar is passed in, never read from
settings, so the same functions serve live timers and historical audit.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, FrozenSet, Iterable, Optional

import pytz


@dataclass(frozen=True)
class WorkingCalendar:
    working_days: FrozenSet[int] = field(default_factory=lambda: frozenset({0, 1, 2, 3, 4}))  # Monday=0
    day_start: time = time(9, 0)
    day_end: time = time(17, 30)
    holidays: FrozenSet[date] = field(default_factory=frozenset)
    timezone: str = "UTC"

    def __post_init__(self):
        if self.day_end <= self.day_start:
            raise ValueError("Working day must end after it starts")

    @property
    def hours_per_day(self) -> float:
        start = datetime.combine(date.min, self.day_start)
        end = datetime.combine(date.min, self.day_end)
        return (end - start).total_seconds() / 3600

    def is_working_day(self, d: date) -> bool:
        return d.weekday() in self.working_days and d not in self.holidays


DEFAULT_CALENDAR = WorkingCalendar()


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def business_hours_between(start: datetime, end: datetime, calendar: Optional[WorkingCalendar] = None) -> float:
    """
    Business hours elapsed between two instants.

    Args:
        start: Interval start (naive values are UTC)
        end: Interval end (naive values are UTC)
        calendar: Working calendar; defaults to Mon-Fri 09:00-17:30 UTC

    Returns:
        Hours inside working windows, 0.0 when end <= start
    """
    calendar = calendar or DEFAULT_CALENDAR
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        return 0.0

    tz = pytz.timezone(calendar.timezone)
    day = start.astimezone(tz).date()
    last_day = end.astimezone(tz).date()
    seconds = 0.0
    while day <= last_day:
        if calendar.is_working_day(day):
            window_start = tz.localize(datetime.combine(day, calendar.day_start))
            window_end = tz.localize(datetime.combine(day, calendar.day_end))
            overlap_start = max(start, window_start)
            overlap_end = min(end, window_end)
            if overlap_end > overlap_start:
                seconds += (overlap_end - overlap_start).total_seconds()
        day += timedelta(days=1)
    return round(seconds / 3600, 4)


def _timestamp_of(entry: Any) -> Optional[datetime]:
    if isinstance(entry, dict):
        return entry.get("timestamp")
    return getattr(entry, "timestamp", None)


def stage_entry_timestamp(chronology: Iterable[Any], created_at: datetime) -> datetime:
    """When the project entered its current stage.

    The most recent chronology timestamp wins; entries without a timestamp are
    skipped, and a project with no usable history entered at creation.
    """
    stamps = [ensure_utc(ts) for ts in (_timestamp_of(e) for e in chronology) if ts is not None]
    if not stamps:
        return ensure_utc(created_at)
    return max(stamps)


def business_hours_in_stage(
    chronology: Iterable[Any],
    created_at: datetime,
    now: datetime,
    calendar: Optional[WorkingCalendar] = None,
) -> float:
    return business_hours_between(stage_entry_timestamp(chronology, created_at), now, calendar)


def format_business_hours(hours: Optional[float], calendar: Optional[WorkingCalendar] = None) -> str:
    """Render hours as working days and hours, e.g. ``2d 3.5h``."""
    if hours is None:
        return "-"
    calendar = calendar or DEFAULT_CALENDAR
    per_day = calendar.hours_per_day
    days = int(hours // per_day)
    remainder = round(hours - days * per_day, 1)
    if days == 0:
        return f"{remainder:g}h"
    if remainder == 0:
        return f"{days}d"
    return f"{days}d {remainder:g}h"
