# careplan/core/schedule.py
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Dict, Iterator, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from careplan.core.models import Frequency, Schedule, TimeWindow

DEFAULT_WINDOW_TIMES: Dict[str, str] = {
    "morning": "08:00",
    "midday": "12:00",
    "evening": "18:00",
    "night": "21:00",
}

# Label used when an item has no explicit windows; resolves like an unknown label (noon)
ANYTIME = TimeWindow.named("anytime")
FALLBACK_TIME = time(12, 0)

EPOCH = date(1970, 1, 1)


def weekday_index(day: date) -> int:
    """0=Sunday .. 6=Saturday (the numbering stored in schedules)."""
    return (day.weekday() + 1) % 7


def parse_hhmm(s: str) -> time:
    hh, mm = (int(x) for x in s.split(":", 1))
    return time(hh, mm)


def schedule_matches(schedule: Schedule, day: date) -> bool:
    """Pure: does the schedule produce an occurrence on this date?"""
    if schedule.start_date and day < schedule.start_date:
        return False
    if schedule.end_date and day > schedule.end_date:
        return False
    if day in schedule.skip_dates:
        return False

    freq = schedule.frequency
    if freq == Frequency.DAILY:
        return True
    if freq in (Frequency.WEEKLY, Frequency.CUSTOM):
        # no days listed means no occurrences; config validation rejects that shape
        return weekday_index(day) in schedule.days_of_week
    if freq == Frequency.EVERY_OTHER_DAY:
        anchor = schedule.anchor_date or EPOCH
        return (day - anchor).days % 2 == 0
    return False


def window_clock_time(
    window: TimeWindow, window_times: Optional[Mapping[str, str]] = None
) -> time:
    if window.at:
        return parse_hhmm(window.at)
    table = window_times if window_times is not None else DEFAULT_WINDOW_TIMES
    hhmm = table.get(window.label)
    return parse_hhmm(hhmm) if hhmm else FALLBACK_TIME


def resolve_windows(
    schedule: Schedule,
    day: date,
    tz: ZoneInfo,
    window_times: Optional[Mapping[str, str]] = None,
) -> List[Tuple[TimeWindow, datetime]]:
    """Windows that occur on `day`, with their local datetimes, earliest first.

    Windows sharing an id (e.g. the same exact time listed twice) collapse to one.
    """
    if not schedule_matches(schedule, day):
        return []
    windows = schedule.times or [ANYTIME]
    seen: set[str] = set()
    out: List[Tuple[TimeWindow, datetime]] = []
    for w in windows:
        if w.id in seen:
            continue
        seen.add(w.id)
        at = datetime.combine(day, window_clock_time(w, window_times), tzinfo=tz)
        out.append((w, at))
    out.sort(key=lambda pair: pair[1])
    return out


def iter_days(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def occurrence_dates(schedule: Schedule, start: date, end: date) -> List[date]:
    return [d for d in iter_days(start, end) if schedule_matches(schedule, d)]


__all__ = [
    "DEFAULT_WINDOW_TIMES",
    "ANYTIME",
    "EPOCH",
    "weekday_index",
    "parse_hhmm",
    "schedule_matches",
    "window_clock_time",
    "resolve_windows",
    "iter_days",
    "occurrence_dates",
]
