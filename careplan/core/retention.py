# careplan/core/retention.py
from __future__ import annotations

from datetime import date, timedelta
from typing import List, Sequence, Tuple, TypeVar

T = TypeVar("T")


def add_date_to_index(
    index: Sequence[str], day: date, *, today: date, horizon_days: int
) -> Tuple[List[str], bool]:
    """
    Insert `day` into a sorted ISO-date index. Returns (index, changed).

    Pruning only happens when a new date goes in: the result is sorted and loses
    every date `horizon_days` or more before `today`. An existing date leaves the
    index untouched, stale entries included.
    """
    iso = day.isoformat()
    if iso in index:
        return list(index), False
    cutoff = (today - timedelta(days=horizon_days)).isoformat()
    updated = sorted(set(index) | {iso})
    return [d for d in updated if d > cutoff], True


def cap_entries(entries: List[T], cap: int) -> List[T]:
    """Keep the last `cap` entries by position (append order, not timestamps)."""
    if len(entries) <= cap:
        return entries
    return entries[-cap:]


def dates_in_range(index: Sequence[str], start: date, end: date) -> List[str]:
    lo, hi = start.isoformat(), end.isoformat()
    return [d for d in index if lo <= d <= hi]


def prune_overrides(
    overrides: dict, *, today: date, retention_days: int
) -> dict:
    """Drop override dates older than `retention_days` before today."""
    cutoff = (today - timedelta(days=retention_days)).isoformat()
    return {d: v for d, v in overrides.items() if d >= cutoff}
