# careplan/core/clock.py
from __future__ import annotations

import itertools
import uuid
from datetime import date, datetime
from zoneinfo import ZoneInfo


class Clock:
    """Injectable, testable clock bound to a timezone."""

    def __init__(self, tz: ZoneInfo):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    """Clock frozen at a given local time; tests and backfills move it by hand."""

    def __init__(self, tz: ZoneInfo, at: datetime):
        super().__init__(tz)
        self.at = at if at.tzinfo else at.replace(tzinfo=tz)

    def now(self) -> datetime:
        return self.at

    def set(self, at: datetime) -> None:
        self.at = at if at.tzinfo else at.replace(tzinfo=self.tz)


_counter = itertools.count(1)


def new_id(prefix: str) -> str:
    """Random id like 'inst_3f2a...'. Falls back to a process counter if uuid4 is unavailable."""
    try:
        token = uuid.uuid4().hex
    except NotImplementedError:  # no os.urandom on this platform
        token = f"{int(datetime.now().timestamp() * 1000):x}{next(_counter):06x}"
    return f"{prefix}_{token}"
