# careplan/core/logbook.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from careplan.core.clock import Clock
from careplan.core.logging_utils import kv
from careplan.core.models import LogEntry
from careplan.core.retention import add_date_to_index, cap_entries, dates_in_range
from careplan.core.storage import Keys, RecordStore


class LogBook:
    """
    Append-only LogEntry history of one patient.

    The capped array is the single place a LogEntry is stored; per-date and range
    views are read-time projections of it. The logs index only records which dates
    have entries and is committed together with the array.
    """

    def __init__(
        self,
        records: RecordStore,
        clock: Clock,
        *,
        max_entries: int = 5000,
        index_horizon_days: int = 365,
    ):
        self.records = records
        self.clock = clock
        self.max_entries = max_entries
        self.index_horizon_days = index_horizon_days
        self.log = logging.getLogger("careplan.logbook")

    async def _raw(self, patient_id: str, *, strict: bool = False) -> List[Any]:
        # unreadable elements are kept as stored; entries() skips them
        return await self.records.read(Keys.logs(patient_id), [], expect=list, strict=strict)

    async def entries(self, patient_id: str) -> List[LogEntry]:
        out: List[LogEntry] = []
        for body in await self._raw(patient_id):
            if not isinstance(body, dict):
                self.log.warning("log.read.corrupt " + kv(patient_id=patient_id, error=f"not an object: {body!r}"))
                continue
            try:
                out.append(LogEntry.from_dict(body))
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning("log.read.corrupt " + kv(patient_id=patient_id, error=str(e)))
        return out

    async def index(self, patient_id: str, *, strict: bool = False) -> List[str]:
        raw = await self.records.read(Keys.logs_index(patient_id), [], expect=list, strict=strict)
        return [d for d in raw if isinstance(d, str)]

    async def append_writes(self, patient_id: str, entry: LogEntry) -> Dict[str, Any]:
        """
        Writes that append `entry`, cap the array and index its date. Both records are
        read strictly: an unreadable array or index raises CorruptRecord rather than
        being replaced by one holding only the new entry.
        """
        raw = await self._raw(patient_id, strict=True)
        raw.append(entry.to_dict())
        capped = cap_entries(raw, self.max_entries)
        if len(capped) < len(raw):
            self.log.info("logs.capped " + kv(patient_id=patient_id, dropped=len(raw) - len(capped)))
        writes: Dict[str, Any] = {Keys.logs(patient_id): capped}
        index, changed = add_date_to_index(
            await self.index(patient_id, strict=True),
            entry.date,
            today=self.clock.today(),
            horizon_days=self.index_horizon_days,
        )
        if changed:
            writes[Keys.logs_index(patient_id)] = index
        return writes

    async def by_date(self, patient_id: str, day: date) -> List[LogEntry]:
        return await self.in_range(patient_id, day, day)

    async def in_range(
        self, patient_id: str, start: date, end: date, item_id: Optional[str] = None
    ) -> List[LogEntry]:
        """Entries of indexed dates in [start, end], oldest first."""
        dates = set(dates_in_range(await self.index(patient_id), start, end))
        if not dates:
            return []
        out = [e for e in await self.entries(patient_id) if e.date.isoformat() in dates]
        if item_id is not None:
            out = [e for e in out if e.item_id == item_id]
        return sorted(out, key=lambda e: e.timestamp)
