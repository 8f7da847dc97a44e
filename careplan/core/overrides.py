# careplan/core/overrides.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from careplan.core.clock import Clock
from careplan.core.logging_utils import kv
from careplan.core.models import CarePlanOverride
from careplan.core.retention import prune_overrides
from careplan.core.storage import CorruptRecord, Keys, RecordStore

OverrideMap = Dict[str, Dict[str, Dict[str, Any]]]  # date -> item_id -> override


class OverrideLedger:
    """
    Per-date, per-item exceptions to the plan: "done" and "suppressed".
    One override per (date, item); setting replaces. Every rewrite of the map also
    drops dates older than the retention window.
    """

    def __init__(self, records: RecordStore, clock: Clock, *, retention_days: int = 30):
        self.records = records
        self.clock = clock
        self.retention_days = retention_days
        self.log = logging.getLogger("careplan.overrides")

    async def _load(self, patient_id: str, *, strict: bool = False) -> OverrideMap:
        key = Keys.overrides(patient_id)
        raw = await self.records.read(key, {}, expect=dict, strict=strict)
        bad = sorted(d for d, v in raw.items() if not isinstance(v, dict))
        if bad and strict:
            raise CorruptRecord(key, f"dates without an override map: {bad}")
        return {d: v for d, v in raw.items() if isinstance(v, dict)}

    async def _save(self, patient_id: str, data: OverrideMap) -> None:
        pruned = prune_overrides(data, today=self.clock.today(), retention_days=self.retention_days)
        dropped = len(data) - len(pruned)
        if dropped:
            self.log.debug("overrides.pruned " + kv(patient_id=patient_id, dates=dropped))
        await self.records.write(Keys.overrides(patient_id), pruned)

    async def get_overrides(self, patient_id: str, day: date) -> Dict[str, CarePlanOverride]:
        out: Dict[str, CarePlanOverride] = {}
        for item_id, body in (await self._load(patient_id)).get(day.isoformat(), {}).items():
            try:
                out[item_id] = CarePlanOverride.from_dict(body)
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning("override.read.corrupt " + kv(item_id=item_id, error=str(e)))
        return out

    async def get_override(self, patient_id: str, day: date, item_id: str) -> Optional[CarePlanOverride]:
        return (await self.get_overrides(patient_id, day)).get(item_id)

    async def set_override(
        self,
        patient_id: str,
        day: date,
        item_id: str,
        *,
        done: bool = False,
        suppressed: bool = False,
    ) -> CarePlanOverride:
        data = await self._load(patient_id, strict=True)
        ov = CarePlanOverride(
            date=day, item_id=item_id, done=done, suppressed=suppressed, timestamp=self.clock.now()
        )
        data.setdefault(day.isoformat(), {})[item_id] = ov.to_dict()
        await self._save(patient_id, data)
        self.log.info(
            "override.set " + kv(patient_id=patient_id, date=day.isoformat(), item_id=item_id, done=done, suppressed=suppressed)
        )
        return ov

    async def remove_override(self, patient_id: str, day: date, item_id: str) -> bool:
        data = await self._load(patient_id, strict=True)
        bucket = data.get(day.isoformat(), {})
        if item_id not in bucket:
            return False
        del bucket[item_id]
        if not bucket:
            data.pop(day.isoformat(), None)
        await self._save(patient_id, data)
        return True

    async def is_item_suppressed(self, patient_id: str, day: date, item_id: str) -> bool:
        ov = await self.get_override(patient_id, day, item_id)
        return bool(ov and ov.suppressed)

    async def is_item_done(self, patient_id: str, day: date, item_id: str) -> bool:
        ov = await self.get_override(patient_id, day, item_id)
        return bool(ov and ov.done)

    async def list_suppressed(self, patient_id: str, day: date) -> List[str]:
        return sorted(i for i, ov in (await self.get_overrides(patient_id, day)).items() if ov.suppressed)

    async def reset_day_scope(self, patient_id: str, day: date) -> int:
        """Remove the day's suppressions; "done" marks stay. Returns how many were removed."""
        data = await self._load(patient_id, strict=True)
        bucket = data.get(day.isoformat(), {})
        keep: Dict[str, Dict[str, Any]] = {}
        removed = 0
        for item_id, ov in bucket.items():
            if not ov.get("suppressed"):
                keep[item_id] = ov
                continue
            removed += 1
            if ov.get("done"):
                keep[item_id] = {**ov, "suppressed": False}
        if keep:
            data[day.isoformat()] = keep
        else:
            data.pop(day.isoformat(), None)
        await self._save(patient_id, data)
        self.log.info("overrides.reset " + kv(patient_id=patient_id, date=day.isoformat(), removed=removed))
        return removed

    async def prune(self, patient_id: str) -> None:
        await self._save(patient_id, await self._load(patient_id, strict=True))
