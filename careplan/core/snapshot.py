# careplan/core/snapshot.py
from __future__ import annotations

import copy
import logging
from datetime import date
from typing import Awaitable, Callable, Optional

from careplan.core.clock import Clock
from careplan.core.logging_utils import kv
from careplan.core.models import DailySnapshot, EffectiveCarePlan
from careplan.core.storage import Keys, RecordStore


class SnapshotFreezer:
    """
    Keeps exactly one frozen copy of the effective plan per patient: the one for
    the most recently requested date. A request for another date replaces it.
    """

    def __init__(self, records: RecordStore, clock: Clock):
        self.records = records
        self.clock = clock
        self.log = logging.getLogger("careplan.snapshot")

    async def current(self, patient_id: str) -> Optional[DailySnapshot]:
        raw = await self.records.read(Keys.snapshot(patient_id), None, expect=dict)
        if raw is None:
            return None
        try:
            return DailySnapshot.from_dict(raw)
        except (KeyError, ValueError, TypeError) as e:
            self.log.warning("snapshot.read.corrupt " + kv(patient_id=patient_id, error=str(e)))
            return None

    async def effective_for(
        self,
        patient_id: str,
        day: date,
        load_live: Callable[[], Awaitable[Optional[EffectiveCarePlan]]],
    ) -> Optional[EffectiveCarePlan]:
        snap = await self.current(patient_id)
        if snap is not None and snap.date == day:
            return snap.plan

        live = await load_live()
        if live is None:
            return None
        frozen = EffectiveCarePlan.from_dict(copy.deepcopy(live.to_dict()))
        snap = DailySnapshot(date=day, plan=frozen, created_at=self.clock.now())
        await self.records.write(Keys.snapshot(patient_id), snap.to_dict())
        self.log.info(
            "snapshot.frozen "
            + kv(patient_id=patient_id, date=day.isoformat(), version=frozen.plan.version, items=len(frozen.items))
        )
        return frozen
