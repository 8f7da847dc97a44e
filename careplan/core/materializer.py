# careplan/core/materializer.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from careplan.core.clock import Clock, new_id
from careplan.core.logging_utils import kv
from careplan.core.models import DailyInstance, EffectiveCarePlan, InstanceStatus
from careplan.core.retention import add_date_to_index, dates_in_range
from careplan.core.schedule import resolve_windows
from careplan.core.storage import CorruptRecord, Keys, RecordStore

Writes = Dict[str, Any]


def day_record(instances: Mapping[str, DailyInstance]) -> Dict[str, Any]:
    return {inst_id: inst.to_dict() for inst_id, inst in instances.items()}


def visible(instances: Iterable[DailyInstance]) -> List[DailyInstance]:
    """Active instances ordered by time, then name."""
    return sorted(
        (i for i in instances if i.active),
        key=lambda i: (i.scheduled_at, i.item_name.casefold(), i.id),
    )


class InstanceMaterializer:
    """
    Expands active regimen items into DailyInstances for a date.

    Instances of a date live under one key as an id -> instance map. The natural key
    (item id, date, window id) is enforced on every expansion, so repeated or
    concurrent-looking calls never produce a second instance for the same slot.
    Methods return the writes they need; the caller commits them under its lock.
    """

    def __init__(
        self,
        records: RecordStore,
        clock: Clock,
        *,
        window_times: Optional[Mapping[str, str]] = None,
        index_horizon_days: int = 90,
    ):
        self.records = records
        self.clock = clock
        self.window_times = window_times
        self.index_horizon_days = index_horizon_days
        self.log = logging.getLogger("careplan.materializer")

    # -- reads ---------------------------------------------------------------------------
    async def load_day(self, patient_id: str, day: date, *, strict: bool = False) -> Dict[str, DailyInstance]:
        """The stored id -> instance map of `day`. Write paths pass strict=True."""
        key = Keys.instances(patient_id, day.isoformat())
        raw = await self.records.read(key, {}, expect=dict, strict=strict)
        out: Dict[str, DailyInstance] = {}
        for inst_id, body in raw.items():
            try:
                out[inst_id] = DailyInstance.from_dict(body)
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning("instance.read.corrupt " + kv(key=key, instance_id=inst_id, error=str(e)))
                if strict:
                    raise CorruptRecord(key, f"instance {inst_id}: {e}") from e
        return out

    async def index(self, patient_id: str, *, strict: bool = False) -> List[str]:
        raw = await self.records.read(Keys.instances_index(patient_id), [], expect=list, strict=strict)
        return [d for d in raw if isinstance(d, str)]

    async def list_range(self, patient_id: str, start: date, end: date) -> List[DailyInstance]:
        out: List[DailyInstance] = []
        for iso in dates_in_range(await self.index(patient_id), start, end):
            out.extend(visible((await self.load_day(patient_id, date.fromisoformat(iso))).values()))
        return out

    async def index_writes(self, patient_id: str, day: date) -> Writes:
        index, changed = add_date_to_index(
            await self.index(patient_id, strict=True),
            day,
            today=self.clock.today(),
            horizon_days=self.index_horizon_days,
        )
        if not changed:
            return {}
        self.log.debug("instances.index.insert " + kv(patient_id=patient_id, date=day.isoformat(), size=len(index)))
        return {Keys.instances_index(patient_id): index}

    # -- expansion -----------------------------------------------------------------------
    async def expand(
        self,
        patient_id: str,
        day: date,
        plan: EffectiveCarePlan,
        *,
        generate: bool = True,
    ) -> Tuple[List[DailyInstance], Writes]:
        """
        Make the stored instances of `day` match the plan. Returns (visible, writes).

        - every scheduled (item, window) slot without an instance gets a pending one;
        - an inactive instance whose slot is scheduled again is reactivated in place;
        - for today and later, pending instances whose slot is no longer scheduled
          (item deactivated, window dropped) are hidden. Earlier days are history
          and keep what they had.
        """
        existing = await self.load_day(patient_id, day, strict=True)
        by_slot: Dict[Tuple[str, str, str], DailyInstance] = {}
        for inst in sorted(existing.values(), key=lambda i: (not i.active, i.id)):
            by_slot.setdefault(inst.slot_key, inst)

        now = self.clock.now()
        tz = self.clock.tz
        created = reactivated = hidden = 0
        scheduled: set[Tuple[str, str, str]] = set()

        if generate:
            for item in plan.active_items:
                for window, at in resolve_windows(item.schedule, day, tz, self.window_times):
                    slot = (item.id, day.isoformat(), window.id)
                    scheduled.add(slot)
                    inst = by_slot.get(slot)
                    if inst is None:
                        inst = DailyInstance(
                            id=new_id("inst"),
                            care_plan_id=plan.plan.id,
                            item_id=item.id,
                            patient_id=patient_id,
                            date=day,
                            window_id=window.id,
                            window_label=window.label,
                            scheduled_at=at,
                            item_name=item.name,
                            category=item.category,
                            priority=item.priority,
                            generated_from_version=plan.plan.version,
                            created_at=now,
                            updated_at=now,
                        )
                        existing[inst.id] = inst
                        by_slot[slot] = inst
                        created += 1
                    elif not inst.active:
                        inst.active = True
                        inst.updated_at = now
                        reactivated += 1

        if generate and day >= self.clock.today():
            for slot, inst in by_slot.items():
                if inst.active and inst.is_pending and slot not in scheduled:
                    inst.active = False
                    inst.updated_at = now
                    hidden += 1

        writes: Writes = {}
        if created or reactivated or hidden:
            writes[Keys.instances(patient_id, day.isoformat())] = day_record(existing)
            writes.update(await self.index_writes(patient_id, day))
            self.log.info(
                "instances.materialize "
                + kv(
                    patient_id=patient_id,
                    date=day.isoformat(),
                    created=created,
                    reactivated=reactivated,
                    hidden=hidden,
                )
            )
        return visible(existing.values()), writes

    async def hide_pending(
        self, patient_id: str, item_ids: Iterable[str], from_day: date
    ) -> Writes:
        """Flag pending instances of the given items inactive on `from_day` and later."""
        targets = set(item_ids)
        if not targets:
            return {}
        days = {d for d in await self.index(patient_id, strict=True) if d >= from_day.isoformat()}
        days.add(from_day.isoformat())
        now = self.clock.now()
        writes: Writes = {}
        for iso in sorted(days):
            day_map = await self.load_day(patient_id, date.fromisoformat(iso), strict=True)
            touched = 0
            for inst in day_map.values():
                if inst.item_id in targets and inst.active and inst.status == InstanceStatus.PENDING:
                    inst.active = False
                    inst.updated_at = now
                    touched += 1
            if touched:
                writes[Keys.instances(patient_id, iso)] = day_record(day_map)
                self.log.debug("instances.hidden " + kv(patient_id=patient_id, date=iso, count=touched))
        return writes


__all__ = ["InstanceMaterializer", "day_record", "visible", "Writes"]
