# careplan/core/regimen.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from careplan.core.clock import Clock, new_id
from careplan.core.config_store import CarePlanConfig
from careplan.core.logging_utils import kv
from careplan.core.models import (
    CarePlan,
    Category,
    EffectiveCarePlan,
    Frequency,
    PlanStatus,
    Priority,
    RegimenItem,
    Schedule,
    TimeWindow,
)
from careplan.core.storage import CorruptRecord, Keys, RecordStore

MEAL_NAMES = {
    "morning": "Breakfast",
    "midday": "Lunch",
    "evening": "Dinner",
    "night": "Snack",
}

# One generated item per enabled bucket for these
SINGLE_ITEM_BUCKETS = {
    "vitals": (Category.VITALS, "Check vitals"),
    "hydration": (Category.HYDRATION, "Drink water"),
    "mood": (Category.MOOD, "Mood check-in"),
    "sleep": (Category.SLEEP, "Sleep log"),
}


def source_key_for(category: Category, *, name: str | None = None, ref_id: str | None = None) -> str:
    """
    Reconciliation identity of an item.

    Items backed by a config record (medication, custom item, appointment) use that
    record's id, so renames keep the item. Generated items (vitals, meal slots, ...)
    use the category plus the case-folded name.
    """
    if ref_id:
        return f"{category.value}:id:{ref_id}"
    return f"{category.value}:name:{(name or '').strip().casefold()}"


@dataclass
class DesiredItem:
    """An item the config says should exist and be active."""

    source_key: str
    category: Category
    name: str
    schedule: Schedule
    priority: Priority
    payload: Dict[str, Any] = field(default_factory=dict)
    medication_id: Optional[str] = None
    notifications_enabled: bool = True


def _windows(named: List[str], exact: List[str]) -> List[TimeWindow]:
    return [TimeWindow.named(n) for n in named] + [TimeWindow.exact(t) for t in exact]


def desired_items(cfg: CarePlanConfig) -> List[DesiredItem]:
    """Expand the enabled buckets of a config into the items they imply."""
    out: List[DesiredItem] = []

    meds = cfg.bucket("meds")
    if meds.enabled:
        for med in cfg.medications:
            if not med.active:
                continue
            exact = [med.scheduled_time] if med.scheduled_time else list(med.custom_times)
            named = [] if exact else list(med.times_of_day or meds.times_of_day)
            out.append(
                DesiredItem(
                    source_key=source_key_for(Category.MEDICATION, ref_id=med.id),
                    category=Category.MEDICATION,
                    name=med.display_name,
                    schedule=Schedule(
                        frequency=med.frequency,
                        times=_windows(named, exact),
                        days_of_week=list(med.days_of_week),
                        start_date=med.start_date,
                        end_date=med.end_date,
                    ),
                    priority=med.priority,
                    payload={
                        "dosage": med.dosage,
                        "instructions": med.instructions,
                        "tracking_style": meds.tracking_style,
                    },
                    medication_id=med.id,
                    notifications_enabled=meds.notifications_enabled,
                )
            )

    for bucket_name, (category, name) in SINGLE_ITEM_BUCKETS.items():
        bucket = cfg.bucket(bucket_name)
        if not bucket.enabled:
            continue
        out.append(
            DesiredItem(
                source_key=source_key_for(category, name=name),
                category=category,
                name=name,
                schedule=Schedule(
                    frequency=bucket.frequency,
                    times=_windows(list(bucket.times_of_day), list(bucket.custom_times)),
                    days_of_week=list(bucket.days_of_week),
                ),
                priority=bucket.priority,
                payload={**bucket.settings, "tracking_style": bucket.tracking_style},
                notifications_enabled=bucket.notifications_enabled,
            )
        )

    meals = cfg.bucket("meals")
    if meals.enabled:
        slots = [(MEAL_NAMES.get(t, t.title()), TimeWindow.named(t)) for t in meals.times_of_day]
        slots += [(f"Meal {t}", TimeWindow.exact(t)) for t in meals.custom_times]
        for name, window in slots:
            out.append(
                DesiredItem(
                    source_key=source_key_for(Category.MEALS, name=name),
                    category=Category.MEALS,
                    name=name,
                    schedule=Schedule(
                        frequency=meals.frequency,
                        times=[window],
                        days_of_week=list(meals.days_of_week),
                    ),
                    priority=meals.priority,
                    payload={"meal": name.lower(), "tracking_style": meals.tracking_style},
                    notifications_enabled=meals.notifications_enabled,
                )
            )

    custom = cfg.bucket("custom")
    if custom.enabled:
        for item in cfg.custom_items:
            out.append(
                DesiredItem(
                    source_key=source_key_for(Category.CUSTOM, ref_id=item.id),
                    category=Category.CUSTOM,
                    name=item.name,
                    schedule=Schedule(
                        frequency=item.frequency,
                        times=_windows(list(item.times_of_day), list(item.custom_times)),
                        days_of_week=list(item.days_of_week),
                    ),
                    priority=item.priority,
                    payload={"notes": item.notes},
                    notifications_enabled=custom.notifications_enabled,
                )
            )

    appts = cfg.bucket("appointments")
    if appts.enabled:
        for appt in cfg.appointments:
            out.append(
                DesiredItem(
                    source_key=source_key_for(Category.APPOINTMENT, ref_id=appt.id),
                    category=Category.APPOINTMENT,
                    name=appt.title,
                    schedule=Schedule(
                        frequency=Frequency.DAILY,
                        times=[TimeWindow.exact(appt.time)],
                        start_date=appt.date,
                        end_date=appt.date,
                    ),
                    priority=appts.priority,
                    payload={"location": appt.location, "notes": appt.notes},
                    notifications_enabled=appts.notifications_enabled,
                )
            )
    return out


@dataclass
class ReconcileResult:
    created: List[str] = field(default_factory=list)
    reactivated: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deactivated: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.reactivated or self.updated or self.deactivated)


def _matches_existing(item: RegimenItem, want: DesiredItem) -> bool:
    return (
        item.name == want.name
        and item.priority == want.priority
        and item.schedule.to_dict() == want.schedule.to_dict()
        and item.payload == want.payload
        and item.medication_id == want.medication_id
        and item.notifications_enabled == want.notifications_enabled
    )


def reconcile_items(
    items: Dict[str, RegimenItem],
    desired: List[DesiredItem],
    *,
    plan_id: str,
    now: datetime,
) -> ReconcileResult:
    """
    Converge `items` (mutated in place) on `desired`.

    Existing items are matched by source_key; records written before source keys
    existed fall back to (category, name). A match is reactivated and refreshed in
    place, keeping its id. Only unmatched wants become new items. Active items no
    longer wanted are deactivated; nothing is ever deleted.
    """
    result = ReconcileResult()

    by_key: Dict[str, RegimenItem] = {}
    for item in sorted(items.values(), key=lambda i: (not i.active, i.id)):
        key = item.source_key or source_key_for(item.category, name=item.name)
        by_key.setdefault(key, item)
    if any(not i.source_key for i in items.values()):
        # medication rows without a key still carry medication_id
        for item in items.values():
            if not item.source_key and item.medication_id:
                by_key.setdefault(source_key_for(Category.MEDICATION, ref_id=item.medication_id), item)

    wanted: set[str] = set()
    for want in desired:
        if want.source_key in wanted:
            continue
        wanted.add(want.source_key)
        item = by_key.get(want.source_key)
        if item is None:
            item = RegimenItem(
                id=new_id("item"),
                care_plan_id=plan_id,
                category=want.category,
                name=want.name,
                schedule=want.schedule,
                priority=want.priority,
                active=True,
                source_key=want.source_key,
                medication_id=want.medication_id,
                payload=dict(want.payload),
                notifications_enabled=want.notifications_enabled,
                created_at=now,
                updated_at=now,
            )
            items[item.id] = item
            result.created.append(item.id)
            continue

        was_active = item.active
        same = _matches_existing(item, want)
        item.source_key = want.source_key
        if not same:
            item.name = want.name
            item.priority = want.priority
            item.schedule = want.schedule
            item.payload = dict(want.payload)
            item.medication_id = want.medication_id
            item.notifications_enabled = want.notifications_enabled
        item.active = True
        if not was_active:
            result.reactivated.append(item.id)
        elif not same:
            result.updated.append(item.id)
        if not was_active or not same:
            item.updated_at = now

    for item in items.values():
        key = item.source_key or source_key_for(item.category, name=item.name)
        if item.active and key not in wanted:
            item.active = False
            item.updated_at = now
            result.deactivated.append(item.id)

    return result


class RegimenRepository:
    """CarePlan header and its RegimenItems (stored as one id -> item map per plan)."""

    def __init__(self, records: RecordStore, clock: Clock, timezone: str):
        self.records = records
        self.clock = clock
        self.timezone = timezone
        self.log = logging.getLogger("careplan.regimen")

    async def get_plan(self, patient_id: str, *, strict: bool = False) -> Optional[CarePlan]:
        """
        The stored plan header, or None. With strict=True an unreadable header raises
        CorruptRecord instead of reading as "no plan", so a new plan is never minted
        over it.
        """
        key = Keys.plan(patient_id)
        raw = await self.records.read(key, None, expect=dict, strict=strict)
        if raw is None:
            return None
        try:
            return CarePlan.from_dict(raw)
        except (KeyError, ValueError, TypeError) as e:
            self.log.warning("plan.read.corrupt " + kv(patient_id=patient_id, error=str(e)))
            if strict:
                raise CorruptRecord(key, str(e)) from e
            return None

    def new_plan(self, patient_id: str, start: date, timezone: str | None = None) -> CarePlan:
        now = self.clock.now()
        return CarePlan(
            id=new_id("plan"),
            patient_id=patient_id,
            timezone=timezone or self.timezone,
            start_date=start,
            status=PlanStatus.ACTIVE,
            version=1,
            config_version=0,
            created_at=now,
            updated_at=now,
        )

    async def get_items(self, plan_id: str, *, strict: bool = False) -> Dict[str, RegimenItem]:
        key = Keys.items(plan_id)
        raw = await self.records.read(key, {}, expect=dict, strict=strict)
        items: Dict[str, RegimenItem] = {}
        for item_id, body in raw.items():
            try:
                items[item_id] = RegimenItem.from_dict(body)
            except (KeyError, ValueError, TypeError) as e:
                self.log.warning("item.read.corrupt " + kv(item_id=item_id, error=str(e)))
                if strict:
                    raise CorruptRecord(key, f"item {item_id}: {e}") from e
        return items

    async def effective_plan(self, patient_id: str) -> Optional[EffectiveCarePlan]:
        plan = await self.get_plan(patient_id)
        if plan is None:
            return None
        return self.compose(plan, await self.get_items(plan.id))

    @staticmethod
    def compose(plan: CarePlan, items: Dict[str, RegimenItem]) -> EffectiveCarePlan:
        ordered = sorted(items.values(), key=lambda i: (i.category.value, i.name.casefold(), i.id))
        return EffectiveCarePlan(plan=plan, items=ordered)

    @staticmethod
    def plan_writes(plan: CarePlan, items: Dict[str, RegimenItem]) -> Dict[str, Any]:
        return {
            Keys.plan(plan.patient_id): plan.to_dict(),
            Keys.items(plan.id): {i.id: i.to_dict() for i in items.values()},
        }


__all__ = [
    "MEAL_NAMES",
    "DesiredItem",
    "ReconcileResult",
    "RegimenRepository",
    "desired_items",
    "reconcile_items",
    "source_key_for",
]
