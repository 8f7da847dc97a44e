# careplan/core/engine.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional
from zoneinfo import ZoneInfo

from careplan.core import events
from careplan.core.clock import Clock
from careplan.core.completion import CompletionSynchronizer
from careplan.core.config_store import (
    AppointmentConfig,
    CarePlanConfig,
    ConfigStore,
    CustomItemConfig,
    MedicationConfig,
)
from careplan.core.day_view import AdherenceStats, DailySchedule, adherence_stats, build_daily_schedule
from careplan.core.events import ChangeNotifier
from careplan.core.logbook import LogBook
from careplan.core.logging_utils import kv
from careplan.core.materializer import InstanceMaterializer
from careplan.core.models import (
    CarePlanOverride,
    Category,
    DailyInstance,
    EffectiveCarePlan,
    InstanceStatus,
    LogEntry,
    LogSource,
    PlanStatus,
)
from careplan.core.overrides import OverrideLedger
from careplan.core.regimen import RegimenRepository, desired_items, reconcile_items
from careplan.core.reminders import ReminderPlanner
from careplan.core.snapshot import SnapshotFreezer
from careplan.core.storage import Keys, KeyValueStore, RecordStore


class CarePlanEngine:
    """
    Public surface of the regimen engine.

    Every public coroutine holds the patient's asyncio.Lock for its whole
    read-modify-write, so two callers never interleave on one patient's records.
    Private `_*_locked` helpers expect the lock to be held already. Taking the lock
    also replays a journal an earlier failed commit left for the patient, so every
    read sees that commit whole.
    """

    def __init__(
        self,
        config: Any,
        store: KeyValueStore,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[ChangeNotifier] = None,
        seeds: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.cfg = config
        tz = getattr(config, "TZ", None) or ZoneInfo(getattr(config, "TIMEZONE", "Europe/Kyiv"))
        self.timezone = getattr(config, "TIMEZONE", str(tz))
        self.clock = clock or Clock(tz)
        self.default_patient_id = getattr(config, "DEFAULT_PATIENT_ID", "default")
        self.log = logging.getLogger("careplan.engine")

        self.records = RecordStore(store)
        self.notifier = notifier or ChangeNotifier()

        self.configs = ConfigStore(self.records, self.clock, self.timezone, seeds=seeds)
        self.regimen = RegimenRepository(self.records, self.clock, self.timezone)
        self.materializer = InstanceMaterializer(
            self.records,
            self.clock,
            window_times=getattr(config, "WINDOW_TIMES", None),
            index_horizon_days=int(getattr(config, "INSTANCES_INDEX_DAYS", 90)),
        )
        self.logbook = LogBook(
            self.records,
            self.clock,
            max_entries=int(getattr(config, "MAX_LOG_ENTRIES", 5000)),
            index_horizon_days=int(getattr(config, "LOGS_INDEX_DAYS", 365)),
        )
        self.completion = CompletionSynchronizer(self.materializer, self.logbook, self.clock)
        self.overrides = OverrideLedger(
            self.records,
            self.clock,
            retention_days=int(getattr(config, "OVERRIDE_RETENTION_DAYS", 30)),
        )
        self.snapshots = SnapshotFreezer(self.records, self.clock)

        self._locks: Dict[str, asyncio.Lock] = {}
        self.configs.add_listener(self._on_config_changed)

    def _lock(self, patient_id: str) -> asyncio.Lock:
        return self._locks.setdefault(patient_id, asyncio.Lock())

    @asynccontextmanager
    async def _guard(self, patient_id: str) -> AsyncIterator[None]:
        """Hold the patient lock, after finishing any commit a failed call left journaled."""
        async with self._lock(patient_id):
            await self.records.replay_pending(patient_id)
            yield

    async def recover(self) -> int:
        """Finish commits interrupted by a crash. Call once before serving."""
        return await self.records.recover()

    # ---- regimen ------------------------------------------------------------------------
    async def _reconcile_locked(
        self, patient_id: str, cfg: Optional[CarePlanConfig] = None
    ) -> EffectiveCarePlan:
        cfg = cfg or await self.configs.get_or_create_care_plan_config(patient_id)
        plan = await self.regimen.get_plan(patient_id, strict=True)
        is_new = plan is None
        if plan is None:
            plan = self.regimen.new_plan(patient_id, self.clock.today(), cfg.timezone)
        items = await self.regimen.get_items(plan.id, strict=True)

        if not is_new and plan.config_version == cfg.version:
            return RegimenRepository.compose(plan, items)

        now = self.clock.now()
        result = reconcile_items(items, desired_items(cfg), plan_id=plan.id, now=now)
        if result.changed and not is_new:
            plan.version += 1
        plan.config_version = cfg.version
        plan.updated_at = now

        writes = RegimenRepository.plan_writes(plan, items)
        hidden = await self.materializer.hide_pending(patient_id, result.deactivated, self.clock.today())
        writes.update(hidden)
        await self.records.commit(patient_id, writes)

        self.log.info(
            "regimen.reconciled "
            + kv(
                patient_id=patient_id,
                plan_id=plan.id,
                version=plan.version,
                config_version=cfg.version,
                created=len(result.created),
                reactivated=len(result.reactivated),
                updated=len(result.updated),
                deactivated=len(result.deactivated),
            )
        )
        self.notifier.emit(events.CARE_PLAN)
        if hidden:
            self.notifier.emit(events.DAILY_INSTANCES)
        return RegimenRepository.compose(plan, items)

    async def _on_config_changed(self, patient_id: str, cfg: CarePlanConfig) -> None:
        async with self._guard(patient_id):
            await self._reconcile_locked(patient_id, cfg)
        self.notifier.emit(events.CARE_PLAN_CONFIG)

    async def get_care_plan(self, patient_id: str) -> EffectiveCarePlan:
        """Live plan, auto-created from the config when missing."""
        async with self._guard(patient_id):
            return await self._reconcile_locked(patient_id)

    async def archive_care_plan(self, patient_id: str) -> bool:
        async with self._guard(patient_id):
            plan = await self.regimen.get_plan(patient_id, strict=True)
            if plan is None or plan.status == PlanStatus.ARCHIVED:
                return False
            plan.status = PlanStatus.ARCHIVED
            plan.version += 1
            plan.updated_at = self.clock.now()
            await self.records.commit(patient_id, {Keys.plan(patient_id): plan.to_dict()})
            self.log.info("plan.archived " + kv(patient_id=patient_id, plan_id=plan.id))
        self.notifier.emit(events.CARE_PLAN)
        return True

    # ---- instances ----------------------------------------------------------------------
    async def _ensure_locked(self, patient_id: str, day: date) -> List[DailyInstance]:
        plan = await self._reconcile_locked(patient_id)
        instances, writes = await self.materializer.expand(
            patient_id, day, plan, generate=plan.plan.status == PlanStatus.ACTIVE
        )
        if writes:
            await self.records.commit(patient_id, writes)
            self.notifier.emit(events.DAILY_INSTANCES)
        return instances

    async def ensure_daily_instances(self, patient_id: str, day: date) -> List[DailyInstance]:
        """Materialize `day` (idempotent) and return its active instances by time."""
        async with self._guard(patient_id):
            return await self._ensure_locked(patient_id, day)

    async def ensure_instances_for_range(
        self, patient_id: str, start: date, end: date
    ) -> Dict[date, List[DailyInstance]]:
        out: Dict[date, List[DailyInstance]] = {}
        async with self._guard(patient_id):
            day = start
            while day <= end:
                out[day] = await self._ensure_locked(patient_id, day)
                day += timedelta(days=1)
        return out

    async def list_daily_instances(self, patient_id: str, day: date) -> List[DailyInstance]:
        async with self._guard(patient_id):
            return await self.materializer.list_range(patient_id, day, day)

    async def list_daily_instances_range(
        self, patient_id: str, start: date, end: date
    ) -> List[DailyInstance]:
        """Stored instances of indexed dates in [start, end]; never materializes."""
        async with self._guard(patient_id):
            return await self.materializer.list_range(patient_id, start, end)

    # ---- completion ---------------------------------------------------------------------
    async def sync_log_to_instance(
        self,
        patient_id: str,
        day: date,
        category: Category | str,
        hint: Optional[str] = None,
        outcome: Optional[Dict[str, Any]] = None,
        source: LogSource | str = LogSource.RECORD,
    ) -> Optional[DailyInstance]:
        """
        Complete the earliest pending instance of `category` on `day`, if any.
        Returns the instance (completed, or with a refreshed outcome) or None.
        An unknown category matches nothing and also returns None.
        """
        try:
            category = Category(category)
        except ValueError:
            self.log.debug("instance.complete.nocategory " + kv(patient_id=patient_id, category=category))
            return None
        source = LogSource(source)
        async with self._guard(patient_id):
            await self._ensure_locked(patient_id, day)
            plan = await self.regimen.effective_plan(patient_id)
            med_ids = {i.id: i.medication_id for i in plan.items if i.medication_id} if plan else {}
            result = await self.completion.sync(
                patient_id,
                day,
                category,
                hint=hint,
                outcome=outcome,
                source=source,
                medication_ids=med_ids,
            )
            if result.writes:
                await self.records.commit(patient_id, result.writes)
        if result.writes:
            self.notifier.emit(events.DAILY_INSTANCES)
        if result.entry is not None:
            self.notifier.emit(events.LOGS)
        return result.instance

    async def log_instance_completion(
        self,
        patient_id: str,
        day: date,
        instance_id: str,
        status: InstanceStatus | str,
        outcome: Optional[Dict[str, Any]] = None,
        source: LogSource | str = LogSource.RECORD,
    ) -> Optional[DailyInstance]:
        status = InstanceStatus(status)
        source = LogSource(source)
        async with self._guard(patient_id):
            result = await self.completion.complete_instance(
                patient_id, day, instance_id, status, outcome=outcome, source=source
            )
            if result.writes:
                await self.records.commit(patient_id, result.writes)
        if result.entry is not None:
            self.notifier.emit(events.DAILY_INSTANCES, events.LOGS)
        return result.instance

    async def record_quick_log(
        self,
        patient_id: str,
        day: date,
        category: Category | str,
        outcome: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        async with self._guard(patient_id):
            result = await self.completion.quick_log(patient_id, day, Category(category), outcome)
            await self.records.commit(patient_id, result.writes)
        self.notifier.emit(events.LOGS)
        return result.entry

    async def list_logs_by_date(self, patient_id: str, day: date) -> List[LogEntry]:
        async with self._guard(patient_id):
            return await self.logbook.by_date(patient_id, day)

    async def list_logs_in_range(
        self, patient_id: str, start: date, end: date, item_id: Optional[str] = None
    ) -> List[LogEntry]:
        async with self._guard(patient_id):
            return await self.logbook.in_range(patient_id, start, end, item_id)

    # ---- snapshot -----------------------------------------------------------------------
    async def get_effective_care_plan(
        self, day: Optional[date] = None, patient_id: Optional[str] = None
    ) -> Optional[EffectiveCarePlan]:
        """The plan as frozen for `day` (default today). None until a plan exists."""
        pid = patient_id or self.default_patient_id
        day = day or self.clock.today()
        async with self._guard(pid):
            return await self.snapshots.effective_for(
                pid, day, lambda: self.regimen.effective_plan(pid)
            )

    # ---- overrides ----------------------------------------------------------------------
    async def set_override(
        self, patient_id: str, day: date, item_id: str, *, done: bool = False, suppressed: bool = False
    ) -> CarePlanOverride:
        async with self._guard(patient_id):
            ov = await self.overrides.set_override(patient_id, day, item_id, done=done, suppressed=suppressed)
        self.notifier.emit(events.OVERRIDES)
        return ov

    async def remove_override(self, patient_id: str, day: date, item_id: str) -> bool:
        async with self._guard(patient_id):
            removed = await self.overrides.remove_override(patient_id, day, item_id)
        if removed:
            self.notifier.emit(events.OVERRIDES)
        return removed

    async def suppress_item(self, patient_id: str, day: date, item_id: str) -> CarePlanOverride:
        """Hide an item for one day, keeping an existing "done" mark."""
        async with self._guard(patient_id):
            current = await self.overrides.get_override(patient_id, day, item_id)
            ov = await self.overrides.set_override(
                patient_id, day, item_id, done=bool(current and current.done), suppressed=True
            )
        self.notifier.emit(events.OVERRIDES)
        return ov

    async def mark_item_done(self, patient_id: str, day: date, item_id: str) -> CarePlanOverride:
        async with self._guard(patient_id):
            current = await self.overrides.get_override(patient_id, day, item_id)
            ov = await self.overrides.set_override(
                patient_id, day, item_id, done=True, suppressed=bool(current and current.suppressed)
            )
        self.notifier.emit(events.OVERRIDES)
        return ov

    async def is_item_suppressed(self, patient_id: str, day: date, item_id: str) -> bool:
        async with self._guard(patient_id):
            return await self.overrides.is_item_suppressed(patient_id, day, item_id)

    async def is_item_done(self, patient_id: str, day: date, item_id: str) -> bool:
        async with self._guard(patient_id):
            return await self.overrides.is_item_done(patient_id, day, item_id)

    async def list_suppressed_items(self, patient_id: str, day: date) -> List[str]:
        async with self._guard(patient_id):
            return await self.overrides.list_suppressed(patient_id, day)

    async def get_overrides(self, patient_id: str, day: date) -> Dict[str, CarePlanOverride]:
        async with self._guard(patient_id):
            return await self.overrides.get_overrides(patient_id, day)

    async def reset_today_scope(self, patient_id: str, day: Optional[date] = None) -> int:
        """Clear the day's suppressions (default today). "done" overrides survive."""
        day = day or self.clock.today()
        async with self._guard(patient_id):
            removed = await self.overrides.reset_day_scope(patient_id, day)
        self.notifier.emit(events.OVERRIDES)
        return removed

    # ---- views --------------------------------------------------------------------------
    async def get_daily_schedule(self, patient_id: str, day: date) -> DailySchedule:
        async with self._guard(patient_id):
            instances = await self._ensure_locked(patient_id, day)
            ovs = await self.overrides.get_overrides(patient_id, day)
        return build_daily_schedule(day, instances, ovs, self.clock.now())

    async def adherence_stats(
        self, patient_id: str, item_id: str, start: date, end: date
    ) -> AdherenceStats:
        async with self._guard(patient_id):
            instances = await self.materializer.list_range(patient_id, start, end)
        return adherence_stats(item_id, start, end, instances)

    # ---- reminders ----------------------------------------------------------------------
    async def plan_reminders(self, patient_id: str, day: date, planner: ReminderPlanner) -> int:
        async with self._guard(patient_id):
            instances = await self._ensure_locked(patient_id, day)
            plan = await self.regimen.effective_plan(patient_id)
            suppressed = await self.overrides.list_suppressed(patient_id, day)
        flags = {i.id: i.notifications_enabled for i in plan.items} if plan else {}
        return planner.plan(
            instances, self.clock.now(), suppressed_item_ids=suppressed, notifications=flags
        )

    async def reminder_still_due(
        self, patient_id: str, day: date, instance_id: str
    ) -> Optional[DailyInstance]:
        """Re-check at fire time: the instance may have been completed or hidden since."""
        async with self._guard(patient_id):
            inst = (await self.materializer.load_day(patient_id, day)).get(instance_id)
            if inst is None or not inst.active or not inst.is_pending:
                return None
            if await self.overrides.is_item_suppressed(patient_id, day, inst.item_id):
                return None
            return inst

    # ---- daily rollover -----------------------------------------------------------------
    async def rollover(self, patient_id: str, day: Optional[date] = None) -> List[DailyInstance]:
        """Freeze the day's plan, materialize it and prune stale overrides."""
        day = day or self.clock.today()
        async with self._guard(patient_id):
            instances = await self._ensure_locked(patient_id, day)
            await self.snapshots.effective_for(
                patient_id, day, lambda: self.regimen.effective_plan(patient_id)
            )
            await self.overrides.prune(patient_id)
        self.log.info("rollover.done " + kv(patient_id=patient_id, date=day.isoformat(), instances=len(instances)))
        return instances

    # ---- config passthroughs (reconcile immediately, under the lock) ----------------------
    async def _edit_config(self, patient_id: str, method: str, *args: Any, **kwargs: Any) -> CarePlanConfig:
        async with self._guard(patient_id):
            edit = getattr(self.configs, method)
            cfg = await edit(patient_id, *args, notify=False, **kwargs)
            await self._reconcile_locked(patient_id, cfg)
        self.notifier.emit(events.CARE_PLAN_CONFIG)
        return cfg

    async def set_bucket_enabled(self, patient_id: str, bucket: str, enabled: bool) -> CarePlanConfig:
        return await self._edit_config(patient_id, "set_bucket_enabled", bucket, enabled)

    async def update_bucket(self, patient_id: str, bucket: str, **changes: Any) -> CarePlanConfig:
        return await self._edit_config(patient_id, "update_bucket", bucket, **changes)

    async def add_medication(self, patient_id: str, med: MedicationConfig) -> CarePlanConfig:
        return await self._edit_config(patient_id, "add_medication", med)

    async def update_medication(self, patient_id: str, med_id: str, **changes: Any) -> CarePlanConfig:
        return await self._edit_config(patient_id, "update_medication", med_id, **changes)

    async def remove_medication(self, patient_id: str, med_id: str) -> CarePlanConfig:
        return await self._edit_config(patient_id, "remove_medication", med_id)

    async def add_custom_item(self, patient_id: str, item: CustomItemConfig) -> CarePlanConfig:
        return await self._edit_config(patient_id, "add_custom_item", item)

    async def remove_custom_item(self, patient_id: str, item_id: str) -> CarePlanConfig:
        return await self._edit_config(patient_id, "remove_custom_item", item_id)

    async def add_appointment(self, patient_id: str, appt: AppointmentConfig) -> CarePlanConfig:
        return await self._edit_config(patient_id, "add_appointment", appt)

    async def remove_appointment(self, patient_id: str, appt_id: str) -> CarePlanConfig:
        return await self._edit_config(patient_id, "remove_appointment", appt_id)

    # ---- housekeeping -------------------------------------------------------------------
    async def clear_patient_data(self, patient_id: str) -> int:
        """Delete every record of one patient. Returns the number of keys removed."""
        async with self._lock(patient_id):
            plan = await self.regimen.get_plan(patient_id)
            keys = [
                Keys.config(patient_id),
                Keys.plan(patient_id),
                Keys.instances_index(patient_id),
                Keys.logs(patient_id),
                Keys.logs_index(patient_id),
                Keys.overrides(patient_id),
                Keys.snapshot(patient_id),
            ]
            if plan is not None:
                keys.append(Keys.items(plan.id))
            keys += await self.records.kv.keys(Keys.instances(patient_id, ""))
            if await self.records.kv.get(Keys.journal(patient_id)) is not None:
                keys.append(Keys.journal(patient_id))
            for key in keys:
                await self.records.delete(key)
        self.log.info("patient.cleared " + kv(patient_id=patient_id, keys=len(keys)))
        self.notifier.emit(
            events.CARE_PLAN, events.CARE_PLAN_CONFIG, events.DAILY_INSTANCES, events.LOGS, events.OVERRIDES
        )
        return len(keys)


__all__ = ["CarePlanEngine"]
