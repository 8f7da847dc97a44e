# careplan/core/completion.py
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from careplan.core.clock import Clock, new_id
from careplan.core.logbook import LogBook
from careplan.core.logging_utils import kv
from careplan.core.materializer import InstanceMaterializer, day_record
from careplan.core.models import (
    Category,
    DailyInstance,
    InstanceStatus,
    LogEntry,
    LogSource,
)
from careplan.core.storage import Keys

FINAL_STATUSES = (InstanceStatus.COMPLETED, InstanceStatus.SKIPPED)


@dataclass
class CompletionResult:
    """What a completion attempt changed. `writes` is committed by the caller."""

    instance: Optional[DailyInstance] = None
    entry: Optional[LogEntry] = None
    writes: Dict[str, Any] = field(default_factory=dict)


def hint_matches(inst: DailyInstance, hint: str, medication_id: Optional[str]) -> bool:
    """A hint narrows candidates by item id, medication id or item name (case-insensitive)."""
    h = hint.strip().casefold()
    return (
        inst.item_id == hint
        or (medication_id is not None and medication_id == hint)
        or inst.item_name.strip().casefold() == h
    )


class CompletionSynchronizer:
    """
    Turns a logged event into at most one instance completion.

    Selection takes the earliest pending window of the category for that date. A
    completion writes the instance, the LogEntry and (for a new date) the logs index
    as one commit, so the instance never shows completed without its entry.
    """

    def __init__(self, materializer: InstanceMaterializer, logbook: LogBook, clock: Clock):
        self.materializer = materializer
        self.logbook = logbook
        self.clock = clock
        self.log = logging.getLogger("careplan.completion")

    async def sync(
        self,
        patient_id: str,
        day: date,
        category: Category,
        *,
        hint: Optional[str] = None,
        outcome: Optional[Dict[str, Any]] = None,
        source: LogSource = LogSource.RECORD,
        medication_ids: Optional[Dict[str, str]] = None,
    ) -> CompletionResult:
        """`medication_ids` maps item id -> medication id for hint matching."""
        day_map = await self.materializer.load_day(patient_id, day, strict=True)
        med_ids = medication_ids or {}

        candidates: List[DailyInstance] = [
            i for i in day_map.values() if i.active and i.category == category
        ]
        if hint:
            candidates = [i for i in candidates if hint_matches(i, hint, med_ids.get(i.item_id))]

        pending = sorted((i for i in candidates if i.is_pending), key=lambda i: (i.scheduled_at, i.id))
        if pending:
            target = pending[0]
            entry = self._complete(target, InstanceStatus.COMPLETED, outcome, source)
            writes = {Keys.instances(patient_id, day.isoformat()): day_record(day_map)}
            writes.update(await self.logbook.append_writes(patient_id, entry))
            self.log.info(
                "instance.complete "
                + kv(
                    patient_id=patient_id,
                    date=day.isoformat(),
                    category=category.value,
                    instance_id=target.id,
                    window=target.window_id,
                    source=source.value,
                )
            )
            return CompletionResult(instance=target, entry=entry, writes=writes)

        # Nothing pending: a repeat log refreshes the latest completion's payload
        done = sorted(
            (i for i in candidates if i.status == InstanceStatus.COMPLETED),
            key=lambda i: (i.completed_at or i.scheduled_at, i.id),
        )
        if done and outcome is not None:
            target = done[-1]
            target.outcome = copy.deepcopy(outcome)
            target.updated_at = self.clock.now()
            self.log.info(
                "instance.outcome.updated "
                + kv(patient_id=patient_id, date=day.isoformat(), instance_id=target.id)
            )
            return CompletionResult(
                instance=target,
                writes={Keys.instances(patient_id, day.isoformat()): day_record(day_map)},
            )

        self.log.debug(
            "instance.complete.nomatch "
            + kv(patient_id=patient_id, date=day.isoformat(), category=category.value, hint=hint)
        )
        return CompletionResult()

    async def complete_instance(
        self,
        patient_id: str,
        day: date,
        instance_id: str,
        status: InstanceStatus,
        *,
        outcome: Optional[Dict[str, Any]] = None,
        source: LogSource = LogSource.RECORD,
    ) -> CompletionResult:
        if status not in FINAL_STATUSES:
            raise ValueError(f"status must be completed or skipped, got '{status.value}'")
        day_map = await self.materializer.load_day(patient_id, day, strict=True)
        inst = day_map.get(instance_id)
        if inst is None:
            self.log.debug("instance.complete.unknown " + kv(patient_id=patient_id, instance_id=instance_id))
            return CompletionResult()
        if not inst.is_pending:
            # already final: idempotent, never a second entry
            return CompletionResult(instance=inst)

        entry = self._complete(inst, status, outcome, source)
        writes = {Keys.instances(patient_id, day.isoformat()): day_record(day_map)}
        writes.update(await self.logbook.append_writes(patient_id, entry))
        self.log.info(
            "instance.complete "
            + kv(
                patient_id=patient_id,
                date=day.isoformat(),
                instance_id=inst.id,
                status=status.value,
                source=source.value,
            )
        )
        return CompletionResult(instance=inst, entry=entry, writes=writes)

    async def quick_log(
        self,
        patient_id: str,
        day: date,
        category: Category,
        outcome: Optional[Dict[str, Any]] = None,
    ) -> CompletionResult:
        """A LogEntry with no scheduled instance behind it."""
        entry = LogEntry(
            id=new_id("log"),
            patient_id=patient_id,
            timestamp=self.clock.now(),
            date=day,
            category=category,
            status=InstanceStatus.COMPLETED,
            source=LogSource.QUICK_LOG,
            outcome=copy.deepcopy(outcome),
        )
        writes = await self.logbook.append_writes(patient_id, entry)
        self.log.info("log.quick " + kv(patient_id=patient_id, date=day.isoformat(), category=category.value))
        return CompletionResult(entry=entry, writes=writes)

    def _complete(
        self,
        inst: DailyInstance,
        status: InstanceStatus,
        outcome: Optional[Dict[str, Any]],
        source: LogSource,
    ) -> LogEntry:
        now = self.clock.now()
        entry = LogEntry(
            id=new_id("log"),
            patient_id=inst.patient_id,
            timestamp=now,
            date=inst.date,
            category=inst.category,
            status=status,
            source=source,
            care_plan_id=inst.care_plan_id,
            item_id=inst.item_id,
            instance_id=inst.id,
            outcome=copy.deepcopy(outcome),
        )
        inst.status = status
        inst.completed_at = now
        inst.outcome = copy.deepcopy(outcome)
        inst.log_id = entry.id
        inst.updated_at = now
        return entry


__all__ = ["CompletionSynchronizer", "CompletionResult", "hint_matches"]
