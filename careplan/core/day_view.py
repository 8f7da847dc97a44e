# careplan/core/day_view.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional

from careplan.core.models import CarePlanOverride, DailyInstance, InstanceStatus


@dataclass
class ScheduleStats:
    total: int = 0
    pending: int = 0
    completed: int = 0
    skipped: int = 0

    @property
    def completion_rate(self) -> int:
        return round(self.completed / self.total * 100) if self.total else 0


@dataclass
class DailySchedule:
    date: date
    instances: List[DailyInstance] = field(default_factory=list)
    by_window: Dict[str, List[DailyInstance]] = field(default_factory=dict)
    stats: ScheduleStats = field(default_factory=ScheduleStats)
    next_pending: Optional[DailyInstance] = None
    suppressed_item_ids: List[str] = field(default_factory=list)


def effective_status(inst: DailyInstance, override: Optional[CarePlanOverride]) -> InstanceStatus:
    """A "done" override counts as completed without a LogEntry."""
    if inst.status == InstanceStatus.PENDING and override is not None and override.done:
        return InstanceStatus.COMPLETED
    return inst.status


def build_daily_schedule(
    day: date,
    instances: Iterable[DailyInstance],
    overrides: Mapping[str, CarePlanOverride],
    now: datetime,
) -> DailySchedule:
    """Visible instances of a day grouped by window, with stats and the next thing due."""
    suppressed = sorted(i for i, ov in overrides.items() if ov.suppressed)
    shown = [i for i in instances if i.active and i.item_id not in suppressed]
    shown.sort(key=lambda i: (i.scheduled_at, i.item_name.casefold(), i.id))

    sched = DailySchedule(date=day, instances=shown, suppressed_item_ids=suppressed)
    pending: List[DailyInstance] = []
    for inst in shown:
        sched.by_window.setdefault(inst.window_label, []).append(inst)
        status = effective_status(inst, overrides.get(inst.item_id))
        sched.stats.total += 1
        if status == InstanceStatus.COMPLETED:
            sched.stats.completed += 1
        elif status == InstanceStatus.SKIPPED:
            sched.stats.skipped += 1
        else:
            sched.stats.pending += 1
            pending.append(inst)

    upcoming = [i for i in pending if i.scheduled_at >= now]
    sched.next_pending = (upcoming or pending or [None])[0]
    return sched


@dataclass
class AdherenceStats:
    item_id: str
    start: date
    end: date
    total: int = 0
    completed: int = 0
    skipped: int = 0
    pending: int = 0
    by_window: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def adherence_rate(self) -> int:
        """Completed share of scheduled occurrences, 0-100."""
        return round(self.completed / self.total * 100) if self.total else 0


def adherence_stats(item_id: str, start: date, end: date, instances: Iterable[DailyInstance]) -> AdherenceStats:
    stats = AdherenceStats(item_id=item_id, start=start, end=end)
    for inst in instances:
        if inst.item_id != item_id or not start <= inst.date <= end:
            continue
        stats.total += 1
        win = stats.by_window.setdefault(inst.window_label, {"total": 0, "completed": 0})
        win["total"] += 1
        if inst.status == InstanceStatus.COMPLETED:
            stats.completed += 1
            win["completed"] += 1
        elif inst.status == InstanceStatus.SKIPPED:
            stats.skipped += 1
        else:
            stats.pending += 1
    return stats
