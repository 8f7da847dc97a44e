# careplan/core/reminders.py
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

from careplan.core.logging_utils import kv
from careplan.core.models import DailyInstance

# deliver(patient_id, day, instance_id): the caller re-checks and sends
Deliver = Callable[[str, date, str], Awaitable[None]]


def reminder_at(inst: DailyInstance, lead_minutes: int) -> datetime:
    return inst.scheduled_at - timedelta(minutes=lead_minutes)


def should_schedule_reminder(
    inst: DailyInstance,
    now: datetime,
    *,
    lead_minutes: int,
    suppressed: bool,
    notifications_enabled: bool,
) -> bool:
    """Only active, pending, unsuppressed instances whose reminder time is still ahead."""
    if not notifications_enabled:
        return False
    if not inst.active or not inst.is_pending:
        return False
    if suppressed:
        return False
    return reminder_at(inst, lead_minutes) > now


def reminder_job_id(inst: DailyInstance) -> str:
    return f"reminder:{inst.patient_id}:{inst.id}"


class ReminderPlanner:
    """
    Registers one APScheduler date job per instance that passes the guard.
    Re-planning is safe: job ids are deterministic and replace existing ones, and
    instances that no longer qualify have their job removed.
    """

    def __init__(
        self,
        scheduler: Any,
        deliver: Deliver,
        *,
        lead_minutes: int = 10,
        misfire_grace_s: int = 300,
    ):
        self.scheduler = scheduler
        self.deliver = deliver
        self.lead_minutes = lead_minutes
        self.misfire_grace_s = misfire_grace_s
        self.log = logging.getLogger("careplan.reminders")

    def plan(
        self,
        instances: Iterable[DailyInstance],
        now: datetime,
        *,
        suppressed_item_ids: Iterable[str] = (),
        notifications: Optional[Mapping[str, bool]] = None,
    ) -> int:
        """`notifications` maps item id -> notifications flag (missing means on)."""
        suppressed = set(suppressed_item_ids)
        flags = notifications or {}
        planned = skipped = 0
        for inst in instances:
            job_id = reminder_job_id(inst)
            ok = should_schedule_reminder(
                inst,
                now,
                lead_minutes=self.lead_minutes,
                suppressed=inst.item_id in suppressed,
                notifications_enabled=flags.get(inst.item_id, True),
            )
            if not ok:
                self._drop(job_id)
                skipped += 1
                continue
            self.scheduler.add_job(
                self.deliver,
                trigger="date",
                run_date=reminder_at(inst, self.lead_minutes),
                kwargs={"patient_id": inst.patient_id, "day": inst.date, "instance_id": inst.id},
                id=job_id,
                replace_existing=True,
                coalesce=True,
                misfire_grace_time=self.misfire_grace_s,
                max_instances=1,
            )
            planned += 1
        self.log.info("reminders.planned " + kv(planned=planned, skipped=skipped))
        return planned

    def _drop(self, job_id: str) -> None:
        get_job = getattr(self.scheduler, "get_job", None)
        if get_job is not None and get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
            self.log.debug("reminders.dropped " + kv(job_id=job_id))
