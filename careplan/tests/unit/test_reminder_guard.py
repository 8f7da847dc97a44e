# tests/unit/test_reminder_guard.py
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from careplan.core.models import Category, DailyInstance, InstanceStatus
from careplan.core.reminders import (
    ReminderPlanner,
    reminder_job_id,
    should_schedule_reminder,
)

TZ = ZoneInfo("Europe/Kyiv")
DAY = date(2025, 6, 15)
NOW = datetime(2025, 6, 15, 7, 0, tzinfo=TZ)


def inst(id="i1", item_id="item-a", hh=8, mm=0, status=InstanceStatus.PENDING, active=True):
    return DailyInstance(
        id=id,
        care_plan_id="plan",
        item_id=item_id,
        patient_id="p1",
        date=DAY,
        window_id=f"at-{hh:02d}{mm:02d}",
        window_label=f"{hh:02d}:{mm:02d}",
        scheduled_at=datetime(2025, 6, 15, hh, mm, tzinfo=TZ),
        item_name="Lisinopril 10mg",
        category=Category.MEDICATION,
        status=status,
        active=active,
    )


async def deliver(patient_id, day, instance_id):
    return None


def guard(i, now=NOW, lead=10, suppressed=False, notifications=True):
    return should_schedule_reminder(
        i, now, lead_minutes=lead, suppressed=suppressed, notifications_enabled=notifications
    )


def test_guard_accepts_future_pending_instance():
    assert guard(inst())


@pytest.mark.parametrize(
    "kwargs",
    [
        {"notifications": False},
        {"suppressed": True},
        {"now": NOW + timedelta(minutes=50)},  # 07:50 == 08:00 - lead
        {"lead": 61},
    ],
)
def test_guard_rejects(kwargs):
    assert not guard(inst(), **kwargs)


def test_guard_rejects_done_or_inactive_instances():
    assert not guard(inst(status=InstanceStatus.COMPLETED))
    assert not guard(inst(status=InstanceStatus.SKIPPED))
    assert not guard(inst(active=False))


def test_planner_registers_date_job_with_deterministic_id(fake_scheduler):
    planner = ReminderPlanner(fake_scheduler, deliver, lead_minutes=10, misfire_grace_s=300)
    planned = planner.plan([inst(), inst(id="i2", item_id="item-b", hh=6)], NOW)

    assert planned == 1
    job = fake_scheduler.jobs[reminder_job_id(inst())]
    assert job["trigger"] == "date"
    assert job["run_date"] == datetime(2025, 6, 15, 7, 50, tzinfo=TZ)
    assert job["kwargs"] == {"patient_id": "p1", "day": DAY, "instance_id": "i1"}
    assert job["coalesce"] is True
    assert job["max_instances"] == 1
    assert job["misfire_grace_time"] == 300
    assert "reminder:p1:i2" not in fake_scheduler.jobs


def test_replanning_drops_jobs_that_no_longer_qualify(fake_scheduler):
    planner = ReminderPlanner(fake_scheduler, deliver, lead_minutes=10)
    planner.plan([inst()], NOW)
    assert "reminder:p1:i1" in fake_scheduler.jobs

    planner.plan([inst()], NOW, suppressed_item_ids=["item-a"])
    assert fake_scheduler.jobs == {}


def test_notifications_map_is_per_item(fake_scheduler):
    planner = ReminderPlanner(fake_scheduler, deliver, lead_minutes=10)
    planned = planner.plan(
        [inst(), inst(id="i2", item_id="item-b", hh=9)],
        NOW,
        notifications={"item-a": False},
    )
    assert planned == 1
    assert list(fake_scheduler.jobs) == ["reminder:p1:i2"]
