# tests/integration/test_engine_reminders.py
import logging
from datetime import date

import pytest

from careplan.app import build_store, deliver_reminder
from careplan.adapters.file_store import FileStore
from careplan.adapters.memory_store import MemoryStore
from careplan.core.models import Category
from careplan.core.reminders import ReminderPlanner

TODAY = date(2025, 6, 15)

SEEDS = {
    "p1": {
        "buckets": {
            "meds": {"enabled": True},
            "meals": {"enabled": True, "times_of_day": ["midday"], "notifications_enabled": False},
        },
        "medications": [
            {"id": "med-lis", "name": "Lisinopril", "dosage": "10mg", "scheduled_time": "08:00"},
            {"id": "med-early", "name": "Early pill", "scheduled_time": "07:05"},
        ],
    }
}


async def noop_deliver(patient_id, day, instance_id):
    return None


@pytest.mark.asyncio
async def test_only_qualifying_instances_get_jobs(make_engine, fake_scheduler):
    engine = make_engine(seeds=SEEDS)
    planner = ReminderPlanner(fake_scheduler, noop_deliver, lead_minutes=10)

    planned = await engine.plan_reminders("p1", TODAY, planner)

    # 07:05 minus the lead is already past; lunch has notifications off
    assert planned == 1
    (job_id,) = fake_scheduler.jobs
    job = fake_scheduler.jobs[job_id]
    assert job["run_date"].strftime("%H:%M") == "07:50"
    due = await engine.reminder_still_due("p1", TODAY, job["kwargs"]["instance_id"])
    assert due.item_name == "Lisinopril 10mg"


@pytest.mark.asyncio
async def test_suppressed_item_loses_its_job(make_engine, fake_scheduler):
    engine = make_engine(seeds=SEEDS)
    planner = ReminderPlanner(fake_scheduler, noop_deliver, lead_minutes=10)
    await engine.plan_reminders("p1", TODAY, planner)
    (job_id,) = fake_scheduler.jobs
    inst_id = fake_scheduler.jobs[job_id]["kwargs"]["instance_id"]
    (inst,) = [i for i in await engine.list_daily_instances("p1", TODAY) if i.id == inst_id]

    await engine.suppress_item("p1", TODAY, inst.item_id)
    assert await engine.reminder_still_due("p1", TODAY, inst_id) is None

    assert await engine.plan_reminders("p1", TODAY, planner) == 0
    assert fake_scheduler.jobs == {}


@pytest.mark.asyncio
async def test_fire_time_recheck_skips_completed(make_engine, caplog):
    engine = make_engine(seeds=SEEDS)
    instances = await engine.ensure_daily_instances("p1", TODAY)
    (lunch,) = [i for i in instances if i.category == Category.MEALS]

    with caplog.at_level(logging.DEBUG, logger="careplan.app"):
        await deliver_reminder(engine, "p1", TODAY, lunch.id)
    assert "reminder.due" in caplog.text

    await engine.log_instance_completion("p1", TODAY, lunch.id, "completed")
    caplog.clear()
    with caplog.at_level(logging.DEBUG, logger="careplan.app"):
        await deliver_reminder(engine, "p1", TODAY, lunch.id)
    assert "reminder.skip" in caplog.text
    assert "reminder.due" not in caplog.text


def test_build_store_picks_backend(tmp_path):
    class MemCfg:
        STORE_BACKEND = "memory"

    class FileCfg:
        STORE_BACKEND = "file"
        DATA_DIR = str(tmp_path / "data")

    assert isinstance(build_store(MemCfg), MemoryStore)
    assert isinstance(build_store(FileCfg), FileStore)
