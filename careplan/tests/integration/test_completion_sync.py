# tests/integration/test_completion_sync.py
import asyncio
from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from careplan.core import events
from careplan.core.models import Category, InstanceStatus, LogSource

TZ = ZoneInfo("Europe/Kyiv")
TODAY = date(2025, 6, 15)

VITALS_TWICE = {
    "p1": {"buckets": {"vitals": {"enabled": True, "times_of_day": ["morning", "evening"]}}}
}
MEALS = {"p1": {"buckets": {"meals": {"enabled": True, "times_of_day": ["morning", "midday", "evening"]}}}}
MEDS = {
    "p1": {
        "buckets": {"meds": {"enabled": True}},
        "medications": [
            {"id": "med-lis", "name": "Lisinopril", "dosage": "10mg", "scheduled_time": "08:00"},
            {"id": "med-met", "name": "Metformin", "dosage": "500mg", "scheduled_time": "08:00"},
        ],
    }
}


@pytest.mark.asyncio
async def test_vitals_log_completes_earliest_pending_window(make_engine, observer):
    engine = make_engine(seeds=VITALS_TWICE)

    # sync materializes the date itself
    inst = await engine.sync_log_to_instance("p1", TODAY, "vitals", outcome={"bp": "120/80"})

    assert inst.window_id == "morning"
    assert inst.status == InstanceStatus.COMPLETED
    assert inst.outcome == {"bp": "120/80"}
    assert inst.log_id is not None

    logs = await engine.list_logs_by_date("p1", TODAY)
    assert len(logs) == 1
    assert logs[0].id == inst.log_id
    assert logs[0].instance_id == inst.id
    assert logs[0].source == LogSource.RECORD
    assert events.LOGS in observer.seen

    second = await engine.sync_log_to_instance("p1", TODAY, Category.VITALS, outcome={"bp": "118/79"})
    assert second.window_id == "evening"
    assert len(await engine.list_logs_by_date("p1", TODAY)) == 2


@pytest.mark.asyncio
async def test_repeat_log_updates_latest_completion_without_new_entry(make_engine, clock):
    engine = make_engine(seeds=VITALS_TWICE)
    await engine.sync_log_to_instance("p1", TODAY, "vitals", outcome={"bp": "120/80"})
    clock.set(datetime(2025, 6, 15, 19, 0, tzinfo=TZ))
    evening = await engine.sync_log_to_instance("p1", TODAY, "vitals", outcome={"bp": "125/85"})
    clock.set(datetime(2025, 6, 15, 19, 30, tzinfo=TZ))

    again = await engine.sync_log_to_instance("p1", TODAY, "vitals", outcome={"bp": "130/90"})

    assert again.id == evening.id
    assert again.outcome == {"bp": "130/90"}
    assert len(await engine.list_logs_by_date("p1", TODAY)) == 2
    stored = {i.id: i for i in await engine.list_daily_instances("p1", TODAY)}
    assert stored[evening.id].outcome == {"bp": "130/90"}

    # without an outcome there is nothing to refresh
    assert await engine.sync_log_to_instance("p1", TODAY, "vitals") is None


@pytest.mark.asyncio
async def test_meal_log_picks_breakfast_first(make_engine):
    engine = make_engine(seeds=MEALS)
    first = await engine.sync_log_to_instance("p1", TODAY, "meals")
    second = await engine.sync_log_to_instance("p1", TODAY, "meals")
    assert (first.item_name, second.item_name) == ("Breakfast", "Lunch")


@pytest.mark.asyncio
async def test_concurrent_logs_complete_at_most_one_instance_each(make_engine):
    seeds = {"p1": {"buckets": {"vitals": {"enabled": True}}}}
    engine = make_engine(seeds=seeds)

    results = await asyncio.gather(
        engine.sync_log_to_instance("p1", TODAY, "vitals"),
        engine.sync_log_to_instance("p1", TODAY, "vitals"),
    )

    completed = [r for r in results if r is not None]
    assert len(completed) == 1
    assert len(await engine.list_logs_by_date("p1", TODAY)) == 1


@pytest.mark.asyncio
async def test_no_matching_instance_returns_none(make_engine):
    engine = make_engine(seeds=VITALS_TWICE)
    assert await engine.sync_log_to_instance("p1", TODAY, "sleep", outcome={"hours": 7}) is None
    assert await engine.list_logs_by_date("p1", TODAY) == []


@pytest.mark.asyncio
async def test_hint_selects_medication_by_id_or_name(make_engine):
    engine = make_engine(seeds=MEDS)

    met = await engine.sync_log_to_instance("p1", TODAY, "medication", hint="med-met")
    assert met.item_name == "Metformin 500mg"

    lis = await engine.sync_log_to_instance("p1", TODAY, "medication", hint="lisinopril 10MG")
    assert lis.item_name == "Lisinopril 10mg"

    assert await engine.sync_log_to_instance("p1", TODAY, "medication", hint="med-unknown") is None


@pytest.mark.asyncio
async def test_direct_completion_is_idempotent(make_engine):
    engine = make_engine(seeds=VITALS_TWICE)
    morning, evening = await engine.ensure_daily_instances("p1", TODAY)

    done = await engine.log_instance_completion("p1", TODAY, morning.id, "skipped")
    assert done.status == InstanceStatus.SKIPPED

    again = await engine.log_instance_completion("p1", TODAY, morning.id, "completed")
    assert again.status == InstanceStatus.SKIPPED
    assert len(await engine.list_logs_by_date("p1", TODAY)) == 1

    assert await engine.log_instance_completion("p1", TODAY, "inst_missing", "completed") is None

    with pytest.raises(ValueError):
        await engine.log_instance_completion("p1", TODAY, evening.id, "pending")


@pytest.mark.asyncio
async def test_quick_log_has_no_instance(make_engine, clock):
    engine = make_engine()
    entry = await engine.record_quick_log("p1", TODAY, "hydration", {"ml": 250})

    assert entry.source == LogSource.QUICK_LOG
    assert entry.instance_id is None
    assert entry.timestamp == clock.now()

    (stored,) = await engine.list_logs_by_date("p1", TODAY)
    assert stored.outcome == {"ml": 250}


@pytest.mark.asyncio
async def test_logs_in_range_filter_by_item(make_engine, clock):
    engine = make_engine(seeds=VITALS_TWICE)
    inst = await engine.sync_log_to_instance("p1", TODAY, "vitals")
    clock.set(datetime(2025, 6, 16, 9, 0, tzinfo=TZ))
    await engine.record_quick_log("p1", date(2025, 6, 16), "mood", {"score": 4})

    everything = await engine.list_logs_in_range("p1", TODAY, date(2025, 6, 16))
    assert [e.category for e in everything] == [Category.VITALS, Category.MOOD]

    only_vitals = await engine.list_logs_in_range("p1", TODAY, date(2025, 6, 16), item_id=inst.item_id)
    assert [e.instance_id for e in only_vitals] == [inst.id]
