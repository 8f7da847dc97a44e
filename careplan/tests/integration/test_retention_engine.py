# tests/integration/test_retention_engine.py
import json
from datetime import date, timedelta

import pytest

from careplan.core.storage import Keys, encode

TODAY = date(2025, 6, 15)


def iso(days_ago):
    return (TODAY - timedelta(days=days_ago)).isoformat()


@pytest.mark.asyncio
async def test_log_array_is_capped_keeping_the_newest(make_engine, store):
    store.data[Keys.logs("p1")] = encode([{"n": i} for i in range(5050)])
    engine = make_engine()

    entry = await engine.record_quick_log("p1", TODAY, "mood", {"score": 3})

    stored = json.loads(store.data[Keys.logs("p1")])
    assert len(stored) == 5000
    assert stored[0] == {"n": 51}
    assert stored[-1]["id"] == entry.id


@pytest.mark.asyncio
async def test_instances_index_drops_dates_at_the_horizon(make_engine, store):
    store.data[Keys.instances_index("p1")] = encode([iso(90), iso(10)])
    engine = make_engine()

    await engine.ensure_daily_instances("p1", TODAY)

    assert json.loads(store.data[Keys.instances_index("p1")]) == [iso(10), iso(0)]


@pytest.mark.asyncio
async def test_known_date_leaves_index_untouched(make_engine, store):
    store.data[Keys.instances_index("p1")] = encode([iso(200), iso(0)])
    engine = make_engine()

    await engine.ensure_daily_instances("p1", TODAY)

    assert json.loads(store.data[Keys.instances_index("p1")]) == [iso(200), iso(0)]


@pytest.mark.asyncio
async def test_logs_index_keeps_a_year(make_engine, store):
    store.data[Keys.logs_index("p1")] = encode([iso(365), iso(364), iso(5)])
    engine = make_engine()

    await engine.record_quick_log("p1", TODAY, "hydration")

    assert json.loads(store.data[Keys.logs_index("p1")]) == [iso(364), iso(5), iso(0)]
