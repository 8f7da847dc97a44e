# tests/integration/test_engine_failures.py
import json
from datetime import date

import pytest

from careplan.adapters.memory_store import MemoryStore
from careplan.core.models import Category, InstanceStatus
from careplan.core.storage import CorruptRecord, Keys, encode

TODAY = date(2025, 6, 15)
VITALS_AND_MOOD = {"p1": {"buckets": {"vitals": {"enabled": True}, "mood": {"enabled": True}}}}


class FailingKeyStore(MemoryStore):
    """Raises OSError the first time `fail_key` is written."""

    def __init__(self, fail_key, initial=None):
        super().__init__(initial)
        self.fail_key = fail_key
        self.armed = True

    async def set(self, key, value):
        if self.armed and key == self.fail_key:
            self.armed = False
            raise OSError("write failed")
        await super().set(key, value)


@pytest.mark.asyncio
async def test_io_error_reaches_caller_and_engine_keeps_working(make_engine):
    kv_store = FailingKeyStore(Keys.instances("p1", TODAY.isoformat()))
    engine = make_engine(kv_store=kv_store)

    with pytest.raises(OSError, match="write failed"):
        await engine.ensure_daily_instances("p1", TODAY)

    # the patient lock was released and the retry succeeds
    instances = await engine.ensure_daily_instances("p1", TODAY)
    assert len(instances) == 1


@pytest.mark.asyncio
async def test_interrupted_materialization_is_finished_by_recover(make_engine):
    kv_store = FailingKeyStore(Keys.instances_index("p1"))
    engine = make_engine(kv_store=kv_store)

    with pytest.raises(OSError):
        await engine.ensure_daily_instances("p1", TODAY)
    assert Keys.instances_index("p1") not in kv_store.data

    restarted = make_engine(kv_store=MemoryStore(kv_store.data))
    assert await restarted.recover() == 1
    assert json.loads(restarted.records.kv.data[Keys.instances_index("p1")]) == [TODAY.isoformat()]
    assert len(await restarted.list_daily_instances("p1", TODAY)) == 1


@pytest.mark.asyncio
async def test_corrupt_day_record_reads_empty_without_write_back(make_engine, store):
    engine = make_engine()
    await engine.ensure_daily_instances("p1", TODAY)
    key = Keys.instances("p1", TODAY.isoformat())
    store.data[key] = b"\x00not json"

    assert await engine.list_daily_instances("p1", TODAY) == []
    assert await engine.adherence_stats("p1", "any", TODAY, TODAY) is not None
    assert store.data[key] == b"\x00not json"


@pytest.mark.asyncio
async def test_corrupt_log_array_reads_empty_without_write_back(make_engine, store):
    store.data[Keys.logs("p1")] = b'{"not": "a list"}'
    engine = make_engine()

    assert await engine.list_logs_by_date("p1", TODAY) == []
    assert await engine.list_logs_in_range("p1", TODAY, TODAY) == []
    assert store.data[Keys.logs("p1")] == b'{"not": "a list"}'


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(make_engine, store):
    engine = make_engine()
    good = await engine.record_quick_log("p1", TODAY, "mood", {"score": 5})
    raw = json.loads(store.data[Keys.logs("p1")])
    store.data[Keys.logs("p1")] = encode([{"id": "broken"}, "junk"] + raw)

    logs = await engine.list_logs_by_date("p1", TODAY)
    assert [e.id for e in logs] == [good.id]


@pytest.mark.asyncio
async def test_clear_patient_data_removes_every_key(make_engine, store):
    engine = make_engine()
    await engine.ensure_daily_instances("p1", TODAY)
    await engine.record_quick_log("p1", TODAY, "mood")
    await engine.suppress_item("p1", TODAY, "x")
    await engine.get_effective_care_plan(TODAY, "p1")
    store.data["careplan:plan:p2"] = b"{}"

    removed = await engine.clear_patient_data("p1")

    assert removed >= 7
    assert sorted(store.data) == ["careplan:plan:p2"]


@pytest.mark.asyncio
async def test_failed_completion_is_finished_before_the_next_commit(make_engine):
    kv_store = FailingKeyStore(Keys.logs("p1"))
    engine = make_engine(seeds=VITALS_AND_MOOD, kv_store=kv_store)

    with pytest.raises(OSError):
        await engine.sync_log_to_instance("p1", TODAY, "vitals", outcome={"bp": "120/80"})
    assert Keys.journal("p1") in kv_store.data

    mood = await engine.sync_log_to_instance("p1", TODAY, "mood", outcome={"score": 4})
    assert mood.status == InstanceStatus.COMPLETED
    assert Keys.journal("p1") not in kv_store.data

    by_cat = {i.category: i for i in await engine.list_daily_instances("p1", TODAY)}
    vitals = by_cat[Category.VITALS]
    assert vitals.status == InstanceStatus.COMPLETED
    logs = {e.id: e for e in await engine.list_logs_by_date("p1", TODAY)}
    assert sorted(e.category for e in logs.values()) == [Category.MOOD, Category.VITALS]
    assert logs[vitals.log_id].outcome == {"bp": "120/80"}
    assert logs[mood.log_id].instance_id == mood.id

    restarted = make_engine(kv_store=MemoryStore(kv_store.data))
    assert await restarted.recover() == 0
    assert len(await restarted.list_logs_by_date("p1", TODAY)) == 2


@pytest.mark.asyncio
async def test_corrupt_log_array_blocks_appends(make_engine, store):
    store.data[Keys.logs("p1")] = b'{"not": "a list"}'
    engine = make_engine()

    with pytest.raises(CorruptRecord):
        await engine.record_quick_log("p1", TODAY, "mood", {"score": 5})
    with pytest.raises(CorruptRecord):
        await engine.sync_log_to_instance("p1", TODAY, "mood")

    assert store.data[Keys.logs("p1")] == b'{"not": "a list"}'
    # the day was not marked complete either
    (mood,) = await engine.list_daily_instances("p1", TODAY)
    assert mood.is_pending


@pytest.mark.asyncio
@pytest.mark.parametrize("garbage", [b"\x00garbage", b'{"id": "plan-x"}'])
async def test_corrupt_plan_is_not_replaced(make_engine, store, garbage):
    engine = make_engine()
    await engine.get_care_plan("p1")
    store.data[Keys.plan("p1")] = garbage
    items_keys = [k for k in store.data if k.startswith("careplan:items:")]

    with pytest.raises(CorruptRecord):
        await engine.ensure_daily_instances("p1", TODAY)
    with pytest.raises(CorruptRecord):
        await engine.archive_care_plan("p1")

    assert store.data[Keys.plan("p1")] == garbage
    assert [k for k in store.data if k.startswith("careplan:items:")] == items_keys


@pytest.mark.asyncio
async def test_corrupt_day_record_blocks_materialization(make_engine, store):
    engine = make_engine()
    await engine.ensure_daily_instances("p1", TODAY)
    key = Keys.instances("p1", TODAY.isoformat())
    store.data[key] = b"\x00not json"

    with pytest.raises(CorruptRecord):
        await engine.ensure_daily_instances("p1", TODAY)
    with pytest.raises(CorruptRecord):
        await engine.sync_log_to_instance("p1", TODAY, "mood")

    assert store.data[key] == b"\x00not json"
    assert Keys.logs("p1") not in store.data


@pytest.mark.asyncio
async def test_unreadable_instance_in_day_record_blocks_materialization(make_engine, store):
    engine = make_engine()
    (mood,) = await engine.ensure_daily_instances("p1", TODAY)
    key = Keys.instances("p1", TODAY.isoformat())
    body = json.loads(store.data[key])
    body["broken"] = {"id": "broken"}
    store.data[key] = encode(body)
    stored = store.data[key]

    with pytest.raises(CorruptRecord, match="broken"):
        await engine.ensure_daily_instances("p1", TODAY)
    assert store.data[key] == stored
    # reads still serve what can be decoded
    assert [i.id for i in await engine.list_daily_instances("p1", TODAY)] == [mood.id]


@pytest.mark.asyncio
async def test_unreadable_log_elements_survive_appends(make_engine, store):
    engine = make_engine()
    first = await engine.record_quick_log("p1", TODAY, "mood", {"score": 5})
    raw = json.loads(store.data[Keys.logs("p1")])
    store.data[Keys.logs("p1")] = encode(["junk"] + raw)

    second = await engine.record_quick_log("p1", TODAY, "mood", {"score": 3})

    stored = json.loads(store.data[Keys.logs("p1")])
    assert stored[0] == "junk"
    assert len(stored) == 3
    assert [e.id for e in await engine.list_logs_by_date("p1", TODAY)] == [first.id, second.id]


@pytest.mark.asyncio
async def test_log_reads_are_bounded_by_the_logs_index(make_engine, store):
    engine = make_engine()
    await engine.record_quick_log("p1", TODAY, "mood")
    assert len(await engine.list_logs_in_range("p1", TODAY, TODAY)) == 1

    store.data[Keys.logs_index("p1")] = encode([])

    assert await engine.list_logs_by_date("p1", TODAY) == []
    assert await engine.list_logs_in_range("p1", TODAY, TODAY) == []


@pytest.mark.asyncio
async def test_unknown_category_matches_nothing(make_engine, store):
    engine = make_engine()

    assert await engine.sync_log_to_instance("p1", TODAY, "pain") is None
    assert Keys.logs("p1") not in store.data


@pytest.mark.asyncio
async def test_corrupt_config_and_overrides_are_not_replaced(make_engine, store):
    store.data[Keys.config("p1")] = b"garbage"
    store.data[Keys.overrides("p1")] = b"[1, 2]"
    engine = make_engine()

    with pytest.raises(CorruptRecord):
        await engine.get_care_plan("p1")
    with pytest.raises(CorruptRecord):
        await engine.suppress_item("p1", TODAY, "x")
    assert await engine.get_overrides("p1", TODAY) == {}

    assert store.data[Keys.config("p1")] == b"garbage"
    assert store.data[Keys.overrides("p1")] == b"[1, 2]"
    assert Keys.plan("p1") not in store.data
