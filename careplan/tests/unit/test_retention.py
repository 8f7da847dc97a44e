# tests/unit/test_retention.py
from datetime import date, timedelta

from careplan.core.retention import (
    add_date_to_index,
    cap_entries,
    dates_in_range,
    prune_overrides,
)

TODAY = date(2025, 6, 15)


def iso(days_ago):
    return (TODAY - timedelta(days=days_ago)).isoformat()


def test_new_date_is_inserted_sorted_and_old_dates_pruned():
    index = [iso(10), iso(90), iso(120)]
    out, changed = add_date_to_index(index, TODAY, today=TODAY, horizon_days=90)
    assert changed
    assert out == [iso(10), TODAY.isoformat()]


def test_date_just_inside_horizon_is_kept():
    out, _ = add_date_to_index([iso(89)], TODAY, today=TODAY, horizon_days=90)
    assert iso(89) in out


def test_existing_date_does_not_prune():
    index = [iso(400), TODAY.isoformat()]
    out, changed = add_date_to_index(index, TODAY, today=TODAY, horizon_days=365)
    assert not changed
    assert out == index


def test_cap_keeps_last_entries_by_position():
    entries = list(range(5051))
    out = cap_entries(entries, 5000)
    assert len(out) == 5000
    assert out[0] == 51
    assert out[-1] == 5050


def test_cap_is_noop_under_limit():
    entries = [1, 2, 3]
    assert cap_entries(entries, 5000) is entries


def test_dates_in_range_inclusive():
    index = [iso(3), iso(2), iso(1), iso(0)]
    assert dates_in_range(index, TODAY - timedelta(days=2), TODAY - timedelta(days=1)) == [iso(2), iso(1)]


def test_prune_overrides_keeps_thirty_days():
    data = {iso(31): {"a": {}}, iso(30): {"b": {}}, iso(0): {"c": {}}}
    out = prune_overrides(data, today=TODAY, retention_days=30)
    assert sorted(out) == [iso(30), iso(0)]
