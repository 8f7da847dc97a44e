# careplan/tests/conftest.py
import sys
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

# This file is at <project_root>/careplan/tests/conftest.py
# Project root is two levels up from here.
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from careplan.adapters.memory_store import MemoryStore  # noqa: E402
from careplan.core.clock import FixedClock  # noqa: E402
from careplan.core.engine import CarePlanEngine  # noqa: E402
from careplan.core.events import ChangeNotifier  # noqa: E402

TZ = ZoneInfo("Europe/Kyiv")


class Cfg:
    TZ = TZ
    TIMEZONE = "Europe/Kyiv"
    DEFAULT_PATIENT_ID = "p1"
    WINDOW_TIMES = {"morning": "08:00", "midday": "12:00", "evening": "18:00", "night": "21:00"}
    INSTANCES_INDEX_DAYS = 90
    LOGS_INDEX_DAYS = 365
    MAX_LOG_ENTRIES = 5000
    OVERRIDE_RETENTION_DAYS = 30


class RecordingObserver:
    def __init__(self):
        self.seen = []

    def on_data_changed(self, category):
        self.seen.append(category)


class FakeScheduler:
    """Captures add_job/remove_job calls without running anything."""

    def __init__(self):
        self.jobs = {}

    def add_job(self, func, trigger=None, id=None, replace_existing=True, kwargs=None, **extra):
        self.jobs[id] = {"func": func, "trigger": trigger, "kwargs": kwargs or {}, **extra}

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FixedClock(TZ, datetime(2025, 6, 15, 7, 0, tzinfo=TZ))


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def make_engine(store, clock, observer):
    def _make(seeds=None, kv_store=None):
        return CarePlanEngine(
            Cfg,
            kv_store if kv_store is not None else store,
            clock=clock,
            notifier=ChangeNotifier([observer]),
            seeds=seeds,
        )

    return _make
