# careplan/app.py
from __future__ import annotations

import sys
from pathlib import Path
import asyncio
import logging
from datetime import date
from typing import Any

# --------------------------------------------------------------------------------------
# Ensure project root is in sys.path so "import careplan.*" always works
# --------------------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # noqa: E402

from careplan import config as cfg  # noqa: E402
from careplan.adapters.file_store import FileStore  # noqa: E402
from careplan.adapters.memory_store import MemoryStore  # noqa: E402
from careplan.adapters.sql_store import SqlStore  # noqa: E402
from careplan.core.config_store import load_seed_configs  # noqa: E402
from careplan.core.config_validation import validate_config  # noqa: E402
from careplan.core.engine import CarePlanEngine  # noqa: E402
from careplan.core.events import ChangeNotifier  # noqa: E402
from careplan.core.logging_utils import kv, setup_logging  # noqa: E402
from careplan.core.reminders import ReminderPlanner  # noqa: E402
from careplan.core.storage import KeyValueStore  # noqa: E402

log = logging.getLogger("careplan.app")


class AuditObserver:
    """Writes every data-change signal to the audit log."""

    def on_data_changed(self, category: str) -> None:
        log.debug("data.changed " + kv(category=category))


def build_store(config: Any) -> KeyValueStore:
    backend = getattr(config, "STORE_BACKEND", "file")
    if backend == "memory":
        return MemoryStore()
    if backend == "mysql":
        return SqlStore.from_config(config.DB)
    return FileStore(config.DATA_DIR)


async def deliver_reminder(engine: CarePlanEngine, patient_id: str, day: date, instance_id: str) -> None:
    """Fire-time re-check. Sending the reminder is left to whatever embeds the engine."""
    inst = await engine.reminder_still_due(patient_id, day, instance_id)
    if inst is None:
        log.debug("reminder.skip " + kv(patient_id=patient_id, instance_id=instance_id))
        return
    log.info(
        "reminder.due "
        + kv(
            patient_id=patient_id,
            item=inst.item_name,
            window=inst.window_label,
            scheduled_at=inst.scheduled_at.strftime("%H:%M"),
        )
    )


async def daily_rollover(engine: CarePlanEngine, planner: ReminderPlanner) -> None:
    today = engine.clock.today()
    for p in cfg.PATIENTS:
        pid = str(p["patient_id"])
        await engine.rollover(pid, today)
        await engine.plan_reminders(pid, today, planner)


def schedule_rollover(
    sched: AsyncIOScheduler, engine: CarePlanEngine, planner: ReminderPlanner
) -> None:
    hh, mm = (int(x) for x in cfg.ROLLOVER_TIME.split(":"))
    sched.add_job(
        daily_rollover,
        trigger="cron",
        hour=hh,
        minute=mm,
        kwargs={"engine": engine, "planner": planner},
        id="rollover:daily",
        replace_existing=True,
        coalesce=True,
        misfire_grace_time=cfg.REMINDER_MISFIRE_GRACE_S,
        max_instances=1,
    )


async def main() -> None:
    setup_logging(cfg)
    validate_config(cfg)

    store = build_store(cfg)
    if isinstance(store, SqlStore):
        await store.create_schema()

    seeds = load_seed_configs(cfg.PLANS_FILE) if Path(cfg.PLANS_FILE).exists() else {}
    engine = CarePlanEngine(cfg, store, notifier=ChangeNotifier([AuditObserver()]), seeds=seeds)

    replayed = await engine.recover()
    if replayed:
        log.warning("startup.recovered " + kv(commits=replayed))

    sched = AsyncIOScheduler(timezone=cfg.TZ)

    async def deliver(patient_id: str, day: date, instance_id: str) -> None:
        await deliver_reminder(engine, patient_id, day, instance_id)

    planner = ReminderPlanner(
        sched,
        deliver,
        lead_minutes=cfg.REMINDER_LEAD_MINUTES,
        misfire_grace_s=cfg.REMINDER_MISFIRE_GRACE_S,
    )

    # Today first, so reminders exist before the scheduler runs anything
    await daily_rollover(engine, planner)
    schedule_rollover(sched, engine, planner)
    sched.start()

    log.info("startup.ready " + kv(patients=len(cfg.PATIENTS), store=cfg.STORE_BACKEND))

    try:
        await asyncio.Event().wait()
    finally:
        sched.shutdown(wait=False)
        if isinstance(store, SqlStore):
            await store.dispose()


if __name__ == "__main__":
    asyncio.run(main())
