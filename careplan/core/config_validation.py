# careplan/core/config_validation.py
from __future__ import annotations

import re
from typing import Any, Dict, List

from careplan.core.models import NAMED_WINDOWS, Frequency

_TIME_RE = re.compile(r"^\d{2}:\d{2}$")


def _is_valid_hhmm(s: Any) -> bool:
    if not isinstance(s, str) or not _TIME_RE.match(s):
        return False
    hh, mm = (int(x) for x in s.split(":", 1))
    return 0 <= hh <= 23 and 0 <= mm <= 59


def validate_config(cfg: Any) -> None:
    """Validate runtime configuration (the careplan.config module) before startup."""
    patients: List[Dict[str, Any]] = getattr(cfg, "PATIENTS", None)
    if not isinstance(patients, list) or not patients:
        raise ValueError("PATIENTS must be a non-empty list")

    seen: set[str] = set()
    for p in patients:
        if "patient_id" not in p:
            raise ValueError("patient missing required field: patient_id")
        pid = str(p["patient_id"]).strip()
        if not pid:
            raise ValueError("patient_id must be non-empty")
        if ":" in pid:
            raise ValueError(f"patient {pid}: ':' is reserved in storage keys")
        if pid in seen:
            raise ValueError(f"duplicate patient_id '{pid}'")
        seen.add(pid)

    for name in ("INSTANCES_INDEX_DAYS", "LOGS_INDEX_DAYS", "MAX_LOG_ENTRIES", "OVERRIDE_RETENTION_DAYS"):
        value = getattr(cfg, name, None)
        if not isinstance(value, int) or value <= 0:
            raise ValueError(f"{name} must be a positive integer")

    windows = getattr(cfg, "WINDOW_TIMES", None)
    if not isinstance(windows, dict) or not windows:
        raise ValueError("WINDOW_TIMES must be a non-empty dict")
    for label, t in windows.items():
        if not _is_valid_hhmm(t):
            raise ValueError(f"WINDOW_TIMES['{label}']: invalid time '{t}' (expected HH:MM)")

    rollover = getattr(cfg, "ROLLOVER_TIME", "00:05")
    if not _is_valid_hhmm(rollover):
        raise ValueError(f"ROLLOVER_TIME: invalid time '{rollover}' (expected HH:MM)")

    lead = getattr(cfg, "REMINDER_LEAD_MINUTES", 0)
    if not isinstance(lead, int) or lead < 0:
        raise ValueError("REMINDER_LEAD_MINUTES must be a non-negative integer")

    backend = getattr(cfg, "STORE_BACKEND", "memory")
    if backend not in ("memory", "file", "mysql"):
        raise ValueError(f"STORE_BACKEND '{backend}' must be one of memory|file|mysql")


def _check_schedule(where: str, frequency: Frequency, days: List[int], named: List[str], exact: List[str]) -> None:
    for d in days:
        if not isinstance(d, int) or not 0 <= d <= 6:
            raise ValueError(f"{where}: day of week {d!r} out of range 0..6")
    if frequency in (Frequency.WEEKLY, Frequency.CUSTOM) and not days:
        raise ValueError(f"{where}: '{frequency.value}' schedule needs days_of_week")
    for label in named:
        if label not in NAMED_WINDOWS:
            raise ValueError(f"{where}: unknown time of day '{label}'")
    for t in exact:
        if not _is_valid_hhmm(t):
            raise ValueError(f"{where}: invalid time '{t}' (expected HH:MM)")


def validate_care_plan_config(cfg: Any) -> None:
    """Validate one patient's CarePlanConfig before it is stored."""
    pid = cfg.patient_id
    for name, bucket in cfg.buckets.items():
        _check_schedule(
            f"patient {pid}: bucket '{name}'",
            bucket.frequency,
            bucket.days_of_week,
            bucket.times_of_day,
            bucket.custom_times,
        )

    seen_meds: set[str] = set()
    for med in cfg.medications:
        if med.id in seen_meds:
            raise ValueError(f"patient {pid}: duplicate medication id '{med.id}'")
        seen_meds.add(med.id)
        if not str(med.name).strip():
            raise ValueError(f"patient {pid}: medication '{med.id}' needs a name")
        exact = list(med.custom_times) + ([med.scheduled_time] if med.scheduled_time else [])
        _check_schedule(
            f"patient {pid}: medication '{med.id}'",
            med.frequency,
            med.days_of_week,
            med.times_of_day,
            exact,
        )
        if med.start_date and med.end_date and med.end_date < med.start_date:
            raise ValueError(f"patient {pid}: medication '{med.id}' ends before it starts")

    for item in cfg.custom_items:
        if not str(item.name).strip():
            raise ValueError(f"patient {pid}: custom item '{item.id}' needs a name")
        _check_schedule(
            f"patient {pid}: custom item '{item.id}'",
            item.frequency,
            item.days_of_week,
            item.times_of_day,
            item.custom_times,
        )

    for appt in cfg.appointments:
        if appt.date is None:
            raise ValueError(f"patient {pid}: appointment '{appt.id}' needs a date")
        if not _is_valid_hhmm(appt.time):
            raise ValueError(f"patient {pid}: appointment '{appt.id}' has invalid time '{appt.time}'")
