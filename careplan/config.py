"""
Runtime configuration for the care-plan engine.
All dates and scheduled times are local to TIMEZONE.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# Load environment variables from .env if present
load_dotenv()

# --------------------------------------------------------------------------------------
# Core settings
# --------------------------------------------------------------------------------------
TIMEZONE = os.getenv("CAREPLAN_TIMEZONE", "Europe/Kyiv")
TZ = ZoneInfo(TIMEZONE)

DEFAULT_PATIENT_ID = "default"

# --------------------------------------------------------------------------------------
# Retention (history bounds enforced at write time)
# --------------------------------------------------------------------------------------
INSTANCES_INDEX_DAYS = 90
LOGS_INDEX_DAYS = 365
MAX_LOG_ENTRIES = 5000
OVERRIDE_RETENTION_DAYS = 30

# --------------------------------------------------------------------------------------
# Schedules
# --------------------------------------------------------------------------------------
# Clock times used when a schedule names a window instead of an exact time
WINDOW_TIMES: dict[str, str] = {
    "morning": "08:00",
    "midday": "12:00",
    "evening": "18:00",
    "night": "21:00",
}

# Daily rollover: snapshot + materialize + prune, shortly after midnight
ROLLOVER_TIME = "00:05"

# --------------------------------------------------------------------------------------
# Reminders (scheduling guard only; delivery is up to the caller)
# --------------------------------------------------------------------------------------
REMINDER_LEAD_MINUTES = 10
REMINDER_MISFIRE_GRACE_S = 300

# --------------------------------------------------------------------------------------
# Storage
# --------------------------------------------------------------------------------------
STORE_BACKEND = os.getenv("CAREPLAN_STORE", "file")  # memory | file | mysql
DATA_DIR = os.getenv("CAREPLAN_DATA_DIR", "careplan/data")

DB: dict[str, Any] = {
    "host": os.getenv("CAREPLAN_DB_HOST", "127.0.0.1"),
    "port": int(os.getenv("CAREPLAN_DB_PORT", "3306")),
    "user": os.getenv("CAREPLAN_DB_USER", "careplan"),
    "password": os.getenv("CAREPLAN_DB_PASSWORD", ""),
    "db": os.getenv("CAREPLAN_DB_NAME", "careplan"),
}

# --------------------------------------------------------------------------------------
# Logging
# --------------------------------------------------------------------------------------
AUDIT_LOG_FILE = "careplan/logs/audit.log"

# --------------------------------------------------------------------------------------
# Patient roster (demo values). Each patient's care config is seeded from PLANS_FILE
# the first time it is needed; later edits live in the store.
# --------------------------------------------------------------------------------------
PLANS_FILE = Path(__file__).parent / "plans.yaml"

PATIENTS: list[dict[str, Any]] = [
    {"patient_id": DEFAULT_PATIENT_ID, "patient_label": "Demo patient"},
]
