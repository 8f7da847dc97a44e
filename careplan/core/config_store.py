# careplan/core/config_store.py
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import yaml

from careplan.core.clock import Clock, new_id
from careplan.core.config_validation import validate_care_plan_config
from careplan.core.logging_utils import kv
from careplan.core.models import (
    Category,
    Frequency,
    Priority,
    iso_date,
    iso_ts,
    parse_date,
    parse_ts,
)
from careplan.core.storage import CorruptRecord, Keys, RecordStore

logger = logging.getLogger("careplan.config")

BUCKET_CATEGORY: Dict[str, Category] = {
    "meds": Category.MEDICATION,
    "vitals": Category.VITALS,
    "meals": Category.MEALS,
    "hydration": Category.HYDRATION,
    "mood": Category.MOOD,
    "sleep": Category.SLEEP,
    "custom": Category.CUSTOM,
    "appointments": Category.APPOINTMENT,
}
BUCKETS = tuple(BUCKET_CATEGORY)


@dataclass
class BucketConfig:
    """Per-category settings ("bucket"): on/off, priority and the default schedule."""

    enabled: bool = False
    priority: Priority = Priority.RECOMMENDED
    frequency: Frequency = Frequency.DAILY
    days_of_week: List[int] = field(default_factory=list)
    times_of_day: List[str] = field(default_factory=lambda: ["morning"])
    custom_times: List[str] = field(default_factory=list)
    tracking_style: str = "checkbox"
    notifications_enabled: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "priority": self.priority.value,
            "frequency": self.frequency.value,
            "days_of_week": list(self.days_of_week),
            "times_of_day": list(self.times_of_day),
            "custom_times": list(self.custom_times),
            "tracking_style": self.tracking_style,
            "notifications_enabled": self.notifications_enabled,
            "settings": copy.deepcopy(self.settings),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BucketConfig":
        base = cls()
        return cls(
            enabled=bool(d.get("enabled", base.enabled)),
            priority=Priority(d.get("priority", base.priority.value)),
            frequency=Frequency(d.get("frequency", base.frequency.value)),
            days_of_week=[int(x) for x in d.get("days_of_week", [])],
            times_of_day=list(d.get("times_of_day", base.times_of_day)),
            custom_times=list(d.get("custom_times", [])),
            tracking_style=d.get("tracking_style", base.tracking_style),
            notifications_enabled=bool(d.get("notifications_enabled", True)),
            settings=dict(d.get("settings") or {}),
        )


@dataclass
class MedicationConfig:
    id: str
    name: str
    dosage: str = ""
    instructions: str = ""
    active: bool = True
    priority: Priority = Priority.REQUIRED
    frequency: Frequency = Frequency.DAILY
    days_of_week: List[int] = field(default_factory=list)
    times_of_day: List[str] = field(default_factory=list)
    scheduled_time: Optional[str] = None  # exact HH:MM; wins over times_of_day
    custom_times: List[str] = field(default_factory=list)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @property
    def display_name(self) -> str:
        return f"{self.name} {self.dosage}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "instructions": self.instructions,
            "active": self.active,
            "priority": self.priority.value,
            "frequency": self.frequency.value,
            "days_of_week": list(self.days_of_week),
            "times_of_day": list(self.times_of_day),
            "scheduled_time": self.scheduled_time,
            "custom_times": list(self.custom_times),
            "start_date": iso_date(self.start_date),
            "end_date": iso_date(self.end_date),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MedicationConfig":
        return cls(
            id=str(d.get("id") or new_id("med")),
            name=d["name"],
            dosage=str(d.get("dosage", "")),
            instructions=d.get("instructions", ""),
            active=bool(d.get("active", True)),
            priority=Priority(d.get("priority", Priority.REQUIRED.value)),
            frequency=Frequency(d.get("frequency", Frequency.DAILY.value)),
            days_of_week=[int(x) for x in d.get("days_of_week", [])],
            times_of_day=list(d.get("times_of_day", [])),
            scheduled_time=d.get("scheduled_time"),
            custom_times=list(d.get("custom_times", [])),
            start_date=_as_date(d.get("start_date")),
            end_date=_as_date(d.get("end_date")),
        )


@dataclass
class CustomItemConfig:
    id: str
    name: str
    priority: Priority = Priority.OPTIONAL
    frequency: Frequency = Frequency.DAILY
    days_of_week: List[int] = field(default_factory=list)
    times_of_day: List[str] = field(default_factory=lambda: ["morning"])
    custom_times: List[str] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority.value,
            "frequency": self.frequency.value,
            "days_of_week": list(self.days_of_week),
            "times_of_day": list(self.times_of_day),
            "custom_times": list(self.custom_times),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CustomItemConfig":
        return cls(
            id=str(d.get("id") or new_id("custom")),
            name=d["name"],
            priority=Priority(d.get("priority", Priority.OPTIONAL.value)),
            frequency=Frequency(d.get("frequency", Frequency.DAILY.value)),
            days_of_week=[int(x) for x in d.get("days_of_week", [])],
            times_of_day=list(d.get("times_of_day", ["morning"])),
            custom_times=list(d.get("custom_times", [])),
            notes=d.get("notes", ""),
        )


@dataclass
class AppointmentConfig:
    id: str
    title: str
    date: date
    time: str = "09:00"
    location: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "date": self.date.isoformat(),
            "time": self.time,
            "location": self.location,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AppointmentConfig":
        return cls(
            id=str(d.get("id") or new_id("appt")),
            title=d["title"],
            date=_as_date(d["date"]),
            time=str(d.get("time", "09:00")),
            location=d.get("location", ""),
            notes=d.get("notes", ""),
        )


@dataclass
class CarePlanConfig:
    """What the patient (or carer) chose to track. Versioned; every save bumps `version`."""

    patient_id: str
    timezone: str
    version: int = 1
    buckets: Dict[str, BucketConfig] = field(default_factory=dict)
    medications: List[MedicationConfig] = field(default_factory=list)
    custom_items: List[CustomItemConfig] = field(default_factory=list)
    appointments: List[AppointmentConfig] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    def bucket(self, name: str) -> BucketConfig:
        if name not in BUCKET_CATEGORY:
            raise ValueError(f"unknown bucket '{name}'")
        return self.buckets.setdefault(name, BucketConfig())

    def medication(self, med_id: str) -> Optional[MedicationConfig]:
        return next((m for m in self.medications if m.id == med_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "timezone": self.timezone,
            "version": self.version,
            "buckets": {k: b.to_dict() for k, b in self.buckets.items()},
            "medications": [m.to_dict() for m in self.medications],
            "custom_items": [c.to_dict() for c in self.custom_items],
            "appointments": [a.to_dict() for a in self.appointments],
            "updated_at": iso_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CarePlanConfig":
        cfg = cls(
            patient_id=str(d["patient_id"]),
            timezone=d.get("timezone", "Europe/Kyiv"),
            version=int(d.get("version", 1)),
            buckets={k: BucketConfig.from_dict(v or {}) for k, v in (d.get("buckets") or {}).items()},
            medications=[MedicationConfig.from_dict(m) for m in d.get("medications") or []],
            custom_items=[CustomItemConfig.from_dict(c) for c in d.get("custom_items") or []],
            appointments=[AppointmentConfig.from_dict(a) for a in d.get("appointments") or []],
            updated_at=parse_ts(d.get("updated_at")),
        )
        for name in BUCKETS:
            cfg.buckets.setdefault(name, BucketConfig())
        return cfg


def _as_date(v: Any) -> Optional[date]:
    # YAML already turns 2025-06-15 into a date; JSON gives us a string
    if v is None or isinstance(v, date):
        return v
    return parse_date(str(v))


def default_care_plan_config(patient_id: str, timezone: str) -> CarePlanConfig:
    """Fresh config: mood check-ins on, everything else waiting to be switched on."""
    cfg = CarePlanConfig(patient_id=patient_id, timezone=timezone)
    for name in BUCKETS:
        cfg.buckets[name] = BucketConfig()
    cfg.buckets["meds"].priority = Priority.REQUIRED
    cfg.buckets["vitals"].settings = {"vital_types": ["bp", "hr"]}
    cfg.buckets["meals"].times_of_day = ["morning", "midday", "evening"]
    cfg.buckets["hydration"].settings = {"daily_goal_ml": 2000}
    cfg.buckets["mood"].enabled = True
    cfg.buckets["mood"].times_of_day = ["evening"]
    cfg.buckets["sleep"].times_of_day = ["morning"]
    return cfg


def load_seed_configs(path: str | Path) -> Dict[str, Dict[str, Any]]:
    """Read per-patient seed configs from YAML: {"patients": {<id>: {...config...}}}."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        logger.error("config.seed.missing " + kv(path=str(path)))
        raise
    patients = raw.get("patients")
    if not isinstance(patients, dict):
        logger.error("config.seed.invalid " + kv(path=str(path), reason="no 'patients' mapping"))
        raise KeyError(f"Missing `patients` mapping in {path}")
    return {str(pid): (body or {}) for pid, body in patients.items()}


ConfigListener = Callable[[str, CarePlanConfig], Awaitable[None]]


class ConfigStore:
    """
    Durable per-patient CarePlanConfig.

    The regimen engine only reads it, except through the edit helpers below. Each
    save bumps the version and (unless notify=False) awaits every listener with the
    new config, which is how bucket toggles and medication edits reach the regimen.
    """

    def __init__(
        self,
        records: RecordStore,
        clock: Clock,
        timezone: str,
        seeds: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.records = records
        self.clock = clock
        self.timezone = timezone
        self.seeds = seeds or {}
        self._listeners: List[ConfigListener] = []

    def add_listener(self, listener: ConfigListener) -> None:
        self._listeners.append(listener)

    async def get(self, patient_id: str, *, strict: bool = False) -> Optional[CarePlanConfig]:
        key = Keys.config(patient_id)
        raw = await self.records.read(key, None, expect=dict, strict=strict)
        if raw is None:
            return None
        try:
            return CarePlanConfig.from_dict(raw)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("config.read.corrupt " + kv(patient_id=patient_id, error=str(e)))
            if strict:
                raise CorruptRecord(key, str(e)) from e
            return None

    async def get_or_create_care_plan_config(self, patient_id: str) -> CarePlanConfig:
        """The stored config, or a new one from the seed (or defaults). Never replaces an unreadable one."""
        cfg = await self.get(patient_id, strict=True)
        if cfg is not None:
            return cfg
        seed = self.seeds.get(patient_id)
        if seed is not None:
            body = {"timezone": self.timezone, **seed, "patient_id": patient_id}
            cfg = CarePlanConfig.from_dict(body)
        else:
            cfg = default_care_plan_config(patient_id, self.timezone)
        cfg.updated_at = self.clock.now()
        validate_care_plan_config(cfg)
        await self.records.write(Keys.config(patient_id), cfg.to_dict())
        logger.info("config.created " + kv(patient_id=patient_id, seeded=seed is not None))
        return cfg

    async def save(self, cfg: CarePlanConfig, *, notify: bool = True) -> CarePlanConfig:
        validate_care_plan_config(cfg)
        cfg.version += 1
        cfg.updated_at = self.clock.now()
        await self.records.write(Keys.config(cfg.patient_id), cfg.to_dict())
        logger.debug("config.saved " + kv(patient_id=cfg.patient_id, version=cfg.version))
        if notify:
            for listener in list(self._listeners):
                await listener(cfg.patient_id, cfg)
        return cfg

    # -- edits -------------------------------------------------------------------------
    async def set_bucket_enabled(
        self, patient_id: str, bucket: str, enabled: bool, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.bucket(bucket).enabled = enabled
        logger.info("config.bucket.toggle " + kv(patient_id=patient_id, bucket=bucket, enabled=enabled))
        return await self.save(cfg, notify=notify)

    async def update_bucket(
        self, patient_id: str, bucket: str, *, notify: bool = True, **changes: Any
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        current = cfg.bucket(bucket)
        cfg.buckets[bucket] = replace(current, **changes)
        return await self.save(cfg, notify=notify)

    async def add_medication(
        self, patient_id: str, med: MedicationConfig, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        if cfg.medication(med.id) is not None:
            raise ValueError(f"medication '{med.id}' already exists")
        cfg.medications.append(med)
        return await self.save(cfg, notify=notify)

    async def update_medication(
        self, patient_id: str, med_id: str, *, notify: bool = True, **changes: Any
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        med = cfg.medication(med_id)
        if med is None:
            raise KeyError(med_id)
        cfg.medications[cfg.medications.index(med)] = replace(med, **changes)
        return await self.save(cfg, notify=notify)

    async def remove_medication(
        self, patient_id: str, med_id: str, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.medications = [m for m in cfg.medications if m.id != med_id]
        return await self.save(cfg, notify=notify)

    async def add_custom_item(
        self, patient_id: str, item: CustomItemConfig, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.custom_items = [c for c in cfg.custom_items if c.id != item.id] + [item]
        return await self.save(cfg, notify=notify)

    async def remove_custom_item(
        self, patient_id: str, item_id: str, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.custom_items = [c for c in cfg.custom_items if c.id != item_id]
        return await self.save(cfg, notify=notify)

    async def add_appointment(
        self, patient_id: str, appt: AppointmentConfig, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.appointments = [a for a in cfg.appointments if a.id != appt.id] + [appt]
        return await self.save(cfg, notify=notify)

    async def remove_appointment(
        self, patient_id: str, appt_id: str, *, notify: bool = True
    ) -> CarePlanConfig:
        cfg = await self.get_or_create_care_plan_config(patient_id)
        cfg.appointments = [a for a in cfg.appointments if a.id != appt_id]
        return await self.save(cfg, notify=notify)


__all__ = [
    "BUCKETS",
    "BUCKET_CATEGORY",
    "BucketConfig",
    "MedicationConfig",
    "CustomItemConfig",
    "AppointmentConfig",
    "CarePlanConfig",
    "ConfigStore",
    "ConfigListener",
    "default_care_plan_config",
    "load_seed_configs",
]
