# careplan/core/models.py
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Category(str, Enum):
    MEDICATION = "medication"
    VITALS = "vitals"
    MEALS = "meals"
    MOOD = "mood"
    SLEEP = "sleep"
    HYDRATION = "hydration"
    CUSTOM = "custom"
    APPOINTMENT = "appointment"


class Priority(str, Enum):
    REQUIRED = "required"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    EVERY_OTHER_DAY = "every_other_day"
    CUSTOM = "custom"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class LogSource(str, Enum):
    RECORD = "record"
    QUICK_LOG = "quick-log"
    AUTOMATIC = "automatic"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


NAMED_WINDOWS = ("morning", "midday", "evening", "night")


# -------------------------------------------------------------------------------------------------
# (de)serialization helpers: dates as YYYY-MM-DD, timestamps as ISO-8601 with offset
# -------------------------------------------------------------------------------------------------
def iso_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d is not None else None


def parse_date(s: Optional[str]) -> Optional[date]:
    return date.fromisoformat(s) if s else None


def iso_ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def parse_ts(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


@dataclass(frozen=True)
class TimeWindow:
    """One slot of an item's day: a named window (resolved later) or an exact HH:MM."""

    label: str
    at: Optional[str] = None  # exact HH:MM; None means the label is a named window

    @property
    def id(self) -> str:
        """Stable slot id; survives config edits that keep the same slot."""
        if self.at:
            return "at-" + self.at.replace(":", "")
        return self.label

    @classmethod
    def named(cls, label: str) -> "TimeWindow":
        return cls(label=label)

    @classmethod
    def exact(cls, hhmm: str, label: Optional[str] = None) -> "TimeWindow":
        return cls(label=label or hhmm, at=hhmm)

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "at": self.at}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TimeWindow":
        return cls(label=d["label"], at=d.get("at"))


@dataclass
class Schedule:
    frequency: Frequency = Frequency.DAILY
    times: List[TimeWindow] = field(default_factory=list)
    days_of_week: List[int] = field(default_factory=list)  # 0=Sunday .. 6=Saturday
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    skip_dates: List[date] = field(default_factory=list)
    anchor_date: Optional[date] = None  # every_other_day parity epoch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "times": [t.to_dict() for t in self.times],
            "days_of_week": list(self.days_of_week),
            "start_date": iso_date(self.start_date),
            "end_date": iso_date(self.end_date),
            "skip_dates": [d.isoformat() for d in self.skip_dates],
            "anchor_date": iso_date(self.anchor_date),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Schedule":
        return cls(
            frequency=Frequency(d.get("frequency", Frequency.DAILY.value)),
            times=[TimeWindow.from_dict(t) for t in d.get("times", [])],
            days_of_week=[int(x) for x in d.get("days_of_week", [])],
            start_date=parse_date(d.get("start_date")),
            end_date=parse_date(d.get("end_date")),
            skip_dates=[date.fromisoformat(x) for x in d.get("skip_dates", [])],
            anchor_date=parse_date(d.get("anchor_date")),
        )


@dataclass
class RegimenItem:
    """A concrete trackable thing in a care plan (one medication, the vitals check, ...)."""

    id: str
    care_plan_id: str
    category: Category
    name: str
    schedule: Schedule
    priority: Priority = Priority.RECOMMENDED
    active: bool = True
    source_key: str = ""  # reconciliation identity, see regimen.source_key_for
    medication_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    notifications_enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "care_plan_id": self.care_plan_id,
            "category": self.category.value,
            "name": self.name,
            "schedule": self.schedule.to_dict(),
            "priority": self.priority.value,
            "active": self.active,
            "source_key": self.source_key,
            "medication_id": self.medication_id,
            "payload": copy.deepcopy(self.payload),
            "notifications_enabled": self.notifications_enabled,
            "created_at": iso_ts(self.created_at),
            "updated_at": iso_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RegimenItem":
        return cls(
            id=d["id"],
            care_plan_id=d["care_plan_id"],
            category=Category(d["category"]),
            name=d["name"],
            schedule=Schedule.from_dict(d.get("schedule", {})),
            priority=Priority(d.get("priority", Priority.RECOMMENDED.value)),
            active=bool(d.get("active", True)),
            source_key=d.get("source_key", ""),
            medication_id=d.get("medication_id"),
            payload=dict(d.get("payload") or {}),
            notifications_enabled=bool(d.get("notifications_enabled", True)),
            created_at=parse_ts(d.get("created_at")),
            updated_at=parse_ts(d.get("updated_at")),
        )


@dataclass
class CarePlan:
    id: str
    patient_id: str
    timezone: str
    start_date: date
    status: PlanStatus = PlanStatus.ACTIVE
    version: int = 1
    config_version: int = 0  # config version last reconciled into the items
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "timezone": self.timezone,
            "start_date": self.start_date.isoformat(),
            "status": self.status.value,
            "version": self.version,
            "config_version": self.config_version,
            "created_at": iso_ts(self.created_at),
            "updated_at": iso_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CarePlan":
        return cls(
            id=d["id"],
            patient_id=d["patient_id"],
            timezone=d["timezone"],
            start_date=date.fromisoformat(d["start_date"]),
            status=PlanStatus(d.get("status", PlanStatus.ACTIVE.value)),
            version=int(d.get("version", 1)),
            config_version=int(d.get("config_version", 0)),
            created_at=parse_ts(d.get("created_at")),
            updated_at=parse_ts(d.get("updated_at")),
        )


@dataclass
class EffectiveCarePlan:
    """Plan header plus its items: what a day's schedule is built from."""

    plan: CarePlan
    items: List[RegimenItem] = field(default_factory=list)

    @property
    def active_items(self) -> List[RegimenItem]:
        return [i for i in self.items if i.active]

    def to_dict(self) -> Dict[str, Any]:
        return {"plan": self.plan.to_dict(), "items": [i.to_dict() for i in self.items]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EffectiveCarePlan":
        return cls(
            plan=CarePlan.from_dict(d["plan"]),
            items=[RegimenItem.from_dict(i) for i in d.get("items", [])],
        )


@dataclass
class DailyInstance:
    """One occurrence of an item on a date, in one time window."""

    id: str
    care_plan_id: str
    item_id: str
    patient_id: str
    date: date
    window_id: str
    window_label: str
    scheduled_at: datetime
    item_name: str
    category: Category
    priority: Priority = Priority.RECOMMENDED
    status: InstanceStatus = InstanceStatus.PENDING
    active: bool = True
    completed_at: Optional[datetime] = None
    outcome: Optional[Dict[str, Any]] = None
    log_id: Optional[str] = None
    generated_from_version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def slot_key(self) -> tuple[str, str, str]:
        return (self.item_id, self.date.isoformat(), self.window_id)

    @property
    def is_pending(self) -> bool:
        return self.status == InstanceStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "care_plan_id": self.care_plan_id,
            "item_id": self.item_id,
            "patient_id": self.patient_id,
            "date": self.date.isoformat(),
            "window_id": self.window_id,
            "window_label": self.window_label,
            "scheduled_at": self.scheduled_at.isoformat(),
            "item_name": self.item_name,
            "category": self.category.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "active": self.active,
            "completed_at": iso_ts(self.completed_at),
            "outcome": copy.deepcopy(self.outcome),
            "log_id": self.log_id,
            "generated_from_version": self.generated_from_version,
            "created_at": iso_ts(self.created_at),
            "updated_at": iso_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DailyInstance":
        return cls(
            id=d["id"],
            care_plan_id=d["care_plan_id"],
            item_id=d["item_id"],
            patient_id=d["patient_id"],
            date=date.fromisoformat(d["date"]),
            window_id=d["window_id"],
            window_label=d.get("window_label", d["window_id"]),
            scheduled_at=datetime.fromisoformat(d["scheduled_at"]),
            item_name=d.get("item_name", ""),
            category=Category(d["category"]),
            priority=Priority(d.get("priority", Priority.RECOMMENDED.value)),
            status=InstanceStatus(d.get("status", InstanceStatus.PENDING.value)),
            active=bool(d.get("active", True)),
            completed_at=parse_ts(d.get("completed_at")),
            outcome=d.get("outcome"),
            log_id=d.get("log_id"),
            generated_from_version=int(d.get("generated_from_version", 1)),
            created_at=parse_ts(d.get("created_at")),
            updated_at=parse_ts(d.get("updated_at")),
        )


@dataclass(frozen=True)
class LogEntry:
    """Immutable record of something that happened. Never edited after append."""

    id: str
    patient_id: str
    timestamp: datetime
    date: date
    category: Category
    status: InstanceStatus
    source: LogSource
    care_plan_id: Optional[str] = None
    item_id: Optional[str] = None
    instance_id: Optional[str] = None
    outcome: Optional[Dict[str, Any]] = None

    @property
    def immutable(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "timestamp": self.timestamp.isoformat(),
            "date": self.date.isoformat(),
            "category": self.category.value,
            "status": self.status.value,
            "source": self.source.value,
            "care_plan_id": self.care_plan_id,
            "item_id": self.item_id,
            "instance_id": self.instance_id,
            "outcome": copy.deepcopy(self.outcome),
            "immutable": True,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LogEntry":
        return cls(
            id=d["id"],
            patient_id=d["patient_id"],
            timestamp=datetime.fromisoformat(d["timestamp"]),
            date=date.fromisoformat(d["date"]),
            category=Category(d["category"]),
            status=InstanceStatus(d["status"]),
            source=LogSource(d["source"]),
            care_plan_id=d.get("care_plan_id"),
            item_id=d.get("item_id"),
            instance_id=d.get("instance_id"),
            outcome=d.get("outcome"),
        )


@dataclass
class CarePlanOverride:
    date: date
    item_id: str
    done: bool = False
    suppressed: bool = False
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "item_id": self.item_id,
            "done": self.done,
            "suppressed": self.suppressed,
            "timestamp": iso_ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CarePlanOverride":
        return cls(
            date=date.fromisoformat(d["date"]),
            item_id=d["item_id"],
            done=bool(d.get("done", False)),
            suppressed=bool(d.get("suppressed", False)),
            timestamp=parse_ts(d.get("timestamp")),
        )


@dataclass
class DailySnapshot:
    date: date
    plan: EffectiveCarePlan
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "plan": self.plan.to_dict(),
            "created_at": iso_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DailySnapshot":
        return cls(
            date=date.fromisoformat(d["date"]),
            plan=EffectiveCarePlan.from_dict(d["plan"]),
            created_at=parse_ts(d.get("created_at")),
        )


__all__ = [
    "Category",
    "Priority",
    "Frequency",
    "InstanceStatus",
    "LogSource",
    "PlanStatus",
    "NAMED_WINDOWS",
    "TimeWindow",
    "Schedule",
    "RegimenItem",
    "CarePlan",
    "EffectiveCarePlan",
    "DailyInstance",
    "LogEntry",
    "CarePlanOverride",
    "DailySnapshot",
    "iso_date",
    "parse_date",
    "iso_ts",
    "parse_ts",
]
