# careplan/core/events.py
from __future__ import annotations

import logging
from typing import List, Protocol

from careplan.core.logging_utils import kv

# Change categories observers can react to
CARE_PLAN = "carePlan"
CARE_PLAN_CONFIG = "carePlanConfig"
DAILY_INSTANCES = "dailyInstances"
LOGS = "logs"
OVERRIDES = "overrides"


class ChangeObserver(Protocol):
    def on_data_changed(self, category: str) -> None: ...


class ChangeNotifier:
    """
    Caller-owned fan-out of "data changed" signals (no process-wide registry).
    Fire-and-forget: an observer that raises is logged and the rest still run.
    """

    def __init__(self, observers: List[ChangeObserver] | None = None):
        self._observers: List[ChangeObserver] = list(observers or [])
        self.log = logging.getLogger("careplan.events")

    def subscribe(self, observer: ChangeObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: ChangeObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def emit(self, *categories: str) -> None:
        for category in categories:
            for obs in list(self._observers):
                try:
                    obs.on_data_changed(category)
                except Exception:
                    self.log.exception(
                        "events.observer.failed "
                        + kv(category=category, observer=type(obs).__name__)
                    )
