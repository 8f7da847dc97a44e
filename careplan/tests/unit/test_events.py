# tests/unit/test_events.py
import logging

from careplan.core.events import DAILY_INSTANCES, LOGS, ChangeNotifier


class Recorder:
    def __init__(self):
        self.seen = []

    def on_data_changed(self, category):
        self.seen.append(category)


class Broken:
    def on_data_changed(self, category):
        raise RuntimeError("boom")


def test_emit_reaches_every_observer_in_order():
    a, b = Recorder(), Recorder()
    notifier = ChangeNotifier([a])
    notifier.subscribe(b)
    notifier.subscribe(b)  # no double registration

    notifier.emit(DAILY_INSTANCES, LOGS)
    assert a.seen == [DAILY_INSTANCES, LOGS]
    assert b.seen == [DAILY_INSTANCES, LOGS]


def test_unsubscribe_stops_delivery():
    a = Recorder()
    notifier = ChangeNotifier([a])
    notifier.unsubscribe(a)
    notifier.unsubscribe(a)
    notifier.emit(LOGS)
    assert a.seen == []


def test_failing_observer_is_logged_and_others_still_run(caplog):
    good = Recorder()
    notifier = ChangeNotifier([Broken(), good])
    with caplog.at_level(logging.ERROR, logger="careplan.events"):
        notifier.emit(LOGS)
    assert good.seen == [LOGS]
    assert "events.observer.failed" in caplog.text
