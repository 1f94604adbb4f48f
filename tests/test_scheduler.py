from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from calremind.config import RecipientConfig
from calremind.dispatcher import ChannelResult, DeliveryOutcome
from calremind.recipients import StaticRecipientResolver
from calremind.scheduler import MarkPolicy, ReminderScheduler, SchedulerState
from calremind.store import JsonDocumentStore, ReminderStateStore

TZ = ZoneInfo("America/Toronto")


class FixedClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current


class RecordingDispatcher:
    def __init__(self, result: ChannelResult = ChannelResult.DELIVERED, fail_on: str | None = None):
        self.result = result
        self.fail_on = fail_on
        self.sent = []
        self._lock = threading.Lock()

    def send(self, notification):
        if self.fail_on and self.fail_on in notification.subject:
            raise RuntimeError("gateway exploded")
        with self._lock:
            self.sent.append(notification)
        return DeliveryOutcome([("email", self.result)])


class SpyStateStore(ReminderStateStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.marked = []

    def mark_reminder_sent(self, event_id, reminder_index):
        self.marked.append((event_id, reminder_index))
        return super().mark_reminder_sent(event_id, reminder_index)


def _store(tmp_path: Path, docs: dict) -> SpyStateStore:
    (tmp_path / "calendar_events.json").write_text(json.dumps(docs), encoding="utf-8")
    return SpyStateStore(JsonDocumentStore(tmp_path))


def _scheduler(store, dispatcher, now=None, **kwargs) -> ReminderScheduler:
    return ReminderScheduler(
        store=store,
        dispatcher=dispatcher,
        recipients=StaticRecipientResolver(RecipientConfig(email="owner@example.com", name="Owner")),
        clock=FixedClock(now or datetime(2024, 6, 1, 13, 30, tzinfo=TZ)),
        tz=TZ,
        **kwargs,
    )


def _event(title: str, *reminders: dict, start_time: str = "14:00") -> dict:
    return {
        "title": title,
        "description": "",
        "startDate": "2024-06-01",
        "startTime": start_time,
        "endDate": "2024-06-01",
        "endTime": "15:00",
        "type": "meeting",
        "reminders": list(reminders),
    }


def _sent_flags(store: ReminderStateStore, event_id: str) -> list:
    doc = store.documents.get_document("calendar_events", event_id)
    return [r.get("sent", False) for r in doc["reminders"]]


def test_due_reminder_is_dispatched_and_marked(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes", "sent": False})})
    dispatcher = RecordingDispatcher()

    report = _scheduler(store, dispatcher).tick()

    assert len(dispatcher.sent) == 1
    notification = dispatcher.sent[0]
    assert "Client call" in notification.subject
    assert notification.recipient.email == "owner@example.com"
    assert "Reminder set for: 30 minutes before the event" in notification.body
    assert "Date: June 1, 2024" in notification.body
    assert store.marked == [("evt1", 0)]
    assert _sent_flags(store, "evt1") == [True]
    assert report.counts == {"sent": 1}


def test_sent_reminder_is_not_dispatched_again(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes"})})
    dispatcher = RecordingDispatcher()
    scheduler = _scheduler(store, dispatcher)

    scheduler.tick(datetime(2024, 6, 1, 13, 30, tzinfo=TZ))
    scheduler.tick(datetime(2024, 6, 1, 13, 30, 30, tzinfo=TZ))

    assert len(dispatcher.sent) == 1
    assert store.marked == [("evt1", 0)]


def test_reminder_outside_window_is_left_alone(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes"})})
    dispatcher = RecordingDispatcher()
    scheduler = _scheduler(store, dispatcher)

    early = scheduler.tick(datetime(2024, 6, 1, 13, 29, 59, tzinfo=TZ))
    late = scheduler.tick(datetime(2024, 6, 1, 13, 31, tzinfo=TZ))

    assert dispatcher.sent == []
    assert early.counts == {"not_due": 1}
    assert late.counts == {"not_due": 1}
    assert _sent_flags(store, "evt1") == [False]


def test_failing_reminder_does_not_block_siblings(tmp_path: Path):
    store = _store(
        tmp_path,
        {
            "bad": _event("Broken sync", {"time": "30 minutes"}),
            "good": _event("Client call", {"time": "30 minutes"}, {"time": "1 hour", "sent": False}),
            "later": _event("Standup", {"time": "15 minutes"}, start_time="13:45"),
        },
    )
    dispatcher = RecordingDispatcher(fail_on="Broken")

    report = _scheduler(store, dispatcher).tick()

    assert sorted(n.event_title for n in dispatcher.sent) == ["Client call", "Standup"]
    assert report.counts == {"error": 1, "sent": 2, "not_due": 1}
    assert _sent_flags(store, "bad") == [False]
    assert sorted(store.marked) == [("good", 0), ("later", 0)]


def test_invalid_descriptor_and_start_are_skipped(tmp_path: Path):
    store = _store(
        tmp_path,
        {
            "vague": _event("Vague", {"time": "tomorrow"}, {"time": None}),
            "undated": {**_event("Undated", {"time": "30 minutes"}), "startDate": ""},
        },
    )
    dispatcher = RecordingDispatcher()

    report = _scheduler(store, dispatcher).tick()

    assert dispatcher.sent == []
    assert report.counts == {"invalid": 3}


def test_unit_shaped_reminder_from_calendar_ui(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"id": "r1", "type": "email", "time": 30, "unit": "minutes"})})
    dispatcher = RecordingDispatcher()

    _scheduler(store, dispatcher).tick()

    assert len(dispatcher.sent) == 1
    doc = store.documents.get_document("calendar_events", "evt1")
    assert doc["reminders"] == [{"id": "r1", "type": "email", "time": 30, "unit": "minutes", "sent": True}]


def test_on_attempt_policy_marks_undelivered_reminders(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes"})})
    dispatcher = RecordingDispatcher(result=ChannelResult.FAILED)

    report = _scheduler(store, dispatcher, mark_policy=MarkPolicy.ON_ATTEMPT).tick()

    assert report.counts == {"sent": 1}
    assert _sent_flags(store, "evt1") == [True]


def test_on_delivery_policy_leaves_undelivered_reminders_unsent(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes"})})
    dispatcher = RecordingDispatcher(result=ChannelResult.FAILED)

    report = _scheduler(store, dispatcher, mark_policy=MarkPolicy.ON_DELIVERY).tick()

    assert report.counts == {"undelivered": 1}
    assert store.marked == []
    assert _sent_flags(store, "evt1") == [False]


def test_failed_mark_allows_duplicate_dispatch(tmp_path: Path):
    class FlakyDocuments(JsonDocumentStore):
        def update_document(self, collection, doc_id, fields):
            raise OSError("disk full")

    (tmp_path / "calendar_events.json").write_text(
        json.dumps({"evt1": _event("Client call", {"time": "30 minutes"})}), encoding="utf-8"
    )
    store = ReminderStateStore(FlakyDocuments(tmp_path))
    dispatcher = RecordingDispatcher()
    scheduler = _scheduler(store, dispatcher)

    first = scheduler.tick(datetime(2024, 6, 1, 13, 30, tzinfo=TZ))
    scheduler.tick(datetime(2024, 6, 1, 13, 30, 30, tzinfo=TZ))

    assert first.counts == {"mark_failed": 1}
    assert len(dispatcher.sent) == 2


def test_fetch_failure_yields_empty_report(caplog):
    class BrokenStore:
        def fetch_candidate_events(self):
            raise ConnectionError("store offline")

    report = _scheduler(BrokenStore(), RecordingDispatcher()).tick()

    assert report.results == []
    assert "store offline" in caplog.text


def test_start_is_idempotent_and_stop_halts_ticks(tmp_path: Path):
    store = _store(tmp_path, {})
    ticked = threading.Event()
    reports = []

    def on_tick(report):
        reports.append(report)
        ticked.set()

    scheduler = _scheduler(store, RecordingDispatcher(), poll_interval_ms=20, on_tick=on_tick)
    assert scheduler.state is SchedulerState.STOPPED

    scheduler.start()
    timer = scheduler._timer
    scheduler.start()
    assert scheduler._timer is timer
    assert scheduler.state is SchedulerState.RUNNING

    assert ticked.wait(timeout=2)

    scheduler.stop()
    scheduler.stop()
    assert scheduler.state is SchedulerState.STOPPED
    timer.join(timeout=1)
    assert not timer.is_alive()


def test_tick_uses_injected_clock(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "2 hours"})})
    dispatcher = RecordingDispatcher()
    start = datetime(2024, 6, 1, 14, 0, tzinfo=TZ)

    report = _scheduler(store, dispatcher, now=start - timedelta(hours=2)).tick()

    assert report.now == start - timedelta(hours=2)
    assert len(dispatcher.sent) == 1


def test_two_reminders_due_together_both_stay_marked(tmp_path: Path):
    class SlowDocuments(JsonDocumentStore):
        def get_document(self, collection, doc_id):
            snapshot = super().get_document(collection, doc_id)
            time.sleep(0.1)
            return snapshot

    (tmp_path / "calendar_events.json").write_text(
        json.dumps({"evt1": _event("Client call", {"time": "30 minutes"}, {"time": "1800000"})}), encoding="utf-8"
    )
    store = ReminderStateStore(SlowDocuments(tmp_path))
    dispatcher = RecordingDispatcher()

    report = _scheduler(store, dispatcher).tick()

    assert report.counts == {"sent": 2}
    assert _sent_flags(store, "evt1") == [True, True]


def test_naive_tick_time_is_read_in_the_configured_zone(tmp_path: Path):
    store = _store(tmp_path, {"evt1": _event("Client call", {"time": "30 minutes"})})
    dispatcher = RecordingDispatcher()

    report = _scheduler(store, dispatcher).tick(datetime(2024, 6, 1, 13, 30))

    assert report.counts == {"sent": 1}
    assert report.now == datetime(2024, 6, 1, 13, 30, tzinfo=TZ)
    assert _sent_flags(store, "evt1") == [True]
