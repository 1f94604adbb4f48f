"""Polling reminder scheduler.

Every tick scans the event store, fans out one task per unsent reminder and
collects the results into a `TickReport`. Ticks are started from a timer
thread and may overlap; `stop()` only prevents future ticks.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from .dispatcher import DeliveryOutcome, NotificationDispatcher
from .models import CalendarEvent, Reminder
from .recipients import RecipientResolver
from .store import ReminderStateStore
from .templates import build_notification
from .timing import Clock, event_start_instant, is_due, parse_descriptor

logger = logging.getLogger(__name__)

POLL_INTERVAL_MS = 60_000


class SchedulerState(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class MarkPolicy(enum.Enum):
    ON_ATTEMPT = "on_attempt"    # mark once dispatch was tried, delivered or not
    ON_DELIVERY = "on_delivery"  # mark only if some channel confirmed delivery

    def should_mark(self, outcome: DeliveryOutcome) -> bool:
        if self is MarkPolicy.ON_ATTEMPT:
            return True
        return outcome.delivered


@dataclass(frozen=True)
class ReminderResult:
    event_id: str
    index: int
    status: str  # invalid / not_due / sent / undelivered / mark_failed / error
    channel: Optional[str] = None


@dataclass
class TickReport:
    now: datetime
    events: int = 0
    results: List[ReminderResult] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return dict(Counter(r.status for r in self.results))


class ReminderScheduler:
    def __init__(
        self,
        store: ReminderStateStore,
        dispatcher: NotificationDispatcher,
        recipients: RecipientResolver,
        clock: Clock,
        tz: ZoneInfo,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        mark_policy: MarkPolicy = MarkPolicy.ON_ATTEMPT,
        max_workers: int = 16,
        on_tick: Optional[Callable[[TickReport], None]] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.recipients = recipients
        self.clock = clock
        self.tz = tz
        self.poll_interval_ms = poll_interval_ms
        self.mark_policy = mark_policy
        self.on_tick = on_tick
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reminder")
        self._state = SchedulerState.STOPPED
        self._timer: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._lifecycle = threading.Lock()

    @property
    def state(self) -> SchedulerState:
        return self._state

    # ---- Start/Stop ----

    def start(self) -> None:
        with self._lifecycle:
            if self._state is SchedulerState.RUNNING:
                return
            stop_event = threading.Event()
            timer = threading.Thread(target=self._timer_loop, args=(stop_event,), name="reminder-timer", daemon=True)
            self._stop_event = stop_event
            self._timer = timer
            self._state = SchedulerState.RUNNING
            timer.start()
        logger.info("Reminder scheduler started; polling every %ss", self.poll_interval_ms / 1000)

    def stop(self) -> None:
        with self._lifecycle:
            if self._state is SchedulerState.STOPPED:
                return
            if self._stop_event is not None:
                self._stop_event.set()
            self._stop_event = None
            self._timer = None
            self._state = SchedulerState.STOPPED
        logger.info("Reminder scheduler stopped")

    def _timer_loop(self, stop_event: threading.Event) -> None:
        interval = self.poll_interval_ms / 1000
        while not stop_event.wait(interval):
            # Each tick gets its own thread so a slow tick never delays the next one.
            threading.Thread(target=self._safe_tick, name="reminder-tick", daemon=True).start()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as e:
            logger.error("Reminder tick failed: %s", e)

    # ---- Tick ----

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock.now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        report = TickReport(now=now)
        try:
            events = self.store.fetch_candidate_events()
        except Exception as e:
            logger.error("Failed to fetch calendar events: %s", e)
            return report
        report.events = len(events)

        futures: List[Future[ReminderResult]] = []
        for event in events:
            event_start = event_start_instant(event, self.tz)
            for index, reminder in event.unsent_reminders:
                if event_start is None:
                    report.results.append(ReminderResult(event.id, index, "invalid"))
                    continue
                futures.append(self._pool.submit(self._process_reminder, event, event_start, index, reminder, now))

        for future in futures:
            report.results.append(future.result())

        logger.info("Tick at %s: %d events, %s", now.isoformat(), report.events, report.counts or "no reminders")
        if self.on_tick:
            self.on_tick(report)
        return report

    def _process_reminder(
        self,
        event: CalendarEvent,
        event_start: datetime,
        index: int,
        reminder: Reminder,
        now: datetime,
    ) -> ReminderResult:
        try:
            offset_ms = parse_descriptor(reminder.descriptor)
            if offset_ms == 0:
                logger.warning("Skipping reminder %s[%d] with invalid time %r", event.id, index, reminder.descriptor)
                return ReminderResult(event.id, index, "invalid")
            if not is_due(event_start, offset_ms, now, self.poll_interval_ms):
                return ReminderResult(event.id, index, "not_due")

            notification = build_notification(event, reminder, self.recipients.resolve(event))
            outcome = self.dispatcher.send(notification)
            if not self.mark_policy.should_mark(outcome):
                logger.warning("Reminder %s[%d] was not delivered (%s); leaving unsent", event.id, index, outcome.attempts)
                return ReminderResult(event.id, index, "undelivered")

            if not self.store.mark_reminder_sent(event.id, index):
                # Stays unsent, so a later tick inside the window may send it again.
                return ReminderResult(event.id, index, "mark_failed", outcome.channel)
            logger.info("Reminder %s[%d] for %r handled via %s", event.id, index, event.title, outcome.channel or "no channel")
            return ReminderResult(event.id, index, "sent", outcome.channel)
        except Exception as e:
            logger.error("Error processing reminder %s[%d] (%r): %s", event.id, index, reminder, e)
            return ReminderResult(event.id, index, "error")
