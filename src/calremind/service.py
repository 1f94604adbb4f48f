from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import requests

from .config import AppConfig, resolve_api_key
from .dispatcher import (
    AlertChannel,
    ChannelResult,
    DeliveryOutcome,
    EmailGatewayChannel,
    LocalNotificationChannel,
    NotificationDispatcher,
)
from .models import Notification, Recipient
from .recipients import RecipientResolver, StaticRecipientResolver
from .scheduler import MarkPolicy, ReminderScheduler, TickReport
from .state import State, load_state, save_state
from .store import DocumentStore, JsonDocumentStore, ReminderStateStore
from .timing import Clock, SystemClock

logger = logging.getLogger(__name__)


class ReminderService:
    """Wires configuration, the event store and the notification channels together.

    Collaborators can be passed in; anything omitted is built from `cfg`.
    """

    def __init__(
        self,
        cfg: AppConfig,
        state_path: str,
        documents: Optional[DocumentStore] = None,
        recipients: Optional[RecipientResolver] = None,
        clock: Optional[Clock] = None,
        session: Optional[requests.Session] = None,
        local: Optional[LocalNotificationChannel] = None,
        alert: Optional[AlertChannel] = None,
    ) -> None:
        self.cfg = cfg
        self.state_path = state_path
        self.tz = ZoneInfo(cfg.timezone)
        self._state_lock = threading.Lock()
        self.state: State = load_state(state_path)

        self.store = ReminderStateStore(documents or JsonDocumentStore(cfg.store.path), cfg.store.collection)
        self.dispatcher = NotificationDispatcher(
            email=EmailGatewayChannel(cfg.email, session=session),
            local=local
            or LocalNotificationChannel(
                cfg.local_notifications,
                permission=self.state.notification_permission or None,
                on_permission=self._remember_permission,
            ),
            alert=alert,
        )
        self.recipients = recipients or StaticRecipientResolver(cfg.recipient)
        self.clock = clock or SystemClock(self.tz)
        self.scheduler = ReminderScheduler(
            store=self.store,
            dispatcher=self.dispatcher,
            recipients=self.recipients,
            clock=self.clock,
            tz=self.tz,
            poll_interval_ms=cfg.poll_interval_seconds * 1000,
            mark_policy=MarkPolicy(cfg.scheduler.mark_policy),
            max_workers=cfg.scheduler.max_workers,
            on_tick=self._record_tick,
        )
        self.reinitialize()

    # ---- Credentials ----

    def reinitialize(self) -> None:
        """Re-read the stored API key and hand the result to the email channel."""
        with self._state_lock:
            self.state = load_state(self.state_path)
            stored = self.state.brevo_api_key
        api_key = resolve_api_key(stored)
        self.dispatcher.configure_api_key(api_key)
        if api_key:
            logger.info("Email gateway configured (key from %s)", "state file" if stored.strip() == api_key else "environment")
        else:
            logger.info("Email gateway not configured; using local notifications only")

    def set_api_key(self, api_key: str) -> None:
        with self._state_lock:
            self.state.brevo_api_key = api_key.strip()
            save_state(self.state_path, self.state)
        self.reinitialize()

    def _remember_permission(self, decision: str) -> None:
        with self._state_lock:
            self.state.notification_permission = decision
            save_state(self.state_path, self.state)

    def _record_tick(self, report: TickReport) -> None:
        with self._state_lock:
            self.state.last_tick_iso = report.now.isoformat()
            save_state(self.state_path, self.state)

    # ---- Scheduling ----

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def run_once(self, now: Optional[datetime] = None) -> TickReport:
        return self.scheduler.tick(now)

    # ---- Manual checks ----

    def send_test_email(self, to: Optional[str] = None) -> DeliveryOutcome:
        now = self.clock.now()
        recipient = Recipient(email=to) if to else self.recipients.resolve()
        notification = Notification(
            recipient=recipient,
            subject="Test Email from CRM Reminders",
            body=(
                "This is a test email to verify that the email gateway integration is working.\n\n"
                f"Sent at: {now.strftime('%Y-%m-%d %H:%M:%S %Z')}\n\n"
                "If you received this email, the integration is working properly!"
            ),
            event_title="Test Event",
            event_date=now.strftime("%Y-%m-%d"),
            event_time=now.strftime("%H:%M"),
        )
        return self.dispatcher.send(notification)

    def send_test_notification(self) -> ChannelResult:
        now = self.clock.now()
        notification = Notification(
            recipient=self.recipients.resolve(),
            subject="Test Reminder",
            body="This is a test notification to verify the system is working!",
            event_title="Test Reminder",
            event_date=now.strftime("%Y-%m-%d"),
            event_time=now.strftime("%H:%M"),
        )
        return self.dispatcher.local.send(notification)

    def status(self) -> Dict[str, Any]:
        with self._state_lock:
            state = self.state
            return {
                "scheduler": self.scheduler.state.value,
                "poll_interval_seconds": self.cfg.poll_interval_seconds,
                "mark_policy": self.scheduler.mark_policy.value,
                "email_configured": self.dispatcher.email.configured,
                "local_notifications": {
                    "enabled": self.cfg.local_notifications.enabled,
                    "permission": self.dispatcher.local.permission,
                },
                "last_tick": state.last_tick_iso or None,
            }
