from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

import requests

from .config import EmailConfig, LocalNotificationConfig
from .models import Notification
from .templates import render_email_html

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

GRANTED = "granted"
DENIED = "denied"


class ChannelResult(enum.Enum):
    DELIVERED = "delivered"
    PENDING = "pending"          # handed off, outcome not observed
    UNAVAILABLE = "unavailable"  # channel not applicable here
    FAILED = "failed"


class GatewayError(RuntimeError):
    """Raised for a non-2xx response from the email gateway."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"Email gateway error ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass
class DeliveryOutcome:
    attempts: List[Tuple[str, ChannelResult]] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return any(result is ChannelResult.DELIVERED for _, result in self.attempts)

    @property
    def channel(self) -> Optional[str]:
        for name, result in self.attempts:
            if result is ChannelResult.DELIVERED:
                return name
        return None


class EmailGatewayChannel:
    """Transactional email through the Brevo REST API."""

    name = "email"

    def __init__(self, cfg: EmailConfig, api_key: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.api_key = api_key
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        return {
            "sender": {"name": self.cfg.sender_name, "email": self.cfg.sender_email},
            "to": [{"email": notification.recipient.email, "name": notification.recipient.name}],
            "subject": notification.subject,
            "htmlContent": render_email_html(notification.body, self.cfg.footer),
        }

    def _post(self, payload: Dict[str, Any]) -> Any:
        resp = self._session.post(
            self.cfg.api_url,
            json=payload,
            headers={"api-key": self.api_key or "", "Content-Type": "application/json"},
            timeout=self.cfg.timeout_seconds,
        )
        if not 200 <= resp.status_code < 300:
            try:
                body = resp.json()
                detail = (body.get("message") or body.get("code") or body) if isinstance(body, dict) else body
            except ValueError:
                detail = resp.text
            raise GatewayError(resp.status_code, detail)
        try:
            return resp.json()
        except ValueError:
            return {}

    def send(self, notification: Notification) -> ChannelResult:
        if not self.configured:
            return ChannelResult.UNAVAILABLE
        try:
            result = self._post(self.build_payload(notification))
        except GatewayError as e:
            logger.error("Email to %s failed with status %s: %s", notification.recipient.email, e.status_code, e.detail)
            return ChannelResult.FAILED
        except requests.RequestException as e:
            logger.error("Email to %s failed: %s", notification.recipient.email, e)
            return ChannelResult.FAILED
        message_id = result.get("messageId") if isinstance(result, dict) else None
        logger.info("Email sent to %s, messageId=%s", notification.recipient.email, message_id)
        return ChannelResult.DELIVERED


class LocalNotificationChannel:
    """Desktop notification through the host's notification command."""

    name = "local"

    def __init__(
        self,
        cfg: LocalNotificationConfig,
        permission: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
        on_permission: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.cfg = cfg
        self.permission = permission or cfg.permission
        self.runner = runner or self._run_command
        self.on_permission = on_permission

    @staticmethod
    def _run_command(cmd: list[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=10, check=False)

    def _has_desktop(self) -> bool:
        if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
            return False
        return shutil.which(self.cfg.command) is not None

    def available(self) -> bool:
        return self.cfg.enabled and self.permission != DENIED and self._has_desktop()

    def request_permission(self) -> str:
        try:
            proc = self.runner([self.cfg.command, "--version"])
            decision = GRANTED if proc.returncode == 0 else DENIED
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("Notification permission request failed: %s", e)
            decision = DENIED
        self.permission = decision
        if self.on_permission:
            self.on_permission(decision)
        return decision

    def _show(self, notification: Notification) -> bool:
        cmd = [self.cfg.command]
        if self.cfg.icon:
            cmd += ["--icon", self.cfg.icon]
        cmd += [
            notification.subject,
            f"Reminder: {notification.event_title} at {notification.event_time}",
        ]
        try:
            proc = self.runner(cmd)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Local notification failed: %s", e)
            return False
        if proc.returncode != 0:
            logger.error("Local notification exited with %s: %s", proc.returncode, (proc.stderr or "").strip())
            return False
        return True

    def _request_then_show(self, notification: Notification) -> None:
        if self.request_permission() == GRANTED:
            self._show(notification)

    def send(self, notification: Notification, ask: bool = True) -> ChannelResult:
        if not self.available():
            return ChannelResult.UNAVAILABLE
        if self.permission == GRANTED:
            return ChannelResult.DELIVERED if self._show(notification) else ChannelResult.FAILED
        if not ask:
            return ChannelResult.UNAVAILABLE
        # Undecided: ask in the background, show if granted, don't wait.
        threading.Thread(
            target=self._request_then_show,
            args=(notification,),
            name="notify-permission",
            daemon=True,
        ).start()
        return ChannelResult.PENDING


class AlertChannel:
    """Last resort: a banner on stderr (the daemon's console)."""

    name = "alert"

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def send(self, notification: Notification) -> ChannelResult:
        print(
            f"*** Reminder: {notification.event_title} starts at {notification.event_time} ***",
            file=self.stream or sys.stderr,
            flush=True,
        )
        return ChannelResult.DELIVERED


class NotificationDispatcher:
    """Sends a notification through email, then local notification, then alert.

    The alert is only used when no email key is configured and local
    notifications are unavailable. Nothing is persisted here.
    """

    def __init__(self, email: EmailGatewayChannel, local: LocalNotificationChannel, alert: Optional[AlertChannel] = None) -> None:
        self.email = email
        self.local = local
        self.alert = alert or AlertChannel()

    def configure_api_key(self, api_key: Optional[str]) -> None:
        self.email.api_key = api_key

    def send(self, notification: Notification) -> DeliveryOutcome:
        outcome = DeliveryOutcome()
        emailed = self.email.configured

        if emailed:
            result = self.email.send(notification)
            outcome.attempts.append((self.email.name, result))
            if result is ChannelResult.DELIVERED:
                return outcome
            logger.info("Falling back to local notification for %r", notification.subject)

        # After a gateway failure only an already granted channel is used.
        result = self.local.send(notification, ask=not emailed)
        outcome.attempts.append((self.local.name, result))

        if result is ChannelResult.UNAVAILABLE and not emailed:
            outcome.attempts.append((self.alert.name, self.alert.send(notification)))

        return outcome
