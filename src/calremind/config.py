from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import os
import yaml

API_KEY_ENV = "BREVO_API_KEY"
API_KEY_PLACEHOLDER = "your_brevo_api_key_here"

@dataclass
class StoreConfig:
    path: str
    collection: str

@dataclass
class EmailConfig:
    api_url: str
    sender_name: str
    sender_email: str
    timeout_seconds: float
    footer: str

@dataclass
class RecipientConfig:
    email: str
    name: str

@dataclass
class LocalNotificationConfig:
    enabled: bool
    permission: str  # granted / denied / default
    command: str
    icon: str

@dataclass
class SchedulerConfig:
    mark_policy: str  # on_attempt / on_delivery
    max_workers: int

@dataclass
class AppConfig:
    timezone: str
    poll_interval_seconds: int
    store: StoreConfig
    email: EmailConfig
    recipient: RecipientConfig
    local_notifications: LocalNotificationConfig
    scheduler: SchedulerConfig

def load_config(path: Optional[str]) -> AppConfig:
    data: Dict[str, Any] = {}
    if path:
        p = Path(path)
        if p.exists():
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    store = data.get("store", {})
    email = data.get("email", {})
    recipient = data.get("recipient", {})
    local = data.get("local_notifications", {})
    scheduler = data.get("scheduler", {})

    return AppConfig(
        timezone=data.get("timezone", "America/Toronto"),
        poll_interval_seconds=int(data.get("poll_interval_seconds", 60)),
        store=StoreConfig(
            path=str(store.get("path", "/var/lib/calremind/store")),
            collection=str(store.get("collection", "calendar_events")),
        ),
        email=EmailConfig(
            api_url=str(email.get("api_url", "https://api.brevo.com/v3/smtp/email")),
            sender_name=str(email.get("sender_name", "CRM Reminders")),
            sender_email=str(email.get("sender_email", "reminders@example.com")),
            timeout_seconds=float(email.get("timeout_seconds", 10)),
            footer=str(email.get("footer", "This reminder was sent automatically by the CRM.")),
        ),
        recipient=RecipientConfig(
            email=str(recipient.get("email", "")),
            name=str(recipient.get("name", "User")),
        ),
        local_notifications=LocalNotificationConfig(
            enabled=bool(local.get("enabled", True)),
            permission=str(local.get("permission", "default")).lower(),
            command=str(local.get("command", "notify-send")),
            icon=str(local.get("icon", "")),
        ),
        scheduler=SchedulerConfig(
            mark_policy=str(scheduler.get("mark_policy", "on_attempt")).lower(),
            max_workers=int(scheduler.get("max_workers", 16)),
        ),
    )

def _usable_key(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if not value or value == API_KEY_PLACEHOLDER:
        return None
    return value

def resolve_api_key(stored_key: Optional[str]) -> Optional[str]:
    """Stored key wins over the environment; blank or placeholder keys count as unset."""
    return _usable_key(stored_key) or _usable_key(os.environ.get(API_KEY_ENV))
