from __future__ import annotations

from typing import Optional, Protocol

from .config import RecipientConfig
from .models import CalendarEvent, Recipient


class RecipientResolver(Protocol):
    def resolve(self, event: Optional[CalendarEvent] = None) -> Recipient: ...


class StaticRecipientResolver:
    """Every reminder goes to the one configured address."""

    def __init__(self, cfg: RecipientConfig) -> None:
        self.recipient = Recipient(email=cfg.email, name=cfg.name or "User")

    def resolve(self, event: Optional[CalendarEvent] = None) -> Recipient:
        return self.recipient
