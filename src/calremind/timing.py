from __future__ import annotations

import logging
import math
import re
from datetime import datetime, time, timedelta
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo

from .models import CalendarEvent

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
DAY_MS = 86_400_000

_UNIT_MS = {"minute": MINUTE_MS, "hour": HOUR_MS, "day": DAY_MS}
_DESCRIPTOR_RE = re.compile(r"(\d+)\s*(minute|hour|day)s?", re.IGNORECASE)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def __init__(self, tz: ZoneInfo):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(tz=self.tz)


def _as_milliseconds(text: str) -> Optional[int]:
    try:
        value = float(text)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return None
    return int(value)


def parse_descriptor(descriptor: Any) -> int:
    """Convert a reminder descriptor to a millisecond offset.

    Returns 0 for anything unparseable; callers treat 0 as "skip", never as
    "fire now".
    """
    if descriptor is None or isinstance(descriptor, bool):
        logger.warning("Reminder descriptor is missing")
        return 0

    text = str(descriptor).strip()
    millis = _as_milliseconds(text)
    if millis is not None:
        return millis

    match = _DESCRIPTOR_RE.search(text)
    if not match:
        logger.warning("Could not parse reminder descriptor: %r", text)
        return 0
    return int(match.group(1)) * _UNIT_MS[match.group(2).lower()]


def _parse_hhmm(s: str) -> time:
    parts = s.strip().split(":")
    hh, mm = parts[0], parts[1]
    sec = parts[2] if len(parts) > 2 else "0"
    return time(hour=int(hh), minute=int(mm), second=int(sec))


def event_start_instant(event: CalendarEvent, tz: ZoneInfo) -> Optional[datetime]:
    """Combine the calendar-local startDate and startTime into an aware datetime."""
    try:
        day = datetime.strptime(event.start_date.strip(), "%Y-%m-%d").date()
        start = _parse_hhmm(event.start_time)
    except (ValueError, IndexError):
        logger.warning(
            "Event %s has an invalid start (%r %r); skipping",
            event.id,
            event.start_date,
            event.start_time,
        )
        return None
    return datetime.combine(day, start, tzinfo=tz)


def is_due(event_start: datetime, offset_ms: int, now: datetime, poll_interval_ms: int) -> bool:
    # The window is as wide as one poll, so an on-time poller sees each
    # reminder exactly once. A late tick can miss it entirely; there is no
    # catch-up.
    if offset_ms == 0:
        return False
    due_at = event_start - timedelta(milliseconds=offset_ms)
    return due_at <= now < due_at + timedelta(milliseconds=poll_interval_ms)
