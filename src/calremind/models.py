from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class Reminder:
    time: Union[str, int, float, None]  # "15 minutes", "2 hours", or raw milliseconds
    method: str = ""                    # informational only
    unit: Optional[str] = None          # calendar UI stores {time: 15, unit: "minutes"}
    sent: bool = False

    @property
    def descriptor(self) -> Union[str, int, float, None]:
        if self.unit and self.time is not None:
            return f"{self.time} {self.unit}"
        return self.time

    @classmethod
    def from_document(cls, data: Any) -> "Reminder":
        if not isinstance(data, dict):
            # keep the slot so indices line up with the stored array
            return cls(time=None)
        return cls(
            time=data.get("time"),
            method=str(data.get("method") or data.get("type") or ""),
            unit=data.get("unit") or None,
            sent=bool(data.get("sent", False)),
        )


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    title: str
    start_date: str             # YYYY-MM-DD, calendar-local
    start_time: str             # HH:MM, calendar-local
    description: str = ""
    end_date: str = ""
    end_time: str = ""
    type: str = ""
    reminders: List[Reminder] = field(default_factory=list)

    @property
    def unsent_reminders(self) -> List[tuple[int, Reminder]]:
        return [(i, r) for i, r in enumerate(self.reminders) if not r.sent]

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "CalendarEvent":
        raw_reminders = data.get("reminders") or []
        return cls(
            id=doc_id,
            title=str(data.get("title", "(No title)")),
            start_date=str(data.get("startDate", "")),
            start_time=str(data.get("startTime", "")),
            description=str(data.get("description") or ""),
            end_date=str(data.get("endDate", "")),
            end_time=str(data.get("endTime", "")),
            type=str(data.get("type", "")),
            reminders=[Reminder.from_document(r) for r in raw_reminders],
        )


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str = "User"


@dataclass(frozen=True)
class Notification:
    recipient: Recipient
    subject: str
    body: str
    event_title: str
    event_date: str
    event_time: str
