from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .models import CalendarEvent

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


class DocumentStore(Protocol):
    def list_documents(self, collection: str) -> Dict[str, Document]: ...

    def get_document(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def update_document(self, collection: str, doc_id: str, fields: Document) -> None: ...


class DocumentNotFound(KeyError):
    """Raised when an update addresses a document that does not exist."""


class JsonDocumentStore:
    """Document collections kept as one JSON object per file: {doc_id: document}.

    Writes replace the file atomically. Updates are field-level merges with no
    versioning, so concurrent writers to the same document are last-write-wins.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, collection: str) -> Path:
        return self.root / f"{collection}.json"

    def _read(self, collection: str) -> Dict[str, Document]:
        p = self._path(collection)
        if not p.exists():
            return {}
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{p} must contain a JSON object keyed by document id")
        return data

    def _write(self, collection: str, docs: Dict[str, Document]) -> None:
        p = self._path(collection)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(docs, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, p)

    def list_documents(self, collection: str) -> Dict[str, Document]:
        with self._lock:
            return self._read(collection)

    def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            return self._read(collection).get(doc_id)

    def update_document(self, collection: str, doc_id: str, fields: Document) -> None:
        with self._lock:
            docs = self._read(collection)
            if doc_id not in docs:
                raise DocumentNotFound(doc_id)
            docs[doc_id] = {**docs[doc_id], **fields}
            self._write(collection, docs)


class ReminderStateStore:
    def __init__(self, documents: DocumentStore, collection: str = "calendar_events") -> None:
        self.documents = documents
        self.collection = collection
        self._locks_guard = threading.Lock()
        self._event_locks: Dict[str, threading.Lock] = {}

    def _event_lock(self, event_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._event_locks.setdefault(event_id, threading.Lock())

    def fetch_candidate_events(self) -> List[CalendarEvent]:
        events: List[CalendarEvent] = []
        for doc_id, data in self.documents.list_documents(self.collection).items():
            if not isinstance(data, dict):
                logger.warning("Skipping malformed event document %s", doc_id)
                continue
            event = CalendarEvent.from_document(doc_id, data)
            if event.unsent_reminders:
                events.append(event)
        return events

    def mark_reminder_sent(self, event_id: str, reminder_index: int) -> bool:
        # Read-modify-write of the whole reminders array. Marks on the same
        # event are serialized here; an outside edit made between the read and
        # the write is still overwritten.
        try:
            with self._event_lock(event_id):
                return self._mark(event_id, reminder_index)
        except Exception as e:
            logger.error("Failed to mark reminder %s[%d] as sent: %s", event_id, reminder_index, e)
            return False

    def _mark(self, event_id: str, reminder_index: int) -> bool:
        data = self.documents.get_document(self.collection, event_id)
        if data is None:
            logger.error("Cannot mark reminder %s[%d]: event not found", event_id, reminder_index)
            return False
        reminders = [dict(r) if isinstance(r, dict) else r for r in (data.get("reminders") or [])]
        if not 0 <= reminder_index < len(reminders) or not isinstance(reminders[reminder_index], dict):
            logger.error("Cannot mark reminder %s[%d]: no such reminder", event_id, reminder_index)
            return False
        reminders[reminder_index]["sent"] = True
        self.documents.update_document(self.collection, event_id, {"reminders": reminders})
        return True
