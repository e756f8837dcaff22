"""Persistence: the append-only audit trail and the document store."""

from civicrepair.persistence.event_log import EventKind, EventLog, EventRecord
from civicrepair.persistence.store import Collection, DocumentStore

__all__ = ["Collection", "DocumentStore", "EventKind", "EventLog", "EventRecord"]
