"""Append-only event log: the audit trail of every committed decision.

Every state change in the engine appends an event record. Events are
immutable once written. The log can be persisted to a JSONL file and
reloaded with integrity verification.

This log is local and authoritative. The external ledger only ever
receives fingerprints of a subset of these decisions, via the
reconciliation layer.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from civicrepair.crypto.fingerprint import canonical_json


class EventKind(str, enum.Enum):
    """Classification of engine events."""
    # Grievance lifecycle
    GRIEVANCE_SUBMITTED = "grievance_submitted"
    GRIEVANCE_UPDATED = "grievance_updated"
    GRIEVANCE_DELETED = "grievance_deleted"
    GRIEVANCE_CLASSIFIED = "grievance_classified"
    GRIEVANCE_TRANSITION = "grievance_transition"
    # Marketplace
    BID_SUBMITTED = "bid_submitted"
    BID_UPDATED = "bid_updated"
    BID_WITHDRAWN = "bid_withdrawn"
    BID_REJECTED = "bid_rejected"
    ESCALATION_DECIDED = "escalation_decided"
    # Voting
    BALLOT_CREATED = "ballot_created"
    VOTE_CAST = "vote_cast"
    BALLOT_COMPLETED = "ballot_completed"
    BALLOT_EXPIRED = "ballot_expired"
    BALLOT_CANCELLED = "ballot_cancelled"
    BALLOT_EXECUTED = "ballot_executed"
    # Assignment and settlement
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_STARTED = "assignment_started"
    ASSIGNMENT_PROGRESS = "assignment_progress"
    COMPLETION_SUBMITTED = "completion_submitted"
    CITIZEN_CONFIRMED = "citizen_confirmed"
    DELEGATE_CONFIRMED = "delegate_confirmed"
    FUNDS_RELEASED = "funds_released"
    ASSIGNMENT_CANCELLED = "assignment_cancelled"
    ESCROW_REFUNDED = "escrow_refunded"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"


def _hash_fields(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = canonical_json({
        "event_id": event_id,
        "event_kind": event_kind,
        "timestamp_utc": timestamp_utc,
        "actor_id": actor_id,
        "payload": payload,
    })
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event.

    event_hash is computed at creation time over the canonical JSON of
    every other field.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        # Round-trip through canonical JSON so the stored payload is
        # exactly what was hashed (Decimal and enums become strings).
        payload = json.loads(canonical_json(payload))
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_hash_fields(event_id, event_kind.value, ts_str, actor_id, payload),
        )


class EventLog:
    """Append-only event log with optional JSONL persistence.

    Events can only be appended, never modified or deleted.
    Safe to append from multiple threads.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def record(
        self,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Create and append an event with the next sequential ID."""
        with self._lock:
            event = EventRecord.create(
                event_id=f"evt-{len(self._events) + 1:08d}",
                event_kind=event_kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=now,
            )
            self._append_locked(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        with self._lock:
            self._append_locked(event)

    def _append_locked(self, event: EventRecord) -> None:
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._events.append(event)
        self._event_ids.add(event.event_id)
        if self._storage_path:
            self._append_to_file(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e.event_kind == kind]

    def events_for(self, key: str, value: str) -> list[EventRecord]:
        """Return events whose payload has ``key == value``."""
        return [e for e in self.events() if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _hash_fields(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event.event_id)
