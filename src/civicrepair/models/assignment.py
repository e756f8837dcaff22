"""Assignment models — the binding of a winning bid to a grievance.

Assignment lifecycle:
    ASSIGNED → STARTED → IN_PROGRESS → COMPLETED → VERIFIED
    COMPLETED / VERIFIED → DISPUTED
    ASSIGNED / STARTED / IN_PROGRESS → CANCELLED (unassignment)

At most one non-cancelled assignment exists per grievance.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from civicrepair.models.market import AssignmentReason


class AssignmentStatus(str, enum.Enum):
    """Lifecycle state of an assignment."""
    ASSIGNED = "assigned"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressUpdate:
    message: str
    author_id: str
    timestamp_utc: datetime
    media_ref: Optional[str] = None


@dataclass(frozen=True)
class CompletionRecord:
    """Worker-submitted proof of completion.

    Only ``fingerprint`` ever leaves the system; the ledger never sees
    the notes or media references.
    """
    assignment_id: str
    worker_id: str
    notes: str
    before_refs: tuple[str, ...]
    after_refs: tuple[str, ...]
    duration_hours: Optional[float]
    submitted_utc: datetime
    fingerprint: str


def completion_payload(
    assignment_id: str,
    worker_id: str,
    notes: str,
    before_refs: tuple[str, ...],
    after_refs: tuple[str, ...],
    duration_hours: Optional[float],
    submitted_utc: datetime,
) -> dict[str, Any]:
    """The structured record a completion fingerprint commits to."""
    return {
        "assignment_id": assignment_id,
        "worker_id": worker_id,
        "notes": notes,
        "before_refs": list(before_refs),
        "after_refs": list(after_refs),
        "duration_hours": duration_hours,
        "submitted_utc": submitted_utc.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


@dataclass(frozen=True)
class CitizenConfirmation:
    citizen_id: str
    approved: bool
    confirmed_utc: datetime
    feedback: str = ""
    rating: Optional[int] = None


@dataclass(frozen=True)
class DelegateConfirmation:
    delegate_id: str
    approved: bool
    confirmed_utc: datetime
    notes: str = ""


@dataclass(frozen=True)
class CompensationSplit:
    """Three-way dispute settlement. Bookkeeping only."""
    to_citizen: Decimal
    to_worker: Decimal
    to_delegate_pool: Decimal

    @property
    def total(self) -> Decimal:
        return self.to_citizen + self.to_worker + self.to_delegate_pool


@dataclass
class DisputeRecord:
    raised_by: str
    reason: str
    raised_utc: datetime
    evidence_refs: list[str] = field(default_factory=list)
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolution: str = ""
    resolved_utc: Optional[datetime] = None
    split: Optional[CompensationSplit] = None


@dataclass
class Assignment:
    """A winning bid bound to its grievance, with escrow and tracking."""
    assignment_id: str
    grievance_id: str
    bid_id: str
    worker_id: str
    escrow_amount: Decimal
    assigned_utc: datetime
    estimated_completion_utc: datetime
    reason: AssignmentReason
    assigned_by: str
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    started_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    verified_utc: Optional[datetime] = None
    escrow_id: Optional[str] = None
    rejected_bid_ids: list[str] = field(default_factory=list)
    progress_updates: list[ProgressUpdate] = field(default_factory=list)
    completion: Optional[CompletionRecord] = None
    citizen_confirmation: Optional[CitizenConfirmation] = None
    delegate_confirmation: Optional[DelegateConfirmation] = None
    funds_released: bool = False
    released_utc: Optional[datetime] = None
    released_by: Optional[str] = None
    dispute: Optional[DisputeRecord] = None
    cancelled_utc: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    def is_active(self) -> bool:
        return self.status != AssignmentStatus.CANCELLED

    def is_overdue(self, now: datetime) -> bool:
        return now > self.estimated_completion_utc and self.completed_utc is None

    def completion_hours(self) -> Optional[float]:
        if self.started_utc is None or self.completed_utc is None:
            return None
        return (self.completed_utc - self.started_utc).total_seconds() / 3600
