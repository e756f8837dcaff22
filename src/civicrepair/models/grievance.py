"""Grievance models — citizen-filed issues and their classification.

Grievance lifecycle:
    PENDING → CLASSIFIED → ACTIVE → ASSIGNED → IN_PROGRESS → COMPLETED → VERIFIED
    COMPLETED / VERIFIED → DISPUTED
    ASSIGNED / IN_PROGRESS → ACTIVE (unassignment only)

Category and priority start as citizen-set defaults and are overwritten
by the external classifier.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class GrievanceStatus(str, enum.Enum):
    """Lifecycle state of a grievance."""
    PENDING = "pending"
    CLASSIFIED = "classified"
    ACTIVE = "active"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    DISPUTED = "disputed"


class Category(str, enum.Enum):
    """Kind of civic repair."""
    ROAD = "road"
    WASTE = "waste"
    SEWAGE = "sewage"
    LIGHTING = "lighting"
    WATER = "water"
    PUBLIC_SAFETY = "public_safety"
    ENVIRONMENT = "environment"
    OTHER = "other"


class Priority(str, enum.Enum):
    """Urgency tier, lowest to highest."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


BIDDABLE_STATUSES = frozenset({GrievanceStatus.CLASSIFIED, GrievanceStatus.ACTIVE})
ASSIGNED_STATUSES = frozenset({
    GrievanceStatus.ASSIGNED,
    GrievanceStatus.IN_PROGRESS,
    GrievanceStatus.COMPLETED,
    GrievanceStatus.VERIFIED,
})
EDITABLE_STATUSES = frozenset({GrievanceStatus.PENDING, GrievanceStatus.CLASSIFIED})


@dataclass(frozen=True)
class ClassificationResult:
    """Output of the external classification service."""
    category: Category
    priority: Priority
    tags: tuple[str, ...] = ()
    reasoning: str = ""
    confidence: float = 0.0
    classified_utc: Optional[datetime] = None


@dataclass
class Grievance:
    """A citizen-filed civic issue."""
    grievance_id: str
    citizen_id: str
    title: str
    description: str
    location: str
    category: Category = Category.OTHER
    priority: Priority = Priority.MEDIUM
    status: GrievanceStatus = GrievanceStatus.PENDING
    image_ref: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    classification: Optional[ClassificationResult] = None
    assignment_id: Optional[str] = None
    assigned_worker_id: Optional[str] = None
    bid_count: int = 0
    fingerprint: Optional[str] = None
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    def can_receive_bids(self) -> bool:
        return self.status in BIDDABLE_STATUSES

    def is_assigned(self) -> bool:
        return self.status in ASSIGNED_STATUSES

    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def is_deletable(self) -> bool:
        return self.status == GrievanceStatus.PENDING
