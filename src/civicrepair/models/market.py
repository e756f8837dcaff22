"""Bid models — worker proposals against a grievance.

Bid lifecycle: PENDING → ACCEPTED / REJECTED / WITHDRAWN
Unassignment returns ACCEPTED and sibling REJECTED bids to PENDING.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class BidStatus(str, enum.Enum):
    """Lifecycle state of a bid."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class AssignmentReason(str, enum.Enum):
    """Why a bid won."""
    SINGLE_BID = "single_bid"
    DAO_VOTE = "dao_vote"
    DAO_OVERRIDE = "dao_override"


@dataclass
class Bid:
    """A worker's priced, timed proposal for one grievance.

    worker_reputation is a snapshot taken when the bid is submitted.
    """
    bid_id: str
    grievance_id: str
    worker_id: str
    amount: Decimal
    proposal: str
    eta_hours: int
    skills: list[str] = field(default_factory=list)
    status: BidStatus = BidStatus.PENDING
    worker_reputation: float = 0.0
    auto_assigned: bool = False
    assignment_reason: Optional[AssignmentReason] = None
    rejection_reason: Optional[str] = None
    submitted_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    def can_be_withdrawn(self) -> bool:
        return self.status == BidStatus.PENDING


@dataclass(frozen=True)
class ScoredBid:
    """A bid with its composite decision-aid score."""
    bid: Bid
    price_score: float
    reputation_score: float
    speed_score: float
    score: float
