"""Ballot models — time-boxed, quorum-gated delegate votes over bids.

Ballot lifecycle:
    DRAFT → ACTIVE → COMPLETED   (quorum reached, winner executed)
    ACTIVE → EXPIRED             (window closed without quorum)
    DRAFT / ACTIVE → CANCELLED
Terminal ballots never re-open.

The tally is a pure function of the vote list: ``compute_results`` run over
the full list always equals the incrementally maintained ``results``.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class BallotStatus(str, enum.Enum):
    """Lifecycle state of a ballot."""
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_BALLOT_STATUSES = frozenset({
    BallotStatus.COMPLETED,
    BallotStatus.EXPIRED,
    BallotStatus.CANCELLED,
})


class ProposalType(str, enum.Enum):
    BID_ASSIGNMENT = "bid_assignment"


@dataclass(frozen=True)
class BallotOption:
    """One candidate bid on a ballot. Index is the tie-break order."""
    option_id: str
    index: int
    label: str
    description: str = ""
    bid_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BallotVote:
    """A single cast vote. Frozen — a changed vote is a new record."""
    voter_id: str
    option_id: str
    weight: Decimal
    cast_utc: datetime
    signature: Optional[str] = None


@dataclass(frozen=True)
class OptionResult:
    option_id: str
    label: str
    vote_count: int
    voting_power: Decimal
    percentage: float


@dataclass(frozen=True)
class BallotResults:
    """Computed tally for a ballot."""
    option_results: tuple[OptionResult, ...] = ()
    total_votes: int = 0
    total_voting_power: Decimal = Decimal("0")
    required_votes: int = 1
    quorum_reached: bool = False
    winning_option_id: Optional[str] = None


@dataclass
class BallotExecution:
    """Record of what happened when the winner was executed."""
    executed: bool = False
    executed_utc: Optional[datetime] = None
    executed_by: Optional[str] = None
    assignment_id: Optional[str] = None
    error: Optional[str] = None


def required_votes(active_voter_count: int, quorum_percent: int) -> int:
    """Votes needed for quorum. Never less than one."""
    needed = math.ceil(active_voter_count * quorum_percent / 100)
    return max(1, needed)


def compute_results(
    options: list[BallotOption],
    votes: list[BallotVote],
    active_voter_count: int,
    quorum_percent: int,
) -> BallotResults:
    """Tally votes per option and determine quorum and winner.

    Winner is the option with the highest summed voting power. Ties go
    to the lowest option index. No winner while no power has been cast.
    """
    counts: dict[str, int] = {o.option_id: 0 for o in options}
    power: dict[str, Decimal] = {o.option_id: Decimal("0") for o in options}
    for vote in votes:
        if vote.option_id not in counts:
            continue
        counts[vote.option_id] += 1
        power[vote.option_id] += vote.weight

    total_power = sum(power.values(), Decimal("0"))
    option_results = tuple(
        OptionResult(
            option_id=o.option_id,
            label=o.label,
            vote_count=counts[o.option_id],
            voting_power=power[o.option_id],
            percentage=(
                float(power[o.option_id] / total_power * 100)
                if total_power > 0 else 0.0
            ),
        )
        for o in sorted(options, key=lambda o: o.index)
    )

    winner: Optional[str] = None
    best = Decimal("0")
    for o in sorted(options, key=lambda o: o.index):
        if power[o.option_id] > best:
            best = power[o.option_id]
            winner = o.option_id

    total_votes = sum(counts.values())
    needed = required_votes(active_voter_count, quorum_percent)
    return BallotResults(
        option_results=option_results,
        total_votes=total_votes,
        total_voting_power=total_power,
        required_votes=needed,
        quorum_reached=total_votes >= needed,
        winning_option_id=winner,
    )


@dataclass
class Ballot:
    """A quorum vote among delegates over competing bids."""
    ballot_id: str
    proposal_id: str
    grievance_id: str
    title: str
    description: str
    created_by: str
    options: list[BallotOption]
    starts_utc: datetime
    ends_utc: datetime
    proposal_type: ProposalType = ProposalType.BID_ASSIGNMENT
    quorum_percent: int = 51
    allow_vote_change: bool = False
    status: BallotStatus = BallotStatus.ACTIVE
    votes: list[BallotVote] = field(default_factory=list)
    results: BallotResults = field(default_factory=BallotResults)
    execution: BallotExecution = field(default_factory=BallotExecution)
    created_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None

    def option(self, option_id: str) -> Optional[BallotOption]:
        for o in self.options:
            if o.option_id == option_id:
                return o
        return None

    def has_voted(self, voter_id: str) -> bool:
        return any(v.voter_id == voter_id for v in self.votes)

    def is_open(self, now: datetime) -> bool:
        return (
            self.status == BallotStatus.ACTIVE
            and self.starts_utc <= now < self.ends_utc
        )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BALLOT_STATUSES

    def recompute(self, active_voter_count: int) -> BallotResults:
        self.results = compute_results(
            self.options, self.votes, active_voter_count, self.quorum_percent,
        )
        return self.results
