"""Quorum voting engine — timed, weighted delegate ballots over competing bids.

Ballot lifecycle:
    DRAFT → ACTIVE                 (window opens)
    ACTIVE → COMPLETED             (quorum reached; winner executed at once)
    ACTIVE → EXPIRED               (window closed without quorum)
    DRAFT / ACTIVE → CANCELLED     (delegate cancels)

Casting a vote, recomputing the tally and the completion check happen as
one step under the ballot lock. Two concurrent votes can never both see
the pre-update tally, so a winner is executed at most once.

Expiry is evaluated lazily whenever a ballot is read or voted on, and
proactively by ``BallotReaper`` via ``expire_stale``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

import structlog

from civicrepair.errors import (
    CivicRepairError,
    ConflictError,
    ValidationError,
)
from civicrepair.governance.roster import DelegateRoster
from civicrepair.locking import LockRegistry
from civicrepair.models.ballot import (
    Ballot,
    BallotOption,
    BallotStatus,
    BallotVote,
)
from civicrepair.models.market import Bid, BidStatus, ScoredBid
from civicrepair.persistence.event_log import EventKind, EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.policy.resolver import PolicyResolver

log = structlog.get_logger(__name__)

# (ballot, winning option, acting delegate) -> assignment id
WinnerExecutor = Callable[[Ballot, BallotOption, str], str]

OPEN_BALLOT_STATUSES = frozenset({BallotStatus.DRAFT, BallotStatus.ACTIVE})


def option_label(index: int, bid: Bid) -> str:
    return f"Bid {index + 1}: {bid.amount} by {bid.worker_id}"


class QuorumVotingEngine:
    """Creates ballots, records votes and executes winners.

    Usage:
        engine = QuorumVotingEngine(store, locks, roster, resolver)
        engine.set_executor(settlement.execute_ballot_winner)
        ballot = engine.create_ballot(grievance_id, ranked_bids, "0xdelegate")
        engine.cast_vote(ballot.ballot_id, "0xdelegate", option_id)
    """

    def __init__(
        self,
        store: DocumentStore,
        locks: LockRegistry,
        roster: DelegateRoster,
        resolver: PolicyResolver,
        event_log: Optional[EventLog] = None,
        executor: Optional[WinnerExecutor] = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._roster = roster
        self._defaults = resolver.ballot_defaults()
        self._event_log = event_log
        self._executor = executor

    def set_executor(self, executor: WinnerExecutor) -> None:
        self._executor = executor

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_ballot(
        self,
        grievance_id: str,
        candidates: list[ScoredBid],
        created_by: str,
        title: Optional[str] = None,
        description: str = "",
        voting_period_hours: Optional[int] = None,
        quorum_percent: Optional[int] = None,
        allow_vote_change: Optional[bool] = None,
        starts_utc: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Ballot:
        """Open a ballot with one option per candidate bid, in the given order.

        Candidates arrive ranked; option index follows that ranking and
        is the tie-break order. A ballot whose start lies in the future
        is created as DRAFT.

        Raises:
            ValidationError: no candidates, or a candidate is not a pending
                bid on this grievance, or bad window/quorum values.
            ConflictError: a draft or active ballot already exists.
        """
        now = now or datetime.now(timezone.utc)
        if not candidates:
            raise ValidationError("A ballot needs at least one candidate bid")
        period = voting_period_hours or self._defaults.voting_period_hours
        quorum = quorum_percent or self._defaults.quorum_percent
        if period <= 0:
            raise ValidationError("Voting period must be positive")
        if not 0 < quorum <= 100:
            raise ValidationError(f"Quorum percent must be in (0, 100], got {quorum}")

        # Grievance lock: one open ballot per grievance. No ballot lock is
        # taken here, so ballot -> grievance ordering still holds.
        with self._locks.hold("grievance", grievance_id):
            for scored in candidates:
                bid = self._store.bids.get(scored.bid.bid_id)
                if bid.grievance_id != grievance_id:
                    raise ValidationError(f"Bid {bid.bid_id} is not for grievance {grievance_id}")
                if bid.status != BidStatus.PENDING:
                    raise ValidationError(
                        f"Bid {bid.bid_id} is {bid.status.value}; "
                        "only pending bids can be candidates"
                    )
            existing = self.open_ballot_for(grievance_id, now)
            if existing is not None:
                raise ConflictError(
                    f"Grievance {grievance_id} already has an open ballot: {existing.ballot_id}"
                )

            starts = starts_utc or now
            options = [
                BallotOption(
                    option_id=f"opt_{uuid4().hex[:12]}",
                    index=i,
                    label=option_label(i, scored.bid),
                    description=scored.bid.proposal,
                    bid_id=scored.bid.bid_id,
                    metadata={
                        "worker_id": scored.bid.worker_id,
                        "amount": str(scored.bid.amount),
                        "eta_hours": scored.bid.eta_hours,
                        "score": scored.score,
                    },
                )
                for i, scored in enumerate(candidates)
            ]
            ballot = Ballot(
                ballot_id=f"ballot_{uuid4().hex[:12]}",
                proposal_id=f"prop_{uuid4().hex[:12]}",
                grievance_id=grievance_id,
                title=title or f"Select a bid for grievance {grievance_id}",
                description=description,
                created_by=created_by,
                options=options,
                starts_utc=starts,
                ends_utc=starts + timedelta(hours=period),
                quorum_percent=quorum,
                allow_vote_change=(
                    self._defaults.allow_vote_change
                    if allow_vote_change is None else allow_vote_change
                ),
                status=BallotStatus.DRAFT if starts > now else BallotStatus.ACTIVE,
                created_utc=now,
            )
            ballot.recompute(self._roster.active_count())
            self._store.ballots.insert(ballot)

        self._record(EventKind.BALLOT_CREATED, created_by, {
            "ballot_id": ballot.ballot_id,
            "grievance_id": grievance_id,
            "bid_ids": [o.bid_id for o in options],
            "ends_utc": ballot.ends_utc,
        }, now)
        log.info(
            "ballot.created",
            ballot_id=ballot.ballot_id,
            grievance_id=grievance_id,
            options=len(options),
            status=ballot.status.value,
        )
        return ballot

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def cast_vote(
        self,
        ballot_id: str,
        voter_id: str,
        option_id: str,
        signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Ballot:
        """Record a weighted vote, recompute and run the completion check.

        Raises:
            NotFoundError: unknown ballot.
            AuthorizationError: voter is not an active delegate.
            ValidationError: window closed, ballot terminal, unknown option.
            ConflictError: voter already voted and vote change is disabled.
        """
        now = now or datetime.now(timezone.utc)
        voter_id = voter_id.strip().lower()
        with self._locks.hold("ballot", ballot_id):
            ballot = self._store.ballots.get(ballot_id)
            self._settle(ballot, voter_id, now)
            if ballot.is_terminal():
                raise ValidationError(
                    f"Ballot {ballot_id} is {ballot.status.value}; voting is closed"
                )
            if not ballot.is_open(now):
                raise ValidationError(f"Ballot {ballot_id} is outside its voting window")
            if ballot.option(option_id) is None:
                raise ValidationError(f"Unknown option {option_id} on ballot {ballot_id}")

            weight = self._roster.voting_power(voter_id)
            replaced = False
            if ballot.has_voted(voter_id):
                if not ballot.allow_vote_change:
                    raise ConflictError(f"{voter_id} has already voted on ballot {ballot_id}")
                ballot.votes = [v for v in ballot.votes if v.voter_id != voter_id]
                replaced = True

            ballot.votes.append(BallotVote(
                voter_id=voter_id,
                option_id=option_id,
                weight=weight,
                cast_utc=now,
                signature=signature,
            ))
            if not replaced:
                self._roster.record_vote(voter_id)
            ballot.recompute(self._roster.active_count())
            self._record(EventKind.VOTE_CAST, voter_id, {
                "ballot_id": ballot_id,
                "option_id": option_id,
                "weight": weight,
                "replaced": replaced,
            }, now)
            log.info(
                "ballot.vote_cast",
                ballot_id=ballot_id,
                voter_id=voter_id,
                total_votes=ballot.results.total_votes,
                required=ballot.results.required_votes,
            )
            self._check_completion(ballot, voter_id, now)
            self._store.ballots.put(ballot)
            return ballot

    # ------------------------------------------------------------------
    # Reads and lifecycle
    # ------------------------------------------------------------------

    def get_ballot(self, ballot_id: str, now: Optional[datetime] = None) -> Ballot:
        """Read a ballot, settling it first (lazy activation and expiry)."""
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("ballot", ballot_id):
            ballot = self._store.ballots.get(ballot_id)
            self._settle(ballot, "system", now)
            return ballot

    def ballots_for(self, grievance_id: str) -> list[Ballot]:
        ballots = self._store.ballots.where(lambda b: b.grievance_id == grievance_id)
        ballots.sort(key=lambda b: b.created_utc or b.starts_utc)
        return ballots

    def list_ballots(
        self,
        grievance_id: Optional[str] = None,
        status: Optional[BallotStatus] = None,
        now: Optional[datetime] = None,
    ) -> list[Ballot]:
        """Ballots newest first, settled as of ``now`` before filtering by status."""
        now = now or datetime.now(timezone.utc)
        found = self._store.ballots.where(
            lambda b: grievance_id is None or b.grievance_id == grievance_id
        )
        settled = []
        for candidate in found:
            with self._locks.hold("ballot", candidate.ballot_id):
                ballot = self._store.ballots.get(candidate.ballot_id)
                self._settle(ballot, "system", now)
            if status is None or ballot.status == status:
                settled.append(ballot)
        settled.sort(key=lambda b: b.created_utc or b.starts_utc, reverse=True)
        return settled

    def open_ballot_for(
        self, grievance_id: str, now: Optional[datetime] = None,
    ) -> Optional[Ballot]:
        """The draft or active ballot for a grievance whose window has not closed.

        Lock-free read: callers may hold the grievance lock, which ranks
        below ballot locks.
        """
        now = now or datetime.now(timezone.utc)
        for ballot in self.ballots_for(grievance_id):
            if ballot.status in OPEN_BALLOT_STATUSES and now < ballot.ends_utc:
                return ballot
        return None

    def cancel_ballot(
        self,
        ballot_id: str,
        actor_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Ballot:
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("ballot", ballot_id):
            ballot = self._store.ballots.get(ballot_id)
            self._settle(ballot, actor_id, now)
            if ballot.status not in OPEN_BALLOT_STATUSES:
                raise ValidationError(
                    f"Ballot {ballot_id} is {ballot.status.value} and cannot be cancelled"
                )
            ballot.status = BallotStatus.CANCELLED
            ballot.closed_utc = now
            self._store.ballots.put(ballot)
        self._record(EventKind.BALLOT_CANCELLED, actor_id, {
            "ballot_id": ballot_id,
            "reason": reason,
        }, now)
        log.info("ballot.cancelled", ballot_id=ballot_id, actor_id=actor_id)
        return ballot

    def expire_stale(self, now: Optional[datetime] = None) -> list[Ballot]:
        """Settle every open ballot whose window has closed.

        Returns the ballots that became terminal during this sweep.
        """
        now = now or datetime.now(timezone.utc)
        settled = []
        stale = self._store.ballots.where(
            lambda b: b.status in OPEN_BALLOT_STATUSES and now >= b.ends_utc
        )
        for candidate in stale:
            with self._locks.hold("ballot", candidate.ballot_id):
                ballot = self._store.ballots.get(candidate.ballot_id)
                was_terminal = ballot.is_terminal()
                self._settle(ballot, "reaper", now)
                if ballot.is_terminal() and not was_terminal:
                    settled.append(ballot)
        return settled

    # ------------------------------------------------------------------
    # Internal: caller holds the ballot lock
    # ------------------------------------------------------------------

    def _settle(self, ballot: Ballot, actor_id: str, now: datetime) -> None:
        if ballot.is_terminal():
            return
        if ballot.status == BallotStatus.DRAFT:
            if now < ballot.starts_utc:
                return
            ballot.status = BallotStatus.ACTIVE
        ballot.recompute(self._roster.active_count())
        self._check_completion(ballot, actor_id, now)
        self._store.ballots.put(ballot)

    def _check_completion(self, ballot: Ballot, actor_id: str, now: datetime) -> None:
        if ballot.status != BallotStatus.ACTIVE:
            return
        results = ballot.results
        if results.quorum_reached and results.winning_option_id is not None:
            ballot.status = BallotStatus.COMPLETED
            ballot.closed_utc = now
            self._record(EventKind.BALLOT_COMPLETED, actor_id, {
                "ballot_id": ballot.ballot_id,
                "winning_option_id": results.winning_option_id,
                "total_votes": results.total_votes,
                "total_voting_power": results.total_voting_power,
            }, now)
            self._execute(ballot, actor_id, now)
        elif now >= ballot.ends_utc:
            ballot.status = BallotStatus.EXPIRED
            ballot.closed_utc = now
            self._record(EventKind.BALLOT_EXPIRED, actor_id, {
                "ballot_id": ballot.ballot_id,
                "total_votes": results.total_votes,
                "required_votes": results.required_votes,
            }, now)
            log.info("ballot.expired", ballot_id=ballot.ballot_id)

    def _execute(self, ballot: Ballot, actor_id: str, now: datetime) -> None:
        execution = ballot.execution
        if execution.executed:
            return
        winner = ballot.option(ballot.results.winning_option_id)
        execution.executed_utc = now
        execution.executed_by = actor_id
        if self._executor is None:
            execution.error = "no winner executor configured"
            log.error("ballot.execution_skipped", ballot_id=ballot.ballot_id)
            return
        try:
            execution.assignment_id = self._executor(ballot, winner, actor_id)
            execution.executed = True
        except CivicRepairError as exc:
            # The vote outcome stands; a failed execution is left for an
            # operator to resolve through a manual assignment.
            execution.error = str(exc)
            log.error(
                "ballot.execution_failed",
                ballot_id=ballot.ballot_id,
                option_id=winner.option_id,
                error=str(exc),
            )
        self._record(EventKind.BALLOT_EXECUTED, actor_id, {
            "ballot_id": ballot.ballot_id,
            "bid_id": winner.bid_id,
            "assignment_id": execution.assignment_id,
            "error": execution.error,
        }, now)

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
