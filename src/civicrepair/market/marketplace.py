"""Bid marketplace — accepts, edits and withdraws bids, then escalates.

Every mutation for a grievance happens under that grievance's lock,
including the escalation decision and whatever it triggers. Two bids
landing at once are therefore evaluated one after the other, and only
the first can ever see "exactly one pending bid".

Escalation outcomes:
    AUTO_ASSIGN  → AssignmentManager.execute_selection (reason single_bid)
    OPEN_BALLOT  → QuorumVotingEngine.create_ballot over ranked pending bids,
                   unless a draft or active ballot already exists
    WAIT         → nothing
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from uuid import uuid4

import structlog

from civicrepair.engine.grievances import GrievanceLifecycle
from civicrepair.errors import (
    AuthorizationError,
    CivicRepairError,
    ConflictError,
    ValidationError,
)
from civicrepair.governance.voting import QuorumVotingEngine
from civicrepair.locking import LockRegistry
from civicrepair.market.escalation import EscalationDecision, decide_escalation
from civicrepair.market.scoring import BidScorer
from civicrepair.models.assignment import Assignment
from civicrepair.models.ballot import Ballot
from civicrepair.models.grievance import GrievanceStatus
from civicrepair.models.ledger import LedgerOperation
from civicrepair.models.market import AssignmentReason, Bid, BidStatus, ScoredBid
from civicrepair.persistence.event_log import EventKind, EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.policy.resolver import PolicyResolver
from civicrepair.reconciliation.dispatcher import IntentSink
from civicrepair.settlement.assignments import AssignmentManager

log = structlog.get_logger(__name__)

SYSTEM_ACTOR = "marketplace"


@dataclass
class BidOutcome:
    """What happened as a result of a new pending bid."""
    bid: Bid
    decision: EscalationDecision
    assignment: Optional[Assignment] = None
    ballot: Optional[Ballot] = None


class BidMarketplace:
    """Usage:
        market = BidMarketplace(store, locks, resolver, lifecycle, voting, assignments)
        outcome = market.submit_bid(gid, "0xworker", Decimal("500"), "Patch it", 24)
        if outcome.decision == EscalationDecision.AUTO_ASSIGN: ...
    """

    def __init__(
        self,
        store: DocumentStore,
        locks: LockRegistry,
        resolver: PolicyResolver,
        grievances: GrievanceLifecycle,
        voting: QuorumVotingEngine,
        assignments: AssignmentManager,
        event_log: Optional[EventLog] = None,
        sink: Optional[IntentSink] = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._bounds = resolver.bid_bounds()
        self._escalation = resolver.escalation_policy()
        self._scorer = BidScorer(resolver)
        self._grievances = grievances
        self._voting = voting
        self._assignments = assignments
        self._event_log = event_log
        self._sink = sink

    @property
    def scorer(self) -> BidScorer:
        return self._scorer

    def get(self, bid_id: str) -> Bid:
        return self._store.bids.get(bid_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        grievance_id: str,
        worker_id: str,
        amount: Decimal,
        proposal: str,
        eta_hours: int,
        skills: Optional[list[str]] = None,
        worker_reputation: float = 0.0,
        now: Optional[datetime] = None,
    ) -> BidOutcome:
        """Place a bid, then evaluate escalation for the grievance.

        Raises:
            NotFoundError: unknown grievance.
            ValidationError: the grievance cannot receive bids, or the bid
                is malformed or out of bounds.
            ConflictError: the worker already has a pending bid here.
        """
        now = now or datetime.now(timezone.utc)
        amount = self._check_terms(amount, proposal, eta_hours)
        with self._locks.hold("grievance", grievance_id):
            grievance = self._store.grievances.get(grievance_id)
            if not grievance.can_receive_bids():
                raise ValidationError(
                    f"Grievance {grievance_id} cannot receive bids in status "
                    f"{grievance.status.value}"
                )
            if grievance.citizen_id == worker_id:
                raise ValidationError("A citizen cannot bid on their own grievance")
            if self._pending_bid(grievance_id, worker_id) is not None:
                raise ConflictError(
                    f"{worker_id} already has a pending bid on grievance {grievance_id}"
                )

            bid = Bid(
                bid_id=f"bid_{uuid4().hex[:12]}",
                grievance_id=grievance_id,
                worker_id=worker_id,
                amount=amount,
                proposal=proposal.strip(),
                eta_hours=eta_hours,
                skills=list(skills or []),
                worker_reputation=worker_reputation,
                submitted_utc=now,
                updated_utc=now,
            )
            self._store.bids.insert(bid)
            grievance.bid_count += 1
            if grievance.status == GrievanceStatus.CLASSIFIED:
                self._grievances.transition(grievance, GrievanceStatus.ACTIVE, worker_id, now)
            else:
                grievance.updated_utc = now
                self._store.grievances.put(grievance)

            self._record(EventKind.BID_SUBMITTED, worker_id, {
                "bid_id": bid.bid_id,
                "grievance_id": grievance_id,
                "amount": amount,
                "eta_hours": eta_hours,
            }, now)
            log.info(
                "bid.submitted",
                bid_id=bid.bid_id,
                grievance_id=grievance_id,
                worker_id=worker_id,
                amount=str(amount),
            )
            if self._sink is not None:
                self._sink.enqueue(
                    LedgerOperation.COMMIT_BID,
                    {"grievance_id": grievance_id, "bid_id": bid.bid_id},
                    {"worker_id": worker_id, "eta_hours": eta_hours},
                    amount=amount,
                )
            return self._escalate(grievance_id, bid, now)

    def _escalate(self, grievance_id: str, bid: Bid, now: datetime) -> BidOutcome:
        """Apply the escalation policy. Caller holds the grievance lock."""
        grievance = self._store.grievances.get(grievance_id)
        pending = self.pending_bids(grievance_id)
        decision = decide_escalation(len(pending), grievance.priority, self._escalation)
        outcome = BidOutcome(bid=bid, decision=decision)

        # The bid is already committed; escalation failures are logged, not raised.
        if decision == EscalationDecision.AUTO_ASSIGN:
            try:
                outcome.assignment = self._assignments.execute_selection(
                    grievance_id, pending[0].bid_id, AssignmentReason.SINGLE_BID,
                    SYSTEM_ACTOR, now,
                )
            except CivicRepairError as exc:
                log.warning(
                    "escalation.auto_assign_failed",
                    grievance_id=grievance_id,
                    bid_id=pending[0].bid_id,
                    error=str(exc),
                )
        elif decision == EscalationDecision.OPEN_BALLOT:
            if self._voting.open_ballot_for(grievance_id, now) is None:
                try:
                    outcome.ballot = self._voting.create_ballot(
                        grievance_id,
                        self._scorer.rank_bids(pending),
                        SYSTEM_ACTOR,
                        description=(
                            f"{len(pending)} pending bids, priority {grievance.priority.value}"
                        ),
                        now=now,
                    )
                except ConflictError as exc:
                    log.info("escalation.ballot_exists", grievance_id=grievance_id, error=str(exc))
                except CivicRepairError as exc:
                    log.warning(
                        "escalation.ballot_failed", grievance_id=grievance_id, error=str(exc),
                    )

        self._record(EventKind.ESCALATION_DECIDED, SYSTEM_ACTOR, {
            "grievance_id": grievance_id,
            "pending_bids": len(pending),
            "priority": grievance.priority,
            "decision": decision,
            "assignment_id": outcome.assignment.assignment_id if outcome.assignment else None,
            "ballot_id": outcome.ballot.ballot_id if outcome.ballot else None,
        }, now)
        return outcome

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def update_bid(
        self,
        bid_id: str,
        worker_id: str,
        amount: Optional[Decimal] = None,
        proposal: Optional[str] = None,
        eta_hours: Optional[int] = None,
        skills: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> Bid:
        """Owner edits the terms of a still-pending bid."""
        now = now or datetime.now(timezone.utc)
        bid = self.get(bid_id)
        with self._locks.hold("grievance", bid.grievance_id):
            bid = self.get(bid_id)
            self._check_owner(bid, worker_id)
            if bid.status != BidStatus.PENDING:
                raise ValidationError(f"Bid {bid_id} is {bid.status.value}; only pending bids can change")
            new_amount = self._check_terms(
                amount if amount is not None else bid.amount,
                proposal if proposal is not None else bid.proposal,
                eta_hours if eta_hours is not None else bid.eta_hours,
            )
            bid.amount = new_amount
            if proposal is not None:
                bid.proposal = proposal.strip()
            if eta_hours is not None:
                bid.eta_hours = eta_hours
            if skills is not None:
                bid.skills = list(skills)
            bid.updated_utc = now
            self._store.bids.put(bid)
        self._record(EventKind.BID_UPDATED, worker_id, {
            "bid_id": bid_id,
            "amount": bid.amount,
            "eta_hours": bid.eta_hours,
        }, now)
        return bid

    def withdraw_bid(
        self,
        bid_id: str,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Bid:
        """PENDING → WITHDRAWN, and the grievance's bid counter drops by one."""
        now = now or datetime.now(timezone.utc)
        bid = self.get(bid_id)
        with self._locks.hold("grievance", bid.grievance_id):
            bid = self.get(bid_id)
            self._check_owner(bid, worker_id)
            if not bid.can_be_withdrawn():
                raise ValidationError(
                    f"Bid {bid_id} is {bid.status.value}; only pending bids can be withdrawn"
                )
            bid.status = BidStatus.WITHDRAWN
            bid.updated_utc = now
            self._store.bids.put(bid)
            grievance = self._store.grievances.get(bid.grievance_id)
            grievance.bid_count = max(0, grievance.bid_count - 1)
            grievance.updated_utc = now
            self._store.grievances.put(grievance)
        self._record(EventKind.BID_WITHDRAWN, worker_id, {
            "bid_id": bid_id,
            "grievance_id": bid.grievance_id,
        }, now)
        log.info("bid.withdrawn", bid_id=bid_id, worker_id=worker_id)
        return bid

    def reject_bid(
        self,
        bid_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Bid:
        """A delegate turns down a pending bid by hand."""
        now = now or datetime.now(timezone.utc)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        bid = self.get(bid_id)
        with self._locks.hold("grievance", bid.grievance_id):
            bid = self.get(bid_id)
            if bid.status != BidStatus.PENDING:
                raise ValidationError(
                    f"Bid {bid_id} is {bid.status.value}; only pending bids can be rejected"
                )
            bid.status = BidStatus.REJECTED
            bid.rejection_reason = reason.strip()
            bid.updated_utc = now
            self._store.bids.put(bid)
        self._record(EventKind.BID_REJECTED, actor_id, {
            "bid_id": bid_id,
            "grievance_id": bid.grievance_id,
            "reason": bid.rejection_reason,
        }, now)
        return bid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def bids_for(
        self,
        grievance_id: str,
        status: Optional[BidStatus] = None,
    ) -> list[Bid]:
        bids = [
            b for b in self._store.bids_for(grievance_id)
            if status is None or b.status == status
        ]
        bids.sort(key=lambda b: b.submitted_utc or datetime.min.replace(tzinfo=timezone.utc))
        return bids

    def pending_bids(self, grievance_id: str) -> list[Bid]:
        return self.bids_for(grievance_id, BidStatus.PENDING)

    def ranked_bids(self, grievance_id: str) -> list[ScoredBid]:
        return self._scorer.rank_bids(self.pending_bids(grievance_id))

    def bids_by_worker(
        self,
        worker_id: str,
        status: Optional[BidStatus] = None,
    ) -> list[Bid]:
        bids = self._store.bids.where(
            lambda b: b.worker_id == worker_id and (status is None or b.status == status)
        )
        bids.sort(key=lambda b: b.submitted_utc or datetime.min.replace(tzinfo=timezone.utc),
                  reverse=True)
        return bids

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _pending_bid(self, grievance_id: str, worker_id: str) -> Optional[Bid]:
        for bid in self._store.bids_for(grievance_id):
            if bid.worker_id == worker_id and bid.status == BidStatus.PENDING:
                return bid
        return None

    def _check_terms(self, amount: Any, proposal: str, eta_hours: int) -> Decimal:
        errors = []
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Bid amount is not a number: {amount!r}")
        if not value.is_finite() or value <= self._bounds.min_amount:
            errors.append(f"amount must be greater than {self._bounds.min_amount}")
        elif value > self._bounds.max_amount:
            errors.append(f"amount must not exceed {self._bounds.max_amount}")
        if isinstance(eta_hours, bool) or not isinstance(eta_hours, int):
            errors.append("eta_hours must be a whole number of hours")
        elif not self._bounds.min_eta_hours <= eta_hours <= self._bounds.max_eta_hours:
            errors.append(
                f"eta_hours must be between {self._bounds.min_eta_hours} "
                f"and {self._bounds.max_eta_hours}"
            )
        if not proposal or not proposal.strip():
            errors.append("proposal is required")
        elif len(proposal.strip()) > self._bounds.max_proposal_length:
            errors.append(f"proposal exceeds {self._bounds.max_proposal_length} characters")
        if errors:
            raise ValidationError("; ".join(errors))
        return value

    @staticmethod
    def _check_owner(bid: Bid, worker_id: str) -> None:
        if bid.worker_id != worker_id:
            raise AuthorizationError(f"{worker_id} does not own bid {bid.bid_id}")

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
