"""Assignment and settlement — from winning bid to released funds.

Owns the one-active-assignment-per-grievance invariant. Every winner,
whether auto-assigned, voted in, or chosen by a manual override, goes
through ``execute_selection``, which in one step:

    creates the Assignment and locks escrow,
    accepts the winning bid and rejects the other pending bids,
    moves the grievance to ASSIGNED.

``unassign`` is its exact inverse.

Confirmation is dual but independent: a citizen approval or a delegate
approval each releases funds on its own. Both paths serialise on the
assignment lock and check ``funds_released`` there, so release happens
exactly once no matter how the two race.

Lock order: grievance → assignment. Ballot execution arrives holding the
ballot lock, which ranks above both.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog

from civicrepair.crypto.fingerprint import fingerprint
from civicrepair.engine.grievances import GrievanceLifecycle
from civicrepair.engine.state_machine import (
    AssignmentStateMachine,
    GrievanceStateMachine,
)
from civicrepair.errors import (
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from civicrepair.locking import LockRegistry
from civicrepair.models.assignment import (
    Assignment,
    AssignmentStatus,
    CitizenConfirmation,
    CompensationSplit,
    CompletionRecord,
    DelegateConfirmation,
    DisputeRecord,
    ProgressUpdate,
    completion_payload,
)
from civicrepair.models.ballot import Ballot, BallotOption
from civicrepair.models.grievance import Grievance, GrievanceStatus
from civicrepair.models.ledger import LedgerOperation
from civicrepair.models.market import AssignmentReason, Bid, BidStatus
from civicrepair.persistence.event_log import EventKind, EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.reconciliation.dispatcher import IntentSink
from civicrepair.settlement.escrow import EscrowManager

log = structlog.get_logger(__name__)

NOT_SELECTED = "not selected"

UNASSIGNABLE_STATUSES = frozenset({
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.STARTED,
    AssignmentStatus.IN_PROGRESS,
})
CONFIRMABLE_STATUSES = frozenset({
    AssignmentStatus.COMPLETED,
    AssignmentStatus.VERIFIED,
})


class AssignmentManager:
    """Usage:
        manager = AssignmentManager(store, locks, lifecycle, EscrowManager(store))
        assignment = manager.execute_selection(gid, bid_id, AssignmentReason.DAO_OVERRIDE, actor)
        manager.start(assignment.assignment_id, worker_id)
    """

    def __init__(
        self,
        store: DocumentStore,
        locks: LockRegistry,
        grievances: GrievanceLifecycle,
        escrow: EscrowManager,
        event_log: Optional[EventLog] = None,
        sink: Optional[IntentSink] = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._grievances = grievances
        self._escrow = escrow
        self._event_log = event_log
        self._sink = sink

    def get(self, assignment_id: str) -> Assignment:
        return self._store.assignments.get(assignment_id)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def execute_selection(
        self,
        grievance_id: str,
        bid_id: str,
        reason: AssignmentReason,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Bind a winning bid to its grievance.

        Raises:
            NotFoundError: unknown grievance or bid.
            ConflictError: the grievance already has an active assignment.
            ValidationError: the bid is not pending on this grievance, or
                the grievance cannot move to ASSIGNED.
        """
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("grievance", grievance_id):
            grievance = self._store.grievances.get(grievance_id)
            existing = self._store.active_assignment_for(grievance_id)
            if existing is not None:
                raise ConflictError(
                    f"Grievance {grievance_id} already assigned: {existing.assignment_id}"
                )
            errors = GrievanceStateMachine.validate_transition(
                grievance, GrievanceStatus.ASSIGNED,
            )
            if errors:
                raise ValidationError("; ".join(errors))
            bid = self._store.bids.get(bid_id)
            if bid.grievance_id != grievance_id:
                raise ValidationError(f"Bid {bid_id} is not for grievance {grievance_id}")
            if bid.status != BidStatus.PENDING:
                raise ValidationError(
                    f"Bid {bid_id} is {bid.status.value}; only a pending bid can win"
                )

            assignment_id = f"asg_{uuid4().hex[:12]}"
            with self._locks.hold("assignment", assignment_id):
                escrow = self._escrow.lock(
                    assignment_id, grievance_id, bid.worker_id, bid.amount, now,
                )
                assignment = Assignment(
                    assignment_id=assignment_id,
                    grievance_id=grievance_id,
                    bid_id=bid_id,
                    worker_id=bid.worker_id,
                    escrow_amount=bid.amount,
                    assigned_utc=now,
                    estimated_completion_utc=now + timedelta(hours=bid.eta_hours),
                    reason=reason,
                    assigned_by=actor_id,
                    escrow_id=escrow.escrow_id,
                )

                bid.status = BidStatus.ACCEPTED
                bid.assignment_reason = reason
                bid.auto_assigned = reason == AssignmentReason.SINGLE_BID
                bid.updated_utc = now
                self._store.bids.put(bid)
                for sibling in self._store.bids_for(grievance_id):
                    if sibling.bid_id == bid_id or sibling.status != BidStatus.PENDING:
                        continue
                    sibling.status = BidStatus.REJECTED
                    sibling.rejection_reason = NOT_SELECTED
                    sibling.updated_utc = now
                    self._store.bids.put(sibling)
                    assignment.rejected_bid_ids.append(sibling.bid_id)
                self._store.assignments.insert(assignment)

                grievance.assignment_id = assignment_id
                grievance.assigned_worker_id = bid.worker_id
                self._grievances.transition(grievance, GrievanceStatus.ASSIGNED, actor_id, now)

        self._record(EventKind.ASSIGNMENT_CREATED, actor_id, {
            "assignment_id": assignment_id,
            "grievance_id": grievance_id,
            "bid_id": bid_id,
            "worker_id": bid.worker_id,
            "reason": reason,
            "escrow_id": escrow.escrow_id,
            "escrow_amount": bid.amount,
            "rejected_bid_ids": list(assignment.rejected_bid_ids),
        }, now)
        log.info(
            "assignment.created",
            assignment_id=assignment_id,
            grievance_id=grievance_id,
            bid_id=bid_id,
            reason=reason.value,
        )
        self._mirror(
            LedgerOperation.ASSIGN_WITH_ESCROW,
            {"grievance_id": grievance_id, "bid_id": bid_id, "assignment_id": assignment_id},
            {"worker_id": bid.worker_id, "escrow_id": escrow.escrow_id},
            amount=bid.amount,
        )
        return assignment

    def execute_ballot_winner(
        self, ballot: Ballot, option: BallotOption, actor_id: str,
    ) -> str:
        """Winner executor for the voting engine."""
        if option.bid_id is None:
            raise ValidationError(f"Option {option.option_id} carries no bid")
        assignment = self.execute_selection(
            ballot.grievance_id, option.bid_id, AssignmentReason.DAO_VOTE, actor_id,
            ballot.closed_utc,
        )
        return assignment.assignment_id

    # ------------------------------------------------------------------
    # Work tracking
    # ------------------------------------------------------------------

    def start(
        self,
        assignment_id: str,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Assignment:
        now = now or datetime.now(timezone.utc)
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                self._check_worker(assignment, worker_id)
                AssignmentStateMachine.apply_transition(assignment, AssignmentStatus.STARTED)
                assignment.started_utc = now
                self._store.assignments.put(assignment)
                grievance = self._store.grievances.get(assignment.grievance_id)
                self._grievances.transition(
                    grievance, GrievanceStatus.IN_PROGRESS, worker_id, now,
                )
        self._record(EventKind.ASSIGNMENT_STARTED, worker_id, {
            "assignment_id": assignment_id,
            "grievance_id": assignment.grievance_id,
        }, now)
        return assignment

    def add_progress(
        self,
        assignment_id: str,
        author_id: str,
        message: str,
        media_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Append a progress note. The first one moves STARTED → IN_PROGRESS."""
        now = now or datetime.now(timezone.utc)
        if not message or not message.strip():
            raise ValidationError("Progress message is required")
        with self._locks.hold("assignment", assignment_id):
            assignment = self.get(assignment_id)
            self._check_worker(assignment, author_id)
            if assignment.status == AssignmentStatus.STARTED:
                AssignmentStateMachine.apply_transition(
                    assignment, AssignmentStatus.IN_PROGRESS,
                )
            elif assignment.status != AssignmentStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Cannot post progress on assignment in status {assignment.status.value}"
                )
            assignment.progress_updates.append(ProgressUpdate(
                message=message.strip(),
                author_id=author_id,
                timestamp_utc=now,
                media_ref=media_ref,
            ))
            self._store.assignments.put(assignment)
        self._record(EventKind.ASSIGNMENT_PROGRESS, author_id, {
            "assignment_id": assignment_id,
            "update_count": len(assignment.progress_updates),
        }, now)
        return assignment

    def submit_completion(
        self,
        assignment_id: str,
        worker_id: str,
        notes: str,
        before_refs: list[str],
        after_refs: list[str],
        duration_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Record proof of completion and its fingerprint.

        The fingerprint is computed here, before anything is handed to
        the ledger, and is the only part of the proof that is mirrored.
        """
        now = now or datetime.now(timezone.utc)
        if not after_refs:
            raise ValidationError("At least one after-completion media reference is required")
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                self._check_worker(assignment, worker_id)
                if assignment.status == AssignmentStatus.STARTED:
                    AssignmentStateMachine.apply_transition(
                        assignment, AssignmentStatus.IN_PROGRESS,
                    )
                errors = AssignmentStateMachine.validate_transition(
                    assignment, AssignmentStatus.COMPLETED,
                )
                if errors:
                    raise ValidationError("; ".join(errors))

                if duration_hours is None and assignment.started_utc is not None:
                    duration_hours = round(
                        (now - assignment.started_utc).total_seconds() / 3600, 2,
                    )
                payload = completion_payload(
                    assignment_id=assignment_id,
                    worker_id=worker_id,
                    notes=notes,
                    before_refs=tuple(before_refs),
                    after_refs=tuple(after_refs),
                    duration_hours=duration_hours,
                    submitted_utc=now,
                )
                assignment.completion = CompletionRecord(
                    assignment_id=assignment_id,
                    worker_id=worker_id,
                    notes=notes,
                    before_refs=tuple(before_refs),
                    after_refs=tuple(after_refs),
                    duration_hours=duration_hours,
                    submitted_utc=now,
                    fingerprint=fingerprint(payload),
                )
                assignment.status = AssignmentStatus.COMPLETED
                assignment.completed_utc = now
                self._store.assignments.put(assignment)
                grievance = self._store.grievances.get(assignment.grievance_id)
                self._grievances.transition(
                    grievance, GrievanceStatus.COMPLETED, worker_id, now,
                )

        proof = assignment.completion.fingerprint
        self._record(EventKind.COMPLETION_SUBMITTED, worker_id, {
            "assignment_id": assignment_id,
            "grievance_id": assignment.grievance_id,
            "fingerprint": proof,
        }, now)
        log.info("assignment.completed", assignment_id=assignment_id, fingerprint=proof)
        self._mirror(
            LedgerOperation.COMMIT_COMPLETION,
            {"grievance_id": assignment.grievance_id, "assignment_id": assignment_id},
            {"fingerprint": proof},
        )
        return assignment

    # ------------------------------------------------------------------
    # Confirmation and release
    # ------------------------------------------------------------------

    def confirm_citizen(
        self,
        assignment_id: str,
        citizen_id: str,
        approved: bool,
        feedback: str = "",
        rating: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Assignment, bool]:
        """Citizen's verdict on the work. Returns (assignment, released_now)."""
        now = now or datetime.now(timezone.utc)
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError(f"Rating must be between 1 and 5, got {rating}")
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                grievance = self._store.grievances.get(assignment.grievance_id)
                if grievance.citizen_id != citizen_id:
                    raise AuthorizationError(
                        f"{citizen_id} did not file grievance {grievance.grievance_id}"
                    )
                self._check_confirmable(assignment)
                if assignment.citizen_confirmation is not None:
                    raise ConflictError(f"Citizen already confirmed assignment {assignment_id}")
                assignment.citizen_confirmation = CitizenConfirmation(
                    citizen_id=citizen_id,
                    approved=approved,
                    confirmed_utc=now,
                    feedback=feedback,
                    rating=rating,
                )
                self._store.assignments.put(assignment)
                self._record(EventKind.CITIZEN_CONFIRMED, citizen_id, {
                    "assignment_id": assignment_id,
                    "approved": approved,
                    "rating": rating,
                }, now)
                released = False
                if approved:
                    released = self._release(assignment, grievance, citizen_id, "citizen", now)
        return assignment, released

    def confirm_delegate(
        self,
        assignment_id: str,
        delegate_id: str,
        approved: bool,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> tuple[Assignment, bool]:
        """Delegate's verdict. An independent release path."""
        now = now or datetime.now(timezone.utc)
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                grievance = self._store.grievances.get(assignment.grievance_id)
                self._check_confirmable(assignment)
                if assignment.delegate_confirmation is not None:
                    raise ConflictError(f"Delegate already confirmed assignment {assignment_id}")
                assignment.delegate_confirmation = DelegateConfirmation(
                    delegate_id=delegate_id,
                    approved=approved,
                    confirmed_utc=now,
                    notes=notes,
                )
                self._store.assignments.put(assignment)
                self._record(EventKind.DELEGATE_CONFIRMED, delegate_id, {
                    "assignment_id": assignment_id,
                    "approved": approved,
                }, now)
                released = False
                if approved:
                    released = self._release(assignment, grievance, delegate_id, "delegate", now)
        return assignment, released

    def _release(
        self,
        assignment: Assignment,
        grievance: Grievance,
        actor_id: str,
        confirmer: str,
        now: datetime,
    ) -> bool:
        """Release escrow once. Caller holds grievance and assignment locks."""
        released = False
        if not assignment.funds_released:
            self._escrow.release(assignment.escrow_id, actor_id, now)
            assignment.funds_released = True
            assignment.released_utc = now
            assignment.released_by = actor_id
            AssignmentStateMachine.apply_transition(assignment, AssignmentStatus.VERIFIED)
            assignment.verified_utc = now
            self._store.assignments.put(assignment)
            self._grievances.transition(grievance, GrievanceStatus.VERIFIED, actor_id, now)
            self._record(EventKind.FUNDS_RELEASED, actor_id, {
                "assignment_id": assignment.assignment_id,
                "grievance_id": assignment.grievance_id,
                "escrow_id": assignment.escrow_id,
                "amount": assignment.escrow_amount,
                "confirmer": confirmer,
            }, now)
            log.info(
                "assignment.funds_released",
                assignment_id=assignment.assignment_id,
                confirmer=confirmer,
            )
            released = True
        self._mirror(
            LedgerOperation.CONFIRM_RELEASE,
            {"grievance_id": assignment.grievance_id, "assignment_id": assignment.assignment_id},
            {"confirmer": confirmer, "released_locally": released},
            amount=assignment.escrow_amount,
        )
        return released

    # ------------------------------------------------------------------
    # Unassignment (compensating transaction)
    # ------------------------------------------------------------------

    def unassign(
        self,
        assignment_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Undo ``execute_selection`` exactly.

        Cancels the assignment, refunds escrow locally, reinstates the
        winning bid and every bid this assignment auto-rejected to
        PENDING, and returns the grievance to ACTIVE. Nothing already
        sent to the ledger is recalled; a later reassignment is mirrored
        as a new forward operation.
        """
        now = now or datetime.now(timezone.utc)
        if not reason or not reason.strip():
            raise ValidationError("An unassignment reason is required")
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                if assignment.status not in UNASSIGNABLE_STATUSES:
                    raise ValidationError(
                        f"Assignment {assignment_id} cannot be unassigned in status "
                        f"{assignment.status.value}"
                    )
                grievance = self._store.grievances.get(assignment.grievance_id)

                AssignmentStateMachine.apply_transition(assignment, AssignmentStatus.CANCELLED)
                assignment.cancelled_utc = now
                assignment.cancelled_by = actor_id
                assignment.cancellation_reason = reason.strip()
                self._escrow.refund(assignment.escrow_id, now)
                self._store.assignments.put(assignment)

                winner = self._store.bids.get(assignment.bid_id)
                self._reinstate(winner, now)
                for bid_id in assignment.rejected_bid_ids:
                    sibling = self._store.bids.get(bid_id)
                    if sibling.status == BidStatus.REJECTED and sibling.rejection_reason == NOT_SELECTED:
                        self._reinstate(sibling, now)

                grievance.assignment_id = None
                grievance.assigned_worker_id = None
                self._grievances.transition(grievance, GrievanceStatus.ACTIVE, actor_id, now)

        self._record(EventKind.ASSIGNMENT_CANCELLED, actor_id, {
            "assignment_id": assignment_id,
            "grievance_id": assignment.grievance_id,
            "reason": assignment.cancellation_reason,
            "reinstated_bid_ids": [assignment.bid_id] + list(assignment.rejected_bid_ids),
        }, now)
        self._record(EventKind.ESCROW_REFUNDED, actor_id, {
            "assignment_id": assignment_id,
            "escrow_id": assignment.escrow_id,
            "amount": assignment.escrow_amount,
        }, now)
        log.info("assignment.unassigned", assignment_id=assignment_id, actor_id=actor_id)
        return assignment

    def _reinstate(self, bid: Bid, now: datetime) -> None:
        bid.status = BidStatus.PENDING
        bid.assignment_reason = None
        bid.auto_assigned = False
        bid.rejection_reason = None
        bid.updated_utc = now
        self._store.bids.put(bid)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(
        self,
        assignment_id: str,
        actor_id: str,
        reason: str,
        evidence_refs: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Either party disputes completed or verified work."""
        now = now or datetime.now(timezone.utc)
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        assignment = self.get(assignment_id)
        with self._locks.hold("grievance", assignment.grievance_id):
            with self._locks.hold("assignment", assignment_id):
                assignment = self.get(assignment_id)
                grievance = self._store.grievances.get(assignment.grievance_id)
                if actor_id not in (grievance.citizen_id, assignment.worker_id):
                    raise AuthorizationError(
                        f"{actor_id} is not a party to assignment {assignment_id}"
                    )
                if assignment.dispute is not None:
                    raise ConflictError(f"Assignment {assignment_id} is already disputed")
                AssignmentStateMachine.apply_transition(assignment, AssignmentStatus.DISPUTED)
                assignment.dispute = DisputeRecord(
                    raised_by=actor_id,
                    reason=reason.strip(),
                    raised_utc=now,
                    evidence_refs=list(evidence_refs or []),
                )
                self._escrow.dispute(assignment.escrow_id, now)
                self._store.assignments.put(assignment)
                self._grievances.transition(grievance, GrievanceStatus.DISPUTED, actor_id, now)
        self._record(EventKind.DISPUTE_RAISED, actor_id, {
            "assignment_id": assignment_id,
            "grievance_id": assignment.grievance_id,
            "evidence_count": len(assignment.dispute.evidence_refs),
        }, now)
        return assignment

    def resolve_dispute(
        self,
        assignment_id: str,
        resolver_id: str,
        resolution: str,
        split: CompensationSplit,
        now: Optional[datetime] = None,
    ) -> Assignment:
        """Record the settlement split. Bookkeeping only; operators move funds."""
        now = now or datetime.now(timezone.utc)
        with self._locks.hold("assignment", assignment_id):
            assignment = self.get(assignment_id)
            dispute = assignment.dispute
            if dispute is None:
                raise ValidationError(f"Assignment {assignment_id} has no dispute")
            if dispute.resolved:
                raise ConflictError(f"Dispute on {assignment_id} is already resolved")
            self._escrow.resolve(assignment.escrow_id, split, now)
            dispute.resolved = True
            dispute.resolved_by = resolver_id
            dispute.resolution = resolution
            dispute.resolved_utc = now
            dispute.split = split
            self._store.assignments.put(assignment)
        self._record(EventKind.DISPUTE_RESOLVED, resolver_id, {
            "assignment_id": assignment_id,
            "to_citizen": split.to_citizen,
            "to_worker": split.to_worker,
            "to_delegate_pool": split.to_delegate_pool,
        }, now)
        return assignment

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def for_worker(
        self,
        worker_id: str,
        status: Optional[AssignmentStatus] = None,
    ) -> list[Assignment]:
        result = self._store.assignments.where(
            lambda a: a.worker_id == worker_id and (status is None or a.status == status)
        )
        result.sort(key=lambda a: a.assigned_utc, reverse=True)
        return result

    def pending_verifications(self) -> list[Assignment]:
        """Completed work still waiting for a releasing confirmation."""
        result = self._store.assignments.where(
            lambda a: a.status == AssignmentStatus.COMPLETED and not a.funds_released
        )
        result.sort(key=lambda a: a.completed_utc or a.assigned_utc)
        return result

    def overdue(self, now: Optional[datetime] = None) -> list[Assignment]:
        now = now or datetime.now(timezone.utc)
        return self._store.assignments.where(
            lambda a: a.status in UNASSIGNABLE_STATUSES and a.is_overdue(now)
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _check_worker(assignment: Assignment, worker_id: str) -> None:
        if assignment.worker_id != worker_id:
            raise AuthorizationError(
                f"{worker_id} is not the worker on assignment {assignment.assignment_id}"
            )

    @staticmethod
    def _check_confirmable(assignment: Assignment) -> None:
        if assignment.status not in CONFIRMABLE_STATUSES:
            raise ValidationError(
                f"Assignment {assignment.assignment_id} cannot be confirmed in status "
                f"{assignment.status.value}"
            )

    def _mirror(
        self,
        operation: LedgerOperation,
        references: dict[str, str],
        payload: dict[str, Any],
        amount: Any = None,
    ) -> None:
        if self._sink is not None:
            self._sink.enqueue(operation, references, payload, amount=amount)

    def _record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> None:
        if self._event_log is not None:
            self._event_log.record(kind, actor_id, payload, now)
