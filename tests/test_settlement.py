"""Tests for assignment, escrow and release — exactly-once settlement."""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from civicrepair.errors import (
    AuthorizationError,
    ConflictError,
    ValidationError,
)
from civicrepair.models.assignment import AssignmentStatus, CompensationSplit
from civicrepair.models.escrow import EscrowState
from civicrepair.models.grievance import GrievanceStatus, Priority
from civicrepair.models.ledger import LedgerOperation
from civicrepair.models.market import AssignmentReason, BidStatus
from civicrepair.persistence.event_log import EventKind
from civicrepair.persistence.store import DocumentStore
from civicrepair.settlement.escrow import EscrowManager


CITIZEN = "0xcitizen"
WORKER = "0xw1"


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _assigned(engine, classified) -> str:
    """Urgent grievance with a single auto-assigned bid of 500."""
    gid = classified(Priority.URGENT)
    outcome = engine.market.submit_bid(gid, WORKER, Decimal("500"), "Patch", 24, now=_now())
    return outcome.assignment.assignment_id


def _completed(engine, classified) -> str:
    aid = _assigned(engine, classified)
    engine.assignments.start(aid, WORKER, _now())
    engine.assignments.submit_completion(
        aid, WORKER, "Filled and sealed", ["before.jpg"], ["after.jpg"],
        now=_now() + timedelta(hours=6),
    )
    return aid


class TestEscrowManager:
    def test_lock_and_release_once(self) -> None:
        manager = EscrowManager(DocumentStore())
        record = manager.lock("asg_1", "grv_1", WORKER, Decimal("500"), _now())
        assert record.state == EscrowState.LOCKED
        assert manager.release(record.escrow_id, CITIZEN, _now()) is True
        assert manager.release(record.escrow_id, "0xdelegate", _now()) is False
        assert manager.get(record.escrow_id).released_by == CITIZEN

    def test_refunded_cannot_be_released(self) -> None:
        manager = EscrowManager(DocumentStore())
        record = manager.lock("asg_1", "grv_1", WORKER, Decimal("500"))
        manager.refund(record.escrow_id)
        with pytest.raises(ValidationError, match="refunded"):
            manager.release(record.escrow_id, CITIZEN)

    def test_non_positive_amount_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EscrowManager(DocumentStore()).lock("asg_1", "grv_1", WORKER, Decimal("0"))

    def test_resolve_split_must_balance(self) -> None:
        manager = EscrowManager(DocumentStore())
        record = manager.lock("asg_1", "grv_1", WORKER, Decimal("500"))
        manager.dispute(record.escrow_id)
        with pytest.raises(ValidationError, match="does not equal"):
            manager.resolve(record.escrow_id, CompensationSplit(
                Decimal("100"), Decimal("100"), Decimal("100"),
            ))
        with pytest.raises(ValidationError, match="negative"):
            manager.resolve(record.escrow_id, CompensationSplit(
                Decimal("-100"), Decimal("600"), Decimal("0"),
            ))
        resolved = manager.resolve(record.escrow_id, CompensationSplit(
            Decimal("100"), Decimal("350"), Decimal("50"),
        ))
        assert resolved.state == EscrowState.RESOLVED


class TestExecuteSelection:
    def test_one_active_assignment_per_grievance(self, engine, classified) -> None:
        gid = classified()
        first = engine.market.submit_bid(gid, "0xw1", Decimal("300"), "Patch", 10, now=_now()).bid
        second = engine.market.submit_bid(gid, "0xw2", Decimal("350"), "Patch", 10, now=_now()).bid
        engine.assignments.execute_selection(
            gid, first.bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
        )
        with pytest.raises((ConflictError, ValidationError)):
            engine.assignments.execute_selection(
                gid, second.bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
            )

    def test_escrow_locked_for_bid_amount(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        assignment = engine.assignments.get(aid)
        escrow = engine.escrow.get(assignment.escrow_id)
        assert escrow.amount == Decimal("500")
        assert escrow.state == EscrowState.LOCKED
        assert assignment.estimated_completion_utc == _now() + timedelta(hours=24)


class TestWorkTracking:
    def test_start_moves_grievance_in_progress(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        with pytest.raises(AuthorizationError):
            engine.assignments.start(aid, "0xintruder", _now())
        assignment = engine.assignments.start(aid, WORKER, _now())
        assert assignment.status == AssignmentStatus.STARTED
        assert engine.lifecycle.get(assignment.grievance_id).status == GrievanceStatus.IN_PROGRESS

    def test_progress_updates(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        with pytest.raises(ValidationError):
            engine.assignments.add_progress(aid, WORKER, "Too early", now=_now())
        engine.assignments.start(aid, WORKER, _now())
        engine.assignments.add_progress(aid, WORKER, "Materials on site", now=_now())
        updated = engine.assignments.add_progress(aid, WORKER, "Half done", "p.jpg", _now())
        assert updated.status == AssignmentStatus.IN_PROGRESS
        assert len(updated.progress_updates) == 2

    def test_completion_fingerprint_is_mirrored(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        assignment = engine.assignments.get(aid)
        assert assignment.status == AssignmentStatus.COMPLETED
        assert assignment.completion.duration_hours == 6.0
        assert engine.lifecycle.get(assignment.grievance_id).status == GrievanceStatus.COMPLETED
        mirrored = [i for i in engine.sink.intents if i.operation == LedgerOperation.COMMIT_COMPLETION]
        assert mirrored[0].payload == {"fingerprint": assignment.completion.fingerprint}
        assert "Filled and sealed" not in str(mirrored[0].payload)

    def test_completion_requires_after_media(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        engine.assignments.start(aid, WORKER, _now())
        with pytest.raises(ValidationError, match="after-completion"):
            engine.assignments.submit_completion(aid, WORKER, "Done", ["b.jpg"], [])


class TestConfirmation:
    def test_citizen_approval_releases(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        assignment, released = engine.assignments.confirm_citizen(
            aid, CITIZEN, True, "Great", 5, _now(),
        )
        assert released is True
        assert assignment.status == AssignmentStatus.VERIFIED
        assert engine.escrow.get(assignment.escrow_id).state == EscrowState.RELEASED
        assert engine.lifecycle.get(assignment.grievance_id).status == GrievanceStatus.VERIFIED

    def test_second_confirmation_does_not_release_again(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        engine.assignments.confirm_citizen(aid, CITIZEN, True, now=_now())
        _, released = engine.assignments.confirm_delegate(aid, "0xd1", True, now=_now())
        assert released is False
        assert len(engine.event_log.events(EventKind.FUNDS_RELEASED)) == 1
        releases = [i for i in engine.sink.intents if i.operation == LedgerOperation.CONFIRM_RELEASE]
        assert [r.payload for r in releases] == [
            {"confirmer": "citizen", "released_locally": True},
            {"confirmer": "delegate", "released_locally": False},
        ]

    def test_only_filing_citizen_confirms(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        with pytest.raises(AuthorizationError):
            engine.assignments.confirm_citizen(aid, "0xneighbour", True)

    def test_rating_bounds(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        with pytest.raises(ValidationError, match="Rating"):
            engine.assignments.confirm_citizen(aid, CITIZEN, True, rating=6)

    def test_duplicate_citizen_confirmation_conflicts(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        engine.assignments.confirm_citizen(aid, CITIZEN, False, "Not finished", now=_now())
        with pytest.raises(ConflictError):
            engine.assignments.confirm_citizen(aid, CITIZEN, True, now=_now())

    def test_cannot_confirm_before_completion(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        with pytest.raises(ValidationError, match="cannot be confirmed"):
            engine.assignments.confirm_delegate(aid, "0xd1", True)

    def test_concurrent_confirmations_release_exactly_once(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        barrier = threading.Barrier(2)
        results = []

        def citizen() -> None:
            barrier.wait()
            results.append(engine.assignments.confirm_citizen(aid, CITIZEN, True, now=_now())[1])

        def delegate() -> None:
            barrier.wait()
            results.append(engine.assignments.confirm_delegate(aid, "0xd1", True, now=_now())[1])

        threads = [threading.Thread(target=citizen), threading.Thread(target=delegate)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False, True]
        assert len(engine.event_log.events(EventKind.FUNDS_RELEASED)) == 1


class TestUnassign:
    def test_unassign_after_start_restores_everything(self, engine, classified) -> None:
        gid = classified()
        bids = [
            engine.market.submit_bid(gid, f"0xw{i}", Decimal(str(300 + i)), "Patch", 10, now=_now()).bid
            for i in range(1, 3)
        ]
        engine.market.withdraw_bid(bids[1].bid_id, "0xw2", _now())
        bids.append(
            engine.market.submit_bid(gid, "0xw3", Decimal("303"), "Patch", 10, now=_now()).bid
        )
        assignment = engine.assignments.execute_selection(
            gid, bids[0].bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
        )
        assert assignment.rejected_bid_ids == [bids[2].bid_id]
        engine.assignments.start(assignment.assignment_id, "0xw1", _now())

        with pytest.raises(ValidationError, match="reason"):
            engine.assignments.unassign(assignment.assignment_id, "0xd1", "")
        cancelled = engine.assignments.unassign(
            assignment.assignment_id, "0xd1", "worker unreachable", _now(),
        )

        assert cancelled.status == AssignmentStatus.CANCELLED
        assert engine.escrow.get(cancelled.escrow_id).state == EscrowState.REFUNDED
        grievance = engine.lifecycle.get(gid)
        assert grievance.status == GrievanceStatus.ACTIVE
        assert grievance.assignment_id is None
        assert engine.market.get(bids[0].bid_id).status == BidStatus.PENDING
        assert engine.market.get(bids[1].bid_id).status == BidStatus.WITHDRAWN
        assert engine.market.get(bids[2].bid_id).status == BidStatus.PENDING
        assert engine.store.active_assignment_for(gid) is None

    def test_reassignment_after_unassign(self, engine, classified) -> None:
        aid = _assigned(engine, classified)
        gid = engine.assignments.get(aid).grievance_id
        engine.assignments.unassign(aid, "0xd1", "no show", _now())
        bid_id = engine.assignments.get(aid).bid_id
        again = engine.assignments.execute_selection(
            gid, bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
        )
        assert again.assignment_id != aid
        escrow_ops = [i for i in engine.sink.intents if i.operation == LedgerOperation.ASSIGN_WITH_ESCROW]
        assert len(escrow_ops) == 2

    def test_assign_unassign_assign_round_trip(self, engine, classified) -> None:
        gid = classified()
        bids = [
            engine.market.submit_bid(gid, f"0xw{i}", Decimal("300"), "Patch", 10, now=_now()).bid
            for i in (1, 2)
        ]

        def snapshot() -> tuple:
            return (
                engine.lifecycle.get(gid).status,
                tuple(engine.market.get(b.bid_id).status for b in bids),
            )

        first = engine.assignments.execute_selection(
            gid, bids[1].bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
        )
        assigned = snapshot()
        engine.assignments.unassign(first.assignment_id, "0xd1", "redo", _now())
        assert snapshot() == (GrievanceStatus.ACTIVE, (BidStatus.PENDING, BidStatus.PENDING))
        engine.assignments.execute_selection(
            gid, bids[1].bid_id, AssignmentReason.DAO_OVERRIDE, "0xd1", _now(),
        )
        assert snapshot() == assigned

    def test_completed_work_cannot_be_unassigned(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        with pytest.raises(ValidationError, match="cannot be unassigned"):
            engine.assignments.unassign(aid, "0xd1", "changed mind")


class TestDisputes:
    def test_dispute_and_resolve(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        with pytest.raises(AuthorizationError):
            engine.assignments.raise_dispute(aid, "0xbystander", "Looks bad")
        disputed = engine.assignments.raise_dispute(
            aid, CITIZEN, "Crack reappeared", ["crack.jpg"], _now(),
        )
        assert disputed.status == AssignmentStatus.DISPUTED
        assert engine.escrow.get(disputed.escrow_id).state == EscrowState.DISPUTED
        assert engine.lifecycle.get(disputed.grievance_id).status == GrievanceStatus.DISPUTED

        split = CompensationSplit(Decimal("200"), Decimal("250"), Decimal("50"))
        resolved = engine.assignments.resolve_dispute(aid, "0xd1", "Partial redo", split, _now())
        assert resolved.dispute.resolved is True
        assert engine.escrow.get(resolved.escrow_id).state == EscrowState.RESOLVED
        with pytest.raises(ConflictError):
            engine.assignments.resolve_dispute(aid, "0xd1", "Again", split, _now())

    def test_dispute_after_release_keeps_funds_released(self, engine, classified) -> None:
        aid = _completed(engine, classified)
        engine.assignments.confirm_delegate(aid, "0xd1", True, now=_now())
        disputed = engine.assignments.raise_dispute(aid, WORKER, "Underpaid scope", now=_now())
        assert disputed.status == AssignmentStatus.DISPUTED
        assert engine.escrow.get(disputed.escrow_id).state == EscrowState.RELEASED
