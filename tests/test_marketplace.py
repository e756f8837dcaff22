"""Tests for grievance lifecycle and the bid marketplace — escalation wiring."""

import threading
import time
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from civicrepair.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from civicrepair.market.escalation import EscalationDecision
from civicrepair.models.grievance import (
    Category,
    ClassificationResult,
    GrievanceStatus,
    Priority,
)
from civicrepair.models.ledger import LedgerOperation
from civicrepair.models.market import AssignmentReason, BidStatus
from civicrepair.persistence.event_log import EventKind


CITIZEN = "0xcitizen"


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


class TestGrievanceLifecycle:
    def test_submit_applies_defaults_and_fingerprint(self, engine) -> None:
        g = engine.lifecycle.submit(CITIZEN, "Pothole", "Deep pothole", "Main St", now=_now())
        assert g.status == GrievanceStatus.PENDING
        assert g.category == Category.OTHER
        assert g.priority == Priority.MEDIUM
        assert len(g.fingerprint) == 64
        assert engine.sink.intents[0].operation == LedgerOperation.COMMIT_GRIEVANCE
        assert engine.sink.intents[0].payload == {"fingerprint": g.fingerprint}

    def test_submit_requires_text(self, engine) -> None:
        with pytest.raises(ValidationError, match="title is required"):
            engine.lifecycle.submit(CITIZEN, "  ", "Deep pothole", "Main St")

    def test_title_limit(self, engine) -> None:
        with pytest.raises(ValidationError, match="title exceeds"):
            engine.lifecycle.submit(CITIZEN, "x" * 201, "Deep pothole", "Main St")

    def test_classification_overwrites_and_is_idempotent(self, engine, classified) -> None:
        gid = classified(Priority.HIGH)
        g = engine.lifecycle.get(gid)
        assert g.status == GrievanceStatus.CLASSIFIED
        assert (g.category, g.priority, g.tags) == (Category.ROAD, Priority.HIGH, ["asphalt"])
        again = engine.lifecycle.apply_classification(
            gid, ClassificationResult(category=Category.WATER, priority=Priority.LOW),
        )
        assert again.status == GrievanceStatus.CLASSIFIED
        assert again.category == Category.WATER

    def test_classifier_failure_keeps_defaults(self, engine) -> None:
        g = engine.lifecycle.submit(
            CITIZEN, "Pothole", "Deep", "Main St", priority=Priority.URGENT,
        )
        result = engine.lifecycle.apply_classification(g.grievance_id, None)
        assert result.status == GrievanceStatus.CLASSIFIED
        assert result.priority == Priority.URGENT
        assert result.classification is None

    def test_update_by_owner_only(self, engine) -> None:
        g = engine.lifecycle.submit(CITIZEN, "Pothole", "Deep", "Main St")
        with pytest.raises(AuthorizationError):
            engine.lifecycle.update(g.grievance_id, "0xsomeoneelse", title="Mine now")
        updated = engine.lifecycle.update(g.grievance_id, CITIZEN, title="Big pothole")
        assert updated.title == "Big pothole"

    def test_delete_only_while_pending(self, engine, classified) -> None:
        gid = classified()
        with pytest.raises(ValidationError, match="cannot be deleted"):
            engine.lifecycle.delete(gid, CITIZEN)
        g = engine.lifecycle.submit(CITIZEN, "Lamp", "Broken lamp", "Elm St")
        engine.lifecycle.delete(g.grievance_id, CITIZEN)
        with pytest.raises(NotFoundError):
            engine.lifecycle.get(g.grievance_id)

    def test_marketplace_orders_by_priority_then_age(self, engine, classified) -> None:
        low = classified(Priority.LOW)
        urgent = classified(Priority.URGENT)
        engine.lifecycle.submit(CITIZEN, "Unclassified", "Not yet", "Oak St")
        listing = [g.grievance_id for g in engine.lifecycle.marketplace()]
        assert listing == [urgent, low]


class TestBidSubmission:
    def test_pending_grievance_cannot_receive_bids(self, engine) -> None:
        g = engine.lifecycle.submit(CITIZEN, "Pothole", "Deep", "Main St")
        with pytest.raises(ValidationError, match="cannot receive bids"):
            engine.market.submit_bid(g.grievance_id, "0xw1", Decimal("500"), "Patch", 24)

    def test_unknown_grievance(self, engine) -> None:
        with pytest.raises(NotFoundError):
            engine.market.submit_bid("grv_missing", "0xw1", Decimal("500"), "Patch", 24)

    def test_first_bid_activates_grievance(self, engine, classified) -> None:
        gid = classified()
        outcome = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24, now=_now())
        assert outcome.decision == EscalationDecision.WAIT
        g = engine.lifecycle.get(gid)
        assert g.status == GrievanceStatus.ACTIVE
        assert g.bid_count == 1
        assert LedgerOperation.COMMIT_BID in engine.sink.operations()

    def test_citizen_cannot_bid_on_own_grievance(self, engine, classified) -> None:
        gid = classified()
        with pytest.raises(ValidationError, match="own grievance"):
            engine.market.submit_bid(gid, CITIZEN, Decimal("500"), "Patch", 24)

    def test_duplicate_pending_bid_conflicts(self, engine, classified) -> None:
        gid = classified()
        engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24)
        with pytest.raises(ConflictError):
            engine.market.submit_bid(gid, "0xw1", Decimal("450"), "Cheaper", 24)

    @pytest.mark.parametrize("amount,eta,proposal,message", [
        (Decimal("0"), 24, "Patch", "greater than 0"),
        (Decimal("10001"), 24, "Patch", "must not exceed"),
        (Decimal("500"), 0, "Patch", "eta_hours must be between"),
        (Decimal("500"), 169, "Patch", "eta_hours must be between"),
        (Decimal("500"), 24, "   ", "proposal is required"),
        (Decimal("500"), 24, "x" * 1001, "proposal exceeds"),
    ])
    def test_terms_out_of_bounds(
        self, engine, classified, amount: Decimal, eta: int, proposal: str, message: str,
    ) -> None:
        gid = classified()
        with pytest.raises(ValidationError, match=message):
            engine.market.submit_bid(gid, "0xw1", amount, proposal, eta)

    def test_withdraw_decrements_counter(self, engine, classified) -> None:
        gid = classified()
        bid = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24).bid
        with pytest.raises(AuthorizationError):
            engine.market.withdraw_bid(bid.bid_id, "0xw2")
        engine.market.withdraw_bid(bid.bid_id, "0xw1")
        assert engine.market.get(bid.bid_id).status == BidStatus.WITHDRAWN
        assert engine.lifecycle.get(gid).bid_count == 0
        with pytest.raises(ValidationError):
            engine.market.withdraw_bid(bid.bid_id, "0xw1")

    def test_update_pending_bid(self, engine, classified) -> None:
        gid = classified()
        bid = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24).bid
        updated = engine.market.update_bid(bid.bid_id, "0xw1", amount=Decimal("420"), eta_hours=12)
        assert (updated.amount, updated.eta_hours) == (Decimal("420"), 12)

    def test_reject_requires_reason(self, engine, classified) -> None:
        gid = classified()
        bid = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24).bid
        with pytest.raises(ValidationError, match="reason"):
            engine.market.reject_bid(bid.bid_id, "0xdelegate", " ")
        rejected = engine.market.reject_bid(bid.bid_id, "0xdelegate", "unlicensed")
        assert rejected.rejection_reason == "unlicensed"


class TestEscalationWiring:
    def test_single_urgent_bid_auto_assigns(self, engine, classified) -> None:
        gid = classified(Priority.URGENT)
        outcome = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24, now=_now())
        assert outcome.decision == EscalationDecision.AUTO_ASSIGN
        assignment = outcome.assignment
        assert assignment.reason == AssignmentReason.SINGLE_BID
        assert assignment.escrow_amount == Decimal("500")
        bid = engine.market.get(outcome.bid.bid_id)
        assert bid.status == BidStatus.ACCEPTED
        assert bid.auto_assigned is True
        assert engine.lifecycle.get(gid).status == GrievanceStatus.ASSIGNED
        assert engine.sink.operations()[-1] == LedgerOperation.ASSIGN_WITH_ESCROW

    def test_medium_opens_ballot_on_third_bid(self, engine, classified) -> None:
        gid = classified()
        terms = [("0xw1", "300", 90, 10), ("0xw2", "400", 50, 20), ("0xw3", "500", 70, 5)]
        outcomes = [
            engine.market.submit_bid(
                gid, worker, Decimal(amount), "Patch", eta,
                worker_reputation=rep, now=_now() + timedelta(minutes=i),
            )
            for i, (worker, amount, rep, eta) in enumerate(terms)
        ]
        assert [o.decision for o in outcomes] == [
            EscalationDecision.WAIT, EscalationDecision.WAIT, EscalationDecision.OPEN_BALLOT,
        ]
        ballot = outcomes[-1].ballot
        assert [o.metadata["worker_id"] for o in ballot.options] == ["0xw1", "0xw3", "0xw2"]

    def test_fourth_bid_does_not_open_second_ballot(self, engine, classified) -> None:
        gid = classified(Priority.HIGH)
        first = engine.market.submit_bid(gid, "0xw1", Decimal("300"), "Patch", 10, now=_now())
        second = engine.market.submit_bid(gid, "0xw2", Decimal("350"), "Patch", 10, now=_now())
        assert first.ballot is not None
        assert second.decision == EscalationDecision.OPEN_BALLOT
        assert second.ballot is None
        assert len(engine.voting.ballots_for(gid)) == 1

    def test_concurrent_urgent_bids_assign_at_most_once(self, engine, classified) -> None:
        gid = classified(Priority.URGENT)
        barrier = threading.Barrier(8)
        outcomes = []
        errors = []

        def bid(i: int) -> None:
            barrier.wait()
            try:
                outcomes.append(engine.market.submit_bid(
                    gid, f"0xw{i}", Decimal("500"), "Patch", 24, now=_now(),
                ))
            except (ConflictError, ValidationError) as exc:
                errors.append(exc)

        threads = [threading.Thread(target=bid, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assigned = [o for o in outcomes if o.assignment is not None]
        assert len(assigned) == 1
        assert len(engine.store.assignments) == 1
        assert engine.event_log.events(EventKind.ASSIGNMENT_CREATED)[0].payload["grievance_id"] == gid

    def test_concurrent_ballot_creation_opens_one(self, engine, classified, monkeypatch) -> None:
        gid = classified()
        for i in (1, 2):
            engine.market.submit_bid(gid, f"0xw{i}", Decimal("300"), "Patch", 10, now=_now())
        real_insert = engine.store.ballots.insert

        def slow_insert(ballot):
            time.sleep(0.1)
            return real_insert(ballot)

        monkeypatch.setattr(engine.store.ballots, "insert", slow_insert)
        barrier = threading.Barrier(2)
        created = []
        errors = []

        def open_ballot(delegate: str) -> None:
            barrier.wait()
            try:
                created.append(engine.voting.create_ballot(
                    gid, engine.market.ranked_bids(gid), delegate, now=_now(),
                ))
            except ConflictError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=open_ballot, args=(d,)) for d in ("0xd1", "0xd2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len(errors) == 1
        assert len(engine.voting.ballots_for(gid)) == 1

    def test_ballot_conflict_keeps_committed_bid(self, engine, classified, monkeypatch) -> None:
        gid = classified()
        for i in (1, 2):
            engine.market.submit_bid(gid, f"0xw{i}", Decimal("300"), "Patch", 10, now=_now())

        def conflict(*args, **kwargs):
            raise ConflictError(f"Grievance {gid} already has an open ballot: ballot_x")

        monkeypatch.setattr(engine.voting, "create_ballot", conflict)
        outcome = engine.market.submit_bid(gid, "0xw3", Decimal("300"), "Patch", 10, now=_now())

        assert outcome.decision == EscalationDecision.OPEN_BALLOT
        assert outcome.ballot is None
        assert engine.market.get(outcome.bid.bid_id).status == BidStatus.PENDING
        assert engine.lifecycle.get(gid).bid_count == 3

    def test_auto_assign_failure_keeps_committed_bid(self, engine, classified, monkeypatch) -> None:
        gid = classified(Priority.URGENT)

        def refuse(*args, **kwargs):
            raise ValidationError("escrow unavailable")

        monkeypatch.setattr(engine.assignments, "execute_selection", refuse)
        outcome = engine.market.submit_bid(gid, "0xw1", Decimal("500"), "Patch", 24, now=_now())

        assert outcome.decision == EscalationDecision.AUTO_ASSIGN
        assert outcome.assignment is None
        assert engine.market.get(outcome.bid.bid_id).status == BidStatus.PENDING
