"""Tests for the quorum voting engine, delegate roster and ballot reaper."""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from civicrepair.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from civicrepair.governance.reaper import BallotReaper
from civicrepair.governance.roster import DelegateRoster
from civicrepair.models.ballot import BallotStatus
from civicrepair.models.grievance import GrievanceStatus, Priority
from civicrepair.models.market import AssignmentReason, BidStatus
from civicrepair.persistence.event_log import EventKind
from civicrepair.settlement.assignments import NOT_SELECTED


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _three_bids(engine, gid: str) -> list:
    terms = [("0xw1", "300", 90, 10), ("0xw2", "400", 50, 20), ("0xw3", "500", 70, 5)]
    return [
        engine.market.submit_bid(
            gid, worker, Decimal(amount), "Patch", eta,
            worker_reputation=rep, now=_now() + timedelta(minutes=i),
        )
        for i, (worker, amount, rep, eta) in enumerate(terms)
    ]


def _delegates(engine, n: int = 3) -> list[str]:
    ids = [f"0xd{i}" for i in range(1, n + 1)]
    for d in ids:
        engine.roster.register(d)
    return ids


class TestRoster:
    def test_register_canonicalises(self) -> None:
        roster = DelegateRoster()
        entry = roster.register("  0xABC ", Decimal("2"))
        assert entry.delegate_id == "0xabc"
        assert roster.voting_power("0xAbC") == Decimal("2")

    def test_non_positive_power_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DelegateRoster().register("0xd1", Decimal("0"))

    def test_inactive_delegate_cannot_vote(self) -> None:
        roster = DelegateRoster()
        roster.register("0xd1")
        roster.deactivate("0xd1")
        assert roster.active_count() == 0
        with pytest.raises(AuthorizationError):
            roster.voting_power("0xd1")

    def test_deactivate_unknown(self) -> None:
        with pytest.raises(NotFoundError):
            DelegateRoster().deactivate("0xnobody")


class TestBallotCreation:
    def test_ballot_opened_by_escalation(self, engine, classified) -> None:
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        assert ballot.status == BallotStatus.ACTIVE
        assert ballot.ends_utc - ballot.starts_utc == timedelta(hours=72)
        assert [o.index for o in ballot.options] == [0, 1, 2]
        assert ballot.options[0].label.startswith("Bid 1: 300 by 0xw1")

    def test_second_open_ballot_conflicts(self, engine, classified) -> None:
        gid = classified()
        _three_bids(engine, gid)
        with pytest.raises(ConflictError):
            engine.voting.create_ballot(gid, engine.market.ranked_bids(gid), "0xd1", now=_now())

    def test_empty_candidates_rejected(self, engine, classified) -> None:
        gid = classified()
        with pytest.raises(ValidationError, match="at least one"):
            engine.voting.create_ballot(gid, [], "0xd1")

    def test_future_start_is_draft_until_window(self, engine, classified) -> None:
        gid = classified()
        engine.market.submit_bid(gid, "0xw1", Decimal("300"), "Patch", 10, now=_now())
        ballot = engine.voting.create_ballot(
            gid, engine.market.ranked_bids(gid), "0xd1",
            starts_utc=_now() + timedelta(hours=1), now=_now(),
        )
        assert ballot.status == BallotStatus.DRAFT
        opened = engine.voting.get_ballot(ballot.ballot_id, _now() + timedelta(hours=2))
        assert opened.status == BallotStatus.ACTIVE


class TestVoting:
    def test_quorum_executes_winner(self, engine, classified) -> None:
        delegates = _delegates(engine)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        winner = ballot.options[0]

        first = engine.voting.cast_vote(ballot.ballot_id, delegates[0], winner.option_id, now=_now())
        assert first.status == BallotStatus.ACTIVE
        assert first.results.required_votes == 2
        done = engine.voting.cast_vote(ballot.ballot_id, delegates[1], winner.option_id, now=_now())

        assert done.status == BallotStatus.COMPLETED
        assert done.execution.executed is True
        assignment = engine.assignments.get(done.execution.assignment_id)
        assert assignment.reason == AssignmentReason.DAO_VOTE
        assert assignment.bid_id == winner.bid_id
        assert engine.lifecycle.get(gid).status == GrievanceStatus.ASSIGNED
        for option in ballot.options[1:]:
            loser = engine.market.get(option.bid_id)
            assert loser.status == BidStatus.REJECTED
            assert loser.rejection_reason == NOT_SELECTED

    def test_non_delegate_cannot_vote(self, engine, classified) -> None:
        _delegates(engine)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        with pytest.raises(AuthorizationError):
            engine.voting.cast_vote(ballot.ballot_id, "0xstranger", ballot.options[0].option_id)

    def test_double_vote_conflicts_when_change_disabled(self, engine, classified) -> None:
        delegates = _delegates(engine, 5)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        engine.voting.cast_vote(ballot.ballot_id, delegates[0], ballot.options[0].option_id, now=_now())
        with pytest.raises(ConflictError):
            engine.voting.cast_vote(
                ballot.ballot_id, delegates[0], ballot.options[1].option_id, now=_now(),
            )

    def test_vote_change_replaces_previous(self, engine, classified) -> None:
        delegates = _delegates(engine, 5)
        gid = classified()
        engine.market.submit_bid(gid, "0xw1", Decimal("300"), "Patch", 10, now=_now())
        engine.market.submit_bid(gid, "0xw2", Decimal("350"), "Patch", 10, now=_now())
        ballot = engine.voting.create_ballot(
            gid, engine.market.ranked_bids(gid), delegates[0],
            allow_vote_change=True, now=_now(),
        )
        engine.voting.cast_vote(ballot.ballot_id, delegates[0], ballot.options[0].option_id, now=_now())
        changed = engine.voting.cast_vote(
            ballot.ballot_id, delegates[0], ballot.options[1].option_id, now=_now(),
        )
        assert changed.results.total_votes == 1
        assert changed.results.winning_option_id == ballot.options[1].option_id
        assert engine.roster.get(delegates[0]).votes_cast == 1

    def test_unknown_option_rejected(self, engine, classified) -> None:
        delegates = _delegates(engine)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        with pytest.raises(ValidationError, match="Unknown option"):
            engine.voting.cast_vote(ballot.ballot_id, delegates[0], "opt_bogus", now=_now())

    def test_vote_after_window_expires_ballot(self, engine, classified) -> None:
        delegates = _delegates(engine)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        late = _now() + timedelta(hours=73)
        with pytest.raises(ValidationError, match="closed"):
            engine.voting.cast_vote(ballot.ballot_id, delegates[0], ballot.options[0].option_id, now=late)
        assert engine.voting.get_ballot(ballot.ballot_id, late).status == BallotStatus.EXPIRED

    def test_concurrent_votes_execute_once(self, engine, classified) -> None:
        delegates = _delegates(engine, 10)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        option_id = ballot.options[0].option_id
        barrier = threading.Barrier(len(delegates))
        rejected = []

        def vote(delegate: str) -> None:
            barrier.wait()
            try:
                engine.voting.cast_vote(ballot.ballot_id, delegate, option_id, now=_now())
            except ValidationError as exc:
                rejected.append(exc)

        threads = [threading.Thread(target=vote, args=(d,)) for d in delegates]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = engine.voting.get_ballot(ballot.ballot_id, _now())
        assert final.status == BallotStatus.COMPLETED
        assert len(engine.event_log.events(EventKind.BALLOT_EXECUTED)) == 1
        assert len(engine.event_log.events(EventKind.ASSIGNMENT_CREATED)) == 1
        # Votes landing after completion find the ballot closed.
        assert len(final.votes) + len(rejected) == len(delegates)

    def test_cancel_ballot(self, engine, classified) -> None:
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        cancelled = engine.voting.cancel_ballot(ballot.ballot_id, "0xd1", "duplicate", _now())
        assert cancelled.status == BallotStatus.CANCELLED
        with pytest.raises(ValidationError):
            engine.voting.cancel_ballot(ballot.ballot_id, "0xd1", now=_now())
        assert engine.voting.open_ballot_for(gid, _now()) is None


class TestReaper:
    def test_run_once_expires_stale_ballots(self, engine, classified) -> None:
        _delegates(engine)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        clock_time = [_now()]
        reaper = BallotReaper(engine.voting, 60, clock=lambda: clock_time[0])

        assert reaper.run_once() == []
        clock_time[0] = _now() + timedelta(hours=72)
        settled = reaper.run_once()
        assert [b.ballot_id for b in settled] == [ballot.ballot_id]
        assert settled[0].status == BallotStatus.EXPIRED
        assert reaper.run_once() == []

    def test_reaper_completes_ballot_that_reached_quorum(self, engine, classified) -> None:
        delegates = _delegates(engine, 4)
        gid = classified()
        ballot = _three_bids(engine, gid)[-1].ballot
        for d in delegates[:2]:
            engine.voting.cast_vote(ballot.ballot_id, d, ballot.options[1].option_id, now=_now())
        engine.roster.deactivate(delegates[3])
        reaper = BallotReaper(engine.voting, 60, clock=lambda: _now() + timedelta(hours=80))
        settled = reaper.run_once()
        assert settled[0].status == BallotStatus.COMPLETED
        assert settled[0].execution.executed is True

    def test_start_and_stop(self, engine) -> None:
        reaper = BallotReaper(engine.voting, 0.01)
        reaper.start()
        assert reaper.is_running
        reaper.stop()
        assert not reaper.is_running

    def test_interval_must_be_positive(self, engine) -> None:
        with pytest.raises(ValueError):
            BallotReaper(engine.voting, 0)
