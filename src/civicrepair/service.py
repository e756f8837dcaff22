"""Service layer — the single entry point the API and CLI talk to.

Wires the engine together and exposes every operation as a call that
returns a ServiceResult. Core components raise typed errors; this layer
turns them into ``ServiceResult(success=False, error_kind=...)`` and
performs the role checks on the acting Principal.

Ledger mirroring never surfaces here as a failure. Components hand their
committed decisions to the reconciliation layer, and its outcome is only
visible through the intent views (``list_intents``, ``ledger_status``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import structlog

from civicrepair.engine.grievances import GrievanceLifecycle
from civicrepair.errors import AuthorizationError, CivicRepairError, ErrorKind, ValidationError
from civicrepair.governance.reaper import BallotReaper
from civicrepair.governance.roster import DelegateRoster
from civicrepair.governance.voting import QuorumVotingEngine
from civicrepair.ledger.client import LedgerMirrorClient, Web3LedgerClient
from civicrepair.ledger.oracle import PriceOracle
from civicrepair.ledger.settings import LedgerSettings
from civicrepair.locking import LockRegistry
from civicrepair.market.marketplace import BidMarketplace
from civicrepair.models.assignment import Assignment, AssignmentStatus, CompensationSplit
from civicrepair.models.ballot import Ballot, BallotStatus
from civicrepair.models.grievance import (
    Category,
    ClassificationResult,
    Grievance,
    GrievanceStatus,
    Priority,
)
from civicrepair.models.identity import Principal, Role
from civicrepair.models.ledger import IntentStatus, LedgerIntent
from civicrepair.models.market import AssignmentReason, Bid, BidStatus, ScoredBid
from civicrepair.persistence.event_log import EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.policy.resolver import DEFAULT_CONFIG_DIR, PolicyResolver
from civicrepair.reconciliation.dispatcher import ReconciliationLayer
from civicrepair.reconciliation.intent_log import LedgerIntentLog, intent_to_dict
from civicrepair.settlement.assignments import AssignmentManager
from civicrepair.settlement.escrow import EscrowManager

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None


# ----------------------------------------------------------------------
# Views
# ----------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ") if value else None


def grievance_view(g: Grievance) -> dict[str, Any]:
    return {
        "grievance_id": g.grievance_id,
        "citizen_id": g.citizen_id,
        "title": g.title,
        "description": g.description,
        "location": g.location,
        "category": g.category.value,
        "priority": g.priority.value,
        "status": g.status.value,
        "tags": list(g.tags),
        "image_ref": g.image_ref,
        "bid_count": g.bid_count,
        "assignment_id": g.assignment_id,
        "assigned_worker_id": g.assigned_worker_id,
        "fingerprint": g.fingerprint,
        "classified": g.classification is not None,
        "created_utc": _ts(g.created_utc),
        "updated_utc": _ts(g.updated_utc),
    }


def bid_view(b: Bid, scored: Optional[ScoredBid] = None) -> dict[str, Any]:
    view = {
        "bid_id": b.bid_id,
        "grievance_id": b.grievance_id,
        "worker_id": b.worker_id,
        "amount": str(b.amount),
        "proposal": b.proposal,
        "eta_hours": b.eta_hours,
        "skills": list(b.skills),
        "status": b.status.value,
        "worker_reputation": b.worker_reputation,
        "auto_assigned": b.auto_assigned,
        "assignment_reason": b.assignment_reason.value if b.assignment_reason else None,
        "rejection_reason": b.rejection_reason,
        "submitted_utc": _ts(b.submitted_utc),
    }
    if scored is not None:
        view["score"] = scored.score
    return view


def ballot_view(b: Ballot) -> dict[str, Any]:
    r = b.results
    return {
        "ballot_id": b.ballot_id,
        "proposal_id": b.proposal_id,
        "grievance_id": b.grievance_id,
        "title": b.title,
        "status": b.status.value,
        "starts_utc": _ts(b.starts_utc),
        "ends_utc": _ts(b.ends_utc),
        "quorum_percent": b.quorum_percent,
        "allow_vote_change": b.allow_vote_change,
        "options": [
            {"option_id": o.option_id, "index": o.index, "label": o.label, "bid_id": o.bid_id}
            for o in b.options
        ],
        "results": {
            "options": [
                {
                    "option_id": o.option_id,
                    "vote_count": o.vote_count,
                    "voting_power": str(o.voting_power),
                    "percentage": round(o.percentage, 2),
                }
                for o in r.option_results
            ],
            "total_votes": r.total_votes,
            "total_voting_power": str(r.total_voting_power),
            "required_votes": r.required_votes,
            "quorum_reached": r.quorum_reached,
            "winning_option_id": r.winning_option_id,
        },
        "execution": {
            "executed": b.execution.executed,
            "assignment_id": b.execution.assignment_id,
            "error": b.execution.error,
        },
    }


def assignment_view(a: Assignment, now: Optional[datetime] = None) -> dict[str, Any]:
    view = {
        "assignment_id": a.assignment_id,
        "grievance_id": a.grievance_id,
        "bid_id": a.bid_id,
        "worker_id": a.worker_id,
        "status": a.status.value,
        "reason": a.reason.value,
        "escrow_id": a.escrow_id,
        "escrow_amount": str(a.escrow_amount),
        "assigned_utc": _ts(a.assigned_utc),
        "estimated_completion_utc": _ts(a.estimated_completion_utc),
        "started_utc": _ts(a.started_utc),
        "completed_utc": _ts(a.completed_utc),
        "verified_utc": _ts(a.verified_utc),
        "progress_updates": len(a.progress_updates),
        "completion_fingerprint": a.completion.fingerprint if a.completion else None,
        "citizen_approved": (
            a.citizen_confirmation.approved if a.citizen_confirmation else None
        ),
        "delegate_approved": (
            a.delegate_confirmation.approved if a.delegate_confirmation else None
        ),
        "funds_released": a.funds_released,
        "disputed": a.dispute is not None,
        "cancellation_reason": a.cancellation_reason,
    }
    if now is not None:
        view["overdue"] = a.is_overdue(now)
    return view


class CivicRepairService:
    """Unified facade over the coordination engine.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = CivicRepairService(resolver)

        citizen = Principal("0xC1", frozenset({Role.CITIZEN}))
        result = service.submit_grievance(citizen, "Pothole", "Deep pothole", "Main St")
        service.apply_classification(result.data["grievance"]["grievance_id"], None)

        worker = Principal("0xW1", frozenset({Role.WORKER}), reputation=80)
        service.submit_bid(worker, grievance_id, Decimal("500"), "Fill and seal", 24)
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger_client: Optional[LedgerMirrorClient] = None,
        settings: Optional[LedgerSettings] = None,
        event_log: Optional[EventLog] = None,
        intent_log: Optional[LedgerIntentLog] = None,
        roster: Optional[DelegateRoster] = None,
        reconciler: Optional[ReconciliationLayer] = None,
        start_workers: bool = True,
    ) -> None:
        self._resolver = resolver
        self._settings = settings or LedgerSettings()
        self._store = DocumentStore()
        self._locks = LockRegistry()
        self._event_log = event_log or EventLog()
        self._roster = roster or DelegateRoster()

        policy = resolver.reconciliation_policy()
        self._oracle = PriceOracle(
            policy.fallback_fiat_per_token, ledger_client, self._settings.fiat_per_token,
        )
        self._reconciler = reconciler or ReconciliationLayer(
            ledger_client,
            intent_log or LedgerIntentLog(),
            policy,
            fallback=self._settings.fallback,
            oracle=self._oracle,
            start=start_workers,
        )

        self._grievances = GrievanceLifecycle(
            self._store, self._locks, resolver, self._event_log, self._reconciler,
        )
        self._escrow = EscrowManager(self._store)
        self._assignments = AssignmentManager(
            self._store, self._locks, self._grievances, self._escrow,
            self._event_log, self._reconciler,
        )
        self._voting = QuorumVotingEngine(
            self._store, self._locks, self._roster, resolver, self._event_log,
            executor=self._assignments.execute_ballot_winner,
        )
        self._market = BidMarketplace(
            self._store, self._locks, resolver, self._grievances, self._voting,
            self._assignments, self._event_log, self._reconciler,
        )
        self._reaper = BallotReaper(
            self._voting, resolver.ballot_defaults().reaper_interval_seconds,
        )

    @classmethod
    def from_env(
        cls,
        config_dir: Path = DEFAULT_CONFIG_DIR,
        env_file: Optional[Path] = None,
        data_dir: Optional[Path] = None,
    ) -> CivicRepairService:
        """Build a service from the policy directory and ledger environment.

        With ``data_dir`` the event log and intent log persist there as JSONL.
        """
        resolver = PolicyResolver.from_config_dir(config_dir)
        settings = LedgerSettings.from_env(env_file)
        client = Web3LedgerClient(settings) if settings.is_configured else None
        event_log = intent_log = None
        if data_dir is not None:
            data_dir.mkdir(parents=True, exist_ok=True)
            event_log = EventLog(data_dir / "events.jsonl")
            intent_log = LedgerIntentLog(data_dir / "intents.jsonl")
        return cls(
            resolver,
            ledger_client=client,
            settings=settings,
            event_log=event_log,
            intent_log=intent_log,
        )

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------

    @property
    def roster(self) -> DelegateRoster:
        return self._roster

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    @property
    def reconciler(self) -> ReconciliationLayer:
        return self._reconciler

    @property
    def reaper(self) -> BallotReaper:
        return self._reaper

    @property
    def oracle(self) -> PriceOracle:
        return self._oracle

    def start_background(self) -> None:
        self._reconciler.start()
        self._reaper.start()

    def shutdown(self, timeout: float = 10.0) -> None:
        self._reaper.stop(timeout)
        self._reconciler.shutdown(timeout)

    # ------------------------------------------------------------------
    # Grievances
    # ------------------------------------------------------------------

    def submit_grievance(
        self,
        principal: Principal,
        title: str,
        description: str,
        location: str,
        category: Optional[Category] = None,
        priority: Optional[Priority] = None,
        image_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.CITIZEN)
            grievance = self._grievances.submit(
                principal.address, title, description, location,
                category=category, priority=priority, image_ref=image_ref, now=now,
            )
            return {"grievance": grievance_view(grievance)}
        return self._run(action)

    def apply_classification(
        self,
        grievance_id: str,
        result: Optional[ClassificationResult],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Callback for the external classifier. ``None`` keeps citizen defaults."""
        return self._run(lambda: {
            "grievance": grievance_view(
                self._grievances.apply_classification(grievance_id, result, now)
            ),
        })

    def get_grievance(self, grievance_id: str) -> ServiceResult:
        return self._run(lambda: {"grievance": grievance_view(self._grievances.get(grievance_id))})

    def list_grievances(
        self,
        status: Optional[GrievanceStatus] = None,
        citizen_id: Optional[str] = None,
        category: Optional[Category] = None,
        priority: Optional[Priority] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            items = self._grievances.list(
                status=status,
                citizen_id=citizen_id.strip().lower() if citizen_id else None,
                category=category,
                priority=priority,
            )
            window, pagination = self._paginate(items, page, page_size)
            return {"grievances": [grievance_view(g) for g in window], "pagination": pagination}
        return self._run(action)

    def marketplace(
        self,
        category: Optional[Category] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        """Grievances open for bidding, highest priority first."""
        def action() -> dict[str, Any]:
            window, pagination = self._paginate(
                self._grievances.marketplace(category), page, page_size,
            )
            return {"grievances": [grievance_view(g) for g in window], "pagination": pagination}
        return self._run(action)

    def update_grievance(
        self,
        principal: Principal,
        grievance_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        location: Optional[str] = None,
        image_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.CITIZEN)
            grievance = self._grievances.update(
                grievance_id, principal.address,
                title=title, description=description, location=location,
                image_ref=image_ref, now=now,
            )
            return {"grievance": grievance_view(grievance)}
        return self._run(action)

    def delete_grievance(self, principal: Principal, grievance_id: str) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.CITIZEN)
            self._grievances.delete(grievance_id, principal.address)
            return {"grievance_id": grievance_id, "deleted": True}
        return self._run(action)

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def submit_bid(
        self,
        principal: Principal,
        grievance_id: str,
        amount: Decimal,
        proposal: str,
        eta_hours: int,
        skills: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Place a bid. The result reports what escalation did with it."""
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            outcome = self._market.submit_bid(
                grievance_id, principal.address, amount, proposal, eta_hours,
                skills=skills, worker_reputation=principal.reputation, now=now,
            )
            return {
                "bid": bid_view(outcome.bid),
                "decision": outcome.decision.value,
                "assignment_id": (
                    outcome.assignment.assignment_id if outcome.assignment else None
                ),
                "ballot_id": outcome.ballot.ballot_id if outcome.ballot else None,
            }
        return self._run(action)

    def update_bid(
        self,
        principal: Principal,
        bid_id: str,
        amount: Optional[Decimal] = None,
        proposal: Optional[str] = None,
        eta_hours: Optional[int] = None,
        skills: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            bid = self._market.update_bid(
                bid_id, principal.address,
                amount=amount, proposal=proposal, eta_hours=eta_hours, skills=skills, now=now,
            )
            return {"bid": bid_view(bid)}
        return self._run(action)

    def withdraw_bid(
        self, principal: Principal, bid_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            return {"bid": bid_view(self._market.withdraw_bid(bid_id, principal.address, now))}
        return self._run(action)

    def reject_bid(
        self,
        principal: Principal,
        bid_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            return {"bid": bid_view(self._market.reject_bid(bid_id, principal.address, reason, now))}
        return self._run(action)

    def list_bids(
        self,
        grievance_id: str,
        status: Optional[BidStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        """Bids on a grievance. Pending bids carry their decision-aid score."""
        def action() -> dict[str, Any]:
            self._grievances.get(grievance_id)
            scores = {s.bid.bid_id: s for s in self._market.ranked_bids(grievance_id)}
            window, pagination = self._paginate(
                self._market.bids_for(grievance_id, status), page, page_size,
            )
            return {
                "bids": [bid_view(b, scores.get(b.bid_id)) for b in window],
                "pagination": pagination,
            }
        return self._run(action)

    def list_worker_bids(
        self,
        principal: Principal,
        status: Optional[BidStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            window, pagination = self._paginate(
                self._market.bids_by_worker(principal.address, status), page, page_size,
            )
            return {"bids": [bid_view(b) for b in window], "pagination": pagination}
        return self._run(action)

    # ------------------------------------------------------------------
    # Ballots
    # ------------------------------------------------------------------

    def create_ballot(
        self,
        principal: Principal,
        grievance_id: str,
        bid_ids: Optional[list[str]] = None,
        title: Optional[str] = None,
        description: str = "",
        voting_period_hours: Optional[int] = None,
        quorum_percent: Optional[int] = None,
        allow_vote_change: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Delegate-initiated ballot over the grievance's pending bids.

        ``bid_ids`` narrows the candidates; every id must be a pending bid.
        """
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            self._grievances.get(grievance_id)
            ranked = self._market.ranked_bids(grievance_id)
            if bid_ids is not None:
                wanted = set(bid_ids)
                ranked = [s for s in ranked if s.bid.bid_id in wanted]
                missing = wanted - {s.bid.bid_id for s in ranked}
                if missing:
                    raise ValidationError(
                        f"Not pending bids on {grievance_id}: {', '.join(sorted(missing))}"
                    )
            ballot = self._voting.create_ballot(
                grievance_id, ranked, principal.address,
                title=title, description=description,
                voting_period_hours=voting_period_hours,
                quorum_percent=quorum_percent,
                allow_vote_change=allow_vote_change,
                now=now,
            )
            return {"ballot": ballot_view(ballot)}
        return self._run(action)

    def cast_vote(
        self,
        principal: Principal,
        ballot_id: str,
        option_id: str,
        signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            ballot = self._voting.cast_vote(
                ballot_id, principal.address, option_id, signature=signature, now=now,
            )
            return {"ballot": ballot_view(ballot)}
        return self._run(action)

    def get_ballot(self, ballot_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(lambda: {"ballot": ballot_view(self._voting.get_ballot(ballot_id, now))})

    def list_ballots(
        self,
        grievance_id: Optional[str] = None,
        status: Optional[BallotStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Ballots newest first; ``status=BallotStatus.ACTIVE`` lists the open ones."""
        def action() -> dict[str, Any]:
            if grievance_id is not None:
                self._grievances.get(grievance_id)
            window, pagination = self._paginate(
                self._voting.list_ballots(grievance_id, status, now), page, page_size,
            )
            return {"ballots": [ballot_view(b) for b in window], "pagination": pagination}
        return self._run(action)

    def cancel_ballot(
        self,
        principal: Principal,
        ballot_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            ballot = self._voting.cancel_ballot(ballot_id, principal.address, reason, now)
            return {"ballot": ballot_view(ballot)}
        return self._run(action)

    # ------------------------------------------------------------------
    # Assignment (manual override)
    # ------------------------------------------------------------------

    def assign_bid(
        self,
        principal: Principal,
        grievance_id: str,
        bid_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Delegate override: assign directly, cancelling any open ballot."""
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            assignment = self._assignments.execute_selection(
                grievance_id, bid_id, AssignmentReason.DAO_OVERRIDE, principal.address, now,
            )
            superseded = self._voting.open_ballot_for(grievance_id, now)
            if superseded is not None:
                self._voting.cancel_ballot(
                    superseded.ballot_id, principal.address,
                    f"superseded by manual assignment {assignment.assignment_id}", now,
                )
            return {
                "assignment": assignment_view(assignment),
                "cancelled_ballot_id": superseded.ballot_id if superseded else None,
            }
        return self._run(action)

    def unassign(
        self,
        principal: Principal,
        assignment_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            assignment = self._assignments.unassign(assignment_id, principal.address, reason, now)
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    def get_assignment(self, assignment_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run(lambda: {
            "assignment": assignment_view(self._assignments.get(assignment_id), now),
        })

    def list_assignments(
        self,
        principal: Principal,
        status: Optional[AssignmentStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """The acting worker's assignments, newest first."""
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            window, pagination = self._paginate(
                self._assignments.for_worker(principal.address, status), page, page_size,
            )
            return {
                "assignments": [assignment_view(a, now) for a in window],
                "pagination": pagination,
            }
        return self._run(action)

    def pending_verifications(
        self,
        principal: Principal,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            window, pagination = self._paginate(
                self._assignments.pending_verifications(), page, page_size,
            )
            return {
                "assignments": [assignment_view(a) for a in window],
                "pagination": pagination,
            }
        return self._run(action)

    # ------------------------------------------------------------------
    # Work and settlement
    # ------------------------------------------------------------------

    def start_assignment(
        self, principal: Principal, assignment_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            assignment = self._assignments.start(assignment_id, principal.address, now)
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    def add_progress(
        self,
        principal: Principal,
        assignment_id: str,
        message: str,
        media_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            assignment = self._assignments.add_progress(
                assignment_id, principal.address, message, media_ref, now,
            )
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    def submit_completion(
        self,
        principal: Principal,
        assignment_id: str,
        notes: str,
        before_refs: list[str],
        after_refs: list[str],
        duration_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.WORKER)
            assignment = self._assignments.submit_completion(
                assignment_id, principal.address, notes, before_refs, after_refs,
                duration_hours=duration_hours, now=now,
            )
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    def confirm_citizen(
        self,
        principal: Principal,
        assignment_id: str,
        approved: bool,
        feedback: str = "",
        rating: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.CITIZEN)
            assignment, released = self._assignments.confirm_citizen(
                assignment_id, principal.address, approved, feedback, rating, now,
            )
            return {"assignment": assignment_view(assignment), "released": released}
        return self._run(action)

    def confirm_delegate(
        self,
        principal: Principal,
        assignment_id: str,
        approved: bool,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            assignment, released = self._assignments.confirm_delegate(
                assignment_id, principal.address, approved, notes, now,
            )
            return {"assignment": assignment_view(assignment), "released": released}
        return self._run(action)

    def raise_dispute(
        self,
        principal: Principal,
        assignment_id: str,
        reason: str,
        evidence_refs: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            assignment = self._assignments.raise_dispute(
                assignment_id, principal.address, reason, evidence_refs, now,
            )
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    def resolve_dispute(
        self,
        principal: Principal,
        assignment_id: str,
        resolution: str,
        to_citizen: Decimal,
        to_worker: Decimal,
        to_delegate_pool: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.DELEGATE)
            split = CompensationSplit(
                to_citizen=Decimal(str(to_citizen)),
                to_worker=Decimal(str(to_worker)),
                to_delegate_pool=Decimal(str(to_delegate_pool)),
            )
            assignment = self._assignments.resolve_dispute(
                assignment_id, principal.address, resolution, split, now,
            )
            return {"assignment": assignment_view(assignment)}
        return self._run(action)

    # ------------------------------------------------------------------
    # Delegates
    # ------------------------------------------------------------------

    def register_delegate(
        self,
        principal: Principal,
        delegate_id: str,
        voting_power: Decimal = Decimal("1"),
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.ADMIN)
            entry = self._roster.register(delegate_id, Decimal(str(voting_power)), now)
            return {
                "delegate_id": entry.delegate_id,
                "voting_power": str(entry.voting_power),
                "active_delegates": self._roster.active_count(),
            }
        return self._run(action)

    def deactivate_delegate(self, principal: Principal, delegate_id: str) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.ADMIN)
            self._roster.deactivate(delegate_id)
            return {"delegate_id": delegate_id, "active_delegates": self._roster.active_count()}
        return self._run(action)

    # ------------------------------------------------------------------
    # Ledger mirror status
    # ------------------------------------------------------------------

    def list_intents(
        self,
        status: Optional[IntentStatus] = None,
        reference: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ServiceResult:
        """The local audit of what was mirrored, and whether it landed."""
        def action() -> dict[str, Any]:
            items = self._reconciler.intent_log.intents(status=status, reference=reference)
            window, pagination = self._paginate(items, page, page_size)
            return {"intents": [intent_to_dict(i) for i in window], "pagination": pagination}
        return self._run(action)

    def dead_letters(self) -> ServiceResult:
        return self._run(lambda: {
            "intents": [intent_to_dict(i) for i in self._reconciler.intent_log.dead_letters()],
        })

    def replay_dead_letters(self, principal: Principal) -> ServiceResult:
        def action() -> dict[str, Any]:
            self._require(principal, Role.ADMIN)
            replayed: list[LedgerIntent] = self._reconciler.replay_dead_letters()
            return {"replayed": [i.intent_id for i in replayed]}
        return self._run(action)

    def ledger_status(self) -> ServiceResult:
        def action() -> dict[str, Any]:
            rate, is_fallback = self._oracle.fiat_per_token()
            status = self._reconciler.status()
            status["fiat_per_token"] = str(rate)
            status["price_is_fallback"] = is_fallback
            return {"ledger": status}
        return self._run(action)

    def audit_trail(self, key: str, value: str) -> ServiceResult:
        """Events whose payload has ``key == value``, e.g. ("grievance_id", gid)."""
        return self._run(lambda: {
            "events": [
                {
                    "event_id": e.event_id,
                    "event_kind": e.event_kind.value,
                    "timestamp_utc": e.timestamp_utc,
                    "actor_id": e.actor_id,
                    "payload": e.payload,
                    "event_hash": e.event_hash,
                }
                for e in self._event_log.events_for(key, value)
            ],
        })

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _require(principal: Principal, role: Role) -> None:
        if not principal.has_role(role):
            raise AuthorizationError(f"{principal.address} lacks role {role.value}")

    def _paginate(
        self,
        items: list[T],
        page: int,
        page_size: Optional[int],
    ) -> tuple[list[T], dict[str, int]]:
        default_size, max_size = self._resolver.page_size_bounds()
        size = default_size if page_size is None else page_size
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if not 1 <= size <= max_size:
            raise ValidationError(f"page_size must be between 1 and {max_size}, got {size}")
        start = (page - 1) * size
        return items[start:start + size], {"page": page, "page_size": size, "total": len(items)}

    @staticmethod
    def _run(action: Callable[[], dict[str, Any]]) -> ServiceResult:
        try:
            data = action()
        except CivicRepairError as exc:
            log.info("service.rejected", error_kind=exc.kind.value, error=str(exc))
            return ServiceResult(success=False, errors=[str(exc)], error_kind=exc.kind)
        return ServiceResult(success=True, data=data)
