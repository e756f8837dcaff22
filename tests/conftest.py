"""Shared fixtures: a fully wired engine without a reconciliation worker."""

import pytest
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional

from civicrepair.engine.grievances import GrievanceLifecycle
from civicrepair.governance.roster import DelegateRoster
from civicrepair.governance.voting import QuorumVotingEngine
from civicrepair.locking import LockRegistry
from civicrepair.market.marketplace import BidMarketplace
from civicrepair.models.grievance import Category, ClassificationResult, Priority
from civicrepair.models.ledger import LedgerIntent, LedgerOperation
from civicrepair.persistence.event_log import EventLog
from civicrepair.persistence.store import DocumentStore
from civicrepair.policy.resolver import PolicyResolver
from civicrepair.settlement.assignments import AssignmentManager
from civicrepair.settlement.escrow import EscrowManager


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
CITIZEN = "0xcitizen"
NOW = datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


class RecordingSink:
    """Captures mirrored operations instead of dispatching them."""

    def __init__(self) -> None:
        self.intents: list[LedgerIntent] = []

    def enqueue(
        self,
        operation: LedgerOperation,
        references: dict[str, str],
        payload: dict[str, Any],
        amount: Optional[Decimal] = None,
    ) -> LedgerIntent:
        intent = LedgerIntent(
            intent_id=f"intent_{len(self.intents) + 1}",
            operation=operation,
            references=dict(references),
            payload=dict(payload),
            amount=amount,
        )
        self.intents.append(intent)
        return intent

    def operations(self) -> list[LedgerOperation]:
        return [i.operation for i in self.intents]


@dataclass
class Engine:
    store: DocumentStore
    lifecycle: GrievanceLifecycle
    market: BidMarketplace
    voting: QuorumVotingEngine
    assignments: AssignmentManager
    escrow: EscrowManager
    roster: DelegateRoster
    event_log: EventLog
    sink: RecordingSink


@pytest.fixture
def resolver() -> PolicyResolver:
    return PolicyResolver.from_config_dir(CONFIG_DIR)


@pytest.fixture
def engine(resolver: PolicyResolver) -> Engine:
    store = DocumentStore()
    locks = LockRegistry()
    event_log = EventLog()
    sink = RecordingSink()
    roster = DelegateRoster()
    escrow = EscrowManager(store)
    lifecycle = GrievanceLifecycle(store, locks, resolver, event_log, sink)
    assignments = AssignmentManager(store, locks, lifecycle, escrow, event_log, sink)
    voting = QuorumVotingEngine(
        store, locks, roster, resolver, event_log, assignments.execute_ballot_winner,
    )
    market = BidMarketplace(
        store, locks, resolver, lifecycle, voting, assignments, event_log, sink,
    )
    return Engine(
        store=store,
        lifecycle=lifecycle,
        market=market,
        voting=voting,
        assignments=assignments,
        escrow=escrow,
        roster=roster,
        event_log=event_log,
        sink=sink,
    )


@pytest.fixture
def classified(engine: Engine) -> Callable[..., str]:
    """Factory: file a grievance as CITIZEN and classify it. Returns its id."""
    def make(priority: Priority = Priority.MEDIUM, now: datetime = NOW) -> str:
        g = engine.lifecycle.submit(CITIZEN, "Pothole", "Deep pothole", "Main St", now=now)
        engine.lifecycle.apply_classification(
            g.grievance_id,
            ClassificationResult(category=Category.ROAD, priority=priority, tags=("asphalt",)),
            now=now,
        )
        return g.grievance_id
    return make
