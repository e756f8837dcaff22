"""Ledger mirror models — intents and receipts.

A LedgerIntent is the local audit record of an operation we intend to
mirror onto the external ledger, and what came of it. It is distinct
from the ledger itself: it answers "what did we intend to commit and
did it land" even while the ledger is unreachable.

Intent lifecycle: PENDING → PROCESSING → COMPLETED / FAILED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class LedgerOperation(str, enum.Enum):
    """The five operations the ledger exposes."""
    COMMIT_GRIEVANCE = "commit_grievance"
    COMMIT_BID = "commit_bid"
    ASSIGN_WITH_ESCROW = "assign_with_escrow"
    COMMIT_COMPLETION = "commit_completion"
    CONFIRM_RELEASE = "confirm_release"


class IntentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Currency(str, enum.Enum):
    FIAT = "fiat"
    TOKEN = "token"


@dataclass(frozen=True)
class LedgerReceipt:
    """Outcome of a ledger call.

    Simulated receipts carry a deterministic placeholder hash and a
    monotonic fake sequence number, and are always flagged.
    """
    tx_hash: str
    block_number: Optional[int] = None
    simulated: bool = False
    sequence: Optional[int] = None
    funds_released: bool = False
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerIntent:
    """Local record of one intended ledger operation."""
    intent_id: str
    operation: LedgerOperation
    references: dict[str, str]
    payload: dict[str, Any]
    amount: Optional[Decimal] = None
    currency: Currency = Currency.FIAT
    status: IntentStatus = IntentStatus.PENDING
    attempts: int = 0
    retry_count: int = 0
    error: Optional[str] = None
    simulated: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    sequence: Optional[int] = None
    token_amount: Optional[Decimal] = None
    dead_lettered: bool = False
    replay_of: Optional[str] = None
    created_utc: Optional[datetime] = None
    processed_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in (IntentStatus.COMPLETED, IntentStatus.FAILED)
