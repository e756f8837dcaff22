"""Core data models for the civic repair engine."""

from civicrepair.models.assignment import (
    Assignment,
    AssignmentStatus,
    CitizenConfirmation,
    CompensationSplit,
    CompletionRecord,
    DelegateConfirmation,
    DisputeRecord,
    ProgressUpdate,
)
from civicrepair.models.ballot import (
    Ballot,
    BallotExecution,
    BallotOption,
    BallotResults,
    BallotStatus,
    BallotVote,
)
from civicrepair.models.escrow import EscrowRecord, EscrowState
from civicrepair.models.grievance import (
    Category,
    ClassificationResult,
    Grievance,
    GrievanceStatus,
    Priority,
)
from civicrepair.models.identity import DelegateEntry, Principal, Role
from civicrepair.models.ledger import (
    IntentStatus,
    LedgerIntent,
    LedgerOperation,
    LedgerReceipt,
)
from civicrepair.models.market import AssignmentReason, Bid, BidStatus, ScoredBid

__all__ = [
    "Assignment",
    "AssignmentReason",
    "AssignmentStatus",
    "Ballot",
    "BallotExecution",
    "BallotOption",
    "BallotResults",
    "BallotStatus",
    "BallotVote",
    "Bid",
    "BidStatus",
    "Category",
    "CitizenConfirmation",
    "ClassificationResult",
    "CompensationSplit",
    "CompletionRecord",
    "DelegateConfirmation",
    "DelegateEntry",
    "DisputeRecord",
    "EscrowRecord",
    "EscrowState",
    "Grievance",
    "GrievanceStatus",
    "IntentStatus",
    "LedgerIntent",
    "LedgerOperation",
    "LedgerReceipt",
    "Principal",
    "ProgressUpdate",
    "Priority",
    "Role",
    "ScoredBid",
]
