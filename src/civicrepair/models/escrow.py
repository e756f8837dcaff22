"""Escrow models — funds locked against an assignment.

All monetary values use Decimal. No floats in finance.

State machine:
    LOCKED → RELEASED      (a confirming party approved completion)
    LOCKED → REFUNDED      (assignment cancelled)
    LOCKED → DISPUTED      (dispute raised before release)
    DISPUTED → RESOLVED    (split recorded by a delegate)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from civicrepair.errors import ValidationError


class EscrowState(str, enum.Enum):
    """Lifecycle state of an escrow record."""
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


ESCROW_TRANSITIONS: Dict[EscrowState, frozenset] = {
    EscrowState.LOCKED: frozenset({
        EscrowState.RELEASED,
        EscrowState.REFUNDED,
        EscrowState.DISPUTED,
    }),
    EscrowState.DISPUTED: frozenset({EscrowState.RESOLVED}),
    EscrowState.RELEASED: frozenset(),
    EscrowState.REFUNDED: frozenset(),
    EscrowState.RESOLVED: frozenset(),
}


@dataclass
class EscrowRecord:
    """Funds held for one assignment.

    Mutable — transitions are validated against ESCROW_TRANSITIONS.
    """
    escrow_id: str
    assignment_id: str
    grievance_id: str
    payee_id: str
    amount: Decimal
    state: EscrowState = EscrowState.LOCKED
    locked_utc: Optional[datetime] = None
    released_utc: Optional[datetime] = None
    refunded_utc: Optional[datetime] = None
    disputed_utc: Optional[datetime] = None
    resolved_utc: Optional[datetime] = None
    released_by: Optional[str] = None

    def transition_to(self, new_state: EscrowState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = ESCROW_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValidationError(
                f"Invalid escrow transition: {self.state.value} → {new_state.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        self.state = new_state
