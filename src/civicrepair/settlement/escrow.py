"""Escrow manager — funds held locally against an assignment.

The manager is a pure state machine over EscrowRecord. Locking and event
logging are the caller's job; AssignmentManager always calls in here
while holding the assignment lock.

State machine:
    LOCKED → RELEASED      (a confirming party approved; exactly once)
    LOCKED → REFUNDED      (assignment cancelled)
    LOCKED → DISPUTED      (dispute raised before release)
    DISPUTED → RESOLVED    (split recorded)
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from civicrepair.errors import ValidationError
from civicrepair.models.assignment import CompensationSplit
from civicrepair.models.escrow import EscrowRecord, EscrowState
from civicrepair.persistence.store import DocumentStore


class EscrowManager:
    """Usage:
        manager = EscrowManager(store)
        record = manager.lock("asg_1", "grv_1", "0xworker", Decimal("500"))
        manager.release(record.escrow_id, released_by="0xcitizen")
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get(self, escrow_id: str) -> EscrowRecord:
        return self._store.escrows.get(escrow_id)

    def lock(
        self,
        assignment_id: str,
        grievance_id: str,
        payee_id: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        if amount <= Decimal("0"):
            raise ValidationError("Escrow amount must be positive")
        record = EscrowRecord(
            escrow_id=f"escrow_{uuid4().hex[:12]}",
            assignment_id=assignment_id,
            grievance_id=grievance_id,
            payee_id=payee_id,
            amount=amount,
            locked_utc=now or datetime.now(timezone.utc),
        )
        self._store.escrows.insert(record)
        return record

    def release(
        self,
        escrow_id: str,
        released_by: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Release to the payee. Returns False if already released.

        Any state other than LOCKED or RELEASED is an error.
        """
        record = self.get(escrow_id)
        if record.state == EscrowState.RELEASED:
            return False
        record.transition_to(EscrowState.RELEASED)
        record.released_utc = now or datetime.now(timezone.utc)
        record.released_by = released_by
        self._store.escrows.put(record)
        return True

    def refund(self, escrow_id: str, now: Optional[datetime] = None) -> EscrowRecord:
        record = self.get(escrow_id)
        record.transition_to(EscrowState.REFUNDED)
        record.refunded_utc = now or datetime.now(timezone.utc)
        self._store.escrows.put(record)
        return record

    def dispute(self, escrow_id: str, now: Optional[datetime] = None) -> EscrowRecord:
        """Freeze locked funds. Already-released funds stay released."""
        record = self.get(escrow_id)
        if record.state == EscrowState.LOCKED:
            record.transition_to(EscrowState.DISPUTED)
            record.disputed_utc = now or datetime.now(timezone.utc)
            self._store.escrows.put(record)
        return record

    def resolve(
        self,
        escrow_id: str,
        split: CompensationSplit,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Record a three-way split. Bookkeeping only; no funds move.

        Shares must be non-negative and sum to the escrowed amount.
        """
        record = self.get(escrow_id)
        for name, share in (
            ("citizen", split.to_citizen),
            ("worker", split.to_worker),
            ("delegate pool", split.to_delegate_pool),
        ):
            if share < 0:
                raise ValidationError(f"Split share for {name} must not be negative")
        if split.total != record.amount:
            raise ValidationError(
                f"Split total ({split.total}) does not equal escrowed amount ({record.amount})"
            )
        if record.state == EscrowState.DISPUTED:
            record.transition_to(EscrowState.RESOLVED)
            record.resolved_utc = now or datetime.now(timezone.utc)
            self._store.escrows.put(record)
        return record
