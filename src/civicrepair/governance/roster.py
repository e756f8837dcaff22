"""Delegate roster — who may vote, and with what weight.

The number of currently active delegates is the quorum denominator for
every ballot recompute. A delegate's voting power is the weight of the
votes they cast.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from civicrepair.errors import AuthorizationError, NotFoundError, ValidationError
from civicrepair.models.identity import DelegateEntry, DelegateStatus


class DelegateRoster:
    """Registry of delegates. Safe to share between threads."""

    def __init__(self) -> None:
        self._delegates: dict[str, DelegateEntry] = {}
        self._lock = threading.Lock()

    def register(
        self,
        delegate_id: str,
        voting_power: Decimal = Decimal("1"),
        now: Optional[datetime] = None,
    ) -> DelegateEntry:
        """Register a delegate, or reactivate and re-weight an existing one.

        Raises ValidationError for a blank id or non-positive power.
        """
        canonical = delegate_id.strip().lower()
        if not canonical:
            raise ValidationError("Cannot register delegate with blank ID")
        if voting_power <= 0:
            raise ValidationError(f"Voting power must be positive, got {voting_power}")
        with self._lock:
            entry = self._delegates.get(canonical)
            if entry is None:
                entry = DelegateEntry(
                    delegate_id=canonical,
                    voting_power=voting_power,
                    registered_utc=now or datetime.now(timezone.utc),
                )
                self._delegates[canonical] = entry
            else:
                entry.voting_power = voting_power
                entry.status = DelegateStatus.ACTIVE
        return entry

    def deactivate(self, delegate_id: str) -> None:
        with self._lock:
            entry = self._delegates.get(delegate_id.strip().lower())
            if entry is None:
                raise NotFoundError(f"Delegate not found: {delegate_id}")
            entry.status = DelegateStatus.INACTIVE

    def get(self, delegate_id: str) -> Optional[DelegateEntry]:
        with self._lock:
            return self._delegates.get(delegate_id.strip().lower())

    def active_delegates(self) -> list[DelegateEntry]:
        with self._lock:
            return [d for d in self._delegates.values() if d.is_active()]

    def active_count(self) -> int:
        return len(self.active_delegates())

    def voting_power(self, delegate_id: str) -> Decimal:
        """Weight for a vote by ``delegate_id``.

        Raises AuthorizationError unless the delegate is registered and active.
        """
        entry = self.get(delegate_id)
        if entry is None or not entry.is_active():
            raise AuthorizationError(f"{delegate_id} is not an active delegate")
        return entry.voting_power

    def record_vote(self, delegate_id: str) -> None:
        with self._lock:
            entry = self._delegates.get(delegate_id.strip().lower())
            if entry is not None:
                entry.votes_cast += 1
