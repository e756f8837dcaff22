"""Simulated ledger receipts for degraded mode.

Used only when the fallback mode is explicitly ``simulate``. Receipts
carry a deterministic placeholder hash derived from the operation and
intent id, and a monotonic fake sequence number. They are always
flagged ``simulated=True`` so they can never be mistaken for real ones.
"""

from __future__ import annotations

import hashlib
import itertools
import threading

from civicrepair.models.ledger import LedgerOperation, LedgerReceipt


class SimulatedLedger:
    def __init__(self, start: int = 1) -> None:
        self._sequence = itertools.count(start)
        self._lock = threading.Lock()

    def receipt_for(self, operation: LedgerOperation, intent_id: str) -> LedgerReceipt:
        digest = hashlib.sha256(
            f"simulated:{operation.value}:{intent_id}".encode("utf-8")
        ).hexdigest()
        with self._lock:
            seq = next(self._sequence)
        return LedgerReceipt(
            tx_hash=f"0x{digest}",
            block_number=None,
            simulated=True,
            sequence=seq,
            funds_released=operation == LedgerOperation.CONFIRM_RELEASE,
        )
