"""Ledger intent log — what we intended to commit, and whether it landed.

Intents are appended on creation and updated in place as the worker
processes them. With a storage path, every state change appends a full
snapshot line to a JSONL file; on reload the last snapshot per intent
wins. The file therefore doubles as an append-only history of attempts.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from civicrepair.crypto.fingerprint import canonical_json
from civicrepair.errors import NotFoundError
from civicrepair.models.ledger import (
    Currency,
    IntentStatus,
    LedgerIntent,
    LedgerOperation,
)

_TS = "%Y-%m-%dT%H:%M:%S.%fZ"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(_TS) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS).replace(tzinfo=timezone.utc)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def intent_to_dict(intent: LedgerIntent) -> dict[str, Any]:
    return {
        "intent_id": intent.intent_id,
        "operation": intent.operation.value,
        "references": dict(intent.references),
        "payload": json.loads(canonical_json(intent.payload)),
        "amount": str(intent.amount) if intent.amount is not None else None,
        "currency": intent.currency.value,
        "status": intent.status.value,
        "attempts": intent.attempts,
        "retry_count": intent.retry_count,
        "error": intent.error,
        "simulated": intent.simulated,
        "tx_hash": intent.tx_hash,
        "block_number": intent.block_number,
        "sequence": intent.sequence,
        "token_amount": str(intent.token_amount) if intent.token_amount is not None else None,
        "dead_lettered": intent.dead_lettered,
        "replay_of": intent.replay_of,
        "created_utc": _ts(intent.created_utc),
        "processed_utc": _ts(intent.processed_utc),
        "completed_utc": _ts(intent.completed_utc),
    }


def intent_from_dict(data: dict[str, Any]) -> LedgerIntent:
    return LedgerIntent(
        intent_id=data["intent_id"],
        operation=LedgerOperation(data["operation"]),
        references=dict(data["references"]),
        payload=dict(data["payload"]),
        amount=_dec(data.get("amount")),
        currency=Currency(data.get("currency", Currency.FIAT.value)),
        status=IntentStatus(data["status"]),
        attempts=int(data.get("attempts", 0)),
        retry_count=int(data.get("retry_count", 0)),
        error=data.get("error"),
        simulated=bool(data.get("simulated", False)),
        tx_hash=data.get("tx_hash"),
        block_number=data.get("block_number"),
        sequence=data.get("sequence"),
        token_amount=_dec(data.get("token_amount")),
        dead_lettered=bool(data.get("dead_lettered", False)),
        replay_of=data.get("replay_of"),
        created_utc=_parse_ts(data.get("created_utc")),
        processed_utc=_parse_ts(data.get("processed_utc")),
        completed_utc=_parse_ts(data.get("completed_utc")),
    )


class LedgerIntentLog:
    """Thread-safe registry of ledger intents, in creation order."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._intents: dict[str, LedgerIntent] = {}
        self._lock = threading.RLock()
        self._storage_path = storage_path
        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def create(
        self,
        operation: LedgerOperation,
        references: dict[str, str],
        payload: dict[str, Any],
        amount: Optional[Decimal] = None,
        currency: Currency = Currency.FIAT,
        replay_of: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerIntent:
        intent = LedgerIntent(
            intent_id=f"intent_{uuid4().hex[:12]}",
            operation=operation,
            references=dict(references),
            payload=dict(payload),
            amount=amount,
            currency=currency,
            replay_of=replay_of,
            created_utc=now or datetime.now(timezone.utc),
        )
        with self._lock:
            self._intents[intent.intent_id] = intent
            self._persist(intent)
        return intent

    def save(self, intent: LedgerIntent) -> None:
        """Record the current state of an intent already in the log."""
        with self._lock:
            if intent.intent_id not in self._intents:
                raise NotFoundError(f"Intent not found: {intent.intent_id}")
            self._intents[intent.intent_id] = intent
            self._persist(intent)

    def get(self, intent_id: str) -> LedgerIntent:
        with self._lock:
            intent = self._intents.get(intent_id)
        if intent is None:
            raise NotFoundError(f"Intent not found: {intent_id}")
        return intent

    def intents(
        self,
        status: Optional[IntentStatus] = None,
        operation: Optional[LedgerOperation] = None,
        reference: Optional[str] = None,
    ) -> list[LedgerIntent]:
        """Intents in creation order, optionally filtered.

        ``reference`` matches any value in an intent's references.
        """
        with self._lock:
            result = list(self._intents.values())
        if status is not None:
            result = [i for i in result if i.status == status]
        if operation is not None:
            result = [i for i in result if i.operation == operation]
        if reference is not None:
            result = [i for i in result if reference in i.references.values()]
        return result

    def page(
        self,
        page: int,
        page_size: int,
        status: Optional[IntentStatus] = None,
    ) -> tuple[list[LedgerIntent], int]:
        items = self.intents(status=status)
        start = (page - 1) * page_size
        return items[start:start + page_size], len(items)

    def dead_letters(self) -> list[LedgerIntent]:
        return [i for i in self.intents() if i.dead_lettered]

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in IntentStatus}
        for intent in self.intents():
            counts[intent.status.value] += 1
        return counts

    def _persist(self, intent: LedgerIntent) -> None:
        if not self._storage_path:
            return
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(intent_to_dict(intent), sort_keys=True) + "\n")

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    intent = intent_from_dict(json.loads(line))
                except (KeyError, ValueError) as exc:
                    raise ValueError(f"Corrupt intent record (line {line_num}): {exc}") from exc
                self._intents[intent.intent_id] = intent
