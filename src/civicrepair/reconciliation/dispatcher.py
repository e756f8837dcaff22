"""Reconciliation layer — asynchronous projection of local decisions onto the ledger.

Components commit locally first, then hand the decision to ``enqueue``,
which records a PENDING intent and returns immediately. A single daemon
worker drains the queue and calls the ledger client.

Per intent:
    PENDING → PROCESSING → COMPLETED                 (ledger accepted)
    PENDING → PROCESSING → COMPLETED, simulated=True (fallback=simulate)
    PENDING → PROCESSING → FAILED, dead-lettered     (fallback=fail)

Ledger errors are retried a bounded number of times with exponential
backoff. This is the one place in the engine where ExternalServiceError
is swallowed: a mirroring failure never undoes a committed decision.
It is logged and recorded on the intent instead.

Nothing fired is ever cancelled. A compensating action is a new intent.
"""

from __future__ import annotations

import queue
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol

import structlog

from civicrepair.crypto.fingerprint import ledger_numeric_id
from civicrepair.errors import ExternalServiceError
from civicrepair.ledger.client import LedgerMirrorClient
from civicrepair.ledger.oracle import PriceOracle
from civicrepair.ledger.settings import FallbackMode
from civicrepair.ledger.simulated import SimulatedLedger
from civicrepair.models.ledger import (
    IntentStatus,
    LedgerIntent,
    LedgerOperation,
    LedgerReceipt,
)
from civicrepair.policy.resolver import ReconciliationPolicy
from civicrepair.reconciliation.intent_log import LedgerIntentLog

log = structlog.get_logger(__name__)

_STOP = object()


class IntentSink(Protocol):
    """Where components hand committed decisions for mirroring."""

    def enqueue(
        self,
        operation: LedgerOperation,
        references: dict[str, str],
        payload: dict[str, Any],
        amount: Optional[Decimal] = None,
    ) -> LedgerIntent: ...


def backoff_delay(attempt: int, policy: ReconciliationPolicy) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(policy.backoff_base_seconds * (2 ** (attempt - 1)), policy.backoff_max_seconds)


class ReconciliationLayer:
    """Owns the intent queue and the worker that drains it.

    Usage:
        layer = ReconciliationLayer(client, LedgerIntentLog(), policy)
        intent = layer.enqueue(LedgerOperation.COMMIT_GRIEVANCE, refs, payload)
        layer.flush(timeout=5)
        layer.shutdown()
    """

    def __init__(
        self,
        client: Optional[LedgerMirrorClient],
        intent_log: LedgerIntentLog,
        policy: ReconciliationPolicy,
        fallback: FallbackMode = FallbackMode.FAIL,
        oracle: Optional[PriceOracle] = None,
        simulator: Optional[SimulatedLedger] = None,
        sleep: Callable[[float], None] = time.sleep,
        start: bool = True,
    ) -> None:
        self._client = client
        self._intent_log = intent_log
        self._policy = policy
        self._fallback = fallback
        self._oracle = oracle or PriceOracle(policy.fallback_fiat_per_token, client)
        self._simulator = simulator or SimulatedLedger()
        self._sleep = sleep
        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        if start:
            self.start()

    @property
    def intent_log(self) -> LedgerIntentLog:
        return self._intent_log

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(
            target=self._run, name="civicrepair-reconciler", daemon=True,
        )
        self._worker.start()

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the worker after it drains everything already queued."""
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued intent has been processed.

        Returns False if ``timeout`` elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def drain(self) -> int:
        """Process queued intents on the calling thread. For workerless use."""
        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if item is not _STOP:
                    self._process(item)
                    processed += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._process(item)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def enqueue(
        self,
        operation: LedgerOperation,
        references: dict[str, str],
        payload: dict[str, Any],
        amount: Optional[Decimal] = None,
    ) -> LedgerIntent:
        """Record a PENDING intent and schedule it. Never blocks on the ledger."""
        intent = self._intent_log.create(operation, references, payload, amount=amount)
        log.info(
            "reconciliation.intent_enqueued",
            intent_id=intent.intent_id,
            operation=operation.value,
            **references,
        )
        self._queue.put(intent.intent_id)
        return intent

    def resume(self) -> list[LedgerIntent]:
        """Re-schedule intents a previous process left in flight."""
        resumed = []
        for intent in self._intent_log.intents():
            if intent.is_terminal():
                continue
            intent.status = IntentStatus.PENDING
            self._intent_log.save(intent)
            self._queue.put(intent.intent_id)
            resumed.append(intent)
        return resumed

    def replay_dead_letters(self) -> list[LedgerIntent]:
        """Re-dispatch every dead-lettered intent as a new forward intent.

        The original stays FAILED for the audit trail but leaves the
        dead-letter surface; the replacement points back via ``replay_of``.
        """
        replayed = []
        for old in self._intent_log.dead_letters():
            old.dead_lettered = False
            self._intent_log.save(old)
            new = self._intent_log.create(
                old.operation,
                old.references,
                old.payload,
                amount=old.amount,
                currency=old.currency,
                replay_of=old.intent_id,
            )
            log.info(
                "reconciliation.dead_letter_replayed",
                intent_id=new.intent_id,
                replay_of=old.intent_id,
                operation=old.operation.value,
            )
            self._queue.put(new.intent_id)
            replayed.append(new)
        return replayed

    def status(self) -> dict[str, Any]:
        return {
            "configured": self.is_configured,
            "fallback": self._fallback.value,
            "worker_alive": self._worker is not None and self._worker.is_alive(),
            "queued": self._queue.unfinished_tasks,
            "intents": self._intent_log.counts(),
            "dead_letters": len(self._intent_log.dead_letters()),
        }

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _process(self, intent_id: str) -> None:
        intent = self._intent_log.get(intent_id)
        if intent.is_terminal():
            return
        intent.status = IntentStatus.PROCESSING
        intent.processed_utc = datetime.now(timezone.utc)
        self._intent_log.save(intent)
        bound = log.bind(intent_id=intent.intent_id, operation=intent.operation.value)

        if self._client is None:
            intent.error = "ledger not configured"
            self._fall_back(intent, bound)
            return

        for attempt in range(1, self._policy.max_attempts + 1):
            intent.attempts = attempt
            try:
                receipt = self._call(intent)
            except Exception as exc:
                # ExternalServiceError from the client, or anything the
                # ledger boundary leaked. Never propagates past here.
                intent.error = str(exc)
                if attempt < self._policy.max_attempts:
                    intent.retry_count += 1
                    delay = backoff_delay(attempt, self._policy)
                    bound.warning(
                        "reconciliation.retry",
                        attempt=attempt,
                        retry_in=delay,
                        error=intent.error,
                        external=isinstance(exc, ExternalServiceError),
                    )
                    self._intent_log.save(intent)
                    self._sleep(delay)
                continue
            self._complete(intent, receipt)
            bound.info(
                "reconciliation.intent_completed",
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                attempts=attempt,
            )
            return

        bound.error("reconciliation.attempts_exhausted", attempts=intent.attempts, error=intent.error)
        self._fall_back(intent, bound)

    def _fall_back(self, intent: LedgerIntent, bound: Any) -> None:
        if self._fallback == FallbackMode.SIMULATE:
            receipt = self._simulator.receipt_for(intent.operation, intent.intent_id)
            self._complete(intent, receipt)
            bound.warning(
                "reconciliation.simulated",
                tx_hash=receipt.tx_hash,
                sequence=receipt.sequence,
                error=intent.error,
            )
            return
        intent.status = IntentStatus.FAILED
        intent.simulated = False
        intent.dead_lettered = True
        intent.completed_utc = datetime.now(timezone.utc)
        self._intent_log.save(intent)
        bound.error("reconciliation.dead_lettered", error=intent.error)

    def _complete(self, intent: LedgerIntent, receipt: LedgerReceipt) -> None:
        intent.status = IntentStatus.COMPLETED
        intent.simulated = receipt.simulated
        intent.tx_hash = receipt.tx_hash
        intent.block_number = receipt.block_number
        intent.sequence = receipt.sequence
        intent.completed_utc = datetime.now(timezone.utc)
        if intent.operation == LedgerOperation.CONFIRM_RELEASE:
            # Fresh dict; intent_to_dict may be reading the old one.
            intent.payload = {
                **intent.payload, "funds_released_on_ledger": receipt.funds_released,
            }
        self._intent_log.save(intent)

    def _call(self, intent: LedgerIntent) -> LedgerReceipt:
        refs = intent.references
        op = intent.operation
        if op == LedgerOperation.COMMIT_GRIEVANCE:
            return self._client.commit_grievance(intent.payload["fingerprint"])
        grievance_ref = ledger_numeric_id(refs["grievance_id"])
        if op == LedgerOperation.COMMIT_BID:
            return self._client.commit_bid(grievance_ref, intent.amount or Decimal("0"))
        if op == LedgerOperation.ASSIGN_WITH_ESCROW:
            tokens = self._oracle.to_token(intent.amount or Decimal("0"))
            intent.token_amount = tokens
            return self._client.assign_with_escrow(
                grievance_ref, ledger_numeric_id(refs["bid_id"]), tokens,
            )
        if op == LedgerOperation.COMMIT_COMPLETION:
            return self._client.commit_completion(grievance_ref, intent.payload["fingerprint"])
        if op == LedgerOperation.CONFIRM_RELEASE:
            return self._client.confirm_release(grievance_ref, intent.payload["confirmer"])
        raise ValueError(f"Unknown ledger operation: {op}")
