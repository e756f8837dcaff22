"""Tests for the reconciliation layer — retry, fallback, dead letters, replay."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from civicrepair.crypto.fingerprint import ledger_numeric_id
from civicrepair.errors import ExternalServiceError
from civicrepair.ledger.settings import FallbackMode
from civicrepair.models.ledger import IntentStatus, LedgerOperation, LedgerReceipt
from civicrepair.policy.resolver import ReconciliationPolicy
from civicrepair.reconciliation.dispatcher import ReconciliationLayer, backoff_delay
from civicrepair.reconciliation.intent_log import LedgerIntentLog


POLICY = ReconciliationPolicy(
    max_attempts=3,
    backoff_base_seconds=0.5,
    backoff_max_seconds=30.0,
    fallback_fiat_per_token=Decimal("2500"),
)


class FlakyClient:
    """Fails the first ``failures`` write calls, then succeeds."""

    def __init__(self, failures: int = 0, price: Decimal = Decimal("1000")) -> None:
        self.failures = failures
        self.price = price
        self.calls: list[tuple] = []
        self._block = 100

    def _receipt(self, *call, released: bool = False) -> LedgerReceipt:
        self.calls.append(call)
        if len(self.calls) <= self.failures:
            raise ExternalServiceError("rpc unreachable")
        self._block += 1
        return LedgerReceipt(
            tx_hash=f"0x{len(self.calls):064x}",
            block_number=self._block,
            funds_released=released,
        )

    def commit_grievance(self, fingerprint: str) -> LedgerReceipt:
        return self._receipt("commit_grievance", fingerprint)

    def commit_bid(self, grievance_ref: int, amount_fiat: Decimal) -> LedgerReceipt:
        return self._receipt("commit_bid", grievance_ref, amount_fiat)

    def assign_with_escrow(
        self, grievance_ref: int, bid_ref: int, escrow_tokens: Decimal,
    ) -> LedgerReceipt:
        return self._receipt("assign_with_escrow", grievance_ref, bid_ref, escrow_tokens)

    def commit_completion(self, grievance_ref: int, fingerprint: str) -> LedgerReceipt:
        return self._receipt("commit_completion", grievance_ref, fingerprint)

    def confirm_release(self, grievance_ref: int, confirmer: str) -> LedgerReceipt:
        return self._receipt("confirm_release", grievance_ref, confirmer, released=True)

    def token_price_fiat(self) -> Decimal:
        return self.price


def _layer(
    client: Optional[FlakyClient],
    fallback: FallbackMode = FallbackMode.FAIL,
    intent_log: Optional[LedgerIntentLog] = None,
) -> tuple[ReconciliationLayer, list[float]]:
    sleeps: list[float] = []
    layer = ReconciliationLayer(
        client,
        intent_log or LedgerIntentLog(),
        POLICY,
        fallback=fallback,
        sleep=sleeps.append,
        start=False,
    )
    return layer, sleeps


def _commit(layer: ReconciliationLayer):
    return layer.enqueue(
        LedgerOperation.COMMIT_GRIEVANCE, {"grievance_id": "grv_1"}, {"fingerprint": "ab" * 32},
    )


class TestBackoff:
    def test_exponential_and_capped(self) -> None:
        assert [backoff_delay(n, POLICY) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
        assert backoff_delay(10, POLICY) == 30.0


class TestDispatch:
    def test_enqueue_returns_pending_without_dispatching(self) -> None:
        client = FlakyClient()
        layer, _ = _layer(client)
        intent = _commit(layer)
        assert intent.status == IntentStatus.PENDING
        assert client.calls == []
        assert layer.drain() == 1
        done = layer.intent_log.get(intent.intent_id)
        assert done.status == IntentStatus.COMPLETED
        assert done.simulated is False
        assert done.block_number == 101
        assert done.attempts == 1

    def test_retries_then_succeeds(self) -> None:
        layer, sleeps = _layer(FlakyClient(failures=2))
        intent = _commit(layer)
        layer.drain()
        done = layer.intent_log.get(intent.intent_id)
        assert done.status == IntentStatus.COMPLETED
        assert done.attempts == 3
        assert done.retry_count == 2
        assert sleeps == [0.5, 1.0]

    def test_exhausted_attempts_dead_letter(self) -> None:
        layer, sleeps = _layer(FlakyClient(failures=10))
        intent = _commit(layer)
        layer.drain()
        failed = layer.intent_log.get(intent.intent_id)
        assert failed.status == IntentStatus.FAILED
        assert failed.dead_lettered is True
        assert failed.simulated is False
        assert "rpc unreachable" in failed.error
        assert sleeps == [0.5, 1.0]
        assert layer.intent_log.dead_letters() == [failed]

    def test_simulate_fallback_flags_receipt(self) -> None:
        layer, _ = _layer(FlakyClient(failures=10), FallbackMode.SIMULATE)
        intent = _commit(layer)
        layer.drain()
        done = layer.intent_log.get(intent.intent_id)
        assert done.status == IntentStatus.COMPLETED
        assert done.simulated is True
        assert done.tx_hash.startswith("0x")
        assert done.block_number is None
        assert done.sequence == 1
        assert done.dead_lettered is False

    def test_unconfigured_ledger(self) -> None:
        layer, _ = _layer(None)
        intent = _commit(layer)
        layer.drain()
        failed = layer.intent_log.get(intent.intent_id)
        assert failed.error == "ledger not configured"
        assert failed.dead_lettered is True
        assert layer.status()["configured"] is False

    def test_entities_addressed_by_numeric_id(self) -> None:
        client = FlakyClient()
        layer, _ = _layer(client)
        layer.enqueue(
            LedgerOperation.ASSIGN_WITH_ESCROW,
            {"grievance_id": "grv_1", "bid_id": "bid_1", "assignment_id": "asg_1"},
            {"worker_id": "0xw1"},
            amount=Decimal("500"),
        )
        layer.drain()
        assert client.calls == [(
            "assign_with_escrow",
            ledger_numeric_id("grv_1"),
            ledger_numeric_id("bid_1"),
            Decimal("0.5"),
        )]
        intent = layer.intent_log.intents()[0]
        assert intent.token_amount == Decimal("0.5")

    def test_release_records_ledger_outcome(self) -> None:
        layer, _ = _layer(FlakyClient())
        queued = layer.enqueue(
            LedgerOperation.CONFIRM_RELEASE,
            {"grievance_id": "grv_1", "assignment_id": "asg_1"},
            {"confirmer": "delegate", "released_locally": False},
            amount=Decimal("500"),
        )
        submitted = queued.payload
        layer.drain()
        intent = layer.intent_log.intents()[0]
        assert intent.payload["funds_released_on_ledger"] is True
        assert "funds_released_on_ledger" not in submitted
        assert intent.payload["confirmer"] == "delegate"

    def test_worker_thread_flush(self) -> None:
        client = FlakyClient()
        layer = ReconciliationLayer(client, LedgerIntentLog(), POLICY, sleep=lambda _: None)
        try:
            intents = [_commit(layer) for _ in range(5)]
            assert layer.flush(timeout=5) is True
            assert all(
                layer.intent_log.get(i.intent_id).status == IntentStatus.COMPLETED
                for i in intents
            )
            assert layer.status()["worker_alive"] is True
        finally:
            layer.shutdown()
        assert layer.status()["worker_alive"] is False


class TestRecovery:
    def test_replay_dead_letters(self) -> None:
        layer, _ = _layer(FlakyClient(failures=3))
        original = _commit(layer)
        layer.drain()

        replayed = layer.replay_dead_letters()
        assert len(replayed) == 1
        assert replayed[0].replay_of == original.intent_id
        layer.drain()

        assert layer.intent_log.get(replayed[0].intent_id).status == IntentStatus.COMPLETED
        old = layer.intent_log.get(original.intent_id)
        assert old.status == IntentStatus.FAILED
        assert old.dead_lettered is False
        assert layer.intent_log.dead_letters() == []

    def test_resume_requeues_in_flight(self) -> None:
        intent_log = LedgerIntentLog()
        stuck = intent_log.create(
            LedgerOperation.COMMIT_BID, {"grievance_id": "grv_1", "bid_id": "bid_1"}, {},
            amount=Decimal("300"), now=datetime(2026, 2, 16, tzinfo=timezone.utc),
        )
        stuck.status = IntentStatus.PROCESSING
        intent_log.save(stuck)

        layer, _ = _layer(FlakyClient(), intent_log=intent_log)
        assert [i.intent_id for i in layer.resume()] == [stuck.intent_id]
        layer.drain()
        assert intent_log.get(stuck.intent_id).status == IntentStatus.COMPLETED

    def test_terminal_intents_are_not_redispatched(self) -> None:
        client = FlakyClient()
        layer, _ = _layer(client)
        _commit(layer)
        layer.drain()
        assert layer.resume() == []
        assert len(client.calls) == 1


@pytest.mark.parametrize("confirmer", ["citizen", "delegate"])
def test_confirmer_passed_through(confirmer: str) -> None:
    client = FlakyClient()
    layer, _ = _layer(client)
    layer.enqueue(
        LedgerOperation.CONFIRM_RELEASE,
        {"grievance_id": "grv_9", "assignment_id": "asg_9"},
        {"confirmer": confirmer, "released_locally": True},
    )
    layer.drain()
    assert client.calls[0] == ("confirm_release", ledger_numeric_id("grv_9"), confirmer)
