"""Ledger mirror client: the boundary to the external append-only ledger.

The ledger exposes five write operations and a price read:

    submitGrievance(dataHash)                 commit a grievance fingerprint
    submitBid(grievanceId, amountFiat)        commit a bid
    assignTask(grievanceId, bidId) payable    assign and lock escrow
    submitWorkComplete(grievanceId, proof)    commit a completion fingerprint
    citizenConfirmCompletion(grievanceId)     confirm and release (citizen path)
    daoConfirmCompletion(grievanceId)         confirm and release (delegate path)
    tokenPriceFiat() view                     fiat per token, two implied decimals

Entities are addressed on the ledger by ``ledger_numeric_id``. Only
fingerprints cross this boundary, never raw records.

Every failure surfaces as ``ExternalServiceError``. Callers decide
whether to swallow it; the client never does.
"""

from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any, Optional, Protocol

import structlog

from civicrepair.errors import ExternalServiceError
from civicrepair.ledger.settings import LedgerSettings
from civicrepair.models.ledger import LedgerReceipt

log = structlog.get_logger(__name__)

PRICE_DECIMALS = Decimal("100")


def _fn(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: Optional[list[str]] = None,
    mutability: str = "nonpayable",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in (outputs or [])],
        "stateMutability": mutability,
    }


MIRROR_ABI: list[dict[str, Any]] = [
    _fn("submitGrievance", [("_dataHash", "string")], ["uint256"]),
    _fn("submitBid", [("_grievanceId", "uint256"), ("_bidAmountFiat", "uint256")], ["uint256"]),
    _fn("assignTask", [("_grievanceId", "uint256"), ("_winningBidId", "uint256")],
        mutability="payable"),
    _fn("submitWorkComplete", [("_grievanceId", "uint256"), ("_proofHash", "string")]),
    _fn("citizenConfirmCompletion", [("_grievanceId", "uint256")]),
    _fn("daoConfirmCompletion", [("_grievanceId", "uint256")]),
    _fn("tokenPriceFiat", [], ["uint256"], mutability="view"),
    {
        "type": "event",
        "name": "FundsReleased",
        "anonymous": False,
        "inputs": [
            {"name": "grievanceId", "type": "uint256", "indexed": True},
            {"name": "worker", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "platformFee", "type": "uint256", "indexed": False},
        ],
    },
]


class LedgerMirrorClient(Protocol):
    """What the reconciliation layer needs from a ledger."""

    def commit_grievance(self, fingerprint: str) -> LedgerReceipt: ...

    def commit_bid(self, grievance_ref: int, amount_fiat: Decimal) -> LedgerReceipt: ...

    def assign_with_escrow(
        self, grievance_ref: int, bid_ref: int, escrow_tokens: Decimal,
    ) -> LedgerReceipt: ...

    def commit_completion(self, grievance_ref: int, fingerprint: str) -> LedgerReceipt: ...

    def confirm_release(self, grievance_ref: int, confirmer: str) -> LedgerReceipt: ...

    def token_price_fiat(self) -> Decimal: ...


class Web3LedgerClient:
    """web3.py implementation of the mirror client.

    Connection and contract binding happen on first use, so constructing
    the client never touches the network. Calls are serialised so nonces
    stay sequential for the single signing wallet.
    """

    def __init__(
        self,
        settings: LedgerSettings,
        receipt_timeout: float = 120.0,
    ) -> None:
        if not settings.is_configured:
            raise ValueError("Ledger settings incomplete: need RPC URL, key and contract")
        self._settings = settings
        self._receipt_timeout = receipt_timeout
        self._lock = threading.Lock()
        self._w3: Any = None
        self._account: Any = None
        self._contract: Any = None

    def _bind(self) -> None:
        if self._contract is not None:
            return
        from web3 import Web3, HTTPProvider
        from eth_account import Account

        w3 = Web3(HTTPProvider(self._settings.rpc_url))
        self._account = Account.from_key(self._settings.private_key)
        self._contract = w3.eth.contract(
            address=Web3.to_checksum_address(self._settings.contract_address),
            abi=MIRROR_ABI,
        )
        self._w3 = w3

    def _transact(self, fn_name: str, *args: Any, value: int = 0) -> tuple[str, Any]:
        with self._lock:
            try:
                self._bind()
                w3 = self._w3
                fn = getattr(self._contract.functions, fn_name)(*args)
                tx = fn.build_transaction({
                    "from": self._account.address,
                    "nonce": w3.eth.get_transaction_count(self._account.address),
                    "chainId": self._settings.chain_id,
                    "value": value,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
                receipt = w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._receipt_timeout,
                )
            except Exception as exc:
                raise ExternalServiceError(f"{fn_name} failed: {exc}") from exc

        if receipt["status"] != 1:
            raise ExternalServiceError(f"{fn_name} reverted in tx {tx_hash.hex()}")
        log.info(
            "ledger.tx_confirmed",
            function=fn_name,
            tx_hash=tx_hash.hex(),
            block_number=receipt["blockNumber"],
        )
        return tx_hash.hex(), receipt

    def _receipt(self, fn_name: str, *args: Any, value: int = 0) -> LedgerReceipt:
        tx_hash, receipt = self._transact(fn_name, *args, value=value)
        return LedgerReceipt(tx_hash=tx_hash, block_number=receipt["blockNumber"])

    def commit_grievance(self, fingerprint: str) -> LedgerReceipt:
        return self._receipt("submitGrievance", fingerprint)

    def commit_bid(self, grievance_ref: int, amount_fiat: Decimal) -> LedgerReceipt:
        return self._receipt("submitBid", grievance_ref, int(amount_fiat))

    def assign_with_escrow(
        self, grievance_ref: int, bid_ref: int, escrow_tokens: Decimal,
    ) -> LedgerReceipt:
        from web3 import Web3

        value = Web3.to_wei(escrow_tokens, "ether")
        tx_hash, receipt = self._transact("assignTask", grievance_ref, bid_ref, value=value)
        return LedgerReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            data={"escrow_wei": value},
        )

    def commit_completion(self, grievance_ref: int, fingerprint: str) -> LedgerReceipt:
        return self._receipt("submitWorkComplete", grievance_ref, fingerprint)

    def confirm_release(self, grievance_ref: int, confirmer: str) -> LedgerReceipt:
        if confirmer == "citizen":
            fn_name = "citizenConfirmCompletion"
        elif confirmer == "delegate":
            fn_name = "daoConfirmCompletion"
        else:
            raise ValueError(f"Unknown confirmer: {confirmer}")
        tx_hash, receipt = self._transact(fn_name, grievance_ref)

        from web3.logs import DISCARD

        released = self._contract.events.FundsReleased().process_receipt(
            receipt, errors=DISCARD,
        )
        data: dict[str, Any] = {}
        if released:
            args = released[0]["args"]
            data = {"amount_wei": args["amount"], "platform_fee_wei": args["platformFee"]}
        return LedgerReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            funds_released=bool(released),
            data=data,
        )

    def token_price_fiat(self) -> Decimal:
        try:
            with self._lock:
                self._bind()
                raw = self._contract.functions.tokenPriceFiat().call()
        except Exception as exc:
            raise ExternalServiceError(f"tokenPriceFiat failed: {exc}") from exc
        return Decimal(int(raw)) / PRICE_DECIMALS
