"""Ledger connectivity settings, read from the environment.

Variables (optionally seeded from a .env file):
    CIVIC_LEDGER_RPC_URL        JSON-RPC endpoint
    CIVIC_LEDGER_PRIVATE_KEY    hex key of the signing wallet
    CIVIC_LEDGER_CONTRACT       address of the mirror contract
    CIVIC_LEDGER_CHAIN_ID       chain id (default 43113)
    CIVIC_LEDGER_FALLBACK       "fail" (default) or "simulate"
    CIVIC_PRICE_FIAT_PER_TOKEN  fixed price override for the oracle

An incomplete RPC/key/contract triple means the ledger is unconfigured.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


DEFAULT_CHAIN_ID = 43113


class FallbackMode(str, enum.Enum):
    """What the reconciliation layer does when the ledger is unusable."""
    FAIL = "fail"
    SIMULATE = "simulate"


@dataclass(frozen=True)
class LedgerSettings:
    rpc_url: Optional[str] = None
    private_key: Optional[str] = None
    contract_address: Optional[str] = None
    chain_id: int = DEFAULT_CHAIN_ID
    fallback: FallbackMode = FallbackMode.FAIL
    fiat_per_token: Optional[Decimal] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.rpc_url and self.private_key and self.contract_address)

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> LedgerSettings:
        """Build settings from the process environment.

        If ``env_file`` is given it is loaded first without overriding
        variables already set. ``environ`` replaces ``os.environ``
        entirely (used by tests).
        """
        if environ is None:
            if env_file is not None:
                load_dotenv(env_file, override=False)
            environ = os.environ

        chain_raw = environ.get("CIVIC_LEDGER_CHAIN_ID", "").strip()
        try:
            chain_id = int(chain_raw) if chain_raw else DEFAULT_CHAIN_ID
        except ValueError:
            raise ValueError(f"CIVIC_LEDGER_CHAIN_ID must be an integer, got {chain_raw!r}")

        fallback_raw = environ.get("CIVIC_LEDGER_FALLBACK", FallbackMode.FAIL.value)
        try:
            fallback = FallbackMode(fallback_raw.strip().lower())
        except ValueError:
            raise ValueError(
                f"CIVIC_LEDGER_FALLBACK must be 'fail' or 'simulate', got {fallback_raw!r}"
            )

        price_raw = environ.get("CIVIC_PRICE_FIAT_PER_TOKEN", "").strip()
        price: Optional[Decimal] = None
        if price_raw:
            try:
                price = Decimal(price_raw)
            except InvalidOperation:
                raise ValueError(f"CIVIC_PRICE_FIAT_PER_TOKEN is not a number: {price_raw!r}")
            if price <= 0:
                raise ValueError("CIVIC_PRICE_FIAT_PER_TOKEN must be positive")

        return cls(
            rpc_url=environ.get("CIVIC_LEDGER_RPC_URL") or None,
            private_key=environ.get("CIVIC_LEDGER_PRIVATE_KEY") or None,
            contract_address=environ.get("CIVIC_LEDGER_CONTRACT") or None,
            chain_id=chain_id,
            fallback=fallback,
            fiat_per_token=price,
        )
