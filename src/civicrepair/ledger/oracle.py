"""Price oracle: converts fiat-equivalent amounts to ledger token units.

Resolution order for the rate:
    1. a fixed override (CIVIC_PRICE_FIAT_PER_TOKEN), if set
    2. the ledger's on-chain price read
    3. the hard fallback rate from policy, if the read fails

The oracle never raises for an unreachable ledger; it logs and falls back.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from civicrepair.errors import ExternalServiceError
from civicrepair.ledger.client import LedgerMirrorClient

log = structlog.get_logger(__name__)

TOKEN_QUANTUM = Decimal("0.000000000000000001")  # 18 decimals
FIAT_QUANTUM = Decimal("0.01")


class PriceOracle:
    def __init__(
        self,
        fallback_fiat_per_token: Decimal,
        client: Optional[LedgerMirrorClient] = None,
        override: Optional[Decimal] = None,
    ) -> None:
        if fallback_fiat_per_token <= 0:
            raise ValueError("Fallback price must be positive")
        self._fallback = fallback_fiat_per_token
        self._client = client
        self._override = override

    def fiat_per_token(self) -> tuple[Decimal, bool]:
        """Current rate and whether it is the hard fallback."""
        if self._override is not None:
            return self._override, False
        if self._client is None:
            return self._fallback, True
        try:
            price = self._client.token_price_fiat()
        except ExternalServiceError as exc:
            log.warning("oracle.fallback", error=str(exc), rate=str(self._fallback))
            return self._fallback, True
        if price <= 0:
            log.warning("oracle.invalid_price", price=str(price), rate=str(self._fallback))
            return self._fallback, True
        return price, False

    def to_token(self, fiat_amount: Decimal) -> Decimal:
        rate, _ = self.fiat_per_token()
        return (fiat_amount / rate).quantize(TOKEN_QUANTUM, rounding=ROUND_DOWN)

    def to_fiat(self, token_amount: Decimal) -> Decimal:
        rate, _ = self.fiat_per_token()
        return (token_amount * rate).quantize(FIAT_QUANTUM, rounding=ROUND_DOWN)
