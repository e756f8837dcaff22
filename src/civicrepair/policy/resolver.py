"""Policy resolver — loads marketplace_policy.json and exposes every
runtime decision constant as a typed method call.

No magic. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any

from civicrepair.models.grievance import Category, Priority


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"
POLICY_FILE = "marketplace_policy.json"


@dataclass(frozen=True)
class ScoringWeights:
    price: float
    reputation: float
    speed: float


@dataclass(frozen=True)
class BidBounds:
    min_amount: Decimal
    max_amount: Decimal
    min_eta_hours: int
    max_eta_hours: int
    max_proposal_length: int


@dataclass(frozen=True)
class EscalationPolicy:
    auto_assign_priority: Priority
    ballot_priorities: frozenset[Priority]
    ballot_min_bids: int


@dataclass(frozen=True)
class BallotDefaults:
    voting_period_hours: int
    quorum_percent: int
    allow_vote_change: bool
    reaper_interval_seconds: float


@dataclass(frozen=True)
class ReconciliationPolicy:
    max_attempts: int
    backoff_base_seconds: float
    backoff_max_seconds: float
    fallback_fiat_per_token: Decimal


class PolicyResolver:
    """Loads and resolves marketplace policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        weights = resolver.scoring_weights()
        defaults = resolver.ballot_defaults()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        if "version" not in self._policy:
            raise ValueError(f"{POLICY_FILE} missing version")

    @classmethod
    def from_config_dir(cls, config_dir: Path = DEFAULT_CONFIG_DIR) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / POLICY_FILE))

    @property
    def version(self) -> str:
        return str(self._policy["version"])

    # ------------------------------------------------------------------
    # Bids and scoring
    # ------------------------------------------------------------------

    def bid_bounds(self) -> BidBounds:
        b = self._policy["bids"]
        return BidBounds(
            min_amount=Decimal(str(b["min_amount"])),
            max_amount=Decimal(str(b["max_amount"])),
            min_eta_hours=int(b["min_eta_hours"]),
            max_eta_hours=int(b["max_eta_hours"]),
            max_proposal_length=int(b["max_proposal_length"]),
        )

    def scoring_weights(self) -> ScoringWeights:
        w = self._policy["scoring"]["weights"]
        weights = ScoringWeights(
            price=float(w["price"]),
            reputation=float(w["reputation"]),
            speed=float(w["speed"]),
        )
        total = weights.price + weights.reputation + weights.speed
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total}")
        return weights

    def price_ceiling(self) -> Decimal:
        return Decimal(str(self._policy["scoring"]["price_ceiling"]))

    def reputation_scale(self) -> float:
        return float(self._policy["scoring"]["reputation_scale"])

    def max_eta_hours(self) -> int:
        return int(self._policy["scoring"]["max_eta_hours"])

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def priority_order(self) -> list[Priority]:
        return [Priority(p) for p in self._policy["escalation"]["priority_order"]]

    def escalation_policy(self) -> EscalationPolicy:
        e = self._policy["escalation"]
        return EscalationPolicy(
            auto_assign_priority=Priority(e["auto_assign_priority"]),
            ballot_priorities=frozenset(Priority(p) for p in e["ballot_priorities"]),
            ballot_min_bids=int(e["ballot_min_bids"]),
        )

    # ------------------------------------------------------------------
    # Ballots
    # ------------------------------------------------------------------

    def ballot_defaults(self) -> BallotDefaults:
        b = self._policy["ballot"]
        quorum = int(b["quorum_percent"])
        if not 0 < quorum <= 100:
            raise ValueError(f"quorum_percent must be in (0, 100], got {quorum}")
        return BallotDefaults(
            voting_period_hours=int(b["voting_period_hours"]),
            quorum_percent=quorum,
            allow_vote_change=bool(b["allow_vote_change"]),
            reaper_interval_seconds=float(b["reaper_interval_seconds"]),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconciliation_policy(self) -> ReconciliationPolicy:
        r = self._policy["reconciliation"]
        attempts = int(r["max_attempts"])
        if attempts < 1:
            raise ValueError("reconciliation.max_attempts must be >= 1")
        return ReconciliationPolicy(
            max_attempts=attempts,
            backoff_base_seconds=float(r["backoff_base_seconds"]),
            backoff_max_seconds=float(r["backoff_max_seconds"]),
            fallback_fiat_per_token=Decimal(str(r["fallback_fiat_per_token"])),
        )

    def fallback_price(self) -> Decimal:
        return self.reconciliation_policy().fallback_fiat_per_token

    # ------------------------------------------------------------------
    # Grievances and listing
    # ------------------------------------------------------------------

    def default_category(self) -> Category:
        return Category(self._policy["grievances"]["default_category"])

    def default_priority(self) -> Priority:
        return Priority(self._policy["grievances"]["default_priority"])

    def text_limits(self) -> tuple[int, int]:
        g = self._policy["grievances"]
        return int(g["max_title_length"]), int(g["max_description_length"])

    def page_size_bounds(self) -> tuple[int, int]:
        p = self._policy["pagination"]
        return int(p["default_page_size"]), int(p["max_page_size"])


def _load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
