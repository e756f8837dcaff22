"""Bid scoring — ranks candidate bids as a decision aid for delegates.

Bid scoring formula:
    score = w_price * price + w_reputation * reputation + w_speed * speed

    price      = max(0, 1 - amount / price_ceiling)
    reputation = min(worker_reputation / reputation_scale, 1)
    speed      = max(0, 1 - eta_hours / max_eta_hours)

The scorer is a pure computation layer. It orders ballot options; it
never selects a winner on its own.

Tie-breaking: cheaper bid first, then earlier submission time.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from civicrepair.models.market import Bid, BidStatus, ScoredBid
from civicrepair.policy.resolver import PolicyResolver

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class BidScorer:
    """Scores and ranks bids.

    Usage:
        scorer = BidScorer(resolver)
        ranked = scorer.rank_bids(bids)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._weights = resolver.scoring_weights()
        self._price_ceiling = resolver.price_ceiling()
        self._reputation_scale = resolver.reputation_scale()
        self._max_eta = resolver.max_eta_hours()

    def price_score(self, amount: Decimal) -> float:
        if self._price_ceiling <= 0:
            return 0.0
        return max(0.0, 1.0 - float(amount / self._price_ceiling))

    def reputation_score(self, reputation: float) -> float:
        if self._reputation_scale <= 0:
            return 0.0
        return max(0.0, min(reputation / self._reputation_scale, 1.0))

    def speed_score(self, eta_hours: int) -> float:
        if self._max_eta <= 0:
            return 0.0
        return max(0.0, 1.0 - eta_hours / self._max_eta)

    def score_bid(self, bid: Bid) -> ScoredBid:
        """Compute the component and composite scores for one bid."""
        price = self.price_score(bid.amount)
        reputation = self.reputation_score(bid.worker_reputation)
        speed = self.speed_score(bid.eta_hours)
        composite = (
            self._weights.price * price
            + self._weights.reputation * reputation
            + self._weights.speed * speed
        )
        return ScoredBid(
            bid=bid,
            price_score=price,
            reputation_score=reputation,
            speed_score=speed,
            score=round(composite, 6),
        )

    def rank_bids(self, bids: list[Bid]) -> list[ScoredBid]:
        """Score and rank pending bids, best first."""
        scored = [
            self.score_bid(bid) for bid in bids
            if bid.status == BidStatus.PENDING  # only live candidates
        ]
        scored.sort(
            key=lambda s: (
                -s.score,
                s.bid.amount,
                s.bid.submitted_utc or _EPOCH,
            )
        )
        return scored
