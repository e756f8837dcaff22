"""Bid marketplace: scoring, escalation and bid intake."""

from civicrepair.market.escalation import EscalationDecision, decide_escalation
from civicrepair.market.marketplace import BidMarketplace, BidOutcome
from civicrepair.market.scoring import BidScorer

__all__ = [
    "BidMarketplace",
    "BidOutcome",
    "BidScorer",
    "EscalationDecision",
    "decide_escalation",
]
