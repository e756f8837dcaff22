"""Escalation policy — what to do after a new pending bid lands.

A pure decision over (pending bid count, grievance priority):

    1. exactly one pending bid and the highest priority tier → AUTO_ASSIGN
    2. pending count >= ballot_min_bids, or priority in the ballot tiers
       → OPEN_BALLOT
    3. otherwise → WAIT

Auto-assignment is the only path that bypasses voting. Whether a ballot
is already open is the caller's concern; this function does not look.
"""

from __future__ import annotations

import enum

from civicrepair.models.grievance import Priority
from civicrepair.policy.resolver import EscalationPolicy


class EscalationDecision(str, enum.Enum):
    AUTO_ASSIGN = "auto_assign"
    OPEN_BALLOT = "open_ballot"
    WAIT = "wait"


def decide_escalation(
    pending_count: int,
    priority: Priority,
    policy: EscalationPolicy,
) -> EscalationDecision:
    if pending_count <= 0:
        return EscalationDecision.WAIT
    if pending_count == 1 and priority == policy.auto_assign_priority:
        return EscalationDecision.AUTO_ASSIGN
    if pending_count >= policy.ballot_min_bids or priority in policy.ballot_priorities:
        return EscalationDecision.OPEN_BALLOT
    return EscalationDecision.WAIT
