"""Assignment, confirmation, release and dispute bookkeeping."""

from civicrepair.settlement.assignments import AssignmentManager
from civicrepair.settlement.escrow import EscrowManager

__all__ = ["AssignmentManager", "EscrowManager"]
