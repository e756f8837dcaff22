"""Civic repair coordination engine.

Citizens file grievances, workers bid, delegates vote or the marketplace
auto-assigns, and escrow is released on confirmation. Committed decisions
are mirrored to an external append-only ledger out of band.
"""

__version__ = "0.1.0"
