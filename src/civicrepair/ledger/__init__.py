"""Ledger mirror — the external append-only service and its price oracle."""

from civicrepair.ledger.client import LedgerMirrorClient, Web3LedgerClient
from civicrepair.ledger.oracle import PriceOracle
from civicrepair.ledger.settings import FallbackMode, LedgerSettings
from civicrepair.ledger.simulated import SimulatedLedger

__all__ = [
    "FallbackMode",
    "LedgerMirrorClient",
    "LedgerSettings",
    "PriceOracle",
    "SimulatedLedger",
    "Web3LedgerClient",
]
