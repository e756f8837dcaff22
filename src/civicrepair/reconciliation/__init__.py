"""Reconciliation layer: projects committed decisions onto the ledger."""

from civicrepair.reconciliation.dispatcher import IntentSink, ReconciliationLayer
from civicrepair.reconciliation.intent_log import LedgerIntentLog

__all__ = ["IntentSink", "LedgerIntentLog", "ReconciliationLayer"]
