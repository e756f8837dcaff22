"""Fingerprinting — canonical hashes that commit to records."""

from civicrepair.crypto.fingerprint import canonical_json, fingerprint, ledger_numeric_id

__all__ = ["canonical_json", "fingerprint", "ledger_numeric_id"]
