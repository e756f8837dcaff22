"""Record fingerprints — SHA-256 over canonical JSON.

A fingerprint commits to a structured record without revealing it.
Only fingerprints are mirrored to the ledger, never raw payloads.

Canonical form: sorted keys, Unicode preserved, UTF-8 encoded, Decimal
rendered as its string form. The same record always produces the same
hash regardless of key ordering.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Cannot canonicalise {type(value).__name__}")


def canonical_json(record: dict[str, Any]) -> bytes:
    return json.dumps(
        record, sort_keys=True, ensure_ascii=False, default=_default,
    ).encode("utf-8")


def fingerprint(record: dict[str, Any]) -> str:
    """Hex SHA-256 of the canonical JSON form of ``record``."""
    return hashlib.sha256(canonical_json(record)).hexdigest()


def ledger_numeric_id(local_id: str) -> int:
    """Stable unsigned integer handle for a local entity on the ledger.

    The ledger addresses entities by uint256. We derive one from the
    local id so every operation on the same entity uses the same handle.
    """
    return int(hashlib.sha256(local_id.encode("utf-8")).hexdigest()[:15], 16)
