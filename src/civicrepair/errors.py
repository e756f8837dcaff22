"""Error taxonomy shared by every core component.

Core components raise these. The service facade maps them onto
``ServiceResult.error_kind``; the reconciliation worker is the only
place that swallows ``ExternalServiceError``.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    """Machine-readable error classification."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    EXTERNAL_SERVICE = "external_service"


class CivicRepairError(Exception):
    """Base class for all domain errors."""
    kind: ErrorKind = ErrorKind.VALIDATION


class NotFoundError(CivicRepairError, LookupError):
    """A referenced grievance, bid, assignment or ballot does not exist."""
    kind = ErrorKind.NOT_FOUND


class ValidationError(CivicRepairError, ValueError):
    """Invalid transition for the current state, or malformed input."""
    kind = ErrorKind.VALIDATION


class ConflictError(CivicRepairError, ValueError):
    """Duplicate pending bid, duplicate vote, or uniqueness violation."""
    kind = ErrorKind.CONFLICT


class AuthorizationError(CivicRepairError):
    """The acting principal lacks the role or ownership required."""
    kind = ErrorKind.AUTHORIZATION


class ExternalServiceError(CivicRepairError):
    """Classification, ledger or price oracle call failed."""
    kind = ErrorKind.EXTERNAL_SERVICE
