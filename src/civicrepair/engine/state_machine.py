"""Grievance and assignment state machines.

Grievance lifecycle:
    PENDING → CLASSIFIED → ACTIVE → ASSIGNED → IN_PROGRESS → COMPLETED → VERIFIED
    COMPLETED / VERIFIED → DISPUTED
    ASSIGNED / IN_PROGRESS → ACTIVE (unassignment, the only reversal)

Assignment lifecycle:
    ASSIGNED → STARTED → IN_PROGRESS → COMPLETED → VERIFIED / DISPUTED
    VERIFIED → DISPUTED
    ASSIGNED / STARTED / IN_PROGRESS → CANCELLED (unassignment)

Fail-closed: any transition not in the table raises ValidationError.
Both machines are pure; side effects live in the owning component.
"""

from __future__ import annotations

from civicrepair.errors import ValidationError
from civicrepair.models.assignment import Assignment, AssignmentStatus
from civicrepair.models.grievance import Grievance, GrievanceStatus


_GRIEVANCE_TRANSITIONS: dict[GrievanceStatus, frozenset[GrievanceStatus]] = {
    GrievanceStatus.PENDING: frozenset({GrievanceStatus.CLASSIFIED}),
    GrievanceStatus.CLASSIFIED: frozenset({GrievanceStatus.ACTIVE}),
    GrievanceStatus.ACTIVE: frozenset({GrievanceStatus.ASSIGNED}),
    GrievanceStatus.ASSIGNED: frozenset({
        GrievanceStatus.IN_PROGRESS,
        GrievanceStatus.ACTIVE,
    }),
    GrievanceStatus.IN_PROGRESS: frozenset({
        GrievanceStatus.COMPLETED,
        GrievanceStatus.ACTIVE,
    }),
    GrievanceStatus.COMPLETED: frozenset({
        GrievanceStatus.VERIFIED,
        GrievanceStatus.DISPUTED,
    }),
    GrievanceStatus.VERIFIED: frozenset({GrievanceStatus.DISPUTED}),
    GrievanceStatus.DISPUTED: frozenset(),
}

_ASSIGNMENT_TRANSITIONS: dict[AssignmentStatus, frozenset[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: frozenset({
        AssignmentStatus.STARTED,
        AssignmentStatus.CANCELLED,
    }),
    AssignmentStatus.STARTED: frozenset({
        AssignmentStatus.IN_PROGRESS,
        AssignmentStatus.CANCELLED,
    }),
    AssignmentStatus.IN_PROGRESS: frozenset({
        AssignmentStatus.COMPLETED,
        AssignmentStatus.CANCELLED,
    }),
    AssignmentStatus.COMPLETED: frozenset({
        AssignmentStatus.VERIFIED,
        AssignmentStatus.DISPUTED,
    }),
    AssignmentStatus.VERIFIED: frozenset({AssignmentStatus.DISPUTED}),
    AssignmentStatus.DISPUTED: frozenset(),
    AssignmentStatus.CANCELLED: frozenset(),
}


def _describe(current: str, target: str, allowed: frozenset) -> str:
    allowed_str = ", ".join(sorted(s.value for s in allowed))
    return f"{current} → {target}. Allowed from {current}: [{allowed_str}]"


class GrievanceStateMachine:
    """Validates and applies grievance status transitions."""

    @staticmethod
    def validate_transition(
        grievance: Grievance,
        target: GrievanceStatus,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        allowed = _GRIEVANCE_TRANSITIONS.get(grievance.status, frozenset())
        if target not in allowed:
            return [
                "Invalid grievance transition: "
                + _describe(grievance.status.value, target.value, allowed)
            ]
        return []

    @staticmethod
    def apply_transition(grievance: Grievance, target: GrievanceStatus) -> None:
        errors = GrievanceStateMachine.validate_transition(grievance, target)
        if errors:
            raise ValidationError("; ".join(errors))
        grievance.status = target

    @staticmethod
    def valid_transitions(status: GrievanceStatus) -> set[GrievanceStatus]:
        return set(_GRIEVANCE_TRANSITIONS.get(status, frozenset()))


class AssignmentStateMachine:
    """Validates and applies assignment status transitions."""

    @staticmethod
    def validate_transition(
        assignment: Assignment,
        target: AssignmentStatus,
    ) -> list[str]:
        allowed = _ASSIGNMENT_TRANSITIONS.get(assignment.status, frozenset())
        if target not in allowed:
            return [
                "Invalid assignment transition: "
                + _describe(assignment.status.value, target.value, allowed)
            ]
        return []

    @staticmethod
    def apply_transition(assignment: Assignment, target: AssignmentStatus) -> None:
        errors = AssignmentStateMachine.validate_transition(assignment, target)
        if errors:
            raise ValidationError("; ".join(errors))
        assignment.status = target

    @staticmethod
    def is_terminal(status: AssignmentStatus) -> bool:
        return not _ASSIGNMENT_TRANSITIONS.get(status, frozenset())

    @staticmethod
    def valid_transitions(status: AssignmentStatus) -> set[AssignmentStatus]:
        return set(_ASSIGNMENT_TRANSITIONS.get(status, frozenset()))
