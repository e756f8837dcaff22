"""State machines for grievances and assignments."""

from civicrepair.engine.state_machine import (
    AssignmentStateMachine,
    GrievanceStateMachine,
)

__all__ = ["AssignmentStateMachine", "GrievanceStateMachine"]
