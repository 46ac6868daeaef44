"""Typed failures raised by the scheduling core."""

from typing import Optional


class SchedulingError(Exception):
    """Base exception for scheduling errors."""

    code = "scheduling_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SchedulingError):
    """Malformed input: missing fields, bad ordering, reason too short."""

    code = "validation_error"


class DurationMismatch(ValidationError):
    """Proposed duration falls outside the therapy's tolerance band."""

    code = "duration_mismatch"


class NotFound(SchedulingError):
    """Referenced therapy, user or session does not exist."""

    code = "not_found"


class Unauthorized(SchedulingError):
    """Actor lacks the relation required for the action."""

    code = "unauthorized"


class InvalidState(SchedulingError):
    """Action not permitted from the entity's current status."""

    code = "invalid_state"


class InvalidTransition(InvalidState):
    """Requested status is not reachable from the current one."""

    code = "invalid_transition"

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change status from {current} to {requested}")
        self.current = current
        self.requested = requested


class SlotUnavailable(SchedulingError):
    """The window collides with an active session of the practitioner or patient."""

    code = "slot_unavailable"

    def __init__(self, message: str, scope: Optional[str] = None):
        super().__init__(message)
        self.scope = scope
