"""Session scheduling core: time windows, availability, conflicts and lifecycle.

``SchedulingService`` and ``SessionSweeper`` live in :mod:`clinic_os.scheduling.service`
and :mod:`clinic_os.scheduling.sweep`; they depend on the persistence layer and
are imported from there directly.
"""

from clinic_os.scheduling.availability import AvailabilityResolver
from clinic_os.scheduling.clock import Clock, FixedClock, SystemClock
from clinic_os.scheduling.conflicts import ConflictChecker, find_conflict
from clinic_os.scheduling.errors import (
    DurationMismatch,
    InvalidState,
    InvalidTransition,
    NotFound,
    SchedulingError,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from clinic_os.scheduling.lifecycle import (
    NOTES_BUCKET_BY_STATUS,
    TRANSITIONS,
    CancellationDetails,
    apply_transition,
    assert_transition,
    can_transition,
)
from clinic_os.scheduling.models import (
    CancellationQuote,
    CancellationType,
    PaymentStatus,
    SessionStatus,
    TimeSlot,
    UserRole,
    WorkingHoursPolicy,
)
from clinic_os.scheduling.policy import quote_cancellation
from clinic_os.scheduling.timewindow import ACTIVE_STATUSES, overlaps, validate_window

__all__ = [
    "ACTIVE_STATUSES",
    "AvailabilityResolver",
    "CancellationDetails",
    "CancellationQuote",
    "CancellationType",
    "Clock",
    "ConflictChecker",
    "DurationMismatch",
    "FixedClock",
    "InvalidState",
    "InvalidTransition",
    "NOTES_BUCKET_BY_STATUS",
    "NotFound",
    "PaymentStatus",
    "SchedulingError",
    "SessionStatus",
    "SlotUnavailable",
    "SystemClock",
    "TRANSITIONS",
    "TimeSlot",
    "Unauthorized",
    "UserRole",
    "ValidationError",
    "WorkingHoursPolicy",
    "apply_transition",
    "assert_transition",
    "can_transition",
    "find_conflict",
    "overlaps",
    "quote_cancellation",
    "validate_window",
]
