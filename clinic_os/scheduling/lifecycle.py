"""Session lifecycle state machine.

Every status change in the codebase goes through :func:`apply_transition`.
The transition table and the notes-routing table are plain mappings so they
can be audited and tested in isolation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from clinic_os.scheduling.errors import InvalidState, InvalidTransition, ValidationError
from clinic_os.scheduling.models import (
    CancellationQuote,
    CancellationType,
    SessionObservations,
    SessionStatus,
)

if TYPE_CHECKING:
    from clinic_os.core.models import TherapySession

MIN_CANCELLATION_REASON_LENGTH = 10

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.SCHEDULED: frozenset(
        {SessionStatus.CONFIRMED, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
    ),
    SessionStatus.CONFIRMED: frozenset(
        {SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
    ),
    SessionStatus.IN_PROGRESS: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.NO_SHOW: frozenset(),
}

# Notes go to the bucket of the status the session ends up in.
NOTES_BUCKET_BY_STATUS: dict[SessionStatus, str] = {
    SessionStatus.IN_PROGRESS: "notes_during",
    SessionStatus.COMPLETED: "notes_post",
}
DEFAULT_NOTES_BUCKET = "notes_pre"

RESCHEDULABLE_STATUSES = frozenset({SessionStatus.SCHEDULED, SessionStatus.CONFIRMED})


@dataclass(frozen=True)
class CancellationDetails:
    """Everything recorded when a session enters ``cancelled``."""

    reason: str
    cancelled_by: uuid.UUID
    cancellation_type: CancellationType
    quote: CancellationQuote


def parse_status(value: str | SessionStatus) -> SessionStatus:
    try:
        return SessionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown session status: {value!r}")


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def assert_transition(current: SessionStatus, target: SessionStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value)


def notes_bucket(status: SessionStatus) -> str:
    return NOTES_BUCKET_BY_STATUS.get(status, DEFAULT_NOTES_BUCKET)


def validate_cancellation_reason(
    reason: Optional[str], min_length: int = MIN_CANCELLATION_REASON_LENGTH
) -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError(f"Cancellation reason must be at least {min_length} characters")
    return cleaned


def annotate(
    record: TherapySession,
    now: datetime,
    notes: Optional[str] = None,
    observations: Optional[SessionObservations] = None,
    recorded_by: Optional[uuid.UUID] = None,
) -> None:
    """File notes and clinical observations against the session's current status."""
    if notes:
        setattr(record, notes_bucket(SessionStatus(record.status)), notes)

    if observations is None:
        return
    if observations.vitals:
        record.vitals = {
            **(record.vitals or {}),
            **observations.vitals,
            "recorded_at": now.isoformat(),
            "recorded_by": str(recorded_by) if recorded_by else None,
        }
    if observations.symptoms:
        record.symptoms = {
            **(record.symptoms or {}),
            **observations.symptoms,
            "recorded_at": now.isoformat(),
        }
    if observations.complications:
        record.complications = observations.complications
    if observations.recommendations:
        record.recommendations = observations.recommendations


def apply_transition(
    record: TherapySession,
    target: str | SessionStatus,
    now: datetime,
    notes: Optional[str] = None,
    observations: Optional[SessionObservations] = None,
    cancellation: Optional[CancellationDetails] = None,
    recorded_by: Optional[uuid.UUID] = None,
    min_reason_length: int = MIN_CANCELLATION_REASON_LENGTH,
) -> TherapySession:
    """Move *record* to *target*, applying the side effects of entering it.

    All validation happens before the first write, so a rejected transition
    leaves the session exactly as it was.
    """
    target = parse_status(target)
    current = SessionStatus(record.status)
    assert_transition(current, target)

    reason = None
    if target is SessionStatus.CANCELLED:
        if cancellation is None:
            raise ValidationError("Cancellation details are required to cancel a session")
        reason = validate_cancellation_reason(cancellation.reason, min_reason_length)

    record.status = target.value
    if target is SessionStatus.IN_PROGRESS and record.actual_start_time is None:
        record.actual_start_time = now
    elif target is SessionStatus.COMPLETED and record.actual_end_time is None:
        record.actual_end_time = now
    elif target is SessionStatus.CANCELLED:
        record.cancellation_reason = reason
        record.cancelled_by = cancellation.cancelled_by
        record.cancelled_at = now
        record.cancellation_fee = cancellation.quote.cancellation_fee
        record.refund_amount = cancellation.quote.refund_amount
        record.cancellation_type = cancellation.cancellation_type.value

    annotate(record, now, notes=notes, observations=observations, recorded_by=recorded_by)
    record.updated_at = now
    return record


def assert_reschedulable(record: TherapySession) -> None:
    status = SessionStatus(record.status)
    if status not in RESCHEDULABLE_STATUSES:
        raise InvalidState(f"Cannot reschedule {status.value} session")


def reset_after_reschedule(
    record: TherapySession, now: datetime, keep_confirmation: bool = False
) -> None:
    """A moved session goes back to ``scheduled`` and must be confirmed again.

    With *keep_confirmation* a ``confirmed`` session stays confirmed.
    """
    assert_reschedulable(record)
    if not keep_confirmation:
        record.status = SessionStatus.SCHEDULED.value
    record.updated_at = now
