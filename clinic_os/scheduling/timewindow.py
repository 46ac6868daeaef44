"""Half-open interval arithmetic shared by every conflict rule."""

from datetime import datetime, timezone

from clinic_os.scheduling.errors import ValidationError
from clinic_os.scheduling.models import SessionStatus

# Sessions in these statuses hold their time window.
ACTIVE_STATUSES = frozenset(
    {SessionStatus.SCHEDULED, SessionStatus.CONFIRMED, SessionStatus.IN_PROGRESS}
)
ACTIVE_STATUS_VALUES = tuple(s.value for s in ACTIVE_STATUSES)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Return True when [a_start, a_end) and [b_start, b_end) intersect.

    Touching endpoints do not overlap: a session ending at 11:00 leaves an
    11:00 start free.
    """
    return a_start < b_end and a_end > b_start


def validate_window(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationError("End time must be after start time")


def duration_minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
