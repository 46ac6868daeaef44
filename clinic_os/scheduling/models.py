"""Pydantic models for the scheduling core."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, computed_field, model_validator


class SessionStatus(str, Enum):
    """Therapy session lifecycle statuses."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.NO_SHOW}
)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class UserRole(str, Enum):
    PATIENT = "patient"
    PRACTITIONER = "practitioner"
    ADMIN = "admin"


class CancellationType(str, Enum):
    """Who initiated a cancellation."""

    PATIENT = "patient"
    PRACTITIONER = "practitioner"
    ADMIN = "admin"
    SYSTEM = "system"


class WorkingHoursPolicy(BaseModel):
    """Daily availability window, lunch break and slot granularity."""

    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=18, ge=1, le=24)
    lunch_start_hour: int = Field(default=13, ge=0, le=23)
    lunch_end_hour: int = Field(default=14, ge=0, le=24)
    granularity_minutes: int = Field(default=30, ge=5)
    timezone: str = "UTC"

    @model_validator(mode="after")
    def _check_ordering(self) -> "WorkingHoursPolicy":
        if self.end_hour <= self.start_hour:
            raise ValueError("end_hour must be after start_hour")
        if self.lunch_end_hour < self.lunch_start_hour:
            raise ValueError("lunch_end_hour must not precede lunch_start_hour")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class TimeSlot(BaseModel):
    """A single bookable time window."""

    start_time: datetime
    end_time: datetime
    practitioner_id: str
    duration_minutes: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def slot_id(self) -> str:
        epoch_ms = int(self.start_time.timestamp() * 1000)
        return f"{self.practitioner_id}-{epoch_ms}"


class CancellationQuote(BaseModel):
    """Fee/refund split for cancelling a session at a given moment."""

    hours_until_start: float
    cancellation_fee: Decimal
    refund_amount: Decimal
    tier: str


class RescheduleEntry(BaseModel):
    """One append-only reschedule history record."""

    original_start: datetime
    original_end: datetime
    new_start: datetime
    new_end: datetime
    reason: str
    rescheduled_by: str
    rescheduled_at: datetime


class SessionObservations(BaseModel):
    """Clinical observations a practitioner may attach to a status update."""

    vitals: Optional[dict[str, Any]] = None
    symptoms: Optional[dict[str, list[str]]] = None
    complications: Optional[str] = None
    recommendations: Optional[str] = None


class SessionMetrics(BaseModel):
    """Derived timing metrics shown alongside session details."""

    actual_duration_minutes: Optional[int] = None
    scheduled_duration_minutes: int
    is_on_time: Optional[bool] = None
    hours_until_session: Optional[int] = None


class SweepReport(BaseModel):
    """Outcome of one periodic sweep pass."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    no_shows: list[str] = []
    auto_completed: list[str] = []
    stuck_completed: list[str] = []
    errors: list[str] = []

    @property
    def total_updated(self) -> int:
        return len(self.no_shows) + len(self.auto_completed) + len(self.stuck_completed)

