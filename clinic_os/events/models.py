"""Domain events emitted after successful scheduling mutations."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Realtime event names, as seen by connected clients."""

    SLOT_BOOKED = "slotBooked"
    SLOT_AVAILABLE = "slotAvailable"
    SESSION_CANCELLED = "sessionCancelled"
    SESSION_STATUS_UPDATE = "sessionStatusUpdate"
    SESSION_RESCHEDULED = "sessionRescheduled"


class Channel(str, Enum):
    """Delivery channels a notifier may be asked to use."""

    EMAIL = "email"
    IN_APP = "in_app"
    WHATSAPP = "whatsapp"
    SMS = "sms"


class DomainEvent(BaseModel):
    """Base class for all scheduling events."""

    event_type: EventType
    session_id: str
    practitioner_id: str
    patient_id: str
    actor_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class SlotBooked(DomainEvent):
    event_type: Literal[EventType.SLOT_BOOKED] = EventType.SLOT_BOOKED
    therapy_id: str
    start_time: datetime
    end_time: datetime


class SlotAvailable(DomainEvent):
    """A previously held window was released by a cancellation."""

    event_type: Literal[EventType.SLOT_AVAILABLE] = EventType.SLOT_AVAILABLE
    therapy_id: str
    start_time: datetime
    end_time: datetime


class SessionCancelled(DomainEvent):
    event_type: Literal[EventType.SESSION_CANCELLED] = EventType.SESSION_CANCELLED
    therapy_id: str
    start_time: datetime
    end_time: datetime
    reason: str
    cancellation_type: str
    cancellation_fee: Decimal
    refund_amount: Decimal


class SessionStatusUpdate(DomainEvent):
    event_type: Literal[EventType.SESSION_STATUS_UPDATE] = EventType.SESSION_STATUS_UPDATE
    previous_status: str
    status: str


class SessionRescheduled(DomainEvent):
    event_type: Literal[EventType.SESSION_RESCHEDULED] = EventType.SESSION_RESCHEDULED
    original_start: datetime
    original_end: datetime
    new_start: datetime
    new_end: datetime
    reason: str


class Notification(BaseModel):
    """One fire-and-forget message addressed to a single user."""

    recipient_id: str
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    channels: list[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
