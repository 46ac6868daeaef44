"""Domain events and the notification / realtime collaborators."""

from clinic_os.events.broadcaster import GLOBAL_CHANNEL, Broadcaster, InMemoryBroadcaster, user_channel
from clinic_os.events.dispatcher import EventDispatcher, create_dispatcher_from_settings
from clinic_os.events.models import (
    Channel,
    DomainEvent,
    EventType,
    Notification,
    SessionCancelled,
    SessionRescheduled,
    SessionStatusUpdate,
    SlotAvailable,
    SlotBooked,
)
from clinic_os.events.notifier import LoggingNotifier, Notifier, RecordingNotifier, WebhookNotifier

__all__ = [
    "Broadcaster",
    "Channel",
    "DomainEvent",
    "EventDispatcher",
    "EventType",
    "create_dispatcher_from_settings",
    "GLOBAL_CHANNEL",
    "InMemoryBroadcaster",
    "LoggingNotifier",
    "Notification",
    "Notifier",
    "RecordingNotifier",
    "SessionCancelled",
    "SessionRescheduled",
    "SessionStatusUpdate",
    "SlotAvailable",
    "SlotBooked",
    "WebhookNotifier",
    "user_channel",
]
