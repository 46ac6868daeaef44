"""Routes committed domain events to the notifier and the broadcaster.

Every collaborator call is isolated: a failing notifier or broadcaster is
logged at WARNING and the remaining deliveries still run. Nothing raised
here ever reaches the operation that produced the event.
"""

import logging
from collections.abc import Iterable
from typing import Any, Optional

from clinic_os.config import Settings, get_settings
from clinic_os.events.broadcaster import GLOBAL_CHANNEL, Broadcaster, user_channel
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
from clinic_os.events.notifier import LoggingNotifier, Notifier, WebhookNotifier

logger = logging.getLogger(__name__)

# Status -> (recipient role, notification kind)
STATUS_NOTIFICATIONS: dict[str, tuple[str, str]] = {
    "confirmed": ("patient", "session_confirmed"),
    "in-progress": ("patient", "session_started"),
    "completed": ("patient", "session_completed"),
    "no-show": ("practitioner", "session_no_show"),
}


class EventDispatcher:
    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        broadcaster: Optional[Broadcaster] = None,
    ):
        self.notifier = notifier or LoggingNotifier()
        self.broadcaster = broadcaster

    async def _notify(
        self,
        recipient_id: str,
        kind: str,
        payload: dict[str, Any],
        channels: Iterable[Channel] = (Channel.IN_APP,),
    ) -> None:
        notification = Notification(
            recipient_id=recipient_id, kind=kind, payload=payload, channels=list(channels)
        )
        try:
            await self.notifier.notify(notification)
        except Exception as e:
            logger.warning("Notification %s to %s failed: %s", kind, recipient_id, e)

    async def _emit(self, channels: Iterable[str], event: DomainEvent) -> None:
        if self.broadcaster is None:
            return
        payload = event.payload()
        for channel in channels:
            try:
                await self.broadcaster.emit(channel, event.event_type.value, payload)
            except Exception as e:
                logger.warning("Broadcast %s on %s failed: %s", event.event_type.value, channel, e)

    @staticmethod
    def _parties(event: DomainEvent) -> list[str]:
        return [user_channel(event.practitioner_id), user_channel(event.patient_id)]

    @staticmethod
    def _other_parties(event: DomainEvent) -> list[str]:
        if event.actor_id == event.patient_id:
            return [event.practitioner_id]
        if event.actor_id == event.practitioner_id:
            return [event.patient_id]
        return [event.patient_id, event.practitioner_id]

    async def session_booked(self, event: SlotBooked) -> None:
        payload = event.payload()
        await self._notify(
            event.patient_id,
            "session_booked",
            payload,
            (Channel.EMAIL, Channel.IN_APP, Channel.WHATSAPP),
        )
        await self._notify(
            event.practitioner_id, "new_booking", payload, (Channel.IN_APP, Channel.EMAIL)
        )
        await self._emit([GLOBAL_CHANNEL, *self._parties(event)], event)

    async def session_cancelled(self, event: SessionCancelled) -> None:
        payload = event.payload()
        for recipient in self._other_parties(event):
            await self._notify(recipient, "session_cancelled", payload, (Channel.IN_APP, Channel.EMAIL))
        if event.actor_id:
            await self._notify(event.actor_id, "cancellation_confirmed", payload)

        released = SlotAvailable(
            session_id=event.session_id,
            practitioner_id=event.practitioner_id,
            patient_id=event.patient_id,
            actor_id=event.actor_id,
            occurred_at=event.occurred_at,
            therapy_id=event.therapy_id,
            start_time=event.start_time,
            end_time=event.end_time,
        )
        await self._emit([GLOBAL_CHANNEL], released)
        await self._emit(self._parties(event), event)

    async def status_updated(self, event: SessionStatusUpdate) -> None:
        route = STATUS_NOTIFICATIONS.get(event.status)
        if route is not None:
            role, kind = route
            recipient = event.patient_id if role == "patient" else event.practitioner_id
            await self._notify(recipient, kind, event.payload(), (Channel.IN_APP, Channel.EMAIL))
        await self._emit(self._parties(event), event)

    async def session_rescheduled(self, event: SessionRescheduled) -> None:
        payload = event.payload()
        for recipient in self._other_parties(event):
            await self._notify(recipient, "session_rescheduled", payload, (Channel.IN_APP, Channel.EMAIL))
        if event.actor_id:
            await self._notify(event.actor_id, "reschedule_confirmed", payload)
        await self._emit(self._parties(event), event)

    async def offer_slot(self, event: SlotAvailable, recipient_ids: Iterable[str]) -> int:
        """Tell previous patients of the same therapy that a window opened up."""
        payload = event.payload()
        count = 0
        for recipient in recipient_ids:
            await self._notify(recipient, "slot_available", payload)
            count += 1
        if count:
            logger.info("Offered released slot of session %s to %d patients", event.session_id, count)
        return count

    async def dispatch(self, event: DomainEvent) -> None:
        """Route any event by its type."""
        handlers = {
            EventType.SLOT_BOOKED: self.session_booked,
            EventType.SESSION_CANCELLED: self.session_cancelled,
            EventType.SESSION_STATUS_UPDATE: self.status_updated,
            EventType.SESSION_RESCHEDULED: self.session_rescheduled,
        }
        handler = handlers.get(event.event_type)
        if handler is None:
            await self._emit([GLOBAL_CHANNEL], event)
            return
        await handler(event)


def create_dispatcher_from_settings(
    settings: Optional[Settings] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> EventDispatcher:
    """Webhook delivery when a URL is configured, log-only otherwise."""
    settings = settings or get_settings()
    if settings.has_notification_webhook:
        notifier: Notifier = WebhookNotifier(
            settings.notification_webhook_url, timeout=settings.notification_timeout
        )
    else:
        notifier = LoggingNotifier()
    return EventDispatcher(notifier=notifier, broadcaster=broadcaster)
