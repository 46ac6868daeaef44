"""Notification delivery boundary.

The scheduling core only decides *who* hears about an event and on which
channels; rendering and transport belong to whatever sits behind a
:class:`Notifier`.
"""

import logging
from typing import Optional, Protocol

import httpx

from clinic_os.events.models import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default notifier: writes each notification to the log."""

    async def notify(self, notification: Notification) -> None:
        logger.info(
            "Notify %s: %s via %s",
            notification.recipient_id,
            notification.kind,
            ",".join(c.value for c in notification.channels),
        )


class WebhookNotifier:
    """POSTs notifications as JSON to an external delivery service."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, notification: Notification) -> None:
        body = notification.model_dump(mode="json")
        if self._client is not None:
            response = await self._client.post(self.url, json=body)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


class RecordingNotifier:
    """Keeps every notification in memory; optionally fails on demand."""

    def __init__(self, fail: bool = False):
        self.sent: list[Notification] = []
        self.fail = fail

    async def notify(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("notification transport unavailable")
        self.sent.append(notification)

    def for_recipient(self, recipient_id: str) -> list[Notification]:
        return [n for n in self.sent if n.recipient_id == recipient_id]

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]
