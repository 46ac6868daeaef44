"""WebSocket feed of scheduling events for a connected user."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from clinic_os.events.broadcaster import GLOBAL_CHANNEL, user_channel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/{user_id}")
async def session_events(websocket: WebSocket, user_id: str):
    """Stream events addressed to *user_id* plus global slot updates.

    Protocol:
    1. Client connects to ``/ws/{user_id}``
    2. Server pushes ``{event, channel, data}`` messages as they happen,
       e.g. ``slotBooked``, ``sessionCancelled``, ``sessionRescheduled``
    3. Client may send ``ping``; the server answers ``{"event": "pong"}``
    """
    broadcaster = getattr(websocket.app.state, "broadcaster", None)
    if broadcaster is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    queue = broadcaster.subscribe(user_channel(user_id), GLOBAL_CHANNEL)
    logger.info(f"WebSocket connected: {user_id}")

    async def pump() -> None:
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(pump())
    try:
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {user_id}")
    finally:
        sender.cancel()
        broadcaster.unsubscribe(queue)
