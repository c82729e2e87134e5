"""WebSocket fan-out of gateway events.

Every event published on the bus is forwarded to each connected client as a
``{"type": ..., "data": ...}`` JSON envelope.  Each client gets its own
bounded queue so a slow socket never blocks a publisher.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import Any
from typing import Dict

from fastapi import APIRouter
from fastapi import WebSocket
from fastapi import WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from chatgate.events.event_bus import EventType
from chatgate.schemas.schemas import EventEnvelope

router = APIRouter()
logger = logging.getLogger(__name__)

CLIENT_QUEUE_SIZE = 256


@router.websocket("/ws/events")
async def events_endpoint(websocket: WebSocket):
    client_id = str(uuid.uuid4())
    gateway = websocket.app.state.gateway
    queue: asyncio.Queue[EventEnvelope] = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)

    async def _forward(event_type: EventType, data: Dict[str, Any]) -> None:
        envelope = EventEnvelope(type=event_type.value, data=jsonable_encoder(data))
        try:
            queue.put_nowait(envelope)
        except asyncio.QueueFull:
            logger.warning("Dropping %s for slow WebSocket client %s", event_type.value, client_id)

    # Subscribed before the handshake completes so nothing published after it is missed.
    unsubscribe = gateway.bus.subscribe_all(_forward)
    sender = None
    try:
        await websocket.accept()
        logger.info("WebSocket client %s subscribed to events", client_id)
        sender = asyncio.create_task(_send_loop(websocket, queue), name=f"ws-events-{client_id}")

        # Inbound messages are ignored; receiving only detects the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("WebSocket client %s disconnected", client_id)
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender


async def _send_loop(websocket: WebSocket, queue: "asyncio.Queue[EventEnvelope]") -> None:
    while True:
        envelope = await queue.get()
        await websocket.send_json(envelope.model_dump())
