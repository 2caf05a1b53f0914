"""
Ops Desk - Event Stream
=======================

WebSocket stream of domain events for live dashboards.

Connect to /api/v1/events/ws?token=<access token>. The server sends
{"type": "connected", "data": {"client_id": ...}} and then every published
event as {"type", "data", "timestamp"}. Sending "ping" gets "pong" back.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from opsdesk.api.deps import decode_token
from opsdesk.core.config import settings
from opsdesk.core.events import EventBus, QueueSubscriber

logger = structlog.get_logger()

router = APIRouter(prefix="/events", tags=["Events"])


async def _pump(websocket: WebSocket, subscriber: QueueSubscriber) -> None:
    while not subscriber.closed:
        event = await subscriber.get()
        await websocket.send_text(event.to_json())


async def _listen(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive_text()
        if message == "ping":
            await websocket.send_text("pong")


@router.websocket("/ws")
async def event_stream(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """Forward bus events to one dashboard until either side goes away."""
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    try:
        claims = decode_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    bus: EventBus = websocket.app.state.event_bus
    subscriber = bus.subscribe(QueueSubscriber(maxsize=settings.EVENT_SUBSCRIBER_QUEUE_SIZE))
    logger.info("event_stream_connected", client_id=subscriber.id, user_id=claims.get("sub"))

    tasks: set[asyncio.Task] = set()
    try:
        await websocket.send_json({"type": "connected", "data": {"client_id": subscriber.id}})

        tasks = {
            asyncio.create_task(_pump(websocket, subscriber)),
            asyncio.create_task(_listen(websocket)),
        }
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("event_stream_error", client_id=subscriber.id, error=str(error))
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        subscriber.close()
        bus.unsubscribe(subscriber)
        logger.info("event_stream_disconnected", client_id=subscriber.id)
