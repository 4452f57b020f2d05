"""WebSocket stream of stored telemetry.

Every connection gets its own subscription on the application broadcaster and
receives ``{"event": "telemetry:update", "data": <sample>}`` messages. Inbound
messages are read and ignored; they only tell us when the client goes away.
"""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.core.logging import get_logger
from app.services.broadcaster import Subscription, TelemetryBroadcaster

logger = get_logger(__name__)

router = APIRouter()


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.next_event()
        if event is None:
            return
        await websocket.send_json(event)


async def _drain_inbound(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def telemetry_stream(websocket: WebSocket):
    """Stream telemetry updates to a connected observer"""
    broadcaster: TelemetryBroadcaster = websocket.app.state.broadcaster
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"

    # Subscribe first so nothing published during the handshake is missed
    subscription = broadcaster.subscribe(client=client)
    log = logger.bind(subscription=subscription.id, client=client)
    tasks = []
    try:
        await websocket.accept()
        log.debug("WebSocket stream opened")

        forward = asyncio.create_task(_forward_events(websocket, subscription))
        drain = asyncio.create_task(_drain_inbound(websocket))
        tasks = [forward, drain]

        done, pending = await asyncio.wait({forward, drain}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                if not isinstance(exc, WebSocketDisconnect):
                    log.warning("WebSocket stream ended with error", error=exc)

        if forward in done:
            # Broadcaster shut down
            try:
                await websocket.close(code=status.WS_1001_GOING_AWAY)
            except RuntimeError:
                pass
    finally:
        for task in tasks:
            task.cancel()
        broadcaster.unsubscribe(subscription)
        await asyncio.gather(*tasks, return_exceptions=True)
        log.debug("WebSocket stream closed")
