"""
DialBridge - Dashboard WebSocket

Streams status broadcasts to operator dashboards.

Protocol:
    Server → Client (JSON text frames):
        {"type": "connected", "activeCalls": [...]}     on connect
        {"type": "status_update", ...}                  every ledger mutation
        {"type": "transcript", "id", "sender", "text"}
        {"type": "notification", "level", "title", "message", "id"}
        {"type": "log", "log": {...}}

    Client messages are ignored. Each dashboard has its own bounded queue in
    the broadcaster, so a slow dashboard only loses its own events.
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.events import StatusBroadcaster, Subscription
from app.telephony.call_ledger import CallLedger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/dashboard-stream")
async def dashboard_stream(websocket: WebSocket):
    """Fan out broadcaster events to one dashboard."""
    broadcaster: StatusBroadcaster = websocket.app.state.broadcaster
    ledger: CallLedger = websocket.app.state.ledger

    await websocket.accept()
    subscription = broadcaster.subscribe()
    logger.info("Dashboard connected: observers=%d", broadcaster.subscriber_count)

    active = await ledger.get_active_calls()
    await websocket.send_json({
        "type": "connected",
        "activeCalls": [call.to_status_event() for call in active],
    })

    forwarder = asyncio.create_task(_forward_events(websocket, subscription))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        broadcaster.unsubscribe(subscription)
        logger.info("Dashboard disconnected (dropped %d events)", subscription.dropped)


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError):
            return
