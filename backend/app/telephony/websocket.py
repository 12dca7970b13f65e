"""
DialBridge - Telephony WebSocket Handler

FastAPI endpoints for the carrier media stream. Each connection gets its own
AudioBridge; everything call-related happens inside the bridge.

Endpoints:
    /ws/telephony/{call_id}   call id in the path (stream URL from /api/voice-answer)
    /media-stream             call id from start.customParameters.callId, else
                              the most recently dialed active call

Privacy:
    - Audio is never persisted
    - Phone numbers are never logged
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .bridge import AudioBridge

logger = logging.getLogger(__name__)

router = APIRouter(tags=["telephony-media"])


class StarletteTelephonySocket:
    """TelephonySocket over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket

    async def receive_text(self) -> Optional[str]:
        try:
            message = await self._websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            return None

        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        if message.get("bytes") is not None:
            # Some carriers send JSON in binary frames
            return message["bytes"].decode("utf-8", errors="replace")
        return ""

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        ):
            await self._websocket.close(code=code)


async def serve_media_stream(websocket: WebSocket, call_id: Optional[str]) -> None:
    """Accept a carrier media socket and run its bridge to completion."""
    state = websocket.app.state

    if call_id is not None:
        call = await state.ledger.get_call(call_id)
        if call is None or call.is_terminal:
            logger.warning("Media stream refused for unknown or finished call %s", call_id)
            await websocket.close(code=4404, reason="Call not found")
            return

    await websocket.accept()
    logger.info("Carrier media socket connected (call=%s)", call_id or "pending")

    bridge = AudioBridge(
        StarletteTelephonySocket(websocket),
        reconciler=state.reconciler,
        dispatcher=state.dispatcher,
        session_factory=state.session_factory,
        broadcaster=state.broadcaster,
        settings=state.settings,
        call_id=call_id,
        registry=state.bridges,
    )
    await bridge.run()


@router.websocket("/ws/telephony/{call_id}")
async def telephony_stream(websocket: WebSocket, call_id: str):
    await serve_media_stream(websocket, call_id)


@router.websocket("/media-stream")
async def media_stream(websocket: WebSocket):
    await serve_media_stream(websocket, None)
