"""
DialBridge - Telephony HTTP Endpoints

Carrier-facing webhooks: call status updates and the answer URL that
connects an answered call to the media socket.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError
from .lifecycle import LifecycleReconciler
from .models import CarrierStatusWebhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["telephony"])


async def _read_body(request: Request) -> Dict[str, Any]:
    """Carriers post either JSON or form-encoded bodies."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
        else:
            form = await request.form()
            body = dict(form)
    except ValueError as e:
        raise ValidationError("Invalid request body") from e

    if not isinstance(body, dict):
        raise ValidationError("Request body must be an object")
    return body


def build_stream_url(request: Request, call_id: Optional[str], public_base_url: Optional[str]) -> str:
    """WebSocket URL the carrier should stream media to."""
    if public_base_url:
        base = public_base_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
    else:
        host = request.headers.get("host", "localhost")
        scheme = "wss" if request.url.scheme == "https" else "ws"
        base = f"{scheme}://{host}"

    if call_id:
        return f"{base}/ws/telephony/{call_id}"
    return f"{base}/media-stream"


# =============================================================================
# Webhook Endpoints
# =============================================================================

@router.post(
    "/telephony/status",
    summary="Handle call status update",
    description="Webhook endpoint for call status updates from the carrier.",
)
async def handle_status_update(request: Request) -> dict:
    """
    Apply a carrier status webhook.

    Unknown status codes and unknown calls are acknowledged and ignored so
    the carrier does not retry them.
    """
    body = await _read_body(request)
    try:
        update = CarrierStatusWebhook.model_validate(body)
    except PydanticValidationError as e:
        logger.warning("Invalid status webhook: %s", e.error_count())
        raise ValidationError("Invalid status webhook", details={"errors": e.error_count()}) from e

    logger.info(
        "Carrier webhook: status=%s reference=%s",
        update.status, update.carrier_reference or update.call_id,
        extra={"log_type": "WEBHOOK"},
    )

    reconciler: LifecycleReconciler = request.app.state.reconciler
    applied = await reconciler.on_carrier_status(
        update.status,
        carrier_reference=update.carrier_reference,
        call_id=update.call_id,
        duration=update.duration,
    )
    return {"status": "acknowledged", "applied": applied}


@router.api_route(
    "/voice-answer",
    methods=["GET", "POST"],
    summary="Connect instructions",
    description="XML telling the carrier to stream the answered call to our media socket.",
)
async def voice_answer(request: Request, call_id: Optional[str] = None) -> Response:
    state = request.app.state
    stream_url = build_stream_url(request, call_id, state.settings.public_base_url)
    logger.info("Answer URL requested (call=%s)", call_id or "pending", extra={"log_type": "WEBHOOK"})
    return Response(
        content=state.carrier.format_connect_response(stream_url),
        media_type="application/xml",
    )
