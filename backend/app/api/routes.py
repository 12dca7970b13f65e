"""
DialBridge - REST API Routes

Operator-facing endpoints: dial, hangup, ledger views, post-call outcome,
call history and analytics, and the system log panel.

Architecture:
    Routes are a thin layer over the core objects stored on app.state by
    the application lifespan:
    - reconciler: every lifecycle change (dial, hangup)
    - ledger: call views and operator outcome form
    - history: finalized calls and aggregates
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from app.config import Settings
from app.core.exceptions import CallNotFoundError
from app.core.history_store import CallHistoryStore
from app.core.logging import SystemLogBuffer
from app.telephony.call_ledger import CallLedger
from app.telephony.lifecycle import LifecycleReconciler
from app.telephony.models import (
    CallRecordResponse,
    DialRequest,
    DialResponse,
    HangupRequest,
    OutcomeRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])


# =============================================================================
# Dependencies
# =============================================================================

def get_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


def get_reconciler(request: Request) -> LifecycleReconciler:
    return request.app.state.reconciler


def get_ledger(request: Request) -> CallLedger:
    return request.app.state.ledger


def get_history_store(request: Request) -> CallHistoryStore:
    return request.app.state.history


def get_system_logs(request: Request) -> SystemLogBuffer:
    return request.app.state.system_logs


def _public_base(request: Request, settings: Settings) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


# =============================================================================
# Calls
# =============================================================================

@router.post("/dial", response_model=DialResponse)
async def dial(
    body: DialRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    reconciler: LifecycleReconciler = Depends(get_reconciler),
):
    """
    Place an outbound call.

    The ledger entry exists before the carrier is asked; a carrier refusal
    leaves it ``failed`` and surfaces as a 400 error body.
    """
    base = _public_base(request, settings)
    call = await reconciler.dial(
        phone=body.phone,
        lead_name=body.name,
        voice_profile=body.voice,
        record=body.record,
        answer_url_for=lambda call_id: f"{base}/api/voice-answer?call_id={call_id}",
    )
    return DialResponse(success=True, callId=call.id, message=call.message)


@router.post("/hangup")
async def hangup(
    body: HangupRequest,
    reconciler: LifecycleReconciler = Depends(get_reconciler),
):
    """Operator hangup. Returns immediately; the carrier is notified in the background."""
    call = await reconciler.request_hangup(body.call_id)
    return {"success": True, "callId": call.id, "status": call.status.value}


@router.get("/calls/active")
async def get_active_calls(ledger: CallLedger = Depends(get_ledger)) -> dict:
    calls = await ledger.get_active_calls()
    return {
        "count": len(calls),
        "calls": [CallRecordResponse.from_record(c).model_dump(mode="json") for c in calls],
    }


@router.get("/calls/{call_id}", response_model=CallRecordResponse)
async def get_call(call_id: str, ledger: CallLedger = Depends(get_ledger)):
    call = await ledger.get_call_or_raise(call_id)
    return CallRecordResponse.from_record(call)


@router.post("/calls/{call_id}/outcome")
async def record_outcome(
    call_id: str,
    body: OutcomeRequest,
    ledger: CallLedger = Depends(get_ledger),
    history: CallHistoryStore = Depends(get_history_store),
):
    """
    Operator post-call form.

    Amends the ledger entry; an archived call has its history entry replaced
    in place. Calls already evicted from the ledger are amended in history.
    """
    try:
        await ledger.amend_outcome(call_id, body.outcome.value, body.sentiment.value, body.notes)
    except CallNotFoundError:
        entry = await history.amend(
            call_id, outcome=body.outcome.value, sentiment=body.sentiment.value, notes=body.notes,
        )
        if entry is None:
            raise
    logger.info("Operator outcome for call %s: %s", call_id, body.outcome.value)
    return {"success": True, "callId": call_id}


# =============================================================================
# History & Analytics
# =============================================================================

@router.get("/history", tags=["history"])
async def get_history(
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum entries to return"),
    history: CallHistoryStore = Depends(get_history_store),
) -> List[dict]:
    """Finalized calls, newest first."""
    entries = await history.get_recent(limit=limit)
    return [entry.to_dict() for entry in entries]


@router.get("/stats", tags=["history"])
async def get_stats(history: CallHistoryStore = Depends(get_history_store)) -> dict:
    """Aggregate analytics plus the five most recent calls."""
    analytics = await history.get_aggregate_stats()
    recent = await history.get_recent(limit=5)
    return {
        **analytics.to_dict(),
        "recent_calls": [entry.to_dict() for entry in recent],
    }


# =============================================================================
# System Logs
# =============================================================================

@router.get("/system-logs", tags=["system"])
async def get_system_logs_entries(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    system_logs: SystemLogBuffer = Depends(get_system_logs),
) -> List[dict]:
    """Recent application log entries, newest first."""
    return system_logs.entries(limit)


@router.delete("/system-logs", tags=["system"])
async def clear_system_logs(system_logs: SystemLogBuffer = Depends(get_system_logs)) -> dict:
    system_logs.clear()
    return {"success": True}
