"""
DialBridge - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from fastapi import APIRouter, Request

from app.core.types import utcnow

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time
    """
    state = request.app.state
    settings = state.settings

    checks = {
        "ledger": {
            "status": "healthy",
            "active_calls": await state.ledger.get_active_count(),
            "max_active_calls": settings.max_active_calls,
        },
        "carrier": {
            "status": "healthy",
            "provider": state.carrier.name,
        },
        "voice_ai": {
            # Without a key every session open fails
            "status": "healthy" if (
                settings.gemini_api_key or settings.voice_session_backend == "dummy"
            ) else "degraded",
            "backend": settings.voice_session_backend,
        },
        "media_bridges": {
            "status": "healthy",
            "active": len(state.bridges),
        },
        "dashboard": {
            "status": "healthy",
            **state.broadcaster.get_stats(),
        },
    }

    all_healthy = all(c["status"] == "healthy" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": utcnow().isoformat(),
        "version": "0.1.0",
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check() -> dict:
    """
    Readiness probe for container orchestration.

    Returns 200 if the service is ready to accept requests.
    """
    return {
        "ready": True,
        "timestamp": utcnow().isoformat(),
    }
