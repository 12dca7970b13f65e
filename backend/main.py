"""
DialBridge - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload --port 3000   (from backend/)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, settings as default_settings
from app.api import health, routes, websocket
from app.core.events import StatusBroadcaster
from app.core.exceptions import DialBridgeError
from app.core.history_store import create_history_store
from app.core.logging import SystemLogBuffer, setup_structured_logging
from app.services.tool_dispatcher import ToolDispatcher
from app.services.voice_session import VoiceSessionFactory, create_voice_session_factory
from app.telephony import router as telephony_router
from app.telephony import websocket as telephony_websocket
from app.telephony.bridge import BridgeRegistry
from app.telephony.call_ledger import CallLedger
from app.telephony.lifecycle import LifecycleReconciler
from app.telephony.providers import CarrierProvider, create_carrier

setup_structured_logging(default_settings.app_log_level, default_settings.log_json)
logger = logging.getLogger(__name__)

SERVICE_NAME = "DialBridge"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Build the broadcaster, history store, ledger and reconciler
        - Connect the carrier client and voice session factory
        - Attach the system log buffer to the ``app`` loggers

    Shutdown:
        - Close live media bridges
        - Cancel hangup fallback timers and background carrier requests
        - Release the carrier HTTP client
    """
    settings: Settings = app.state.settings

    # === Startup ===
    logger.info("🚀 %s starting in %s mode", SERVICE_NAME, settings.app_env)

    broadcaster = StatusBroadcaster(queue_size=settings.broadcast_queue_size)
    system_logs = SystemLogBuffer(
        max_entries=settings.system_log_max_entries,
        publisher=broadcaster.publish,
    )
    app_logger = logging.getLogger("app")
    app_logger.addHandler(system_logs)

    history = create_history_store(settings)
    ledger = CallLedger(
        broadcaster,
        history,
        max_active_calls=settings.max_active_calls,
        retention_minutes=settings.call_retention_minutes,
    )

    carrier: CarrierProvider = app.state.carrier or create_carrier(settings)
    session_factory: VoiceSessionFactory = (
        app.state.session_factory or create_voice_session_factory(settings)
    )

    reconciler = LifecycleReconciler(
        ledger,
        carrier,
        hangup_fallback_seconds=settings.hangup_fallback_seconds,
        default_country_code=settings.default_country_code,
        default_voice_profile=settings.default_voice_profile,
    )
    bridges = BridgeRegistry()
    reconciler.attach_bridges(bridges)
    dispatcher = ToolDispatcher(reconciler, broadcaster, retries=settings.tool_response_retries)

    app.state.broadcaster = broadcaster
    app.state.system_logs = system_logs
    app.state.history = history
    app.state.ledger = ledger
    app.state.carrier = carrier
    app.state.session_factory = session_factory
    app.state.reconciler = reconciler
    app.state.bridges = bridges
    app.state.dispatcher = dispatcher

    await ledger.start()

    logger.info("✅ Ready: carrier=%s, voice=%s", carrier.name, settings.voice_session_backend)

    yield

    # === Shutdown ===
    logger.info("👋 %s shutting down", SERVICE_NAME)
    closing = bridges.close_all()
    if closing:
        logger.info("Closing %d live media bridges", closing)
    await reconciler.shutdown()
    await ledger.stop()
    await carrier.aclose()
    app_logger.removeHandler(system_logs)
    logger.info("✅ Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    carrier: Optional[CarrierProvider] = None,
    session_factory: Optional[VoiceSessionFactory] = None,
) -> FastAPI:
    """
    Application factory.

    ``carrier`` and ``session_factory`` override the configured backends
    (used by tests and local simulation).
    """
    settings = settings or default_settings

    app = FastAPI(
        title=SERVICE_NAME,
        description="Outbound AI voice calling backend",
        version=VERSION,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.carrier = carrier
    app.state.session_factory = session_factory

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    @app.exception_handler(DialBridgeError)
    async def dialbridge_error_handler(request: Request, exc: DialBridgeError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Routes ---
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(telephony_router.router)
    app.include_router(telephony_websocket.router)
    app.include_router(websocket.router)

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": SERVICE_NAME,
            "status": "operational",
            "version": VERSION,
        }

    return app


# Create app instance
app = create_app()
