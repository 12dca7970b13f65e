"""
DialBridge - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import json
import os
import sys
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.core.events import StatusBroadcaster
from app.core.history_store import InMemoryCallHistoryStore
from app.services.tool_dispatcher import ToolDispatcher
from app.services.voice_session import DummyVoiceSessionFactory
from app.telephony.bridge import BridgeRegistry
from app.telephony.call_ledger import CallLedger
from app.telephony.lifecycle import LifecycleReconciler
from app.telephony.providers.simulator import SimulatorProvider


# =============================================================================
# Fakes
# =============================================================================

class FakeTelephonySocket:
    """
    In-memory carrier socket.

    Tests feed frames with ``feed()`` / ``feed_json()`` and end the stream
    with ``disconnect()``. Everything the bridge sends lands in ``sent``.
    """

    def __init__(self):
        self._inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None

    def feed(self, text: str) -> None:
        self._inbound.put_nowait(text)

    def feed_json(self, message: dict) -> None:
        self.feed(json.dumps(message))

    def disconnect(self) -> None:
        self._inbound.put_nowait(None)

    async def receive_text(self) -> Optional[str]:
        if self.closed and self._inbound.empty():
            return None
        return await self._inbound.get()

    async def send_text(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        if not self.closed:
            self.closed = True
            self.close_code = code
            self._inbound.put_nowait(None)


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Test settings: simulator carrier, in-process voice sessions, fast timers."""
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        carrier_provider="simulator",
        voice_session_backend="dummy",
        gemini_api_key="",
        frame_buffer_max_frames=50,
        bridge_queue_max_frames=100,
        hangup_fallback_seconds=0.2,
        tool_response_retries=1,
        max_active_calls=10,
        history_max_entries=100,
        broadcast_queue_size=100,
    )


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def broadcaster() -> StatusBroadcaster:
    return StatusBroadcaster(queue_size=100)


@pytest.fixture
def history_store() -> InMemoryCallHistoryStore:
    """Create a fresh in-memory history store."""
    return InMemoryCallHistoryStore(max_entries=100)


@pytest.fixture
def ledger(broadcaster: StatusBroadcaster, history_store: InMemoryCallHistoryStore) -> CallLedger:
    return CallLedger(broadcaster, history_store, max_active_calls=10)


@pytest.fixture
def carrier() -> SimulatorProvider:
    return SimulatorProvider()


@pytest.fixture
def reconciler(ledger: CallLedger, carrier: SimulatorProvider, test_settings: Settings) -> LifecycleReconciler:
    return LifecycleReconciler(
        ledger,
        carrier,
        hangup_fallback_seconds=test_settings.hangup_fallback_seconds,
    )


@pytest.fixture
def bridges(reconciler: LifecycleReconciler) -> BridgeRegistry:
    registry = BridgeRegistry()
    reconciler.attach_bridges(registry)
    return registry


@pytest.fixture
def dispatcher(reconciler: LifecycleReconciler, broadcaster: StatusBroadcaster) -> ToolDispatcher:
    return ToolDispatcher(reconciler, broadcaster, retries=1)


@pytest.fixture
def session_factory() -> DummyVoiceSessionFactory:
    return DummyVoiceSessionFactory()


@pytest.fixture
def telephony_socket() -> FakeTelephonySocket:
    return FakeTelephonySocket()


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, carrier: SimulatorProvider):
    """Create a FastAPI app wired to the simulator carrier and dummy voice sessions."""
    # Import here so the module-level app is built after sys.path is set
    from main import create_app

    return create_app(
        settings=test_settings,
        carrier=carrier,
        session_factory=DummyVoiceSessionFactory(),
    )


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
