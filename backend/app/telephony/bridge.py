"""
DialBridge - Audio Bridge

One AudioBridge per call relays audio between the carrier media socket and
the voice AI session.

Architecture:

    telephony reader ──┐                       ┌──▶ AI sender ──▶ session
                       ├──▶ events ──▶ coordinator
    session runner ────┘                       └──▶ phone sender ──▶ socket

    - Each read loop only parses and posts typed events to the coordinator
    - The coordinator owns all per-call state (stream sid, frame buffer,
      session readiness) so no state is shared between loops
    - Outbound work goes through bounded queues drained by sender tasks;
      direct frames are dropped when a queue is full, so a slow peer never
      stalls the other side
    - Caller media waiting on the coordinator is capped at the same bound;
      start, stop and close events are always delivered

Carrier protocol (JSON text frames):
    {"event": "start", "start": {"streamSid": "...", "customParameters": {"callId": "..."}}}
    {"event": "media", "media": {"payload": "<base64 μ-law>"}}
    {"event": "stop"}

Outbound:
    {"event": "media", "streamSid": "...", "media": {"payload": "<base64 μ-law>"}}
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from app.config import Settings
from app.core.events import StatusBroadcaster
from app.core.exceptions import (
    AudioDecodeError,
    CallNotFoundError,
    FrameBufferOverflowError,
    ToolResponseDeliveryError,
    VoiceSessionError,
)
from app.core.logging import call_id_var, stream_sid_var
from app.core.types import ToolCall
from app.services.prompts import build_system_instruction
from app.services.tool_dispatcher import ToolDispatcher
from app.services.voice_session import (
    AudioOutput,
    ToolCallsOutput,
    TranscriptOutput,
    VoiceSession,
    VoiceSessionFactory,
)
from .audio_processor import TelephonyAudioProcessor
from .frame_buffer import FrameBuffer
from .lifecycle import LifecycleReconciler

logger = logging.getLogger(__name__)


# =============================================================================
# Telephony Socket Interface
# =============================================================================

@runtime_checkable
class TelephonySocket(Protocol):
    """Text-framed duplex socket to the carrier."""

    @abstractmethod
    async def receive_text(self) -> Optional[str]:
        """Next text frame, or None once the socket has closed."""
        ...

    @abstractmethod
    async def send_text(self, data: str) -> None:
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        ...


# =============================================================================
# Coordinator Events
# =============================================================================

@dataclass(frozen=True)
class StreamStarted:
    stream_sid: Optional[str]
    call_id: Optional[str] = None


@dataclass(frozen=True)
class InboundMedia:
    payload: Optional[str]


@dataclass(frozen=True)
class StreamStopped:
    pass


@dataclass(frozen=True)
class TelephonyClosed:
    reason: str = "socket closed"


@dataclass(frozen=True)
class SessionReady:
    pass


@dataclass(frozen=True)
class SessionFailed:
    reason: str
    opened: bool


@dataclass(frozen=True)
class SessionAudio:
    data: bytes


@dataclass(frozen=True)
class SessionTranscript:
    sender: str
    text: str


@dataclass(frozen=True)
class SessionToolCalls:
    calls: List[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class SessionClosed:
    pass


@dataclass(frozen=True)
class CloseRequested:
    reason: str


@dataclass(frozen=True)
class BridgeEnd:
    """Why the coordinator stopped; decides how the call is finalized."""
    kind: str  # socket_closed | session_closed | session_failed | close_requested
    reason: str = ""
    opened: bool = False


# =============================================================================
# Audio Bridge
# =============================================================================

class AudioBridge:
    """
    Relays one call's audio between the carrier socket and the voice AI.

    Usage:
        bridge = AudioBridge(socket, reconciler, dispatcher, session_factory,
                             broadcaster, settings, call_id="call-...")
        await bridge.run()   # returns when the call's media leg ends
    """

    def __init__(
        self,
        socket: TelephonySocket,
        reconciler: LifecycleReconciler,
        dispatcher: ToolDispatcher,
        session_factory: VoiceSessionFactory,
        broadcaster: StatusBroadcaster,
        settings: Settings,
        call_id: Optional[str] = None,
        registry: Optional["BridgeRegistry"] = None,
    ):
        self._socket = socket
        self._reconciler = reconciler
        self._ledger = reconciler.ledger
        self._dispatcher = dispatcher
        self._factory = session_factory
        self._broadcaster = broadcaster
        self._settings = settings
        self._registry = registry

        self._call_id: Optional[str] = None
        self._initial_call_id = call_id
        self._stream_sid: Optional[str] = None

        self._processor = TelephonyAudioProcessor()
        self._buffer = FrameBuffer(settings.frame_buffer_max_frames)
        self._events: asyncio.Queue = asyncio.Queue()
        self._ai_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.bridge_queue_max_frames)
        self._phone_queue: asyncio.Queue = asyncio.Queue(maxsize=settings.bridge_queue_max_frames)

        self._session: Optional[VoiceSession] = None
        self._ai_failed = False
        self._tasks: List[asyncio.Task] = []
        self._tool_tasks: set = set()
        self._end: Optional[BridgeEnd] = None

        self._ai_frames_dropped = 0
        self._inbound_frames_dropped = 0
        self._phone_frames_dropped = 0
        self._malformed_frames = 0

    @property
    def call_id(self) -> Optional[str]:
        return self._call_id

    @property
    def stream_sid(self) -> Optional[str]:
        return self._stream_sid

    @property
    def end(self) -> Optional[BridgeEnd]:
        return self._end

    def request_close(self, reason: str = "close requested") -> None:
        """Ask the coordinator to tear the call down. Never blocks."""
        self._events.put_nowait(CloseRequested(reason))

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Drive the bridge until either side ends, then clean up once."""
        self._spawn(self._read_telephony(), "telephony_rx")
        self._spawn(self._send_to_phone(), "telephony_tx")

        try:
            if self._initial_call_id is None or await self._bind_call(self._initial_call_id):
                await self._coordinate()
        finally:
            await self._cleanup()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.append(task)
        return task

    async def _bind_call(self, call_id: str) -> bool:
        """Attach the bridge to a ledger call and start the AI session."""
        call = await self._ledger.get_call(call_id)
        if call is None or call.is_terminal:
            logger.warning("Media stream for unknown or finished call %s", call_id)
            self._end = BridgeEnd("close_requested", "unknown call")
            return False

        self._call_id = call_id
        call_id_var.set(call_id)
        if self._registry is not None:
            self._registry.register(call_id, self)

        logger.info("Media stream attached to call %s", call_id)
        await self._reconciler.on_socket_connected(call_id)

        instruction = build_system_instruction(
            call.voice_profile, call.lead_name, self._settings.agent_language,
        )
        self._spawn(self._run_session(instruction, call.voice_profile), "voice_session")
        return True

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    async def _coordinate(self) -> None:
        while self._end is None:
            event = await self._events.get()
            try:
                await self._handle(event)
            except FrameBufferOverflowError as e:
                logger.error("%s; failing call", e.message)
                self._end = BridgeEnd("session_failed", e.message, opened=False)

    async def _handle(self, event) -> None:
        if isinstance(event, InboundMedia):
            self._on_inbound_media(event.payload)

        elif isinstance(event, SessionAudio):
            self._on_session_audio(event.data)

        elif isinstance(event, StreamStarted):
            await self._on_stream_started(event)

        elif isinstance(event, SessionReady):
            await self._on_session_ready()

        elif isinstance(event, SessionTranscript):
            if self._settings.enable_transcripts and self._call_id:
                self._broadcaster.transcript(self._call_id, event.sender, event.text)
            logger.debug("%s said: %s", event.sender, event.text)

        elif isinstance(event, SessionToolCalls):
            for call in event.calls:
                task = asyncio.create_task(self._run_tool(call))
                self._tool_tasks.add(task)
                task.add_done_callback(self._tool_tasks.discard)

        elif isinstance(event, SessionFailed):
            logger.error("Voice session failed: %s", event.reason, extra={"log_type": "ERROR"})
            self._end = BridgeEnd("session_failed", event.reason, event.opened)

        elif isinstance(event, SessionClosed):
            logger.info("Voice session closed")
            self._end = BridgeEnd("session_closed")

        elif isinstance(event, (StreamStopped, TelephonyClosed)):
            logger.info("Media stream ended")
            self._end = BridgeEnd("socket_closed")

        elif isinstance(event, CloseRequested):
            logger.info("Closing media bridge: %s", event.reason)
            self._end = BridgeEnd("close_requested", event.reason)

    async def _on_stream_started(self, event: StreamStarted) -> None:
        if event.stream_sid:
            self._stream_sid = event.stream_sid
            stream_sid_var.set(event.stream_sid)
        logger.info("Media stream started: %s", event.stream_sid)

        if self._call_id is not None:
            return

        call_id = event.call_id
        if not call_id:
            latest = await self._ledger.latest_active_call()
            call_id = latest.id if latest else None
        if not call_id:
            logger.warning("Media stream started with no active call")
            self._end = BridgeEnd("close_requested", "no active call")
            return
        await self._bind_call(call_id)

    def _on_inbound_media(self, payload: Optional[str]) -> None:
        try:
            frame = self._processor.inbound(payload)
        except AudioDecodeError as e:
            self._malformed_frames += 1
            logger.warning("Dropping malformed media frame: %s", e.message)
            return

        if self._buffer.is_buffering:
            self._buffer.push(frame)
        else:
            self._offer_ai(("audio", frame.data))

    def _offer_ai(self, item: Tuple[str, object]) -> None:
        try:
            self._ai_queue.put_nowait(item)
        except asyncio.QueueFull:
            self._ai_frames_dropped += 1
            logger.debug("AI input queue full; dropped frame")

    async def _on_session_ready(self) -> None:
        logger.info("Voice session ready", extra={"log_type": "SUCCESS"})
        self._spawn(self._send_to_ai(self._session), "ai_tx")

        # Priming nudge first, then everything buffered, in order, lossless
        await self._ai_queue.put(("text", self._settings.priming_nudge))
        frames = self._buffer.flush()
        for frame in frames:
            await self._ai_queue.put(("audio", frame.data))
        if frames:
            logger.info("Flushed %d buffered frames to voice session", len(frames))

    def _on_session_audio(self, data: bytes) -> None:
        if not self._stream_sid:
            self._phone_frames_dropped += 1
            return
        try:
            payload = self._processor.outbound(data)
        except AudioDecodeError as e:
            self._malformed_frames += 1
            logger.warning("Dropping malformed AI audio: %s", e.message)
            return

        message = json.dumps({
            "event": "media",
            "streamSid": self._stream_sid,
            "media": {"payload": payload},
        })
        try:
            self._phone_queue.put_nowait(message)
        except asyncio.QueueFull:
            self._phone_frames_dropped += 1
            logger.debug("Phone output queue full; dropped frame")

    async def _run_tool(self, call: ToolCall) -> None:
        try:
            result = await self._dispatcher.handle(self._call_id, call, self._session)
        except ToolResponseDeliveryError as e:
            self._events.put_nowait(SessionFailed(e.message, opened=True))
            return

        # The agent wrapped up the call; hang up now that it has its answer
        if result.response.get("finalized"):
            self.request_close("outcome logged by agent")

    # -------------------------------------------------------------------------
    # Read loops and senders
    # -------------------------------------------------------------------------

    async def _read_telephony(self) -> None:
        while True:
            raw = await self._socket.receive_text()
            if raw is None:
                self._events.put_nowait(TelephonyClosed())
                return

            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning("Dropping non-JSON frame from carrier")
                continue
            if not isinstance(message, dict):
                continue

            event = message.get("event")
            if event == "media":
                media = message.get("media") or {}
                self._post_media(InboundMedia(media.get("payload")))
            elif event == "start":
                start = message.get("start") or {}
                params = start.get("customParameters") or {}
                self._events.put_nowait(StreamStarted(
                    stream_sid=start.get("streamSid") or message.get("streamSid"),
                    call_id=params.get("callId") or params.get("call_id"),
                ))
            elif event == "stop":
                self._events.put_nowait(StreamStopped())
                return
            else:
                logger.debug("Ignoring carrier event: %s", event)

    def _post_media(self, event: InboundMedia) -> None:
        # Caps the coordinator backlog while it waits on the AI queue; control
        # events are never dropped
        if self._events.qsize() >= self._settings.bridge_queue_max_frames:
            self._inbound_frames_dropped += 1
            logger.debug("Coordinator backlog full; dropped inbound frame")
            return
        self._events.put_nowait(event)

    async def _run_session(self, instruction: str, voice_profile: str) -> None:
        try:
            session = await self._factory.open(instruction, voice_profile)
        except VoiceSessionError as e:
            self._events.put_nowait(SessionFailed(e.message, opened=False))
            return
        except Exception as e:
            logger.exception("Unexpected error opening voice session")
            self._events.put_nowait(SessionFailed(str(e), opened=False))
            return

        self._session = session
        self._events.put_nowait(SessionReady())

        try:
            async for output in session.events():
                if isinstance(output, AudioOutput):
                    self._events.put_nowait(SessionAudio(output.data))
                elif isinstance(output, TranscriptOutput):
                    self._events.put_nowait(SessionTranscript(output.sender, output.text))
                elif isinstance(output, ToolCallsOutput):
                    self._events.put_nowait(SessionToolCalls(output.calls))
        except VoiceSessionError as e:
            self._events.put_nowait(SessionFailed(e.message, opened=True))
            return

        self._events.put_nowait(SessionClosed())

    async def _send_to_ai(self, session: VoiceSession) -> None:
        while True:
            kind, data = await self._ai_queue.get()
            if self._ai_failed:
                continue
            try:
                if kind == "text":
                    await session.send_text(data)
                else:
                    await session.send_audio(data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep draining so the coordinator never blocks on a dead session
                self._ai_failed = True
                self._events.put_nowait(SessionFailed(f"send to voice session failed: {e}", opened=True))

    async def _send_to_phone(self) -> None:
        while True:
            message = await self._phone_queue.get()
            try:
                await self._socket.send_text(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Send to carrier socket failed: %s", e)
                self._events.put_nowait(TelephonyClosed("send failed"))
                return

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def _cleanup(self) -> None:
        """Close both sides, release buffers, finalize the call once."""
        tasks = self._tasks + list(self._tool_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._session is not None:
            try:
                await self._session.close()
            except Exception as e:
                logger.warning("Error closing voice session: %s", e)

        try:
            await self._socket.close()
        except Exception as e:
            logger.debug("Carrier socket already closed: %s", e)

        self._buffer.clear()

        if self._call_id is None:
            return

        if self._registry is not None:
            self._registry.unregister(self._call_id, self)

        end = self._end or BridgeEnd("socket_closed")
        try:
            if end.kind == "session_failed":
                await self._reconciler.on_session_failed(self._call_id, end.reason, end.opened)
            elif end.kind == "session_closed":
                await self._reconciler.on_session_closed(self._call_id)
            else:
                await self._reconciler.on_socket_closed(self._call_id)
        except CallNotFoundError:
            logger.debug("Call %s evicted before bridge cleanup", self._call_id)

        logger.info("Media bridge closed: %s", self.stats)

    @property
    def stats(self) -> dict:
        return {
            "call_id": self._call_id,
            "stream_sid": self._stream_sid,
            "audio": self._processor.stats,
            "buffer": self._buffer.stats,
            "inbound_frames_dropped": self._inbound_frames_dropped,
            "ai_frames_dropped": self._ai_frames_dropped,
            "phone_frames_dropped": self._phone_frames_dropped,
            "malformed_frames": self._malformed_frames,
        }


# =============================================================================
# Registry
# =============================================================================

class BridgeRegistry:
    """Live bridges keyed by call id."""

    def __init__(self):
        self._bridges: Dict[str, AudioBridge] = {}

    def register(self, call_id: str, bridge: AudioBridge) -> None:
        previous = self._bridges.get(call_id)
        if previous is not None and previous is not bridge:
            logger.warning("Replacing media bridge for call %s", call_id)
            previous.request_close("replaced by a new media stream")
        self._bridges[call_id] = bridge

    def unregister(self, call_id: str, bridge: AudioBridge) -> None:
        if self._bridges.get(call_id) is bridge:
            del self._bridges[call_id]

    def get(self, call_id: str) -> Optional[AudioBridge]:
        return self._bridges.get(call_id)

    def request_close(self, call_id: str, reason: str = "operator hangup") -> bool:
        bridge = self._bridges.get(call_id)
        if bridge is None:
            return False
        bridge.request_close(reason)
        return True

    def close_all(self, reason: str = "shutdown") -> int:
        bridges = list(self._bridges.values())
        for bridge in bridges:
            bridge.request_close(reason)
        return len(bridges)

    @property
    def active_call_ids(self) -> List[str]:
        return list(self._bridges)

    def __len__(self) -> int:
        return len(self._bridges)
