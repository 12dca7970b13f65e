"""
DialBridge - Voice AI Session

Duplex session with the generative voice AI.

Architecture:
    - VoiceSession / VoiceSessionFactory Protocols define the interface the
      media bridge depends on
    - GeminiLiveSessionFactory: Gemini Live implementation (google-genai)
    - DummyVoiceSessionFactory: In-process stand-in for development and tests

Audio contract:
    - Input: linear PCM 16-bit, 16kHz, mono
    - Output: linear PCM 16-bit, 24kHz, mono

A session yields typed events from ``events()``; the bridge consumes them on
its own task, so nothing here touches call state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Protocol, Union, runtime_checkable

from google import genai
from google.genai import types

from app.config import Settings
from app.core.exceptions import VoiceSessionError, VoiceSessionOpenError
from app.core.types import AI_INPUT_FORMAT, ToolCall, ToolResult
from app.services.prompts import resolve_voice_profile

logger = logging.getLogger(__name__)


# =============================================================================
# Session Events
# =============================================================================

@dataclass(frozen=True)
class AudioOutput:
    """A chunk of AI speech (PCM16, 24kHz)."""
    data: bytes


@dataclass(frozen=True)
class TranscriptOutput:
    """A transcription fragment; sender is "user" or "agent"."""
    sender: str
    text: str


@dataclass(frozen=True)
class ToolCallsOutput:
    """One or more function calls emitted in a single message."""
    calls: List[ToolCall] = field(default_factory=list)


VoiceSessionEvent = Union[AudioOutput, TranscriptOutput, ToolCallsOutput]


# =============================================================================
# Protocols (Interface)
# =============================================================================

@runtime_checkable
class VoiceSession(Protocol):
    """An open duplex session with the voice AI."""

    @abstractmethod
    async def send_audio(self, pcm16k: bytes) -> None:
        """Stream caller audio (PCM16, 16kHz) into the session."""
        ...

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Send a complete user text turn (used for the priming nudge)."""
        ...

    @abstractmethod
    async def send_tool_response(self, result: ToolResult) -> None:
        """Return the result of one tool call."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[VoiceSessionEvent]:
        """
        Iterate session output until the session closes.

        Raises:
            VoiceSessionError: If the session fails mid-call
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@runtime_checkable
class VoiceSessionFactory(Protocol):
    """Opens sessions for the media bridge."""

    @abstractmethod
    async def open(self, system_instruction: str, voice_profile: str) -> VoiceSession:
        """
        Raises:
            VoiceSessionOpenError: Auth, quota or network failure
        """
        ...


# =============================================================================
# Tool Declarations
# =============================================================================

def build_tools() -> List[types.Tool]:
    """Function declarations for the business actions the agent may take."""
    return [
        types.Tool(
            function_declarations=[
                types.FunctionDeclaration(
                    name="book_meeting",
                    description="Books a follow-up meeting (virtual or office visit) and sends an invite to the client.",
                    parameters=types.Schema(
                        type=types.Type.OBJECT,
                        properties={
                            "client_name": types.Schema(type=types.Type.STRING, description="Name of the client"),
                            "client_email": types.Schema(
                                type=types.Type.STRING, description="Client email address for the calendar invite"
                            ),
                            "meeting_type": types.Schema(
                                type=types.Type.STRING,
                                enum=["virtual", "in_person"],
                                description="virtual (Google Meet) or in_person (office visit)",
                            ),
                            "date": types.Schema(type=types.Type.STRING, description='Proposed date (e.g. "next Tuesday")'),
                            "time": types.Schema(type=types.Type.STRING, description="Proposed time"),
                            "notes": types.Schema(type=types.Type.STRING, description="Meeting focus"),
                        },
                        required=["client_email", "meeting_type"],
                    ),
                ),
                types.FunctionDeclaration(
                    name="log_outcome",
                    description="Logs the call outcome to the CRM. Call this before ending the conversation.",
                    parameters=types.Schema(
                        type=types.Type.OBJECT,
                        properties={
                            "outcome": types.Schema(
                                type=types.Type.STRING,
                                enum=["Meeting Booked", "Follow-up", "Not Interested", "Voicemail", "Call Later"],
                            ),
                            "sentiment": types.Schema(
                                type=types.Type.STRING, enum=["Positive", "Neutral", "Negative"]
                            ),
                            "notes": types.Schema(type=types.Type.STRING, description="Summary of the call"),
                        },
                        required=["outcome", "sentiment", "notes"],
                    ),
                ),
                types.FunctionDeclaration(
                    name="transfer_call",
                    description="Transfers the call to a human supervisor.",
                    parameters=types.Schema(
                        type=types.Type.OBJECT,
                        properties={
                            "reason": types.Schema(
                                type=types.Type.STRING,
                                description='Reason for transfer (e.g. "User requested human")',
                            ),
                        },
                        required=["reason"],
                    ),
                ),
            ]
        )
    ]


# =============================================================================
# Gemini Live Implementation
# =============================================================================

class GeminiLiveSession:
    """VoiceSession backed by a Gemini Live connection."""

    def __init__(self, session, exit_stack: AsyncExitStack):
        self._session = session
        self._stack = exit_stack
        self._closed = False

    async def send_audio(self, pcm16k: bytes) -> None:
        await self._session.send_realtime_input(
            audio=types.Blob(data=pcm16k, mime_type=AI_INPUT_FORMAT.mime_type)
        )

    async def send_text(self, text: str) -> None:
        await self._session.send_client_content(
            turns=types.Content(role="user", parts=[types.Part(text=text)]),
            turn_complete=True,
        )

    async def send_tool_response(self, result: ToolResult) -> None:
        await self._session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=result.id, name=result.name, response=result.response)
            ]
        )

    async def events(self) -> AsyncIterator[VoiceSessionEvent]:
        try:
            while not self._closed:
                received = False
                # receive() ends at each turn boundary
                async for message in self._session.receive():
                    received = True
                    for event in self._translate(message):
                        yield event
                if not received:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._closed:
                return
            raise VoiceSessionError(f"Voice session failed: {e}") from e

    @staticmethod
    def _translate(message) -> List[VoiceSessionEvent]:
        events: List[VoiceSessionEvent] = []

        server_content = message.server_content
        if server_content:
            model_turn = server_content.model_turn
            if model_turn and model_turn.parts:
                for part in model_turn.parts:
                    if part.inline_data and part.inline_data.data:
                        events.append(AudioOutput(part.inline_data.data))

            if server_content.input_transcription and server_content.input_transcription.text:
                events.append(TranscriptOutput("user", server_content.input_transcription.text))
            if server_content.output_transcription and server_content.output_transcription.text:
                events.append(TranscriptOutput("agent", server_content.output_transcription.text))

        if message.tool_call and message.tool_call.function_calls:
            events.append(ToolCallsOutput([
                ToolCall(id=fc.id, name=fc.name, args=dict(fc.args or {}))
                for fc in message.tool_call.function_calls
            ]))

        return events

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()


class GeminiLiveSessionFactory:
    """Opens Gemini Live sessions configured for phone audio."""

    def __init__(
        self,
        api_key: str,
        model: str,
        default_voice: str = "Puck",
        enable_transcripts: bool = True,
    ):
        self._api_key = api_key
        self._model = model
        self._default_voice = default_voice
        self._enable_transcripts = enable_transcripts
        self._tools = build_tools()

        logger.info(
            "GeminiLiveSessionFactory initialized: model=%s, transcripts=%s",
            model, enable_transcripts,
        )

    def _build_config(self, system_instruction: str, voice_profile: str) -> types.LiveConnectConfig:
        voice = resolve_voice_profile(voice_profile, self._default_voice)
        transcription = {}
        if self._enable_transcripts:
            transcription = {
                "input_audio_transcription": types.AudioTranscriptionConfig(),
                "output_audio_transcription": types.AudioTranscriptionConfig(),
            }
        return types.LiveConnectConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice)
                )
            ),
            system_instruction=types.Content(parts=[types.Part(text=system_instruction)]),
            tools=self._tools,
            **transcription,
        )

    async def open(self, system_instruction: str, voice_profile: str) -> VoiceSession:
        if not self._api_key:
            raise VoiceSessionOpenError("GEMINI_API_KEY is not configured")

        client = genai.Client(api_key=self._api_key)
        stack = AsyncExitStack()
        try:
            session = await stack.enter_async_context(
                client.aio.live.connect(
                    model=self._model,
                    config=self._build_config(system_instruction, voice_profile),
                )
            )
        except Exception as e:
            await stack.aclose()
            raise VoiceSessionOpenError(f"Failed to open voice session: {e}") from e

        logger.info("Voice session opened: model=%s, voice=%s", self._model, voice_profile)
        return GeminiLiveSession(session, stack)


# =============================================================================
# Dummy Implementation
# =============================================================================

class DummyVoiceSession:
    """
    In-process session that records input and replays pushed events.

    Tests drive it with ``push(event)``, ``fail(exc)`` and ``finish()``.
    """

    _END = object()

    def __init__(self, system_instruction: str = "", voice_profile: str = "Puck"):
        self.system_instruction = system_instruction
        self.voice_profile = voice_profile
        self.audio: List[bytes] = []
        self.texts: List[str] = []
        self.tool_responses: List[ToolResult] = []
        # Ordered record of everything sent, as ("audio"|"text"|"tool", payload)
        self.sent: List[tuple] = []
        self.closed = False
        self.fail_tool_responses = 0
        self._events: asyncio.Queue = asyncio.Queue()

    async def send_audio(self, pcm16k: bytes) -> None:
        self.audio.append(pcm16k)
        self.sent.append(("audio", pcm16k))

    async def send_text(self, text: str) -> None:
        self.texts.append(text)
        self.sent.append(("text", text))

    async def send_tool_response(self, result: ToolResult) -> None:
        if self.fail_tool_responses > 0:
            self.fail_tool_responses -= 1
            raise ConnectionError("tool response not delivered")
        self.tool_responses.append(result)
        self.sent.append(("tool", result))

    def push(self, event: VoiceSessionEvent) -> None:
        self._events.put_nowait(event)

    def fail(self, error: Exception) -> None:
        self._events.put_nowait(error)

    def finish(self) -> None:
        self._events.put_nowait(self._END)

    async def events(self) -> AsyncIterator[VoiceSessionEvent]:
        while True:
            item = await self._events.get()
            if item is self._END:
                return
            if isinstance(item, Exception):
                raise VoiceSessionError(str(item)) from item
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.finish()


class DummyVoiceSessionFactory:
    """Factory for DummyVoiceSession; can simulate open failures and slow opens."""

    def __init__(self, open_error: Optional[Exception] = None, open_delay: float = 0.0):
        self.open_error = open_error
        self.open_delay = open_delay
        self.sessions: List[DummyVoiceSession] = []
        self.opened = asyncio.Event()
        self._gate: Optional[asyncio.Event] = None

    def hold(self) -> None:
        """Block subsequent opens until release() is called."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def open(self, system_instruction: str, voice_profile: str) -> VoiceSession:
        if self._gate is not None:
            await self._gate.wait()
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.open_error is not None:
            raise VoiceSessionOpenError(f"Failed to open voice session: {self.open_error}")
        session = DummyVoiceSession(system_instruction, voice_profile)
        self.sessions.append(session)
        self.opened.set()
        return session


# =============================================================================
# Factory Function
# =============================================================================

def create_voice_session_factory(settings: Settings) -> VoiceSessionFactory:
    """
    Create the voice session factory based on settings.

    ``voice_session_backend=dummy`` uses the in-process session (development).
    """
    if settings.voice_session_backend.lower() == "dummy":
        logger.info("Using DummyVoiceSessionFactory")
        return DummyVoiceSessionFactory()

    return GeminiLiveSessionFactory(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        default_voice=settings.default_voice_profile,
        enable_transcripts=settings.enable_transcripts,
    )
