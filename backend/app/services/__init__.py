"""
DialBridge - Services Package

Contains service interfaces and implementations for:
- Voice AI sessions (Gemini Live)
- Agent persona prompts

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    The media bridge is configured with concrete implementations at startup,
    enabling dependency injection and easy testing/swapping of components.

The tool dispatcher lives in ``app.services.tool_dispatcher`` and is imported
from there directly; it depends on the telephony lifecycle.
"""

from .prompts import (
    agent_name_for_voice,
    build_system_instruction,
    resolve_voice_profile,
)
from .voice_session import (
    VoiceSession,
    VoiceSessionFactory,
    GeminiLiveSessionFactory,
    DummyVoiceSessionFactory,
    create_voice_session_factory,
)

__all__ = [
    # Prompts
    "agent_name_for_voice",
    "build_system_instruction",
    "resolve_voice_profile",
    # Voice sessions
    "VoiceSession",
    "VoiceSessionFactory",
    "GeminiLiveSessionFactory",
    "DummyVoiceSessionFactory",
    "create_voice_session_factory",
]
