"""
DialBridge - Core Domain Types

Internal type definitions shared by the media bridge, the call ledger and the
tool dispatcher. These are domain objects independent of API serialization.

Design Notes:
- Enums here are the vocabulary of the call lifecycle and of call outcomes.
- Frozen dataclasses are used for values that must never change once created
  (audio frames, history entries, tool calls).
- API models in app.telephony.models reuse these enums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Call Lifecycle Enums
# =============================================================================

class CallStatus(str, Enum):
    """Authoritative call status held by the ledger."""
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position along the lifecycle; terminal states share the highest rank."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    CallStatus.DIALING: 0,
    CallStatus.RINGING: 1,
    CallStatus.CONNECTED: 2,
    CallStatus.DISCONNECTING: 3,
    CallStatus.COMPLETED: 4,
    CallStatus.FAILED: 4,
}


class EndedBy(str, Enum):
    """Which party ended the call."""
    AGENT = "agent"
    CUSTOMER = "customer"
    NETWORK = "network"
    UNKNOWN = "unknown"


class CarrierStatus(str, Enum):
    """Normalized status codes reported by the carrier webhook."""
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    REJECTED = "rejected"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self not in (CarrierStatus.RINGING, CarrierStatus.ANSWERED)

    @property
    def is_unreachable(self) -> bool:
        return self in (CarrierStatus.BUSY, CarrierStatus.NO_ANSWER)


# Raw carrier vocabulary → normalized status
CARRIER_STATUS_ALIASES: Dict[str, CarrierStatus] = {
    "queued": CarrierStatus.RINGING,
    "initiated": CarrierStatus.RINGING,
    "ringing": CarrierStatus.RINGING,
    "answered": CarrierStatus.ANSWERED,
    "connected": CarrierStatus.ANSWERED,
    "in-progress": CarrierStatus.ANSWERED,
    "in_progress": CarrierStatus.ANSWERED,
    "completed": CarrierStatus.COMPLETED,
    "failed": CarrierStatus.FAILED,
    "busy": CarrierStatus.BUSY,
    "no-answer": CarrierStatus.NO_ANSWER,
    "no_answer": CarrierStatus.NO_ANSWER,
    "noanswer": CarrierStatus.NO_ANSWER,
    "rejected": CarrierStatus.REJECTED,
    "canceled": CarrierStatus.CANCELED,
    "cancelled": CarrierStatus.CANCELED,
}


def normalize_carrier_status(raw: Optional[str]) -> Optional[CarrierStatus]:
    """Map a raw carrier status string to CarrierStatus, or None if unknown."""
    if not raw:
        return None
    return CARRIER_STATUS_ALIASES.get(raw.strip().lower())


# =============================================================================
# Outcome Enums
# =============================================================================

class CallOutcome(str, Enum):
    """Business outcome of a call."""
    MEETING_BOOKED = "Meeting Booked"
    FOLLOW_UP = "Follow-up"
    NOT_INTERESTED = "Not Interested"
    VOICEMAIL = "Voicemail"
    CALL_LATER = "Call Later"
    CALL_FINISHED = "Call Finished"
    FAILED = "Failed"


class Sentiment(str, Enum):
    """Customer sentiment observed during the call."""
    POSITIVE = "Positive"
    NEUTRAL = "Neutral"
    NEGATIVE = "Negative"


class MeetingType(str, Enum):
    """Kind of follow-up meeting the agent can book."""
    VIRTUAL = "virtual"
    IN_PERSON = "in_person"


# =============================================================================
# Audio Types
# =============================================================================

class AudioCodec(str, Enum):
    """Sample encodings handled by the bridge."""
    MULAW = "audio/x-mulaw"
    PCM16 = "audio/pcm"


@dataclass(frozen=True)
class AudioFormat:
    """Format tag carried by every audio frame."""
    codec: AudioCodec
    sample_rate: int
    channels: int = 1

    @property
    def bytes_per_sample(self) -> int:
        return 1 if self.codec == AudioCodec.MULAW else 2

    @property
    def mime_type(self) -> str:
        if self.codec == AudioCodec.PCM16:
            return f"audio/pcm;rate={self.sample_rate}"
        return self.codec.value


TELEPHONY_FORMAT = AudioFormat(AudioCodec.MULAW, 8000)
"""Carrier media socket: μ-law, 8 kHz, mono."""

AI_INPUT_FORMAT = AudioFormat(AudioCodec.PCM16, 16000)
"""Voice AI input: linear PCM 16-bit, 16 kHz, mono."""

AI_OUTPUT_FORMAT = AudioFormat(AudioCodec.PCM16, 24000)
"""Voice AI output: linear PCM 16-bit, 24 kHz, mono."""


@dataclass(frozen=True)
class AudioFrame:
    """An immutable chunk of audio plus its format tag."""
    data: bytes
    format: AudioFormat

    @property
    def sample_count(self) -> int:
        return len(self.data) // (self.format.bytes_per_sample * self.format.channels)

    @property
    def duration_ms(self) -> float:
        return self.sample_count * 1000.0 / self.format.sample_rate


# =============================================================================
# Tool Calls
# =============================================================================

@dataclass(frozen=True)
class ToolCall:
    """A structured function call emitted by the voice AI."""
    id: Optional[str]
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """The single response returned to the voice AI for a ToolCall."""
    id: Optional[str]
    name: str
    response: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return "error" not in self.response


# =============================================================================
# Call History
# =============================================================================

@dataclass(frozen=True)
class CallHistoryEntry:
    """
    Immutable record appended to call history when a call is finalized.

    Exactly one entry exists per call id.
    """
    call_id: str
    lead_name: str
    status: CallStatus
    ended_by: EndedBy
    started_at: datetime
    ended_at: datetime
    duration_seconds: int
    outcome: str
    sentiment: str
    notes: str
    voice_profile: Optional[str] = None
    phone_masked: Optional[str] = None
    connected_at: Optional[datetime] = None
    carrier_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize in the shape the dashboard consumes."""
        return {
            "id": self.call_id,
            "leadName": self.lead_name,
            "timestamp": self.started_at.isoformat(),
            "duration": self.duration_seconds,
            "outcome": self.outcome,
            "sentiment": self.sentiment,
            "notes": self.notes,
            "status": self.status.value,
            "endedBy": self.ended_by.value,
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "endedAt": self.ended_at.isoformat(),
            "agent": self.voice_profile,
            "phone": self.phone_masked,
        }


@dataclass
class CallAnalytics:
    """Aggregated statistics across the call history."""
    total_calls: int = 0
    completed_calls: int = 0
    failed_calls: int = 0
    meetings_booked: int = 0
    conversion_rate: float = 0.0
    avg_duration_seconds: float = 0.0
    calls_last_hour: int = 0
    calls_last_24h: int = 0
    outcome_counts: Dict[str, int] = field(default_factory=dict)
    sentiment_counts: Dict[str, int] = field(default_factory=dict)
    ended_by_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "completed_calls": self.completed_calls,
            "failed_calls": self.failed_calls,
            "meetings_booked": self.meetings_booked,
            "conversion_rate": round(self.conversion_rate, 2),
            "avg_duration_seconds": round(self.avg_duration_seconds, 1),
            "calls_last_hour": self.calls_last_hour,
            "calls_last_24h": self.calls_last_24h,
            "outcome_counts": dict(self.outcome_counts),
            "sentiment_counts": dict(self.sentiment_counts),
            "ended_by_counts": dict(self.ended_by_counts),
        }
