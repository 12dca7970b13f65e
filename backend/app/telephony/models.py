"""
DialBridge - Telephony Data Models

Pydantic models for the call record held by the ledger and for the
telephony-facing request and response bodies.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.core.types import (
    CallHistoryEntry,
    CallOutcome,
    CallStatus,
    EndedBy,
    Sentiment,
    utcnow,
)
from app.services.prompts import agent_name_for_voice


class CallRecord(BaseModel):
    """
    Authoritative state of one outbound call.

    Owned by the CallLedger. Mutated only inside ``CallLedger.edit`` so every
    read-modify-write is serialized per call id.

    Privacy:
        - The dialable number is kept for the carrier only; logs and API
          responses use phone_masked
        - No audio is ever stored
    """

    # Identifiers
    id: str = Field(..., description="Locally generated call identifier")
    carrier_reference: Optional[str] = Field(None, description="Carrier's call id, bound after dial")

    # Dial-time context (immutable after creation)
    phone_number: str = Field(..., description="Normalized dialable number")
    phone_masked: str = Field(..., description="Masked number for logs and UI")
    lead_name: str
    voice_profile: str
    record: bool = False
    provider: str = "smartflo"

    # Lifecycle
    status: CallStatus = CallStatus.DIALING
    message: str = "Dialing..."
    started_at: datetime = Field(default_factory=utcnow)
    connected_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[EndedBy] = None
    pending_hangup_by: Optional[EndedBy] = None
    reported_duration: Optional[int] = Field(
        None, description="Duration reported by the carrier, or pinned to 0 when no conversation took place"
    )

    # Outcome (tool dispatcher or operator form)
    outcome: Optional[str] = None
    sentiment: Optional[str] = None
    notes: Optional[str] = None

    # Set once the single history entry has been written
    archived: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def agent_name(self) -> str:
        return agent_name_for_voice(self.voice_profile)

    def duration_seconds(self, now: Optional[datetime] = None) -> int:
        """
        Talk time in seconds.

        Zero until the call connects. A reported duration wins when set.
        """
        if self.reported_duration is not None:
            return max(0, int(self.reported_duration))
        if not self.connected_at:
            return 0
        end = self.ended_at or now or utcnow()
        return max(0, int((end - self.connected_at).total_seconds()))

    def to_status_event(self) -> Dict[str, Any]:
        """Broadcast payload for a ledger mutation."""
        return {
            "type": "status_update",
            "id": self.id,
            "status": self.status.value,
            "message": self.message,
            "endedBy": self.ended_by.value if self.ended_by else None,
            "duration": self.duration_seconds(),
            "agent": self.agent_name,
        }

    def to_history_entry(self) -> CallHistoryEntry:
        """Snapshot a finalized record into its immutable history entry."""
        ended_by = self.ended_by or EndedBy.UNKNOWN
        default_outcome = (
            CallOutcome.CALL_FINISHED if self.status == CallStatus.COMPLETED else CallOutcome.FAILED
        )
        return CallHistoryEntry(
            call_id=self.id,
            lead_name=self.lead_name,
            status=self.status,
            ended_by=ended_by,
            started_at=self.started_at,
            ended_at=self.ended_at or utcnow(),
            duration_seconds=self.duration_seconds(),
            outcome=self.outcome or default_outcome.value,
            sentiment=self.sentiment or Sentiment.NEUTRAL.value,
            notes=self.notes or f"Ended by: {ended_by.value}",
            voice_profile=self.voice_profile,
            phone_masked=self.phone_masked,
            connected_at=self.connected_at,
            carrier_reference=self.carrier_reference,
        )


# =============================================================================
# Request Bodies
# =============================================================================

class DialRequest(BaseModel):
    """
    Request body for POST /api/dial
    """

    model_config = ConfigDict(populate_by_name=True)

    phone: str = Field(..., min_length=1, description="Number to dial")
    name: str = Field("Customer", description="Lead display name")
    voice: Optional[str] = Field(None, description="Voice profile identifier")
    record: bool = False


class CarrierStatusWebhook(BaseModel):
    """
    Request body for POST /api/telephony/status

    Accepts the field spellings used by different carriers.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    carrier_reference: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("carrier_reference", "uuid", "call_uuid", "CallSid", "request_id"),
    )
    call_id: Optional[str] = Field(None, validation_alias=AliasChoices("call_id", "callId"))
    status: str = Field(..., validation_alias=AliasChoices("status", "CallStatus", "call_status"))
    duration: Optional[int] = Field(None, validation_alias=AliasChoices("duration", "CallDuration"))


class HangupRequest(BaseModel):
    """Request body for POST /api/hangup"""

    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(..., validation_alias=AliasChoices("callId", "call_id"))


class OutcomeRequest(BaseModel):
    """Request body for POST /api/calls/{call_id}/outcome (operator post-call form)."""

    outcome: CallOutcome
    sentiment: Sentiment = Sentiment.NEUTRAL
    notes: str = ""


# =============================================================================
# Responses
# =============================================================================

class DialResponse(BaseModel):
    success: bool
    callId: str
    message: Optional[str] = None


class CallRecordResponse(BaseModel):
    """API response for a ledger entry."""

    id: str
    status: CallStatus
    message: str
    leadName: str
    phone: str
    agent: str
    voiceProfile: str
    startedAt: datetime
    connectedAt: Optional[datetime] = None
    endedAt: Optional[datetime] = None
    endedBy: Optional[EndedBy] = None
    duration: int = 0
    outcome: Optional[str] = None
    sentiment: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_record(cls, record: CallRecord) -> "CallRecordResponse":
        return cls(
            id=record.id,
            status=record.status,
            message=record.message,
            leadName=record.lead_name,
            phone=record.phone_masked,
            agent=record.agent_name,
            voiceProfile=record.voice_profile,
            startedAt=record.started_at,
            connectedAt=record.connected_at,
            endedAt=record.ended_at,
            endedBy=record.ended_by,
            duration=record.duration_seconds(),
            outcome=record.outcome,
            sentiment=record.sentiment,
            notes=record.notes,
        )
