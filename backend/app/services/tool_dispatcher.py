"""
DialBridge - Tool Dispatcher

Executes the business actions the voice AI requests mid-call and returns
exactly one result per request to the session.

Supported tools:
    - book_meeting: confirm a follow-up meeting, notify the dashboard
    - log_outcome: annotate the call and finalize it as ended by the agent
    - transfer_call: flag a hand-off to a human supervisor

A failed side effect still yields a result (with an ``error`` key); the AI
blocks turn-taking until it hears back, so a missing response stalls the
call. Delivery is retried, then surfaced as ToolResponseDeliveryError.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.events import StatusBroadcaster
from app.core.exceptions import DialBridgeError, ToolResponseDeliveryError
from app.core.types import MeetingType, Sentiment, ToolCall, ToolResult
from app.services.voice_session import VoiceSession
from app.telephony.lifecycle import LifecycleReconciler

logger = logging.getLogger(__name__)


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_MEETING_TYPE_ALIASES = {
    "virtual": MeetingType.VIRTUAL,
    "google meet": MeetingType.VIRTUAL,
    "online": MeetingType.VIRTUAL,
    "in_person": MeetingType.IN_PERSON,
    "in-person": MeetingType.IN_PERSON,
    "in person": MeetingType.IN_PERSON,
    "office visit": MeetingType.IN_PERSON,
}

# Names used by older agent prompts
_TOOL_NAME_ALIASES = {
    "bookMeeting": "book_meeting",
    "logOutcome": "log_outcome",
    "transferCall": "transfer_call",
}


# =============================================================================
# Argument Schemas
# =============================================================================

class BookMeetingArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_email: str = Field(..., validation_alias=AliasChoices("client_email", "clientEmail"))
    meeting_type: MeetingType = Field(..., validation_alias=AliasChoices("meeting_type", "meetingType"))
    client_name: Optional[str] = Field(None, validation_alias=AliasChoices("client_name", "clientName"))
    date: Optional[str] = None
    time: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("client_email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("client_email is not a valid email address")
        return value

    @field_validator("meeting_type", mode="before")
    @classmethod
    def _meeting_type_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _MEETING_TYPE_ALIASES.get(value.strip().lower(), value)
        return value


class LogOutcomeArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    outcome: Literal["Meeting Booked", "Follow-up", "Not Interested", "Voicemail", "Call Later"]
    sentiment: Sentiment
    notes: str


class TransferCallArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: str = Field(..., min_length=1)


# =============================================================================
# Dispatcher
# =============================================================================

class ToolDispatcher:
    """
    Routes ToolCalls to their side effects.

    Usage:
        dispatcher = ToolDispatcher(reconciler, broadcaster)
        result = await dispatcher.handle(call_id, tool_call, session)
    """

    def __init__(
        self,
        reconciler: LifecycleReconciler,
        broadcaster: StatusBroadcaster,
        retries: int = 1,
    ):
        self._reconciler = reconciler
        self._broadcaster = broadcaster
        self._retries = max(0, retries)
        self._handlers: Dict[str, Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "book_meeting": self._book_meeting,
            "log_outcome": self._log_outcome,
            "transfer_call": self._transfer_call,
        }

    async def handle(self, call_id: str, call: ToolCall, session: VoiceSession) -> ToolResult:
        """
        Execute a tool call and deliver its result to the session.

        Raises:
            ToolResponseDeliveryError: The result could not be delivered
        """
        result = await self.dispatch(call_id, call)
        await self.deliver(session, result)
        return result

    async def dispatch(self, call_id: str, call: ToolCall) -> ToolResult:
        """Run the side effect. Always returns a result."""
        name = _TOOL_NAME_ALIASES.get(call.name, call.name)
        handler = self._handlers.get(name)

        logger.info("Tool call %s (id=%s) for call %s", call.name, call.id, call_id)

        if handler is None:
            logger.warning("Unknown tool requested: %s", call.name)
            return ToolResult(call.id, call.name, {"error": f"Unknown function: {call.name}"})

        try:
            response = await handler(call_id, call.args or {})
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
                for err in e.errors()
            )
            logger.warning("Invalid arguments for %s: %s", call.name, problems)
            response = {"error": f"Invalid arguments: {problems}"}
        except DialBridgeError as e:
            logger.warning("Tool %s failed for call %s: %s", call.name, call_id, e.message)
            response = {"error": e.message}
        except Exception:
            logger.exception("Tool %s crashed for call %s", call.name, call_id)
            response = {"error": "Internal error while handling the request"}

        return ToolResult(call.id, call.name, response)

    async def deliver(self, session: VoiceSession, result: ToolResult) -> None:
        """Send a result, retrying before giving up."""
        attempts = self._retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                await session.send_tool_response(result)
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    "Tool response delivery failed (attempt %d/%d) for %s: %s",
                    attempt, attempts, result.name, e,
                )

        logger.error("Giving up delivering tool response for %s (id=%s)", result.name, result.id)
        raise ToolResponseDeliveryError(
            f"Could not deliver {result.name} response after {attempts} attempts",
            details={"tool": result.name, "tool_call_id": result.id},
        ) from last_error

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _book_meeting(self, call_id: str, args: Dict[str, Any]) -> Dict[str, Any]:
        meeting = BookMeetingArgs.model_validate(args)

        kind = "Google Meet" if meeting.meeting_type == MeetingType.VIRTUAL else "office visit"
        when = " ".join(part for part in (meeting.date, meeting.time) if part) or "the agreed time"
        confirmation = f"Meeting booked: {kind} for {when}. Invite sent to {meeting.client_email}."

        self._broadcaster.notify(
            "success",
            "Meeting Booked",
            f"{meeting.client_name or 'Client'}: {kind}, {when}",
            call_id=call_id,
        )
        logger.info("Meeting booked for call %s: %s", call_id, kind, extra={"log_type": "SUCCESS"})
        return {"result": confirmation, "status": "booked"}

    async def _log_outcome(self, call_id: str, args: Dict[str, Any]) -> Dict[str, Any]:
        outcome = LogOutcomeArgs.model_validate(args)
        finalized = await self._reconciler.on_outcome_logged(
            call_id, outcome.outcome, outcome.sentiment.value, outcome.notes,
        )
        logger.info(
            "Outcome logged for call %s: %s (%s)",
            call_id, outcome.outcome, outcome.sentiment.value,
        )
        return {"result": f"Outcome recorded: {outcome.outcome}", "finalized": finalized}

    async def _transfer_call(self, call_id: str, args: Dict[str, Any]) -> Dict[str, Any]:
        transfer = TransferCallArgs.model_validate(args)
        await self._reconciler.on_transfer_requested(call_id, transfer.reason)
        self._broadcaster.notify(
            "alert",
            "Transferring Call",
            f"Agent requested human hand-off: {transfer.reason}",
            call_id=call_id,
        )
        return {"result": "Transferring to a human supervisor", "status": "transferring"}
