"""
DialBridge - Call Lifecycle Reconciler

Merges three independent signal sources into ledger transitions:

    1. Dial response      dialing → ringing | failed
    2. Carrier webhook    ringing, answered, or a terminal code
    3. Media bridge       socket connected, socket closed, AI session
                          failed/closed, plus tool-driven outcomes

State machine:

    dialing ──▶ ringing ──▶ connected ──▶ disconnecting ──▶ completed
       │           │                                          ▲
       └───────────┴──────────────▶ failed                    │
                                                  (fallback timer)

Rules:
    - Non-terminal transitions only move forward; late events that would
      move a call backward are ignored
    - Terminal states are never left
    - connected_at is set once, by whichever connect signal arrives first
    - ended_by is resolved in one place (_finalize)
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from app.core.exceptions import (
    CarrierError,
    CarrierRejectedError,
    ValidationError,
)
from app.core.logging import LogContext
from app.core.types import (
    CallStatus,
    CarrierStatus,
    EndedBy,
    normalize_carrier_status,
    utcnow,
)
from .call_ledger import CallLedger
from .models import CallRecord
from .privacy import mask_phone_number, normalize_phone_number
from .providers.base import CarrierProvider

if TYPE_CHECKING:
    from .bridge import BridgeRegistry

logger = logging.getLogger(__name__)


TRANSFER_MESSAGE = "Transferring to Senior Manager (Human)..."

_STATUS_MESSAGES = {
    CallStatus.RINGING: "Ringing Customer...",
    CallStatus.CONNECTED: "Connected",
    CallStatus.DISCONNECTING: "Hanging up...",
}


@dataclass(frozen=True)
class ParkedEvent:
    """A webhook that arrived before its carrier reference was bound."""
    status: CarrierStatus
    duration: Optional[int]


class LifecycleReconciler:
    """
    Applies lifecycle signals to the ledger.

    Usage:
        reconciler = LifecycleReconciler(ledger, carrier, hangup_fallback_seconds=10)

        call = await reconciler.dial("+91 98765 43210", "Aditi", "Puck")
        await reconciler.on_carrier_status("answered", carrier_reference="abc")
        await reconciler.request_hangup(call.id)
    """

    def __init__(
        self,
        ledger: CallLedger,
        carrier: CarrierProvider,
        hangup_fallback_seconds: float = 10.0,
        default_country_code: str = "91",
        default_voice_profile: str = "Puck",
        max_parked_references: int = 100,
    ):
        self._ledger = ledger
        self._carrier = carrier
        self._fallback_seconds = hangup_fallback_seconds
        self._country_code = default_country_code
        self._default_voice = default_voice_profile
        self._max_parked = max_parked_references

        self._bridges: Optional["BridgeRegistry"] = None
        self._fallback_timers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._parked: "OrderedDict[str, List[ParkedEvent]]" = OrderedDict()

    @property
    def ledger(self) -> CallLedger:
        return self._ledger

    def attach_bridges(self, bridges: "BridgeRegistry") -> None:
        """Register the live media bridges so hangups can close them locally."""
        self._bridges = bridges

    # -------------------------------------------------------------------------
    # Transition helpers (call with the record held by ledger.edit)
    # -------------------------------------------------------------------------

    @staticmethod
    def _advance(call: CallRecord, target: CallStatus, message: Optional[str] = None) -> bool:
        """Move a call forward; anything that is not strictly forward is ignored."""
        if call.is_terminal or target.is_terminal:
            logger.debug(
                "Ignoring %s for call %s in terminal state %s",
                target.value, call.id, call.status.value,
            )
            return False
        if target.rank <= call.status.rank:
            logger.debug(
                "Ignoring out-of-order %s for call %s (already %s)",
                target.value, call.id, call.status.value,
            )
            return False

        call.status = target
        call.message = message or _STATUS_MESSAGES.get(target, call.message)
        if target == CallStatus.CONNECTED and call.connected_at is None:
            call.connected_at = utcnow()
        logger.info("Call %s → %s", call.id, target.value)
        return True

    @staticmethod
    def _mark_connected(call: CallRecord) -> bool:
        """Record proof of audio; never regresses a disconnecting call."""
        if call.is_terminal:
            return False
        if call.connected_at is None and call.status == CallStatus.DISCONNECTING:
            call.connected_at = utcnow()
            return False
        if call.status == CallStatus.CONNECTED:
            return False
        return LifecycleReconciler._advance(call, CallStatus.CONNECTED)

    @staticmethod
    def _resolve_ended_by(
        call: CallRecord,
        carrier_status: Optional[CarrierStatus],
        fallback: EndedBy,
    ) -> EndedBy:
        if call.pending_hangup_by is not None:
            return call.pending_hangup_by
        if carrier_status is not None and carrier_status.is_unreachable:
            return EndedBy.NETWORK
        return fallback

    def _finalize(
        self,
        call: CallRecord,
        status: CallStatus,
        message: str,
        carrier_status: Optional[CarrierStatus] = None,
        fallback: EndedBy = EndedBy.CUSTOMER,
    ) -> bool:
        """
        The single terminal write for a call. Idempotent.

        The ledger archives the record to history when the edit exits.
        """
        if call.is_terminal:
            logger.debug("Call %s already finalized as %s", call.id, call.status.value)
            return False

        call.status = status
        call.message = message
        call.ended_at = utcnow()
        call.ended_by = self._resolve_ended_by(call, carrier_status, fallback)
        logger.info(
            "Finalizing call %s: status=%s, ended_by=%s",
            call.id, status.value, call.ended_by.value,
        )
        return True

    def _on_finalized(self, call_id: str) -> None:
        timer = self._fallback_timers.pop(call_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    # -------------------------------------------------------------------------
    # Dial
    # -------------------------------------------------------------------------

    async def dial(
        self,
        phone: str,
        lead_name: Optional[str],
        voice_profile: Optional[str] = None,
        record: bool = False,
        answer_url_for: Optional[Callable[[str], str]] = None,
    ) -> CallRecord:
        """
        Create a call and ask the carrier to place it.

        Raises:
            ValidationError: The number has no digits
            CallLimitError: Too many calls in flight
            CarrierRejectedError: The carrier refused (call is marked failed)
            CarrierUnavailableError: The carrier was unreachable (call is marked failed)
        """
        try:
            number = normalize_phone_number(phone, self._country_code)
        except ValueError as e:
            raise ValidationError(str(e), details={"field": "phone"}) from e

        call = await self._ledger.create_call(
            phone_number=number,
            lead_name=lead_name or "Customer",
            voice_profile=voice_profile or self._default_voice,
            record=record,
            provider=self._carrier.name,
        )

        with LogContext(call_id=call.id):
            logger.info(
                "Dialing %s for %s", mask_phone_number(number), call.lead_name,
                extra={"log_type": "API_REQ"},
            )
            answer_url = answer_url_for(call.id) if answer_url_for else None
            try:
                result = await self._carrier.dial(number, call.id, answer_url)
            except CarrierError as e:
                await self.on_dial_rejected(call.id, e.message)
                raise

            if not result.accepted:
                await self.on_dial_rejected(call.id, result.message)
                raise CarrierRejectedError(
                    result.message or "Carrier rejected the call",
                    details={"call_id": call.id},
                )

            await self.on_dial_accepted(call.id, result.reference)

        return await self._ledger.get_call_or_raise(call.id)

    async def on_dial_accepted(self, call_id: str, reference: Optional[str]) -> None:
        async with self._ledger.edit(call_id) as call:
            bound = False
            if reference and not call.carrier_reference:
                call.carrier_reference = reference
                bound = True
            self._advance(call, CallStatus.RINGING)
            # Operator hung up before the carrier told us which call to end
            hangup_reference = reference if bound and call.pending_hangup_by else None

        if hangup_reference:
            logger.info("Forwarding early operator hangup for call %s", call_id)
            self._spawn(self._carrier_hangup(call_id, hangup_reference))

        if reference:
            await self._replay_parked(reference)

    async def on_dial_rejected(self, call_id: str, message: str) -> None:
        async with self._ledger.edit(call_id) as call:
            finalized = self._finalize(
                call, CallStatus.FAILED, f"Failed: {message}", fallback=EndedBy.NETWORK,
            )
        if finalized:
            self._on_finalized(call_id)

    # -------------------------------------------------------------------------
    # Carrier webhook
    # -------------------------------------------------------------------------

    async def on_carrier_status(
        self,
        raw_status: str,
        carrier_reference: Optional[str] = None,
        call_id: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> bool:
        """
        Apply a carrier webhook.

        Returns True if the event was applied to a known call. Events for a
        carrier reference not yet bound are parked and replayed on bind.
        """
        status = normalize_carrier_status(raw_status)
        if status is None:
            logger.debug("Ignoring unknown carrier status: %s", raw_status)
            return False

        resolved = None
        if call_id and await self._ledger.get_call(call_id) is not None:
            resolved = call_id
        if resolved is None:
            resolved = self._ledger.find_by_carrier_reference(carrier_reference)

        if resolved is None:
            if carrier_reference:
                self._park(carrier_reference, ParkedEvent(status, duration))
            else:
                logger.debug("Webhook %s matches no call", status.value)
            return False

        await self._apply_carrier_status(resolved, status, duration)
        return True

    async def _apply_carrier_status(
        self,
        call_id: str,
        status: CarrierStatus,
        duration: Optional[int],
    ) -> None:
        finalized = False
        with LogContext(call_id=call_id):
            async with self._ledger.edit(call_id) as call:
                if call.is_terminal:
                    logger.debug(
                        "Discarding %s webhook for finalized call %s", status.value, call_id,
                    )
                    return

                if status == CarrierStatus.RINGING:
                    self._advance(call, CallStatus.RINGING)
                elif status == CarrierStatus.ANSWERED:
                    self._mark_connected(call)
                else:
                    if duration is not None:
                        call.reported_duration = duration
                    if status == CarrierStatus.COMPLETED:
                        final = CallStatus.COMPLETED
                    elif call.status in (CallStatus.DIALING, CallStatus.RINGING):
                        final = CallStatus.FAILED
                    else:
                        final = CallStatus.COMPLETED
                    message = "Call Ended" if final == CallStatus.COMPLETED else f"Call {status.value}"
                    finalized = self._finalize(call, final, message, carrier_status=status)

        if finalized:
            self._on_finalized(call_id)

    def _park(self, reference: str, event: ParkedEvent) -> None:
        events = self._parked.setdefault(reference, [])
        events.append(event)
        self._parked.move_to_end(reference)
        while len(self._parked) > self._max_parked:
            dropped, _ = self._parked.popitem(last=False)
            logger.warning("Dropping parked webhooks for unbound reference %s", dropped)
        logger.debug("Parked %s webhook for unbound reference %s", event.status.value, reference)

    async def _replay_parked(self, reference: str) -> None:
        events = self._parked.pop(reference, [])
        call_id = self._ledger.find_by_carrier_reference(reference)
        if not events or call_id is None:
            return
        logger.info("Replaying %d early webhooks for call %s", len(events), call_id)
        for event in events:
            await self._apply_carrier_status(call_id, event.status, event.duration)

    # -------------------------------------------------------------------------
    # Media bridge signals
    # -------------------------------------------------------------------------

    async def on_socket_connected(self, call_id: str) -> None:
        """Media socket opened: redundant proof that the call is connected."""
        async with self._ledger.edit(call_id) as call:
            if call.is_terminal:
                logger.debug("Socket opened for finalized call %s", call_id)
                return
            self._mark_connected(call)

    async def on_socket_closed(self, call_id: str) -> None:
        """Media leg ended. Finalizes unless something already did."""
        async with self._ledger.edit(call_id) as call:
            finalized = self._finalize(call, CallStatus.COMPLETED, "Call Ended")
        if finalized:
            self._on_finalized(call_id)

    async def on_session_closed(self, call_id: str) -> None:
        """The AI ended the conversation."""
        async with self._ledger.edit(call_id) as call:
            finalized = self._finalize(
                call, CallStatus.COMPLETED, "Call Ended", fallback=EndedBy.AGENT,
            )
        if finalized:
            self._on_finalized(call_id)

    async def on_session_failed(self, call_id: str, reason: str, opened: bool) -> None:
        """The AI session failed to open or died mid-call; the call fails."""
        async with self._ledger.edit(call_id) as call:
            if not call.is_terminal and not opened:
                call.reported_duration = 0
            finalized = self._finalize(
                call, CallStatus.FAILED, f"AI session failed: {reason}", fallback=EndedBy.NETWORK,
            )
        if finalized:
            self._on_finalized(call_id)

    # -------------------------------------------------------------------------
    # Tool-driven signals
    # -------------------------------------------------------------------------

    async def on_outcome_logged(
        self,
        call_id: str,
        outcome: str,
        sentiment: str,
        notes: str,
    ) -> bool:
        """
        Annotate the call and, once it has connected, finalize it as ended
        by the agent. Returns True if this finalized the call.

        Finalizing also asks the carrier to drop the call. The media bridge
        closes its own leg once the tool response has been delivered.
        """
        finalized = False
        reference = None
        async with self._ledger.edit(call_id) as call:
            call.outcome = outcome
            call.sentiment = sentiment
            call.notes = notes
            if call.archived:
                await self._ledger.history.amend(
                    call_id, outcome=outcome, sentiment=sentiment, notes=notes,
                )
            elif call.connected_at is not None:
                finalized = self._finalize(
                    call, CallStatus.COMPLETED, "Call completed by agent", fallback=EndedBy.AGENT,
                )
                reference = call.carrier_reference
        if finalized:
            self._on_finalized(call_id)
            if reference:
                self._spawn(self._carrier_hangup(call_id, reference))
        return finalized

    async def on_transfer_requested(self, call_id: str, reason: str) -> None:
        async with self._ledger.edit(call_id) as call:
            if call.is_terminal:
                return
            call.message = TRANSFER_MESSAGE
        logger.info("Transfer requested for call %s: %s", call_id, reason)

    # -------------------------------------------------------------------------
    # Operator hangup
    # -------------------------------------------------------------------------

    async def request_hangup(self, call_id: str) -> CallRecord:
        """
        Operator hangup: disconnecting now, local leg closed now, carrier
        notified in the background, fallback timer armed.

        Raises:
            CallNotFoundError: Unknown call id
        """
        async with self._ledger.edit(call_id) as call:
            if call.is_terminal:
                return call.model_copy()
            call.pending_hangup_by = EndedBy.AGENT
            self._advance(call, CallStatus.DISCONNECTING)
            reference = call.carrier_reference
            snapshot = call.model_copy()

        logger.info("Operator hangup for call %s", call_id)

        self._arm_fallback(call_id)

        if reference:
            self._spawn(self._carrier_hangup(call_id, reference))

        if self._bridges is not None:
            self._bridges.request_close(call_id)

        return snapshot

    async def _carrier_hangup(self, call_id: str, reference: str) -> None:
        try:
            await self._carrier.hangup(reference)
        except CarrierError as e:
            logger.warning("Carrier hangup failed for call %s: %s", call_id, e.message)

    def _arm_fallback(self, call_id: str) -> None:
        existing = self._fallback_timers.pop(call_id, None)
        if existing is not None:
            existing.cancel()
        self._fallback_timers[call_id] = asyncio.create_task(self._hangup_fallback(call_id))

    async def _hangup_fallback(self, call_id: str) -> None:
        await asyncio.sleep(self._fallback_seconds)
        async with self._ledger.edit(call_id) as call:
            finalized = self._finalize(
                call, CallStatus.COMPLETED, "Call Ended", fallback=EndedBy.AGENT,
            )
        self._fallback_timers.pop(call_id, None)
        if finalized:
            logger.info("Hangup not confirmed for call %s; finalized after %.1fs", call_id, self._fallback_seconds)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def has_pending_fallback(self, call_id: str) -> bool:
        return call_id in self._fallback_timers

    async def shutdown(self) -> None:
        """Cancel timers and background requests."""
        tasks = list(self._fallback_timers.values()) + list(self._background)
        self._fallback_timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
