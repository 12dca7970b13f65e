"""
DialBridge - Call Ledger

In-memory table of call records; the single source of truth for call status.

Guarantees:
    - Every read-modify-write goes through ``edit(call_id)``, which holds a
      per-call asyncio.Lock for the duration of the edit
    - Any edit that changes the record publishes one status_update event
    - The first edit that leaves a record terminal appends exactly one
      history entry; later edits never append again

Finalized records stay readable for ``retention_minutes`` and are then
evicted by the background cleanup task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict, List, Optional

from app.core.events import StatusBroadcaster
from app.core.exceptions import CallLimitError, CallNotFoundError
from app.core.history_store import CallHistoryStore
from app.core.types import utcnow
from .models import CallRecord
from .privacy import mask_phone_number

logger = logging.getLogger(__name__)


def generate_call_id() -> str:
    return f"call-{uuid.uuid4().hex[:12]}"


class CallLedger:
    """
    Keyed table of CallRecords with per-call serialized updates.

    Usage:
        ledger = CallLedger(broadcaster, history)
        await ledger.start()

        record = await ledger.create_call("919876543210", "Aditi", "Puck")
        async with ledger.edit(record.id) as call:
            call.status = CallStatus.RINGING

        await ledger.stop()
    """

    def __init__(
        self,
        broadcaster: StatusBroadcaster,
        history: CallHistoryStore,
        max_active_calls: int = 10,
        retention_minutes: int = 5,
        cleanup_interval_seconds: int = 60,
    ):
        self._broadcaster = broadcaster
        self._history = history
        self._max_active = max_active_calls
        self._retention = timedelta(minutes=retention_minutes)
        self._cleanup_interval = cleanup_interval_seconds

        self._calls: Dict[str, CallRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._by_reference: Dict[str, str] = {}
        self._table_lock = asyncio.Lock()

        self._cleanup_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def history(self) -> CallHistoryStore:
        return self._history

    @property
    def broadcaster(self) -> StatusBroadcaster:
        return self._broadcaster

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start background cleanup task."""
        if self._started:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._started = True
        logger.info(
            "CallLedger started: max_active=%d, retention=%s",
            self._max_active, self._retention,
        )

    async def stop(self) -> None:
        """Stop background tasks and clear the table."""
        if not self._started:
            return

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        async with self._table_lock:
            count = len(self._calls)
            self._calls.clear()
            self._locks.clear()
            self._by_reference.clear()

        self._started = False
        logger.info("CallLedger stopped: cleared %d calls", count)

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------

    async def create_call(
        self,
        phone_number: str,
        lead_name: str,
        voice_profile: str,
        record: bool = False,
        provider: str = "smartflo",
    ) -> CallRecord:
        """
        Create a call in ``dialing`` state and broadcast it.

        Raises:
            CallLimitError: If max_active_calls are already in flight
        """
        async with self._table_lock:
            active = sum(1 for c in self._calls.values() if not c.is_terminal)
            if active >= self._max_active:
                raise CallLimitError(
                    f"Maximum concurrent calls ({self._max_active}) reached"
                )

            call = CallRecord(
                id=generate_call_id(),
                phone_number=phone_number,
                phone_masked=mask_phone_number(phone_number),
                lead_name=lead_name,
                voice_profile=voice_profile,
                record=record,
                provider=provider,
                message="Dialing Customer...",
            )
            self._calls[call.id] = call
            self._locks[call.id] = asyncio.Lock()

        logger.info(
            "Call created: call=%s, to=%s, voice=%s",
            call.id, call.phone_masked, voice_profile,
        )
        self._broadcaster.publish(call.to_status_event())
        return call.model_copy()

    async def get_call(self, call_id: str) -> Optional[CallRecord]:
        """Snapshot of a call, or None."""
        call = self._calls.get(call_id)
        return call.model_copy() if call else None

    async def get_call_or_raise(self, call_id: str) -> CallRecord:
        call = await self.get_call(call_id)
        if not call:
            raise CallNotFoundError(f"Call not found: {call_id}", details={"call_id": call_id})
        return call

    def find_by_carrier_reference(self, reference: Optional[str]) -> Optional[str]:
        """Local call id bound to a carrier reference."""
        if not reference:
            return None
        return self._by_reference.get(reference)

    async def latest_active_call(self) -> Optional[CallRecord]:
        """Most recently dialed non-terminal call."""
        active = [c for c in self._calls.values() if not c.is_terminal]
        if not active:
            return None
        return max(active, key=lambda c: c.started_at).model_copy()

    async def get_active_calls(self) -> List[CallRecord]:
        return [c.model_copy() for c in self._calls.values() if not c.is_terminal]

    async def get_active_count(self) -> int:
        return sum(1 for c in self._calls.values() if not c.is_terminal)

    async def get_recent_calls(self, limit: int = 50) -> List[CallRecord]:
        calls = sorted(self._calls.values(), key=lambda c: c.started_at, reverse=True)
        return [c.model_copy() for c in calls[:limit]]

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def edit(self, call_id: str) -> AsyncIterator[CallRecord]:
        """
        Serialized read-modify-write of one call.

        Yields the live record. On a clean exit the ledger indexes a newly
        bound carrier reference, archives the record if it just became
        terminal, and broadcasts if anything changed. If the body raises,
        the record is restored as it was before the edit.

        Raises:
            CallNotFoundError: Unknown call id
        """
        lock = self._locks.get(call_id)
        if lock is None:
            raise CallNotFoundError(f"Call not found: {call_id}", details={"call_id": call_id})

        async with lock:
            call = self._calls.get(call_id)
            if call is None:
                raise CallNotFoundError(f"Call not found: {call_id}", details={"call_id": call_id})

            before = call.model_dump()
            snapshot = call.model_copy(deep=True)
            try:
                yield call
            except BaseException:
                # A failed edit leaves no trace: not archived, not broadcast
                self._calls[call_id] = snapshot
                raise

            if call.carrier_reference and call.carrier_reference != before["carrier_reference"]:
                self._by_reference[call.carrier_reference] = call.id

            if call.is_terminal and not call.archived:
                await self._archive(call)

            if call.model_dump() != before:
                self._broadcaster.publish(call.to_status_event())

    async def _archive(self, call: CallRecord) -> None:
        if call.ended_at is None:
            call.ended_at = utcnow()
        call.archived = True
        entry = call.to_history_entry()
        await self._history.record_call(entry)
        logger.info(
            "Call finalized: call=%s, status=%s, ended_by=%s, duration=%ds",
            call.id, call.status.value,
            entry.ended_by.value, entry.duration_seconds,
        )

    async def amend_outcome(
        self,
        call_id: str,
        outcome: str,
        sentiment: str,
        notes: str,
    ) -> CallRecord:
        """
        Record an operator's post-call form.

        If the call is already archived the history entry is replaced in
        place, so there is still exactly one entry per call.
        """
        async with self.edit(call_id) as call:
            call.outcome = outcome
            call.sentiment = sentiment
            call.notes = notes
            if call.archived:
                await self._history.amend(
                    call_id, outcome=outcome, sentiment=sentiment, notes=notes,
                )
            return call.model_copy()

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def evict_stale(self) -> int:
        """Drop archived calls older than the retention window."""
        now = utcnow()
        stale_ids = []

        async with self._table_lock:
            for call_id, call in self._calls.items():
                if not (call.archived and call.ended_at):
                    continue
                if now - call.ended_at <= self._retention:
                    continue
                if self._locks[call_id].locked():
                    continue
                stale_ids.append(call_id)

            for call_id in stale_ids:
                call = self._calls.pop(call_id)
                self._locks.pop(call_id, None)
                if call.carrier_reference:
                    self._by_reference.pop(call.carrier_reference, None)

        if stale_ids:
            logger.info("Evicted %d finalized calls", len(stale_ids))
        return len(stale_ids)

    async def _cleanup_loop(self) -> None:
        """Background task to evict finalized calls."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.evict_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in ledger cleanup loop: %s", str(e))
