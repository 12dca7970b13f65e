"""
DialBridge - Lifecycle Reconciler Tests

Tests for the call state machine.
These tests verify:
- Dial acceptance, rejection and carrier outages
- Webhook handling, duplicates and early (unbound) webhooks
- Monotonic transitions under every event ordering
- Operator hangup with the fallback timer
- ended_by resolution

Run with: pytest tests/test_lifecycle.py -v
"""

import asyncio
import itertools
from typing import Optional

import pytest

from app.core.events import StatusBroadcaster
from app.core.exceptions import (
    CarrierRejectedError,
    CarrierUnavailableError,
    ValidationError,
)
from app.core.history_store import InMemoryCallHistoryStore
from app.core.types import CallStatus, EndedBy
from app.telephony.call_ledger import CallLedger
from app.telephony.lifecycle import TRANSFER_MESSAGE, LifecycleReconciler
from app.telephony.providers.base import DialResult
from app.telephony.providers.simulator import SimulatorProvider

from conftest import wait_for


class UnreachableCarrier(SimulatorProvider):
    """Carrier whose API is down."""

    async def dial(self, phone_number: str, call_id: str, answer_url: Optional[str] = None) -> DialResult:
        raise CarrierUnavailableError("Carrier API unreachable")


class GatedCarrier(SimulatorProvider):
    """Carrier whose dial request stays in flight until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting: list = []

    async def dial(self, phone_number: str, call_id: str, answer_url: Optional[str] = None) -> DialResult:
        self.waiting.append(call_id)
        await self.gate.wait()
        return await super().dial(phone_number, call_id, answer_url)


async def answered_call(reconciler: LifecycleReconciler):
    call = await reconciler.dial("9876543210", "Aditi", "Puck")
    await reconciler.on_carrier_status("answered", carrier_reference=call.carrier_reference)
    return await reconciler.ledger.get_call(call.id)


class TestDial:
    """Tests for placing calls."""

    @pytest.mark.asyncio
    async def test_dial_accepted_moves_to_ringing(self, reconciler, carrier, broadcaster):
        sub = broadcaster.subscribe()

        call = await reconciler.dial("+91 98765 43210", "Aditi", "Kore")

        assert call.status == CallStatus.RINGING
        assert call.carrier_reference.startswith("sim-")
        assert call.phone_number == "919876543210"
        assert call.voice_profile == "Kore"
        assert carrier.dialed == [call.id]
        assert [e["status"] for e in sub.drain()] == ["dialing", "ringing"]

    @pytest.mark.asyncio
    async def test_ten_digit_number_gets_country_code(self, reconciler):
        call = await reconciler.dial("98765 43210", "Aditi")
        assert call.phone_number == "919876543210"
        assert call.voice_profile == "Puck"

    @pytest.mark.asyncio
    async def test_invalid_number(self, reconciler, ledger):
        with pytest.raises(ValidationError):
            await reconciler.dial("call me", "Aditi")
        assert await ledger.get_active_count() == 0

    @pytest.mark.asyncio
    async def test_dial_rejected_marks_failed(self, ledger, history_store):
        reconciler = LifecycleReconciler(ledger, SimulatorProvider(accept=False))

        with pytest.raises(CarrierRejectedError) as exc_info:
            await reconciler.dial("9876543210", "Aditi")

        call_id = exc_info.value.details["call_id"]
        call = await ledger.get_call(call_id)
        assert call.status == CallStatus.FAILED
        assert call.ended_by == EndedBy.NETWORK
        entry = await history_store.get_entry(call_id)
        assert entry.outcome == "Failed"
        assert entry.duration_seconds == 0

    @pytest.mark.asyncio
    async def test_carrier_outage_marks_failed(self, ledger, history_store):
        reconciler = LifecycleReconciler(ledger, UnreachableCarrier())

        with pytest.raises(CarrierUnavailableError):
            await reconciler.dial("9876543210", "Aditi")

        entries = await history_store.get_recent()
        assert len(entries) == 1
        assert entries[0].status == CallStatus.FAILED


class TestCarrierWebhooks:
    """Tests for carrier status updates."""

    @pytest.mark.asyncio
    async def test_answered_connects(self, reconciler):
        call = await answered_call(reconciler)
        assert call.status == CallStatus.CONNECTED
        assert call.connected_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_answered_keeps_connected_at(self, reconciler, ledger):
        call = await answered_call(reconciler)
        first_connected_at = call.connected_at

        await asyncio.sleep(0.01)
        await reconciler.on_carrier_status("answered", carrier_reference=call.carrier_reference)
        await reconciler.on_socket_connected(call.id)

        again = await ledger.get_call(call.id)
        assert again.connected_at == first_connected_at
        assert again.status == CallStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_lookup_by_local_call_id(self, reconciler, ledger):
        call = await reconciler.dial("9876543210", "Aditi")
        assert await reconciler.on_carrier_status("in-progress", call_id=call.id) is True
        assert (await ledger.get_call(call.id)).status == CallStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_completed_uses_reported_duration(self, reconciler, ledger, history_store):
        call = await answered_call(reconciler)

        await reconciler.on_carrier_status("completed", carrier_reference=call.carrier_reference, duration=42)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.CUSTOMER
        assert (await history_store.get_entry(call.id)).duration_seconds == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["busy", "no-answer"])
    async def test_unreachable_fails_with_network(self, reconciler, ledger, code):
        call = await reconciler.dial("9876543210", "Aditi")

        await reconciler.on_carrier_status(code, carrier_reference=call.carrier_reference)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.FAILED
        assert final.ended_by == EndedBy.NETWORK

    @pytest.mark.asyncio
    async def test_failure_code_after_connect_completes(self, reconciler, ledger):
        call = await answered_call(reconciler)
        await reconciler.on_carrier_status("failed", carrier_reference=call.carrier_reference)
        assert (await ledger.get_call(call.id)).status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_state_never_left(self, reconciler, ledger, history_store):
        """Late webhooks after finalization are discarded."""
        call = await answered_call(reconciler)
        ref = call.carrier_reference
        await reconciler.on_carrier_status("completed", carrier_reference=ref)

        await reconciler.on_carrier_status("ringing", carrier_reference=ref)
        await reconciler.on_carrier_status("answered", carrier_reference=ref)
        await reconciler.on_carrier_status("busy", carrier_reference=ref)
        await reconciler.on_socket_connected(call.id)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.CUSTOMER
        assert len(await history_store.get_recent()) == 1

    @pytest.mark.asyncio
    async def test_unknown_status_ignored(self, reconciler):
        call = await reconciler.dial("9876543210", "Aditi")
        assert await reconciler.on_carrier_status("exploded", carrier_reference=call.carrier_reference) is False

    @pytest.mark.asyncio
    async def test_early_webhook_replayed_on_bind(self, reconciler, ledger):
        """A webhook for a reference not yet bound is parked, then applied."""
        call = await ledger.create_call("919876543210", "Aditi", "Puck")

        applied = await reconciler.on_carrier_status("answered", carrier_reference="ref-early")
        assert applied is False
        assert (await ledger.get_call(call.id)).status == CallStatus.DIALING

        await reconciler.on_dial_accepted(call.id, "ref-early")

        assert (await ledger.get_call(call.id)).status == CallStatus.CONNECTED


class TestStateMachineSafety:
    """Every ordering ends terminal and never regresses."""

    @pytest.mark.asyncio
    async def test_all_event_orderings(self):
        events = ["dial_ok", "ringing", "answered", "socket_open", "completed"]

        for index, ordering in enumerate(itertools.permutations(events)):
            history = InMemoryCallHistoryStore()
            ledger = CallLedger(StatusBroadcaster(), history)
            reconciler = LifecycleReconciler(ledger, SimulatorProvider())
            call = await ledger.create_call("919876543210", "Aditi", "Puck")
            ref = f"ref-{index}"

            ranks = []
            for event in ordering:
                if event == "dial_ok":
                    await reconciler.on_dial_accepted(call.id, ref)
                elif event == "socket_open":
                    await reconciler.on_socket_connected(call.id)
                else:
                    await reconciler.on_carrier_status(event, carrier_reference=ref)
                ranks.append((await ledger.get_call(call.id)).status.rank)

            final = await ledger.get_call(call.id)
            assert final.is_terminal, ordering
            assert ranks == sorted(ranks), ordering
            assert len(await history.get_recent()) == 1, ordering


class TestScenarios:
    """End-to-end lifecycle scenarios."""

    @pytest.mark.asyncio
    async def test_outcome_logged_by_agent(self, reconciler, ledger, history_store, broadcaster):
        """dial → ringing → socket open → log_outcome → completed by agent."""
        sub = broadcaster.subscribe()
        call = await reconciler.dial("+911234567890", "Aditi", "Puck")
        assert sub.drain()[0]["status"] == "dialing"

        await reconciler.on_carrier_status("ringing", carrier_reference=call.carrier_reference)
        assert (await ledger.get_call(call.id)).status == CallStatus.RINGING

        await reconciler.on_socket_connected(call.id)
        connected = await ledger.get_call(call.id)
        assert connected.status == CallStatus.CONNECTED
        assert connected.connected_at is not None

        finalized = await reconciler.on_outcome_logged(call.id, "Meeting Booked", "Positive", "Demo Tuesday")

        assert finalized is True
        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.AGENT
        entries = await history_store.get_recent()
        assert len(entries) == 1
        assert entries[0].outcome == "Meeting Booked"
        assert entries[0].sentiment == "Positive"

    @pytest.mark.asyncio
    async def test_outcome_logged_hangs_up_carrier(self, reconciler, carrier):
        call = await answered_call(reconciler)

        await reconciler.on_outcome_logged(call.id, "Not Interested", "Negative", "")

        await wait_for(lambda: carrier.hangups == [call.carrier_reference])
        await reconciler.shutdown()

    @pytest.mark.asyncio
    async def test_unfinalizing_outcome_leaves_carrier_alone(self, reconciler, carrier):
        call = await reconciler.dial("9876543210", "Aditi")

        await reconciler.on_outcome_logged(call.id, "Voicemail", "Neutral", "")
        await asyncio.sleep(0.01)

        assert carrier.hangups == []

    @pytest.mark.asyncio
    async def test_outcome_before_connect_does_not_finalize(self, reconciler, ledger):
        call = await reconciler.dial("9876543210", "Aditi")

        assert await reconciler.on_outcome_logged(call.id, "Voicemail", "Neutral", "") is False

        record = await ledger.get_call(call.id)
        assert record.status == CallStatus.RINGING
        assert record.outcome == "Voicemail"

    @pytest.mark.asyncio
    async def test_outcome_after_archive_amends_history(self, reconciler, history_store):
        call = await answered_call(reconciler)
        await reconciler.on_carrier_status("completed", carrier_reference=call.carrier_reference)

        await reconciler.on_outcome_logged(call.id, "Follow-up", "Neutral", "Call next week")

        entries = await history_store.get_recent()
        assert len(entries) == 1
        assert entries[0].outcome == "Follow-up"
        assert entries[0].ended_by == EndedBy.CUSTOMER

    @pytest.mark.asyncio
    async def test_session_open_failure_fails_call(self, reconciler, ledger, history_store):
        """A session that never opened leaves no talk time on record."""
        call = await reconciler.dial("9876543210", "Aditi")
        await reconciler.on_socket_connected(call.id)

        await reconciler.on_session_failed(call.id, "invalid API key", opened=False)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.FAILED
        assert final.ended_by == EndedBy.NETWORK
        assert (await history_store.get_entry(call.id)).duration_seconds == 0

    @pytest.mark.asyncio
    async def test_socket_close_finalizes_as_customer(self, reconciler, ledger):
        call = await answered_call(reconciler)
        await reconciler.on_socket_closed(call.id)
        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.CUSTOMER

    @pytest.mark.asyncio
    async def test_session_close_finalizes_as_agent(self, reconciler, ledger):
        call = await answered_call(reconciler)
        await reconciler.on_session_closed(call.id)
        assert (await ledger.get_call(call.id)).ended_by == EndedBy.AGENT

    @pytest.mark.asyncio
    async def test_transfer_sets_message(self, reconciler, ledger):
        call = await answered_call(reconciler)
        await reconciler.on_transfer_requested(call.id, "User requested human")
        record = await ledger.get_call(call.id)
        assert record.message == TRANSFER_MESSAGE
        assert record.status == CallStatus.CONNECTED


class TestOperatorHangup:
    """Hangup is local-first with a bounded wait for the carrier."""

    @pytest.mark.asyncio
    async def test_hangup_fallback_finalizes_as_agent(self, reconciler, ledger, carrier):
        call = await answered_call(reconciler)

        snapshot = await reconciler.request_hangup(call.id)

        assert snapshot.status == CallStatus.DISCONNECTING
        assert snapshot.pending_hangup_by == EndedBy.AGENT
        assert reconciler.has_pending_fallback(call.id)

        await wait_for(lambda: carrier.hangups == [call.carrier_reference])
        await asyncio.sleep(0.4)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.AGENT
        assert not reconciler.has_pending_fallback(call.id)

    @pytest.mark.asyncio
    async def test_terminal_webhook_before_fallback(self, reconciler, ledger):
        """The operator's marker wins over the webhook's inference."""
        call = await answered_call(reconciler)
        await reconciler.request_hangup(call.id)

        await reconciler.on_carrier_status("completed", carrier_reference=call.carrier_reference)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.AGENT
        assert not reconciler.has_pending_fallback(call.id)
        await reconciler.shutdown()

    @pytest.mark.asyncio
    async def test_hangup_closes_local_bridge(self, reconciler, bridges):
        closed = []

        class StubBridge:
            def request_close(self, reason: str = "") -> None:
                closed.append(reason)

        call = await answered_call(reconciler)
        bridges.register(call.id, StubBridge())

        await reconciler.request_hangup(call.id)

        assert closed == ["operator hangup"]
        await reconciler.shutdown()

    @pytest.mark.asyncio
    async def test_hangup_while_dialing_reaches_carrier(self, ledger):
        """The carrier learns of the hangup once the dial response names the call."""
        carrier = GatedCarrier()
        reconciler = LifecycleReconciler(ledger, carrier, hangup_fallback_seconds=5)

        dialing = asyncio.create_task(reconciler.dial("9876543210", "Aditi"))
        await wait_for(lambda: len(carrier.waiting) == 1)
        call_id = carrier.waiting[0]

        snapshot = await reconciler.request_hangup(call_id)
        assert snapshot.status == CallStatus.DISCONNECTING
        assert carrier.hangups == []

        carrier.gate.set()
        call = await asyncio.wait_for(dialing, timeout=2)

        await wait_for(lambda: carrier.hangups == [carrier.references[call_id]])
        assert call.status == CallStatus.DISCONNECTING
        assert call.carrier_reference == carrier.references[call_id]
        await reconciler.shutdown()

    @pytest.mark.asyncio
    async def test_dial_without_hangup_sends_none(self, reconciler, carrier):
        await reconciler.dial("9876543210", "Aditi")
        await asyncio.sleep(0.01)
        assert carrier.hangups == []

    @pytest.mark.asyncio
    async def test_hangup_of_finished_call_is_noop(self, reconciler, ledger):
        call = await answered_call(reconciler)
        await reconciler.on_socket_closed(call.id)

        snapshot = await reconciler.request_hangup(call.id)

        assert snapshot.status == CallStatus.COMPLETED
        assert snapshot.ended_by == EndedBy.CUSTOMER
        assert not reconciler.has_pending_fallback(call.id)
