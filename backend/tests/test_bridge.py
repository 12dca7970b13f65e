"""
DialBridge - Audio Bridge Tests

Drives an AudioBridge with an in-memory carrier socket and the dummy voice
session. These tests verify:
- Priming nudge first, buffered frames next, direct frames last
- Outbound framing back to the carrier
- Malformed frames dropped without ending the call
- Session open failure, buffer overflow and tool delivery failure fail the call
- Either side closing tears the bridge down and finalizes once
- Call resolution for the generic media stream endpoint

Run with: pytest tests/test_bridge.py -v
"""

import asyncio
import base64
import json
import struct

import pytest

from app.core.types import CallStatus, EndedBy, ToolCall
from app.services.voice_session import (
    AudioOutput,
    DummyVoiceSessionFactory,
    ToolCallsOutput,
    TranscriptOutput,
)
from app.telephony.audio_processor import mulaw_to_pcm16, upsample_8k_to_16k
from app.telephony.bridge import AudioBridge
from app.telephony.lifecycle import TRANSFER_MESSAGE

from conftest import FakeTelephonySocket, wait_for


STREAM_SID = "MZ0123456789"


def media(byte: int) -> dict:
    return {"event": "media", "media": {"payload": base64.b64encode(bytes([byte])).decode()}}


def expected_pcm(byte: int) -> bytes:
    return upsample_8k_to_16k(mulaw_to_pcm16(bytes([byte])))


@pytest.fixture
def make_bridge(reconciler, dispatcher, broadcaster, test_settings, bridges):
    def _make(socket, factory, call_id=None):
        return AudioBridge(
            socket,
            reconciler=reconciler,
            dispatcher=dispatcher,
            session_factory=factory,
            broadcaster=broadcaster,
            settings=test_settings,
            call_id=call_id,
            registry=bridges,
        )
    return _make


async def start_bridge(make_bridge, reconciler, socket, factory):
    call = await reconciler.dial("9876543210", "Aditi", "Puck")
    bridge = make_bridge(socket, factory, call.id)
    task = asyncio.create_task(bridge.run())
    socket.feed_json({"event": "start", "start": {"streamSid": STREAM_SID}})
    return call, bridge, task


class TestInboundOrdering:
    """Caller audio reaches the AI in order, with the nudge first."""

    @pytest.mark.asyncio
    async def test_nudge_then_buffered_then_direct(
        self, make_bridge, reconciler, telephony_socket, session_factory, test_settings,
    ):
        session_factory.hold()
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)

        for byte in (0x10, 0x20, 0x30):
            telephony_socket.feed_json(media(byte))
        await wait_for(lambda: bridge.stats["buffer"]["buffered"] == 3)

        session_factory.release()
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]
        await wait_for(lambda: len(session.sent) == 4)

        telephony_socket.feed_json(media(0x40))
        await wait_for(lambda: len(session.sent) == 5)

        assert session.sent[0] == ("text", test_settings.priming_nudge)
        assert [payload for kind, payload in session.sent[1:]] == [
            expected_pcm(0x10), expected_pcm(0x20), expected_pcm(0x30), expected_pcm(0x40),
        ]
        assert bridge.stats["buffer"]["bypassed"] is True

        session.finish()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_system_instruction_uses_lead_and_voice(
        self, make_bridge, reconciler, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)

        session = session_factory.sessions[0]
        assert "Aditi" in session.system_instruction
        assert session.voice_profile == "Puck"

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)


class TestOutboundFraming:
    """AI speech is transcoded and framed for the carrier."""

    @pytest.mark.asyncio
    async def test_ai_audio_framed_with_stream_sid(
        self, make_bridge, reconciler, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]

        session.push(AudioOutput(struct.pack("<6h", 0, 0, 0, 1000, 1000, 1000)))
        await wait_for(lambda: len(telephony_socket.sent) == 1)

        message = json.loads(telephony_socket.sent[0])
        assert message == {
            "event": "media",
            "streamSid": STREAM_SID,
            "media": {"payload": base64.b64encode(bytes([0xFF, 0xCE])).decode()},
        }

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_transcripts_broadcast(
        self, make_bridge, reconciler, telephony_socket, session_factory, broadcaster,
    ):
        sub = broadcaster.subscribe()
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)

        seen = []

        def saw_transcript() -> bool:
            seen.extend(sub.drain())
            return any(e["type"] == "transcript" for e in seen)

        session_factory.sessions[0].push(TranscriptOutput("user", "Haan, boliye"))
        await wait_for(saw_transcript)

        transcript = [e for e in seen if e["type"] == "transcript"][0]
        assert transcript == {"type": "transcript", "id": call.id, "sender": "user", "text": "Haan, boliye"}

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)


class TestMalformedInput:
    """Framing errors cost one frame, not the call."""

    @pytest.mark.asyncio
    async def test_bad_frames_dropped(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]
        await wait_for(lambda: len(session.sent) == 1)

        telephony_socket.feed("not json")
        telephony_socket.feed_json({"event": "media", "media": {"payload": "%%%"}})
        telephony_socket.feed_json({"event": "media", "media": {}})
        telephony_socket.feed_json(media(0x55))
        await wait_for(lambda: len(session.audio) == 1)

        assert session.audio == [expected_pcm(0x55)]
        assert bridge.stats["malformed_frames"] == 2
        assert (await ledger.get_call(call.id)).status == CallStatus.CONNECTED

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)


class TestFailures:
    """Failures tear the telephony leg down and fail the call."""

    @pytest.mark.asyncio
    async def test_session_open_failure(
        self, make_bridge, reconciler, ledger, history_store, telephony_socket,
    ):
        """Authentication failure: call failed, socket closed, no talk time."""
        factory = DummyVoiceSessionFactory(open_error=PermissionError("API key not valid"))
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, factory)

        await asyncio.wait_for(task, timeout=2)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.FAILED
        assert final.ended_by == EndedBy.NETWORK
        assert telephony_socket.closed
        entries = await history_store.get_recent()
        assert len(entries) == 1
        assert entries[0].duration_seconds == 0

    @pytest.mark.asyncio
    async def test_buffer_overflow_fails_call(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory, test_settings,
    ):
        session_factory.hold()
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)

        for _ in range(test_settings.frame_buffer_max_frames + 1):
            telephony_socket.feed_json(media(0x10))

        await asyncio.wait_for(task, timeout=2)

        assert (await ledger.get_call(call.id)).status == CallStatus.FAILED
        assert telephony_socket.closed
        assert bridge.stats["buffer"]["buffered"] == 0

    @pytest.mark.asyncio
    async def test_session_error_mid_call(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)

        session_factory.sessions[0].fail(ConnectionResetError("socket reset"))
        await asyncio.wait_for(task, timeout=2)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.FAILED
        assert final.reported_duration is None
        assert telephony_socket.closed

    @pytest.mark.asyncio
    async def test_tool_response_delivery_failure(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]
        session.fail_tool_responses = 2

        session.push(ToolCallsOutput([ToolCall(id="fc-1", name="transfer_call", args={"reason": "human"})]))
        await asyncio.wait_for(task, timeout=2)

        assert (await ledger.get_call(call.id)).status == CallStatus.FAILED


class TestToolCalls:
    """Tool calls run beside the audio relay."""

    @pytest.mark.asyncio
    async def test_tool_call_answered(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]

        session.push(ToolCallsOutput([ToolCall(id="fc-1", name="transfer_call", args={"reason": "human"})]))
        await wait_for(lambda: len(session.tool_responses) == 1)

        assert session.tool_responses[0].id == "fc-1"
        assert (await ledger.get_call(call.id)).message == TRANSFER_MESSAGE

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_logged_outcome_ends_call(
        self, make_bridge, reconciler, ledger, bridges, carrier, telephony_socket, session_factory,
    ):
        """The agent logging an outcome hangs up both legs after answering."""
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        session = session_factory.sessions[0]

        session.push(ToolCallsOutput([ToolCall(
            id="fc-1",
            name="log_outcome",
            args={"outcome": "Meeting Booked", "sentiment": "Positive", "notes": "Demo on Friday"},
        )]))
        await asyncio.wait_for(task, timeout=2)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.AGENT
        assert final.outcome == "Meeting Booked"
        assert [r.id for r in session.tool_responses] == ["fc-1"]
        assert telephony_socket.closed
        assert session.closed
        assert bridges.get(call.id) is None
        assert await ledger.get_active_count() == 0
        await wait_for(lambda: carrier.hangups == [carrier.references[call.id]])
        await reconciler.shutdown()


class TestBackpressure:
    """A stalled coordinator sheds caller audio, never control events."""

    @pytest.mark.asyncio
    async def test_inbound_backlog_capped(
        self, reconciler, dispatcher, broadcaster, ledger, telephony_socket, session_factory, test_settings,
    ):
        settings = test_settings.model_copy(update={
            "bridge_queue_max_frames": 20,
            "frame_buffer_max_frames": 500,
        })
        call = await reconciler.dial("9876543210", "Aditi", "Puck")
        bridge = AudioBridge(
            telephony_socket,
            reconciler=reconciler,
            dispatcher=dispatcher,
            session_factory=session_factory,
            broadcaster=broadcaster,
            settings=settings,
            call_id=call.id,
        )
        session_factory.hold()

        # Everything arrives before the coordinator gets a turn
        telephony_socket.feed_json({"event": "start", "start": {"streamSid": STREAM_SID}})
        for _ in range(60):
            telephony_socket.feed_json(media(0x10))
        telephony_socket.feed_json({"event": "stop"})

        await asyncio.wait_for(bridge.run(), timeout=2)

        assert bridge.stats["inbound_frames_dropped"] > 0
        assert bridge.stats["inbound_frames_dropped"] < 60
        assert bridge.end.kind == "socket_closed"
        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.CUSTOMER


class TestTeardown:
    """Either side closing ends the bridge and finalizes the call once."""

    @pytest.mark.asyncio
    async def test_carrier_stop(
        self, make_bridge, reconciler, ledger, bridges, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)
        assert bridges.get(call.id) is bridge

        telephony_socket.feed_json({"event": "stop"})
        await asyncio.wait_for(task, timeout=2)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.CUSTOMER
        assert session_factory.sessions[0].closed
        assert bridges.get(call.id) is None

    @pytest.mark.asyncio
    async def test_session_close_ends_call_as_agent(
        self, make_bridge, reconciler, ledger, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)

        session_factory.sessions[0].finish()
        await asyncio.wait_for(task, timeout=2)

        assert (await ledger.get_call(call.id)).ended_by == EndedBy.AGENT
        assert telephony_socket.closed

    @pytest.mark.asyncio
    async def test_operator_hangup_closes_bridge(
        self, make_bridge, reconciler, ledger, history_store, telephony_socket, session_factory,
    ):
        call, bridge, task = await start_bridge(make_bridge, reconciler, telephony_socket, session_factory)
        await wait_for(lambda: len(session_factory.sessions) == 1)

        await reconciler.request_hangup(call.id)
        await asyncio.wait_for(task, timeout=2)

        final = await ledger.get_call(call.id)
        assert final.status == CallStatus.COMPLETED
        assert final.ended_by == EndedBy.AGENT
        assert telephony_socket.closed
        assert session_factory.sessions[0].closed
        assert not reconciler.has_pending_fallback(call.id)
        assert len(await history_store.get_recent()) == 1
        await reconciler.shutdown()


class TestCallResolution:
    """The generic media endpoint finds its call from the stream."""

    @pytest.mark.asyncio
    async def test_call_id_from_custom_parameters(
        self, make_bridge, reconciler, ledger, bridges, telephony_socket, session_factory,
    ):
        target = await reconciler.dial("9876543210", "Aditi")
        await asyncio.sleep(0.01)
        await reconciler.dial("9123456780", "Rohan")

        bridge = make_bridge(telephony_socket, session_factory)
        task = asyncio.create_task(bridge.run())
        telephony_socket.feed_json({
            "event": "start",
            "start": {"streamSid": STREAM_SID, "customParameters": {"callId": target.id}},
        })
        await wait_for(lambda: bridge.call_id is not None)

        assert bridge.call_id == target.id
        assert bridges.get(target.id) is bridge
        assert (await ledger.get_call(target.id)).status == CallStatus.CONNECTED

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_active_call(
        self, make_bridge, reconciler, telephony_socket, session_factory,
    ):
        await reconciler.dial("9876543210", "Aditi")
        await asyncio.sleep(0.01)
        latest = await reconciler.dial("9123456780", "Rohan")

        bridge = make_bridge(telephony_socket, session_factory)
        task = asyncio.create_task(bridge.run())
        telephony_socket.feed_json({"event": "start", "start": {"streamSid": STREAM_SID}})
        await wait_for(lambda: bridge.call_id is not None)

        assert bridge.call_id == latest.id

        telephony_socket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_unknown_call_closes_socket(self, make_bridge, telephony_socket, session_factory):
        bridge = make_bridge(telephony_socket, session_factory, "call-missing")

        await asyncio.wait_for(bridge.run(), timeout=2)

        assert telephony_socket.closed
        assert session_factory.sessions == []
        assert bridge.end.kind == "close_requested"
