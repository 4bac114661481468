"""
Tests for the audio relay and its state machine
"""

import asyncio
import base64
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from callbridge.core.exceptions import InvalidTransitionError, VoiceServiceError
from callbridge.models.call import CallStatus
from callbridge.models.metrics import MetricsSource
from callbridge.services.call_records import CallRecordWriter
from callbridge.services.metrics_service import MetricsService, period_key
from callbridge.services.relay import AudioRelay, RelayEvent, RelayState, transition
from callbridge.services.relay.state import TRANSITIONS
from callbridge.services.session_store import InMemorySessionStore

from tests.conftest import FakeCarrier, FakeVendor, settle

T0 = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def frame(n: int) -> str:
    return base64.b64encode(f"frame-{n}".encode()).decode()


def start_message(call_sid="CA123", stream_sid="MZ123", **params):
    return json.dumps({
        "event": "start",
        "start": {
            "streamSid": stream_sid,
            "callSid": call_sid,
            "customParameters": {"tenant_id": "acme", "caller_number": "+15557770000", **params},
        },
    })


def media_message(n: int) -> str:
    return json.dumps({"event": "media", "media": {"payload": frame(n)}})


class RelayHarness:
    """Relay wired to fakes, with a gate controlling when the vendor socket opens"""

    def __init__(self, repository, signed_url_error=None):
        self.now = {"t": T0}
        self.carrier = FakeCarrier()
        self.vendor = FakeVendor()
        self.gate = asyncio.Event()
        self.sessions = InMemorySessionStore(ttl_seconds=60)
        self.voice = MagicMock()
        if signed_url_error:
            self.voice.get_signed_url = AsyncMock(side_effect=signed_url_error)
        else:
            self.voice.get_signed_url = AsyncMock(return_value="wss://vendor.test/signed")
        self.dispatcher = MagicMock()
        self.dispatcher.dispatch = AsyncMock(return_value={"success": True, "agentCallSid": "CAagent"})
        self.writer = CallRecordWriter(repository, clock=lambda: self.now["t"])
        self.metrics = MetricsService(repository=repository)

        async def connect(url):
            await self.gate.wait()
            return self.vendor

        self.relay = AudioRelay(
            self.carrier,
            sessions=self.sessions,
            repository=repository,
            writer=self.writer,
            dispatcher=self.dispatcher,
            voice=self.voice,
            crm=MagicMock(),
            metrics=self.metrics,
            vendor_connect=connect,
        )

    async def bridge(self, **params):
        await self.relay.handle_carrier_message(start_message(**params))
        self.gate.set()
        await settle(lambda: self.relay.state == RelayState.BRIDGED)


class TestRelayStateMachine:
    """Tests for the relay lifecycle table"""

    def test_happy_path(self):
        state = RelayState.AWAITING_STREAM_START
        for event in (RelayEvent.STREAM_START, RelayEvent.VENDOR_READY, RelayEvent.STOP, RelayEvent.TEARDOWN_COMPLETE):
            state = transition(state, event)
        assert state == RelayState.CLOSED

    def test_vendor_failure_degrades_to_bridged(self):
        assert transition(RelayState.AWAITING_VENDOR_READY, RelayEvent.VENDOR_FAILED) == RelayState.BRIDGED

    def test_illegal_event_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(RelayState.AWAITING_STREAM_START, RelayEvent.VENDOR_MESSAGE)
        assert exc_info.value.state == "awaiting_stream_start"
        assert exc_info.value.event == "vendor_message"

    def test_closed_is_terminal(self):
        assert not any(state == RelayState.CLOSED for state, _ in TRANSITIONS)
        with pytest.raises(InvalidTransitionError):
            transition(RelayState.CLOSED, RelayEvent.STOP)

    def test_every_close_event_accepted_while_closing(self):
        for event in (RelayEvent.STOP, RelayEvent.CARRIER_CLOSED, RelayEvent.VENDOR_CLOSED):
            assert transition(RelayState.CLOSING, event) == RelayState.CLOSING


class TestAudioRelay:
    """Tests for the carrier/vendor bridge"""

    @pytest.mark.asyncio
    async def test_frames_before_ready_are_flushed_in_order(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.relay.handle_carrier_message(start_message())
        assert h.relay.state == RelayState.AWAITING_VENDOR_READY

        for n in range(10):
            await h.relay.handle_carrier_message(media_message(n))
        assert len(h.relay.pending) == 10
        assert h.vendor.sent == []

        h.gate.set()
        await settle(lambda: h.relay.state == RelayState.BRIDGED)
        await h.relay.handle_carrier_message(media_message(10))

        assert h.vendor.sent[0]["type"] == "conversation_initiation_client_data"
        chunks = [m["user_audio_chunk"] for m in h.vendor.sent[1:]]
        assert chunks == [frame(n) for n in range(11)]

        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_initiation_message_carries_call_variables(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge(first_message="Hi Sam", full_name="Sam Lee")

        init = h.vendor.sent[0]
        assert init["conversation_config_override"]["agent"]["first_message"] == "Hi Sam"
        variables = init["dynamic_variables"]
        assert variables["full_name"] == "Sam Lee"
        assert variables["call_sid"] == "CA123"
        assert variables["client_id"] == "acme"
        assert variables["business_name"] == "Acme Dental"
        h.voice.get_signed_url.assert_awaited_once_with("agent-primary")

        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_vendor_audio_forwarded_to_carrier(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        h.vendor.feed({"type": "audio", "audio_event": {"audio_base_64": "QUJD"}})
        await settle(lambda: h.carrier.sent)

        assert h.carrier.sent == [{"event": "media", "streamSid": "MZ123", "media": {"payload": "QUJD"}}]
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_audio_without_stream_sid_is_dropped(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge(stream_sid=None)

        await h.relay.handle_vendor_message(json.dumps({"type": "audio", "audio_event": {"audio_base_64": "QUJD"}}))

        assert h.carrier.sent == []
        assert h.relay.state == RelayState.BRIDGED
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong_only(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()
        sent_before = len(h.vendor.sent)

        await h.relay.handle_vendor_message(json.dumps({"type": "ping", "ping_event": {"event_id": 42}}))

        assert h.vendor.sent[sent_before:] == [{"type": "pong", "event_id": 42}]
        assert h.carrier.sent == []
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_interruption_clears_carrier_buffer(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        await h.relay.handle_vendor_message(json.dumps({"type": "interruption"}))

        assert h.carrier.sent == [{"event": "clear", "streamSid": "MZ123"}]
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_undecodable_frames_are_dropped(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()
        sent_before = len(h.vendor.sent)

        await h.relay.handle_carrier_message("{not json")
        await h.relay.handle_carrier_message(json.dumps({"event": "media", "media": {"payload": "***"}}))
        await h.relay.handle_vendor_message("{not json")

        assert h.relay.state == RelayState.BRIDGED
        assert len(h.vendor.sent) == sent_before
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "[]",
        "null",
        "42",
        json.dumps({"event": "media", "media": "abc"}),
        json.dumps({"event": "media", "media": {"payload": 7}}),
        json.dumps({"event": "start", "start": "abc"}),
    ])
    async def test_carrier_frame_of_wrong_shape_keeps_call_bridged(self, seeded_repository, raw):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        await h.relay.handle_carrier_message(raw)
        await h.relay.handle_carrier_message(media_message(1))

        assert h.relay.state == RelayState.BRIDGED
        assert h.carrier.closed is False
        assert h.vendor.sent[-1] == {"user_audio_chunk": frame(1)}
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "[]",
        "null",
        "42",
        json.dumps({"type": "ping", "ping_event": "x"}),
        json.dumps({"type": "audio", "audio_event": ["QUJD"]}),
        json.dumps({"type": "conversation_initiation_metadata", "conversation_initiation_metadata_event": 1}),
        json.dumps({"type": "client_tool_call", "client_tool_call": "transfer"}),
    ])
    async def test_vendor_frame_of_wrong_shape_keeps_call_bridged(self, seeded_repository, raw):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        h.vendor.feed(raw)
        h.vendor.feed({"type": "ping", "ping_event": {"event_id": "after"}})
        await settle(lambda: {"type": "pong", "event_id": "after"} in h.vendor.sent)
        await h.relay.drain_tool_calls()

        assert h.relay.state == RelayState.BRIDGED
        assert h.carrier.closed is False
        assert h.carrier.sent == []
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_vendor_failure_keeps_call_up(self, seeded_repository):
        h = RelayHarness(seeded_repository, signed_url_error=VoiceServiceError("boom"))
        await h.relay.handle_carrier_message(start_message())
        await h.relay.handle_carrier_message(media_message(0))
        await settle(lambda: h.relay.state == RelayState.BRIDGED)

        assert h.relay.vendor is None
        assert len(h.relay.pending) == 0
        assert h.carrier.closed is False

        await h.relay.handle_carrier_message(media_message(1))
        assert h.relay.state == RelayState.BRIDGED
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_stop_records_hang_up_with_floored_duration(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()
        h.now["t"] = T0 + timedelta(seconds=125, milliseconds=700)

        await h.relay.handle_carrier_message(json.dumps({"event": "stop"}))

        assert h.relay.state == RelayState.CLOSED
        assert h.carrier.closed is True
        assert h.vendor.closed is True
        assert await h.sessions.get("CA123") is None

        entry = await seeded_repository.get_call("acme", "CA123")
        assert entry.call_data.status == CallStatus.HANG_UP
        assert entry.call_data.duration == 125
        assert entry.call_data.end_time == h.now["t"]

        metrics = await h.metrics.get_agent_metrics("acme", "agent-primary", period_key(), MetricsSource.INTERNAL)
        assert metrics.metrics.inbound_calls == 1
        assert metrics.metrics.total_duration == 125

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        await h.relay.close(RelayEvent.STOP)
        await h.relay.close(RelayEvent.CARRIER_CLOSED)
        await h.relay.close(RelayEvent.VENDOR_CLOSED)

        tenant = await seeded_repository.get_tenant("acme")
        assert len(tenant.call_history) == 1
        assert len(tenant.metrics_history) == 1
        assert tenant.metrics_history[0].metrics.total_calls == 1

    @pytest.mark.asyncio
    async def test_transfer_tool_call_answered_and_outcome_kept(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        await h.relay.handle_vendor_message(json.dumps({
            "type": "client_tool_call",
            "client_tool_call": {
                "tool_name": "transfer_to_agent",
                "tool_call_id": "tc-1",
                "parameters": {"phone_number": "+15551112222"},
            },
        }))
        await h.relay.drain_tool_calls()

        reply = h.vendor.sent[-1]
        assert reply == {
            "type": "client_tool_response",
            "tool_call_id": "tc-1",
            "data": {"success": True, "agentCallSid": "CAagent"},
        }
        assert h.relay.transferred is True

        await h.relay.close(RelayEvent.STOP)
        entry = await seeded_repository.get_call("acme", "CA123")
        assert entry.call_data.status == CallStatus.BOOKED_APPOINTMENT

    @pytest.mark.asyncio
    async def test_conversation_id_stored_on_call(self, seeded_repository):
        h = RelayHarness(seeded_repository)
        await h.bridge()

        await h.relay.handle_vendor_message(json.dumps({
            "type": "conversation_initiation_metadata",
            "conversation_initiation_metadata_event": {"conversation_id": "conv-9"},
        }))

        entry = await seeded_repository.get_call("acme", "CA123")
        assert entry.call_data.conversation_id == "conv-9"
        await h.relay.close(RelayEvent.STOP)

    @pytest.mark.asyncio
    async def test_carrier_socket_close_tears_down(self, seeded_repository):
        h = RelayHarness(seeded_repository)

        async def messages():
            yield start_message()
            h.gate.set()
            await settle(lambda: h.relay.state == RelayState.BRIDGED)
            yield media_message(0)

        await h.relay.run(messages())

        assert h.relay.state == RelayState.CLOSED
        assert h.carrier.closed is False
        assert h.vendor.closed is True
