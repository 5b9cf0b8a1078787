"""
Relay Transport Tests

Tests for the relay wire envelope:
- Outgoing offer/answer/candidate/call-request/hang-up frames
- Incoming frames demultiplexed by targetId into transport events
- Send on a dead socket reports the channel lost
"""

import pytest

from camsignal.providers.base.descriptions import SessionDescription
from camsignal.providers.base.transport_adapter import TransportEventType
from camsignal.providers.transport.relay import RelayTransport

from conftest import OFFER_SDP, make_candidate


class FakeWebSocket:
    """Records frames the adapter sends"""

    def __init__(self):
        self.closed = False
        self.sent = []
        self.close_code = None

    async def send_json(self, message):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    async def close(self):
        self.closed = True


@pytest.fixture
def relay():
    transport = RelayTransport("ws://relay.test/ws/relay")
    transport._ws = FakeWebSocket()
    events = []
    transport.add_listener(events.append)
    transport.events = events
    return transport


class TestOutgoing:
    """Frames sent to the relay"""

    @pytest.mark.asyncio
    async def test_answer_frame(self, relay):
        await relay.send_local_description("cam1", SessionDescription(sdp=OFFER_SDP, type="answer"))
        frame = relay._ws.sent[0]
        assert frame["type"] == "answer"
        assert frame["targetId"] == "cam1"
        assert frame["answer"] == {"sdp": OFFER_SDP, "type": "answer"}

    @pytest.mark.asyncio
    async def test_candidate_frame(self, relay):
        await relay.send_candidate("cam1", make_candidate(3))
        frame = relay._ws.sent[0]
        assert frame["type"] == "ice-candidate"
        assert frame["candidate"]["sdpMid"] == "0"
        assert frame["candidate"]["candidate"].startswith("candidate:3 ")

    @pytest.mark.asyncio
    async def test_call_request_and_hang_up(self, relay):
        await relay.request_session("cam1")
        await relay.close("cam1")
        assert [frame["type"] for frame in relay._ws.sent] == ["call-request", "hang-up"]

    @pytest.mark.asyncio
    async def test_heartbeat_is_ping(self, relay):
        await relay.send_heartbeat()
        assert relay._ws.sent[0]["type"] == "ping"
        assert isinstance(relay._ws.sent[0]["timestamp"], int)

    @pytest.mark.asyncio
    async def test_send_on_closed_socket_reports_loss(self, relay):
        relay._ws.closed = True
        await relay.send_candidate("cam1", make_candidate(1))

        assert relay.events[-1].type == TransportEventType.TRANSPORT_CLOSED
        assert relay.events[-1].clean is False

    @pytest.mark.asyncio
    async def test_no_loss_reported_while_shutting_down(self, relay):
        relay._ws.closed = True
        relay._closing = True
        await relay.send_candidate("cam1", make_candidate(1))
        assert relay.events == []


class TestIncoming:
    """Frames received from the relay"""

    @pytest.mark.asyncio
    async def test_offer(self, relay):
        await relay._handle_message({"type": "offer", "targetId": "cam1", "offer": {"type": "offer", "sdp": OFFER_SDP}})
        event = relay.events[0]
        assert event.type == TransportEventType.OFFER_RECEIVED
        assert event.target_id == "cam1"
        assert event.payload.sdp == OFFER_SDP

    @pytest.mark.asyncio
    async def test_offer_as_bare_string(self, relay):
        await relay._handle_message({"type": "offer", "targetId": "cam1", "offer": OFFER_SDP})
        assert relay.events[0].payload == SessionDescription(sdp=OFFER_SDP, type="offer")

    @pytest.mark.asyncio
    async def test_candidate_flat_shape(self, relay):
        await relay._handle_message(
            {"type": "ice-candidate", "targetId": "cam1", "candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host", "sdpMid": "0", "sdpMLineIndex": 0}
        )
        event = relay.events[0]
        assert event.type == TransportEventType.CANDIDATE_RECEIVED
        assert event.payload.candidate.startswith("candidate:1")

    @pytest.mark.asyncio
    async def test_pong_is_heartbeat_ack(self, relay):
        await relay._handle_message({"type": "pong", "timestamp": 42})
        assert relay.events[0].type == TransportEventType.HEARTBEAT_ACK
        assert relay.events[0].payload == 42

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong(self, relay):
        await relay._handle_message({"type": "ping", "timestamp": 7})
        assert relay._ws.sent == [{"type": "pong", "timestamp": 7}]

    @pytest.mark.asyncio
    async def test_ice_servers_stored(self, relay):
        servers = [{"urls": "turn:turn.test:3478", "username": "u", "credential": "c"}]
        await relay._handle_message({"type": "ice-servers", "iceServers": servers})
        assert relay.ice_servers_for("cam1") == servers
        assert relay.events == []

    @pytest.mark.asyncio
    async def test_target_registration(self, relay):
        await relay._handle_message({"type": "register-target", "targetId": "cam1"})
        assert relay.events[0].type == TransportEventType.TARGET_AVAILABLE
        assert relay.get_status()["available_targets"] == ["cam1"]

        await relay._handle_message({"type": "target-disconnected", "targetId": "cam1"})
        assert relay.events[1].type == TransportEventType.SESSION_TERMINATED
        assert relay.events[1].reason == "target disconnected"
        assert relay.available_targets == set()

    @pytest.mark.asyncio
    async def test_error_with_target_terminates(self, relay):
        await relay._handle_message({"type": "error", "targetId": "cam9", "message": "Target cam9 not available"})
        assert relay.events[0].type == TransportEventType.SESSION_TERMINATED
        assert relay.events[0].reason == "Target cam9 not available"

    @pytest.mark.asyncio
    async def test_error_without_target_only_logged(self, relay):
        await relay._handle_message({"type": "error", "message": "bad frame"})
        assert relay.events == []

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, relay):
        await relay._handle_message({"type": "telemetry", "targetId": "cam1"})
        assert relay.events == []
