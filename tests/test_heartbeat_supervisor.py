"""
Heartbeat Supervisor Tests

Tests for relay liveness:
- Missed acks trigger reconnect with exponential backoff
- Successful reconnect resets the attempt counter
- Giving up after the maximum attempts
- Connected sessions survive a relay outage
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from camsignal.exceptions import RelayUnreachable, TransportUnavailable
from camsignal.providers.base.descriptions import SessionDescription
from camsignal.providers.base.transport_adapter import TransportEventType
from camsignal.services.heartbeat_supervisor import (
    RELAY_LOST,
    RELAY_RESTORED,
    RELAY_UNREACHABLE,
    HeartbeatConfig,
    HeartbeatSupervisor,
    RelayState,
    compute_backoff_ms,
)
from camsignal.services.session_orchestrator import SessionConfig, SessionOrchestrator
from camsignal.services.session_state import SessionState, TransportKind

from conftest import OFFER_SDP, FakeAdapter, settle


class FakeRelay(FakeAdapter):
    """Relay whose acks and reconnects are scripted"""

    def __init__(self):
        super().__init__(TransportKind.RELAY)
        self.acking = True
        self.reopen_failures = 0
        self.reopens = 0
        self.heartbeats = 0

    async def send_heartbeat(self) -> None:
        self.heartbeats += 1
        if self.acking:
            self.inject(TransportEventType.HEARTBEAT_ACK)

    async def reopen(self) -> None:
        self.reopens += 1
        if self.reopen_failures > 0:
            self.reopen_failures -= 1
            raise TransportUnavailable("relay", "connection refused")
        self.acking = True


def _fast_config(**overrides):
    values = dict(interval_s=0.01, ack_timeout_s=0.01, max_missed_acks=2)
    values.update(overrides)
    return HeartbeatConfig(**values)


class TestBackoff:
    """Backoff formula"""

    @pytest.mark.parametrize(
        "attempt, expected",
        [(0, 0), (1, 1000), (2, 2000), (3, 4000), (5, 16000), (6, 30000), (10, 30000)],
    )
    def test_compute_backoff(self, attempt, expected):
        assert compute_backoff_ms(attempt, 1000, 30000) == expected


class TestReconnect:
    """Outage detection and recovery"""

    @pytest.mark.asyncio
    async def test_missed_acks_backoff_then_reset(self):
        """Two unacknowledged pings → reconnect at 1000ms, 2000ms after a second failure"""
        relay = FakeRelay()
        relay.acking = False
        relay.reopen_failures = 2
        supervisor = HeartbeatSupervisor(relay, _fast_config())

        scheduled = []
        events = []
        restored = asyncio.Event()

        async def record_backoff(delay_s):
            scheduled.append(supervisor.health.backoff_ms)

        def listener(event, health, error):
            events.append(event)
            if event == RELAY_RESTORED:
                restored.set()

        supervisor.add_listener(listener)
        with patch.object(supervisor, "_wait_backoff", new=AsyncMock(side_effect=record_backoff)):
            await supervisor.start()
            await asyncio.wait_for(restored.wait(), timeout=2.0)

            assert scheduled[:2] == [1000, 2000]
            assert scheduled == [1000, 2000, 4000]
            assert relay.reopens == 3
            assert events == [RELAY_LOST, RELAY_RESTORED]
            assert supervisor.health.reconnect_attempt == 0
            assert supervisor.health.state == RelayState.OPEN
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_unclean_close_reconnects_at_once(self):
        relay = FakeRelay()
        supervisor = HeartbeatSupervisor(relay, _fast_config(interval_s=30.0))
        restored = asyncio.Event()
        supervisor.add_listener(lambda event, health, error: restored.set() if event == RELAY_RESTORED else None)

        with patch.object(supervisor, "_wait_backoff", new=AsyncMock()):
            await supervisor.start()
            await asyncio.sleep(0)
            relay.inject(TransportEventType.TRANSPORT_CLOSED, clean=False, reason="peer reset")
            await asyncio.wait_for(restored.wait(), timeout=2.0)

        assert relay.reopens == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_clean_close_is_not_an_outage(self):
        relay = FakeRelay()
        supervisor = HeartbeatSupervisor(relay, _fast_config(interval_s=30.0))
        await supervisor.start()
        relay.inject(TransportEventType.TRANSPORT_CLOSED, clean=True)
        await asyncio.sleep(0.02)

        assert relay.reopens == 0
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        relay = FakeRelay()
        relay.acking = False
        relay.reopen_failures = 100
        supervisor = HeartbeatSupervisor(relay, _fast_config(max_reconnect_attempts=3))

        failures = []
        gave_up = asyncio.Event()

        def listener(event, health, error):
            if event == RELAY_UNREACHABLE:
                failures.append(error)
                gave_up.set()

        supervisor.add_listener(listener)
        with patch.object(supervisor, "_wait_backoff", new=AsyncMock()):
            await supervisor.start()
            await asyncio.wait_for(gave_up.wait(), timeout=2.0)

        assert relay.reopens == 3
        assert isinstance(failures[0], RelayUnreachable)
        assert supervisor.get_state()["state"] == "unreachable"
        assert supervisor.is_running is False
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_backoff(self):
        relay = FakeRelay()
        relay.acking = False
        supervisor = HeartbeatSupervisor(relay, _fast_config(backoff_base_ms=60000))
        await supervisor.start()
        await asyncio.sleep(0.1)
        assert supervisor.health.state == RelayState.RECONNECTING

        await asyncio.wait_for(supervisor.stop(), timeout=1.0)
        assert supervisor.get_state()["state"] == "stopped"
        assert relay.reopens == 0


class TestSessionsDuringOutage:
    """Media sessions across a relay outage"""

    @pytest.mark.asyncio
    async def test_connected_sessions_stay_connected(self, media_engines):
        relay = FakeRelay()
        orchestrator = SessionOrchestrator([relay], SessionConfig(stats_interval_s=30.0), media_engines)

        await orchestrator.accept_inbound("cam1", SessionDescription(sdp=OFFER_SDP, type="offer"))
        media = media_engines.created[0]
        media.emit_state("connected")
        media.emit_track("video")
        await settle()
        assert orchestrator.get_session("cam1").state == SessionState.CONNECTED

        await orchestrator.start_outbound("cam2", TransportKind.RELAY)
        assert orchestrator.get_session("cam2").state == SessionState.IDLE

        states = []
        orchestrator.add_state_listener(lambda change: states.append((change.target_id, change.new_state)))

        relay.acking = False
        relay.reopen_failures = 1
        supervisor = HeartbeatSupervisor(relay, _fast_config())
        supervisor.add_listener(orchestrator.on_relay_health)
        restored = asyncio.Event()
        supervisor.add_listener(lambda event, health, error: restored.set() if event == RELAY_RESTORED else None)

        with patch.object(supervisor, "_wait_backoff", new=AsyncMock()):
            await supervisor.start()
            await asyncio.wait_for(restored.wait(), timeout=2.0)
        await settle()

        assert orchestrator.get_session("cam1").state == SessionState.CONNECTED
        assert ("cam1", SessionState.CLOSED) not in states
        # a session still waiting for its offer cannot survive the lost call request
        assert orchestrator.get_session("cam2").state == SessionState.CLOSED

        await supervisor.stop()
        await orchestrator.shutdown()
