"""
UI WebSocket Manager Tests

Tests for the /ws fan-out:
- Connect/disconnect bookkeeping
- Per-target subscriptions
- Session state, stats and relay health messages
- Dropping clients that fail to receive
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from camsignal.services.heartbeat_supervisor import RelayConnectionHealth, RelayState
from camsignal.services.session_state import SessionState, SessionStateChange, SessionStatsUpdate, TransportKind
from camsignal.services.stats_differencer import ZERO_RATES
from camsignal.services.websocket_manager import MSG_RELAY_HEALTH, MSG_STATE, MSG_STATS, WebSocketManager


def _socket():
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_text = AsyncMock()
    return websocket


def _received(websocket):
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]


def _change(target_id="cam1"):
    return SessionStateChange(
        target_id=target_id,
        session_id="s1",
        transport_kind=TransportKind.RELAY,
        old_state=SessionState.AWAITING_REMOTE,
        new_state=SessionState.CONNECTED,
        cause="media flowing",
    )


@pytest.fixture
def manager():
    return WebSocketManager()


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, manager):
        websocket = _socket()
        await manager.connect(websocket)

        websocket.accept.assert_awaited_once()
        assert manager.client_count == 1

        manager.disconnect(websocket)
        manager.disconnect(websocket)
        assert manager.has_clients is False

    @pytest.mark.asyncio
    async def test_snapshot_only_to_new_client(self, manager):
        old, new = _socket(), _socket()
        await manager.connect(old)
        await manager.connect(new)

        await manager.send_snapshot(new, {"sessions": []}, {"state": "open"})

        assert [m["type"] for m in _received(new)] == ["session_status", "relay_health"]
        assert _received(old) == []

    @pytest.mark.asyncio
    async def test_failed_send_drops_client(self, manager):
        websocket = _socket()
        websocket.send_text = AsyncMock(side_effect=RuntimeError("closed"))
        await manager.connect(websocket)

        await manager.publish_state_change(_change())
        assert manager.client_count == 0


class TestSubscriptions:
    """Clients narrowing what they receive"""

    @pytest.mark.asyncio
    async def test_subscribe_filters_session_messages(self, manager):
        everything, only_cam2 = _socket(), _socket()
        await manager.connect(everything)
        await manager.connect(only_cam2)
        manager.handle_client_message(only_cam2, json.dumps({"type": "subscribe", "targets": ["cam2"]}))

        await manager.publish_state_change(_change("cam1"))
        await manager.publish_state_change(_change("cam2"))

        assert [m["data"]["target_id"] for m in _received(everything)] == ["cam1", "cam2"]
        assert [m["data"]["target_id"] for m in _received(only_cam2)] == ["cam2"]

    @pytest.mark.asyncio
    async def test_relay_health_reaches_everyone(self, manager):
        subscribed = _socket()
        await manager.connect(subscribed)
        manager.subscribe(subscribed, ["cam2"])

        health = RelayConnectionHealth(state=RelayState.RECONNECTING, reconnect_attempt=2)
        await manager.publish_relay_health("relay_lost", health, "socket reset")

        message = _received(subscribed)[0]
        assert message["type"] == MSG_RELAY_HEALTH
        assert message["data"]["event"] == "relay_lost"
        assert message["data"]["reconnect_attempt"] == 2
        assert message["data"]["error"] == "socket reset"

    @pytest.mark.asyncio
    async def test_empty_subscription_means_all(self, manager):
        websocket = _socket()
        await manager.connect(websocket)
        manager.subscribe(websocket, ["cam2"])
        manager.handle_client_message(websocket, json.dumps({"type": "subscribe", "targets": []}))

        assert manager.wants(websocket, "cam1") is True

    @pytest.mark.parametrize("text", ["not json", "[]", json.dumps({"type": "dance"})])
    def test_other_messages_ignored(self, manager, text):
        websocket = _socket()
        manager.subscriptions[websocket] = {"cam1"}
        manager.handle_client_message(websocket, text)
        assert manager.subscriptions[websocket] == {"cam1"}

    def test_unknown_socket_not_subscribed(self, manager):
        assert manager.subscribe(_socket(), ["cam1"]) == set()


class TestMessages:
    @pytest.mark.asyncio
    async def test_state_change_payload(self, manager):
        websocket = _socket()
        await manager.connect(websocket)

        await manager.publish_state_change(_change())

        message = _received(websocket)[0]
        assert message["type"] == MSG_STATE
        assert message["data"]["new_state"] == "connected"

    @pytest.mark.asyncio
    async def test_stats_payload(self, manager):
        websocket = _socket()
        await manager.connect(websocket)
        update = SessionStatsUpdate(target_id="cam1", session_id="s1", rates=ZERO_RATES, quality={"overall": "good"})

        await manager.publish_stats(update)

        message = _received(websocket)[0]
        assert message["type"] == MSG_STATS
        assert message["data"]["quality"] == {"overall": "good"}

    @pytest.mark.asyncio
    async def test_stats_without_clients_is_noop(self, manager):
        update = SessionStatsUpdate(target_id="cam1", session_id="s1", rates=ZERO_RATES, quality={})
        await manager.publish_stats(update)
