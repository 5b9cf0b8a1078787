"""
Relay Hub Tests

Tests for the /ws/relay broker:
- Identification and target registration
- call-request routing and the not-available error
- offer/answer/ice-candidate forwarding in both directions
- Producer disconnect and idle sweep
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient

from camsignal.services.relay_hub import ROLE_CAMERA, ROLE_VIEWER, HubClient, RelayHub, normalize_role


def _client(client_id, role=None):
    websocket = MagicMock()
    websocket.send_json = AsyncMock()
    websocket.close = AsyncMock()
    return HubClient(client_id=client_id, websocket=websocket, role=role)


def _sent(client):
    return [call.args[0] for call in client.websocket.send_json.await_args_list]


@pytest.fixture
def hub():
    return RelayHub(ice_servers=[{"urls": "stun:stun.test:3478"}], connection_timeout_s=60.0)


@pytest.fixture
def camera_and_viewer(hub):
    camera = _client("cam-client")
    viewer = _client("viewer-client", ROLE_VIEWER)
    hub.clients = {camera.client_id: camera, viewer.client_id: viewer}
    return camera, viewer


class TestRoles:
    """clientType normalization"""

    @pytest.mark.parametrize(
        "client_type, expected",
        [("android", ROLE_CAMERA), ("Camera", ROLE_CAMERA), ("web", ROLE_VIEWER), ("viewer", ROLE_VIEWER), ("toaster", None), (None, None)],
    )
    def test_normalize_role(self, client_type, expected):
        assert normalize_role(client_type) == expected


class TestRouting:
    """Message routing between producers and viewers"""

    @pytest.mark.asyncio
    async def test_register_announced_to_viewers(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})

        assert camera.role == ROLE_CAMERA
        assert hub.targets["cam1"].producer is camera
        assert _sent(viewer) == [{"type": "register-target", "targetId": "cam1"}]

    @pytest.mark.asyncio
    async def test_identify_lists_existing_targets(self, hub, camera_and_viewer):
        camera, _ = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})

        late_viewer = _client("late")
        hub.clients[late_viewer.client_id] = late_viewer
        await hub.handle_message(late_viewer, {"type": "identify", "clientType": "web"})

        assert late_viewer.role == ROLE_VIEWER
        assert _sent(late_viewer) == [{"type": "register-target", "targetId": "cam1"}]

    @pytest.mark.asyncio
    async def test_call_request_reaches_producer(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})
        await hub.handle_message(viewer, {"type": "call-request", "targetId": "cam1"})

        assert _sent(camera) == [{"type": "call-request", "targetId": "cam1", "fromClient": "viewer-client"}]

    @pytest.mark.asyncio
    async def test_call_request_unknown_target(self, hub, camera_and_viewer):
        _, viewer = camera_and_viewer
        await hub.handle_message(viewer, {"type": "call-request", "targetId": "ghost"})

        assert _sent(viewer) == [{"type": "error", "targetId": "ghost", "message": "Target ghost not available"}]

    @pytest.mark.asyncio
    async def test_offer_broadcast_answer_forwarded(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})
        viewer.websocket.send_json.reset_mock()

        await hub.handle_message(camera, {"type": "offer", "targetId": "cam1", "offer": {"type": "offer", "sdp": "v=0"}})
        await hub.handle_message(viewer, {"type": "answer", "targetId": "cam1", "answer": {"type": "answer", "sdp": "v=0"}})

        assert _sent(viewer)[0]["type"] == "offer"
        assert _sent(viewer)[0]["fromClient"] == "cam-client"
        assert _sent(camera)[0]["type"] == "answer"
        assert _sent(camera)[0]["answer"]["type"] == "answer"

    @pytest.mark.asyncio
    async def test_candidates_counted(self, hub, camera_and_viewer):
        camera, _ = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.2 5000 typ host", "sdpMid": "0"}
        await hub.handle_message(camera, {"type": "ice-candidate", "targetId": "cam1", "candidate": candidate})
        await hub.handle_message(camera, {"type": "ice-candidate", "targetId": "cam1", "candidate": candidate})
        await hub.handle_message(camera, {"type": "ice-candidate", "targetId": "cam1", "candidate": None})

        assert hub.candidate_counts == {"cam1_cam-client": 2}

    @pytest.mark.asyncio
    async def test_ping_pong(self, hub, camera_and_viewer):
        camera, _ = camera_and_viewer
        await hub.handle_message(camera, {"type": "ping", "timestamp": 99})
        assert _sent(camera) == [{"type": "pong", "timestamp": 99}]


class TestDisconnect:
    """Producers leaving"""

    @pytest.mark.asyncio
    async def test_producer_disconnect_drops_targets(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})
        await hub._on_disconnect(camera)

        assert "cam1" not in hub.targets
        assert _sent(viewer)[-1] == {"type": "target-disconnected", "targetId": "cam1"}

    @pytest.mark.asyncio
    async def test_unregister_only_by_owner(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        await hub.handle_message(camera, {"type": "register-target", "targetId": "cam1"})
        await hub.handle_message(viewer, {"type": "unregister-target", "targetId": "cam1"})
        assert "cam1" in hub.targets

        await hub.handle_message(camera, {"type": "unregister-target", "targetId": "cam1"})
        assert "cam1" not in hub.targets
        assert _sent(viewer)[-1] == {"type": "unregister-target", "targetId": "cam1"}

    @pytest.mark.asyncio
    async def test_sweep_closes_silent_clients(self, hub, camera_and_viewer):
        camera, viewer = camera_and_viewer
        camera.last_seen = time.monotonic() - 120

        closed = await hub.sweep()

        assert closed == ["cam-client"]
        camera.websocket.close.assert_awaited_once_with(code=1001)
        assert list(hub.clients) == ["viewer-client"]


@pytest.mark.network
class TestOverWebSocket:
    """Full exchange through a real WebSocket endpoint"""

    def test_viewer_reaches_camera(self, hub):
        app = FastAPI()

        @app.websocket("/ws/relay")
        async def relay(websocket: WebSocket):
            await hub.serve(websocket)

        with TestClient(app) as client:
            with client.websocket_connect("/ws/relay") as viewer:
                assert viewer.receive_json()["iceServers"] == [{"urls": "stun:stun.test:3478"}]
                viewer.send_json({"type": "identify", "clientType": "viewer"})
                viewer.send_json({"type": "ping", "timestamp": 1})
                assert viewer.receive_json() == {"type": "pong", "timestamp": 1}

                with client.websocket_connect("/ws/relay") as camera:
                    assert camera.receive_json()["type"] == "ice-servers"
                    camera.send_json({"type": "identify", "clientType": "android"})
                    camera.send_json({"type": "register-target", "targetId": "cam1"})
                    assert viewer.receive_json() == {"type": "register-target", "targetId": "cam1"}

                    viewer.send_json({"type": "call-request", "targetId": "cam1"})
                    request = camera.receive_json()
                    assert request["type"] == "call-request"

                    camera.send_json({"type": "offer", "targetId": "cam1", "offer": {"type": "offer", "sdp": "v=0"}})
                    offer = viewer.receive_json()
                    assert offer["offer"]["sdp"] == "v=0"

                assert viewer.receive_json() == {"type": "target-disconnected", "targetId": "cam1"}
