"""
Pytest configuration and shared fixtures for camsignal tests

Provides in-memory stand-ins for the two outside capabilities the
orchestrator depends on: a media engine and a signaling transport.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from camsignal.providers.base.descriptions import IceCandidate, SessionDescription
from camsignal.providers.base.media_transport import MediaTransport
from camsignal.providers.base.transport_adapter import TransportAdapter, TransportEvent, TransportEventType
from camsignal.services.session_state import TransportKind
from camsignal.services.stats_differencer import CounterSnapshot

OFFER_SDP = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=mid:0\r\n"
    "a=recvonly\r\n"
)


def make_candidate(index: int) -> IceCandidate:
    return IceCandidate(
        candidate=f"candidate:{index} 1 udp {2130706431 - index} 192.168.1.{index} {50000 + index} typ host",
        sdp_mid="0",
        sdp_mline_index=0,
    )


class FakeMediaTransport(MediaTransport):
    """Scriptable media engine: tests drive callbacks and counters by hand."""

    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.ice_servers = ice_servers or []
        self.local: Optional[SessionDescription] = None
        self.remote: Optional[SessionDescription] = None
        self.remote_candidates: List[IceCandidate] = []
        self.counters = CounterSnapshot(timestamp=0.0)
        self.closed = False
        self.reject_remote = False

    async def create_offer(self) -> SessionDescription:
        self.local = SessionDescription(sdp=OFFER_SDP, type="offer")
        return self.local

    async def create_answer(self, offer: SessionDescription) -> SessionDescription:
        await self.set_remote_description(offer)
        self.local = SessionDescription(sdp=OFFER_SDP.replace("a=recvonly", "a=sendonly"), type="answer")
        return self.local

    async def set_remote_description(self, description: SessionDescription) -> None:
        if self.reject_remote:
            from camsignal.exceptions import RemoteDescriptionRejected

            raise RemoteDescriptionRejected("bad sdp")
        self.remote = description

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        self.remote_candidates.append(candidate)

    def local_description(self) -> Optional[SessionDescription]:
        return self.local

    async def get_counters(self) -> CounterSnapshot:
        return self.counters

    async def close(self) -> None:
        self.closed = True

    # ── Test drivers ─────────────────────────────────────────────────────────

    def emit_candidate(self, candidate: IceCandidate) -> None:
        self._notify(self.on_local_candidate, candidate)

    def emit_gathering_complete(self) -> None:
        self._notify(self.on_gathering_complete)

    def emit_state(self, state: str) -> None:
        self._notify(self.on_connection_state, state)

    def emit_track(self, kind: str = "video") -> None:
        self._notify(self.on_media_flow, kind)


class FakeAdapter(TransportAdapter):
    """Records everything sent; tests inject remote events with ``inject``."""

    def __init__(self, kind: TransportKind = TransportKind.RELAY, supports_trickle: bool = True):
        super().__init__()
        self.kind = kind
        self.supports_trickle = supports_trickle
        self.opened = True
        self.descriptions: List[tuple] = []
        self.candidates: List[tuple] = []
        self.requested: List[str] = []
        self.closed_targets: List[str] = []
        self.rejected: List[tuple] = []

    @property
    def is_open(self) -> bool:
        return self.opened

    async def open(self) -> None:
        self.opened = True

    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        self.descriptions.append((target_id, description))

    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        self.candidates.append((target_id, candidate))

    async def request_session(self, target_id: str) -> None:
        self.requested.append(target_id)

    async def close(self, target_id: str) -> None:
        self.closed_targets.append(target_id)

    def reject(self, request_id: str, error: Exception) -> bool:
        self.rejected.append((request_id, error))
        return True

    def inject(self, event_type: TransportEventType, target_id: Optional[str] = None, **kwargs) -> None:
        self._emit(TransportEvent(event_type, target_id=target_id, **kwargs))


async def settle(rounds: int = 10) -> None:
    """Let session workers drain their mailboxes."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def media_engines():
    """Factory plus the list of every engine it created"""
    created: List[FakeMediaTransport] = []

    def factory(ice_servers):
        media = FakeMediaTransport(ice_servers)
        created.append(media)
        return media

    factory.created = created
    return factory


@pytest.fixture
def relay_adapter():
    return FakeAdapter(TransportKind.RELAY)


@pytest.fixture
def temp_preferences(tmp_path):
    """
    Create temporary preferences.json file for testing

    Args:
        tmp_path: pytest's temporary directory fixture

    Returns:
        Path to temporary preferences file
    """
    prefs_file = tmp_path / "preferences.json"
    prefs_data = {
        "relay": {"url": "ws://relay.test/ws/relay"},
        "heartbeat": {"interval_s": 10.0, "max_reconnect_attempts": 4},
        "ice": {"default_policy": "batched", "servers": [{"urls": "stun:stun.test:3478"}]},
        "push": {"answer_timeout_ms": 30000, "auto_accept": False},
        "pull": {"enabled": True, "endpoint_template": "https://media.test/whep/{target_id}"},
        "session": {"degraded_window_s": 5.0},
        "stats": {"thresholds": {"packet_loss_error": 4.0}},
    }
    prefs_file.write_text(json.dumps(prefs_data, indent=2))
    return prefs_file


# Pytest configuration hooks
def pytest_configure(config):
    """
    Pytest configuration hook

    Add custom markers and configuration
    """
    config.addinivalue_line("markers", "slow: slow running tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "network: tests that open local sockets")
