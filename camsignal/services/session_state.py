"""
Session model

States, transport kinds and the per-target Session record owned by the
SessionOrchestrator.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet

from camsignal.services.stats_differencer import CounterSnapshot, QualityRates


class SessionState(Enum):
    """Negotiation lifecycle of one media session"""

    IDLE = "idle"
    NEGOTIATING = "negotiating"
    AWAITING_REMOTE = "awaiting_remote"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


class TransportKind(Enum):
    """Signaling transport a session negotiates over"""

    RELAY = "relay"
    PULL = "pull"
    PUSH = "push"
    MANAGED_CLOUD = "managed_cloud"


class IcePolicy(Enum):
    """How local ICE candidates reach the remote side"""

    TRICKLE = "trickle"
    BATCHED = "batched"


# CLOSED is reachable from every state and leaves nothing
ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.NEGOTIATING, SessionState.CLOSED}),
    SessionState.NEGOTIATING: frozenset({SessionState.AWAITING_REMOTE, SessionState.CLOSED}),
    SessionState.AWAITING_REMOTE: frozenset({SessionState.CONNECTED, SessionState.CLOSED}),
    SessionState.CONNECTED: frozenset({SessionState.DEGRADED, SessionState.CLOSED}),
    SessionState.DEGRADED: frozenset({SessionState.CONNECTED, SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

ACTIVE_STATES = frozenset(
    {
        SessionState.IDLE,
        SessionState.NEGOTIATING,
        SessionState.AWAITING_REMOTE,
        SessionState.CONNECTED,
        SessionState.DEGRADED,
    }
)

# States abandoned when the relay channel is lost; live media is left alone
PRE_MEDIA_STATES = frozenset({SessionState.IDLE, SessionState.NEGOTIATING, SessionState.AWAITING_REMOTE})


def can_transition(old: SessionState, new: SessionState) -> bool:
    return new in ALLOWED_TRANSITIONS[old]


class InvalidTransition(Exception):
    """Raised when the orchestrator attempts a move the state machine forbids."""

    def __init__(self, old: SessionState, new: SessionState):
        self.old = old
        self.new = new
        super().__init__(f"Invalid session transition {old.value} -> {new.value}")


@dataclass
class Session:
    """One negotiation with one target"""

    target_id: str
    transport_kind: TransportKind
    ice_policy: IcePolicy = IcePolicy.TRICKLE
    session_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: SessionState = SessionState.IDLE
    created_at: float = field(default_factory=time.time)
    last_state_change_at: float = field(default_factory=time.time)
    manual_teardown: bool = False
    stats_snapshot: Optional[QualityRates] = None
    quality: Optional[Dict[str, str]] = None
    previous_counter_snapshot: Optional[CounterSnapshot] = None
    transport_connected: bool = False
    media_flow_observed: bool = False
    pending_remote_offer: Optional[str] = None
    push_request_id: Optional[str] = None
    close_cause: str = ""

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "target_id": self.target_id,
            "transport": self.transport_kind.value,
            "ice_policy": self.ice_policy.value,
            "state": self.state.value,
            "created_at": self.created_at,
            "last_state_change_at": self.last_state_change_at,
            "manual_teardown": self.manual_teardown,
            "stats": self.stats_snapshot.to_dict() if self.stats_snapshot else None,
            "quality": self.quality,
            "close_cause": self.close_cause,
        }


@dataclass(frozen=True)
class SessionStateChange:
    """Published on every observable transition"""

    target_id: str
    session_id: str
    transport_kind: TransportKind
    old_state: SessionState
    new_state: SessionState
    cause: str = ""
    at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "session_id": self.session_id,
            "transport": self.transport_kind.value,
            "old_state": self.old_state.value,
            "new_state": self.new_state.value,
            "cause": self.cause,
            "at": self.at,
        }


@dataclass(frozen=True)
class SessionStatsUpdate:
    """Published once per stats tick of a connected session"""

    target_id: str
    session_id: str
    rates: QualityRates
    quality: Dict[str, str]
    round_trip_time: Optional[float] = None
    jitter: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "session_id": self.session_id,
            "rates": self.rates.to_dict(),
            "quality": dict(self.quality),
            "round_trip_time": self.round_trip_time,
            "jitter": self.jitter,
        }
