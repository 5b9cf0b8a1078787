"""
Transport Adapter abstract base class

One adapter per signaling transport (relay, pull, push, managed cloud).
Adapters move descriptions and candidates; they never decide session state.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.services.session_state import TransportKind

logger = logging.getLogger(__name__)


class TransportEventType(Enum):
    """Events an adapter reports to its listeners"""

    OFFER_RECEIVED = "offer_received"
    ANSWER_RECEIVED = "answer_received"
    CANDIDATE_RECEIVED = "candidate_received"
    SESSION_TERMINATED = "session_terminated"
    TRANSPORT_OPENED = "transport_opened"
    TRANSPORT_CLOSED = "transport_closed"
    HEARTBEAT_ACK = "heartbeat_ack"
    TARGET_AVAILABLE = "target_available"


@dataclass(frozen=True)
class TransportEvent:
    """
    Payload by type:
        OFFER_RECEIVED / ANSWER_RECEIVED: SessionDescription
        CANDIDATE_RECEIVED: IceCandidate
        TARGET_AVAILABLE: list of target ids
        HEARTBEAT_ACK: server timestamp, if any
    ``target_id`` is None for channel-wide events.
    """

    type: TransportEventType
    target_id: Optional[str] = None
    payload: Any = None
    request_id: Optional[str] = None
    reason: str = ""
    clean: bool = True


TransportListener = Callable[[TransportEvent], None]


class TransportAdapter(ABC):
    """Abstract base class for signaling transports"""

    kind: TransportKind
    supports_trickle: bool = True

    def __init__(self):
        self._listeners: List[TransportListener] = []
        self._ice_servers: List[Dict[str, Any]] = []

    # ── Listener plumbing ────────────────────────────────────────────────────

    def add_listener(self, listener: TransportListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TransportListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, event: TransportEvent) -> None:
        """Hand an event to every listener. Listeners must not block."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"{self.kind.value} listener failed on {event.type.value}: {e}")

    # ── Contract ─────────────────────────────────────────────────────────────

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the adapter can carry signaling"""
        pass

    @abstractmethod
    async def open(self) -> None:
        """
        Make the transport usable.
        Raises TransportUnavailable when the channel cannot be established.
        """
        pass

    @abstractmethod
    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        """Deliver our offer or answer to the remote side of ``target_id``"""
        pass

    @abstractmethod
    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        """Deliver one trickled local candidate"""
        pass

    @abstractmethod
    async def close(self, target_id: str) -> None:
        """Release signaling resources held for ``target_id``"""
        pass

    async def request_session(self, target_id: str) -> None:
        """Ask the producer side to start a negotiation (relay call-request)."""
        return None

    async def shutdown(self) -> None:
        """Close the whole transport."""
        return None

    def ice_servers_for(self, target_id: str) -> List[Dict[str, Any]]:
        """
        ICE servers to use for a session on this transport.
        Returns [] to let the orchestrator fall back to configured servers.
        """
        return list(self._ice_servers)

    def get_status(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "open": self.is_open, "supports_trickle": self.supports_trickle}
