"""
Media Transport abstract base class

The WebRTC engine seen from the orchestrator: SDP in/out, candidate and
state callbacks, cumulative counters. ICE, DTLS and RTP stay inside it.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional, List, Dict, Any
import logging

from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.services.stats_differencer import CounterSnapshot

logger = logging.getLogger(__name__)

# Connection states reported through on_connection_state
MEDIA_NEW = "new"
MEDIA_CONNECTING = "connecting"
MEDIA_CONNECTED = "connected"
MEDIA_DISCONNECTED = "disconnected"
MEDIA_FAILED = "failed"
MEDIA_CLOSED = "closed"


class MediaTransport(ABC):
    """
    Abstract base class for one peer connection.

    Callbacks are plain attributes set by the owner before negotiation:
        on_local_candidate(IceCandidate)
        on_gathering_complete()
        on_connection_state(str)
        on_media_flow(str)   # track kind, fired on first track arrival
    """

    def __init__(self):
        self.on_local_candidate: Optional[Callable[[IceCandidate], None]] = None
        self.on_gathering_complete: Optional[Callable[[], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None
        self.on_media_flow: Optional[Callable[[str], None]] = None

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Media callback {getattr(callback, '__name__', callback)} failed: {e}")

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Create and apply a local offer (receive-only video)"""
        pass

    @abstractmethod
    async def create_answer(self, offer: SessionDescription) -> SessionDescription:
        """
        Apply a remote offer, then create and apply the local answer.
        Raises RemoteDescriptionRejected when the offer cannot be applied.
        """
        pass

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Raises RemoteDescriptionRejected when the description cannot be applied"""
        pass

    @abstractmethod
    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        pass

    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]:
        """Latest local description, including every gathered candidate"""
        pass

    @abstractmethod
    async def get_counters(self) -> CounterSnapshot:
        """Cumulative inbound counters stamped with a monotonic timestamp"""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


MediaTransportFactory = Callable[[List[Dict[str, Any]]], MediaTransport]
