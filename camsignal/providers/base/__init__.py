"""
Base abstractions for signaling transports and media engines
"""

from .descriptions import SessionDescription, IceCandidate, strip_candidates, embed_candidates
from .media_transport import MediaTransport, MediaTransportFactory
from .transport_adapter import TransportAdapter, TransportEvent, TransportEventType

__all__ = [
    # Descriptions
    "SessionDescription",
    "IceCandidate",
    "strip_candidates",
    "embed_candidates",
    # Media
    "MediaTransport",
    "MediaTransportFactory",
    # Signaling
    "TransportAdapter",
    "TransportEvent",
    "TransportEventType",
]
