"""
Providers module - signaling transports and media engines
"""

from .base import (
    IceCandidate,
    MediaTransport,
    SessionDescription,
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)

__all__ = [
    "IceCandidate",
    "MediaTransport",
    "SessionDescription",
    "TransportAdapter",
    "TransportEvent",
    "TransportEventType",
]
