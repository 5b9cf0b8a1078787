"""
Signaling transports: relay, pull, push and managed cloud
"""

from .relay import RelayTransport
from .pull import PullTransport
from .push import PushTransport, PushResult
from .managed_cloud import ManagedCloudTransport, HttpEndpointDiscovery, CloudCredentials

__all__ = [
    "RelayTransport",
    "PullTransport",
    "PushTransport",
    "PushResult",
    "ManagedCloudTransport",
    "HttpEndpointDiscovery",
    "CloudCredentials",
]
