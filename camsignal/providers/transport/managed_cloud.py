"""
Managed cloud transport

Signaling through a hosted channel service. Each target maps to a channel:
a discovery call (region, channel, role, credentials) returns the channel's
WebSocket endpoint and TURN servers, then SDP and candidates travel as
base64-encoded JSON payloads on that socket.

The provider closes idle sockets on its own; that only ends signaling, the
media of a connected session carries on.
"""

import asyncio
import inspect
import json
import logging
import uuid
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp
from aiohttp import WSMsgType

from camsignal.exceptions import TransportUnavailable
from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.providers.base.transport_adapter import (
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from camsignal.services.session_state import TransportKind

logger = logging.getLogger(__name__)

ACTION_SDP_OFFER = "SDP_OFFER"
ACTION_SDP_ANSWER = "SDP_ANSWER"
ACTION_ICE_CANDIDATE = "ICE_CANDIDATE"
MESSAGE_STATUS_RESPONSE = "STATUS_RESPONSE"
MESSAGE_GO_AWAY = "GO_AWAY"
MESSAGE_RECONNECT_ICE_SERVER = "RECONNECT_ICE_SERVER"

ROLE_VIEWER = "VIEWER"
PING_INTERVAL_S = 5.0


@dataclass(frozen=True)
class CloudCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"accessKeyId": self.access_key_id, "secretAccessKey": self.secret_access_key}
        if self.session_token:
            data["sessionToken"] = self.session_token
        return data


CredentialResolver = Callable[[], Union[CloudCredentials, Awaitable[CloudCredentials]]]


@dataclass
class ChannelEndpoint:
    """Discovery result for one channel"""

    channel_name: str
    websocket_url: str
    ice_servers: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_response(cls, channel_name: str, data: Dict[str, Any]) -> "ChannelEndpoint":
        url = data.get("websocketUrl") or data.get("endpoint") or data.get("wssEndpoint") or ""
        servers = []
        for server in data.get("iceServers") or []:
            urls = server.get("urls") or server.get("uris") or []
            if isinstance(urls, str):
                urls = [urls]
            servers.append(
                {
                    "urls": urls,
                    "username": server.get("username", ""),
                    "credential": server.get("credential") or server.get("password", ""),
                }
            )
        return cls(channel_name=channel_name, websocket_url=url, ice_servers=servers)


class HttpEndpointDiscovery:
    """Resolves a channel's endpoint with one JSON POST to the provider's API"""

    def __init__(self, discovery_url: str, region: str, role: str = ROLE_VIEWER):
        self.discovery_url = discovery_url
        self.region = region
        self.role = role

    async def discover(
        self,
        session: aiohttp.ClientSession,
        channel_name: str,
        client_id: str,
        credentials: CloudCredentials,
    ) -> ChannelEndpoint:
        body = {
            "region": self.region,
            "channelName": channel_name,
            "role": self.role,
            "clientId": client_id,
            "credentials": credentials.to_dict(),
        }
        try:
            async with session.post(self.discovery_url, json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    raise TransportUnavailable(
                        TransportKind.MANAGED_CLOUD.value,
                        f"discovery for {channel_name} returned {response.status}: {text[:200]}",
                    )
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(TransportKind.MANAGED_CLOUD.value, f"discovery failed: {e}") from e

        endpoint = ChannelEndpoint.from_response(channel_name, data)
        if not endpoint.websocket_url:
            raise TransportUnavailable(TransportKind.MANAGED_CLOUD.value, f"no endpoint for channel {channel_name}")
        return endpoint


@dataclass
class _Channel:
    target_id: str
    endpoint: ChannelEndpoint
    ws: aiohttp.ClientWebSocketResponse
    receive_task: Optional[asyncio.Task] = None
    ping_task: Optional[asyncio.Task] = None
    closing: bool = False


def encode_payload(data: Dict[str, Any]) -> str:
    return b64encode(json.dumps(data).encode()).decode()


def decode_payload(raw: str) -> Dict[str, Any]:
    return json.loads(b64decode(raw).decode())


class ManagedCloudTransport(TransportAdapter):
    """Viewer side of a hosted signaling channel, one socket per target"""

    kind = TransportKind.MANAGED_CLOUD
    supports_trickle = True

    def __init__(
        self,
        discovery: HttpEndpointDiscovery,
        credential_resolver: CredentialResolver,
        channel_template: str = "{target_id}",
        client_id: Optional[str] = None,
        ping_interval_s: float = PING_INTERVAL_S,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        super().__init__()
        self.discovery = discovery
        self.credential_resolver = credential_resolver
        self.channel_template = channel_template
        self.client_id = client_id or f"viewer-{uuid.uuid4().hex[:8]}"
        self.ping_interval_s = ping_interval_s
        self._session = session
        self._owns_session = session is None
        self._channels: Dict[str, _Channel] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def is_channel_open(self, target_id: str) -> bool:
        channel = self._channels.get(target_id)
        return channel is not None and not channel.ws.closed

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self._open = True

    async def request_session(self, target_id: str) -> None:
        """Discover and connect the target's channel ahead of the offer."""
        await self._ensure_channel(target_id)

    def ice_servers_for(self, target_id: str) -> List[Dict[str, Any]]:
        channel = self._channels.get(target_id)
        return list(channel.endpoint.ice_servers) if channel else []

    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        action = ACTION_SDP_OFFER if description.type == "offer" else ACTION_SDP_ANSWER
        await self._send(target_id, action, description.to_dict())

    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        await self._send(target_id, ACTION_ICE_CANDIDATE, candidate.to_dict())

    async def close(self, target_id: str) -> None:
        channel = self._channels.pop(target_id, None)
        if channel is not None:
            await self._close_channel(channel)

    async def shutdown(self) -> None:
        self._open = False
        for target_id in list(self._channels):
            await self.close(target_id)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "client_id": self.client_id,
                "region": self.discovery.region,
                "channels": {tid: not ch.ws.closed for tid, ch in self._channels.items()},
            }
        )
        return status

    # ── Private ──────────────────────────────────────────────────────────────

    async def _resolve_credentials(self) -> CloudCredentials:
        credentials = self.credential_resolver()
        if inspect.isawaitable(credentials):
            credentials = await credentials
        return credentials

    async def _ensure_channel(self, target_id: str) -> _Channel:
        if not self._open:
            raise TransportUnavailable(self.kind.value, "not opened")
        channel = self._channels.get(target_id)
        if channel is not None and not channel.ws.closed:
            return channel

        credentials = await self._resolve_credentials()
        channel_name = self.channel_template.format(target_id=target_id)
        endpoint = await self.discovery.discover(self._session, channel_name, self.client_id, credentials)
        try:
            ws = await self._session.ws_connect(endpoint.websocket_url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(self.kind.value, f"channel {channel_name} connect failed: {e}") from e

        channel = _Channel(target_id=target_id, endpoint=endpoint, ws=ws)
        channel.receive_task = asyncio.ensure_future(self._receive_loop(channel))
        channel.ping_task = asyncio.ensure_future(self._ping_loop(channel))
        self._channels[target_id] = channel
        logger.info(f"Managed channel {channel_name} connected for {target_id}")
        return channel

    async def _send(self, target_id: str, action: str, payload: Dict[str, Any]) -> None:
        channel = await self._ensure_channel(target_id)
        message = {"action": action, "messagePayload": encode_payload(payload)}
        try:
            await channel.ws.send_json(message)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.error(f"Managed channel send {action} for {target_id} failed: {e}")
            self._channel_closed(channel, f"send failed: {e}", clean=False)

    async def _receive_loop(self, channel: _Channel) -> None:
        try:
            async for msg in channel.ws:
                if msg.type == WSMsgType.TEXT:
                    if not msg.data or not msg.data.strip():
                        continue
                    try:
                        self._handle_message(channel, msg.json())
                    except (ValueError, KeyError) as e:
                        logger.warning(f"Malformed managed channel message for {channel.target_id}: {e}")
                elif msg.type in (WSMsgType.CLOSED, WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Managed channel receive error for {channel.target_id}: {e}")

        if not channel.closing:
            self._channel_closed(channel, "provider closed channel", clean=True)

    def _handle_message(self, channel: _Channel, data: Dict[str, Any]) -> None:
        message_type = data.get("messageType", "")
        target_id = channel.target_id

        if message_type == ACTION_SDP_ANSWER:
            payload = decode_payload(data["messagePayload"])
            self._emit(
                TransportEvent(
                    TransportEventType.ANSWER_RECEIVED,
                    target_id=target_id,
                    payload=SessionDescription(sdp=payload.get("sdp", ""), type="answer"),
                )
            )
        elif message_type == ACTION_SDP_OFFER:
            payload = decode_payload(data["messagePayload"])
            self._emit(
                TransportEvent(
                    TransportEventType.OFFER_RECEIVED,
                    target_id=target_id,
                    payload=SessionDescription(sdp=payload.get("sdp", ""), type="offer"),
                )
            )
        elif message_type == ACTION_ICE_CANDIDATE:
            payload = decode_payload(data["messagePayload"])
            self._emit(
                TransportEvent(
                    TransportEventType.CANDIDATE_RECEIVED, target_id=target_id, payload=IceCandidate.from_dict(payload)
                )
            )
        elif message_type == MESSAGE_STATUS_RESPONSE:
            status = data.get("statusResponse") or {}
            if str(status.get("statusCode", "200")) != "200":
                logger.warning(f"Managed channel rejected message for {target_id}: {status}")
        elif message_type in (MESSAGE_GO_AWAY, MESSAGE_RECONNECT_ICE_SERVER):
            logger.info(f"Managed channel for {target_id} asked to reconnect ({message_type})")
        else:
            logger.info(f"Ignoring managed channel message type={message_type!r} for {target_id}")

    async def _ping_loop(self, channel: _Channel) -> None:
        try:
            while not channel.closing:
                await asyncio.sleep(self.ping_interval_s)
                if not channel.ws.closed:
                    await channel.ws.ping()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Managed channel ping loop for {channel.target_id} ended: {e}")

    def _channel_closed(self, channel: _Channel, reason: str, clean: bool) -> None:
        if self._channels.get(channel.target_id) is channel:
            del self._channels[channel.target_id]
        channel.closing = True
        if channel.ping_task is not None and not channel.ping_task.done():
            channel.ping_task.cancel()
        logger.info(f"Managed channel for {channel.target_id} closed: {reason}")
        self._emit(
            TransportEvent(
                TransportEventType.TRANSPORT_CLOSED, target_id=channel.target_id, reason=reason, clean=clean
            )
        )

    @staticmethod
    async def _close_channel(channel: _Channel) -> None:
        channel.closing = True
        for task in filter(None, [channel.ping_task, channel.receive_task]):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if not channel.ws.closed:
            await channel.ws.close()
