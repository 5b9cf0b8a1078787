"""
Relay transport

Single shared WebSocket to the relay broker. Every message carries the
``targetId`` it belongs to; the adapter demultiplexes on it and hands
events to listeners without waiting on them.

Wire envelope (JSON text frames):
    {"type": ..., "targetId": ..., "offer"|"answer"|"candidate": ..., "timestamp": ...}
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Set

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

# Message types
MSG_IDENTIFY = "identify"
MSG_REGISTER_TARGET = "register-target"
MSG_UNREGISTER_TARGET = "unregister-target"
MSG_TARGET_DISCONNECTED = "target-disconnected"
MSG_CALL_REQUEST = "call-request"
MSG_HANG_UP = "hang-up"
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"
MSG_PING = "ping"
MSG_PONG = "pong"
MSG_ERROR = "error"
MSG_ICE_SERVERS = "ice-servers"

CONNECT_TIMEOUT_S = 10.0


class RelayTransport(TransportAdapter):
    """Viewer-side client of the relay broker"""

    kind = TransportKind.RELAY
    supports_trickle = True

    def __init__(
        self,
        url: str,
        client_type: str = "viewer",
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
    ):
        super().__init__()
        self.url = url
        self.client_type = client_type
        self.connect_timeout_s = connect_timeout_s
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False
        self.available_targets: Set[str] = set()
        self.last_message_at: float = 0.0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        if self.is_open:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        self._closing = False
        try:
            self._ws = await asyncio.wait_for(self._session.ws_connect(self.url), self.connect_timeout_s)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportUnavailable(self.kind.value, f"cannot reach {self.url}: {e}") from e

        logger.info(f"Relay channel open: {self.url}")
        await self._send({"type": MSG_IDENTIFY, "clientType": self.client_type})
        self._receive_task = asyncio.ensure_future(self._receive_loop(self._ws))
        self._emit(TransportEvent(TransportEventType.TRANSPORT_OPENED))

    async def reopen(self) -> None:
        """Drop the current socket silently and connect again."""
        await self._drop_socket()
        await self.open()

    async def request_session(self, target_id: str) -> None:
        await self._send({"type": MSG_CALL_REQUEST, "targetId": target_id})

    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        field_name = MSG_ANSWER if description.type == "answer" else MSG_OFFER
        await self._send({"type": field_name, "targetId": target_id, field_name: description.to_dict()})

    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        await self._send({"type": MSG_ICE_CANDIDATE, "targetId": target_id, "candidate": candidate.to_dict()})

    async def send_heartbeat(self) -> None:
        await self._send({"type": MSG_PING, "timestamp": int(time.time() * 1000)})

    async def close(self, target_id: str) -> None:
        if self.is_open:
            await self._send({"type": MSG_HANG_UP, "targetId": target_id})

    async def shutdown(self) -> None:
        self._closing = True
        await self._drop_socket()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update({"url": self.url, "available_targets": sorted(self.available_targets)})
        return status

    # ── Private ──────────────────────────────────────────────────────────────

    async def _send(self, message: Dict[str, Any]) -> None:
        """Send one envelope. A failed send marks the channel lost instead of raising."""
        ws = self._ws
        if ws is None or ws.closed:
            logger.warning(f"Relay channel closed, dropping {message.get('type')} for {message.get('targetId')}")
            self._channel_lost("send on closed channel")
            return
        try:
            await ws.send_json(message)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.error(f"Relay send of {message.get('type')} failed: {e}")
            self._channel_lost(f"send failed: {e}")

    def _channel_lost(self, reason: str) -> None:
        if self._closing:
            return
        self._emit(TransportEvent(TransportEventType.TRANSPORT_CLOSED, reason=reason, clean=False))

    async def _drop_socket(self) -> None:
        closing, self._closing = self._closing, True
        task, self._receive_task = self._receive_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        self._closing = closing

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = msg.json()
                    except ValueError:
                        logger.warning(f"Relay sent non-JSON frame: {msg.data[:80]}")
                        continue
                    await self._handle_message(data)
                elif msg.type in (WSMsgType.CLOSED, WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Relay receive error: {e}")

        if ws is self._ws and not self._closing:
            logger.warning(f"Relay channel closed by peer (code={ws.close_code})")
            self._emit(
                TransportEvent(TransportEventType.TRANSPORT_CLOSED, reason=f"closed code={ws.close_code}", clean=False)
            )

    async def _handle_message(self, data: Dict[str, Any]) -> None:
        self.last_message_at = time.monotonic()
        msg_type = data.get("type", "")
        target_id = data.get("targetId")

        if msg_type == MSG_PING:
            await self._send({"type": MSG_PONG, "timestamp": data.get("timestamp")})
        elif msg_type == MSG_PONG:
            self._emit(TransportEvent(TransportEventType.HEARTBEAT_ACK, payload=data.get("timestamp")))
        elif msg_type == MSG_ICE_SERVERS:
            self._ice_servers = list(data.get("iceServers") or [])
            logger.info(f"Relay provided {len(self._ice_servers)} ICE server(s)")
        elif msg_type == MSG_REGISTER_TARGET and target_id:
            self.available_targets.add(target_id)
            self._emit(TransportEvent(TransportEventType.TARGET_AVAILABLE, target_id=target_id, payload=[target_id]))
        elif msg_type in (MSG_UNREGISTER_TARGET, MSG_TARGET_DISCONNECTED) and target_id:
            self.available_targets.discard(target_id)
            self._emit(
                TransportEvent(TransportEventType.SESSION_TERMINATED, target_id=target_id, reason="target disconnected")
            )
        elif msg_type == MSG_OFFER and target_id:
            self._emit(
                TransportEvent(
                    TransportEventType.OFFER_RECEIVED,
                    target_id=target_id,
                    payload=self._description(data.get("offer"), "offer"),
                )
            )
        elif msg_type == MSG_ANSWER and target_id:
            self._emit(
                TransportEvent(
                    TransportEventType.ANSWER_RECEIVED,
                    target_id=target_id,
                    payload=self._description(data.get("answer"), "answer"),
                )
            )
        elif msg_type == MSG_ICE_CANDIDATE and target_id:
            candidate = data.get("candidate") or {}
            if isinstance(candidate, str):
                candidate = {"candidate": candidate, "sdpMid": data.get("sdpMid"), "sdpMLineIndex": data.get("sdpMLineIndex")}
            self._emit(
                TransportEvent(
                    TransportEventType.CANDIDATE_RECEIVED, target_id=target_id, payload=IceCandidate.from_dict(candidate)
                )
            )
        elif msg_type == MSG_HANG_UP and target_id:
            self._emit(TransportEvent(TransportEventType.SESSION_TERMINATED, target_id=target_id, reason="remote hang-up"))
        elif msg_type == MSG_ERROR:
            message = data.get("message", "")
            logger.warning(f"Relay error{f' for {target_id}' if target_id else ''}: {message}")
            if target_id:
                self._emit(TransportEvent(TransportEventType.SESSION_TERMINATED, target_id=target_id, reason=message))
        else:
            logger.info(f"Ignoring relay message type={msg_type!r} targetId={target_id!r}")

    @staticmethod
    def _description(raw: Any, default_type: str) -> SessionDescription:
        if isinstance(raw, str):
            return SessionDescription(sdp=raw, type=default_type)
        raw = raw or {}
        return SessionDescription(sdp=raw.get("sdp", ""), type=raw.get("type") or default_type)
