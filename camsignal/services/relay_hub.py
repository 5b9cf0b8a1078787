"""
Relay Hub

The broker end of the relay channel, served on ``/ws/relay``. Producers
(cameras) register target ids; viewers ask for a target with
``call-request`` and then exchange offer/answer/ice-candidate envelopes
through the hub.

Routing rules:
- viewer → producer: forwarded to the client that registered the target
- producer → viewers: broadcast to every identified viewer
- ping → pong on the same socket
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from camsignal.services.session_orchestrator import DEFAULT_ICE_SERVERS

logger = logging.getLogger(__name__)

ROLE_CAMERA = "camera"
ROLE_VIEWER = "viewer"

# Client types seen in the field
_ROLE_ALIASES = {
    "camera": ROLE_CAMERA,
    "android": ROLE_CAMERA,
    "producer": ROLE_CAMERA,
    "viewer": ROLE_VIEWER,
    "web": ROLE_VIEWER,
}

_CANDIDATE_TYPE = re.compile(r"typ (\w+)")


def normalize_role(client_type: Optional[str]) -> Optional[str]:
    if not client_type:
        return None
    return _ROLE_ALIASES.get(str(client_type).lower())


@dataclass
class HubClient:
    """One socket connected to the hub"""

    client_id: str
    websocket: WebSocket
    address: str = ""
    role: Optional[str] = None
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.monotonic)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.client_id,
            "role": self.role,
            "address": self.address,
            "connected_at": self.connected_at,
            "idle_s": round(time.monotonic() - self.last_seen, 1),
        }


@dataclass
class RegisteredTarget:
    target_id: str
    producer: HubClient
    registered_at: float = field(default_factory=time.time)


class RelayHub:
    """Client and target registry plus message routing"""

    def __init__(
        self,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        connection_timeout_s: float = 60.0,
        sweep_interval_s: float = 10.0,
    ):
        self.ice_servers = list(ice_servers or DEFAULT_ICE_SERVERS)
        self.connection_timeout_s = connection_timeout_s
        self.sweep_interval_s = sweep_interval_s

        self.clients: Dict[str, HubClient] = {}
        self.targets: Dict[str, RegisteredTarget] = {}
        self.candidate_counts: Dict[str, int] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Relay hub started (timeout={self.connection_timeout_s}s)")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for client in list(self.clients.values()):
            try:
                await client.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Closing hub client {client.client_id} failed: {e}")
        logger.info("Relay hub stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "clients": [client.to_dict() for client in self.clients.values()],
            "targets": {tid: target.producer.client_id for tid, target in self.targets.items()},
            "candidate_counts": dict(self.candidate_counts),
        }

    # ── Connection handling ──────────────────────────────────────────────────

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it goes away."""
        await websocket.accept()
        address = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else ""
        client = HubClient(client_id=uuid.uuid4().hex[:9], websocket=websocket, address=address)
        self.clients[client.client_id] = client
        logger.info(f"Hub client connected: {client.client_id} from {address}")

        await self._send(client, {"type": "ice-servers", "iceServers": self.ice_servers})
        try:
            while True:
                raw = await websocket.receive_text()
                client.last_seen = time.monotonic()
                try:
                    message = json.loads(raw)
                except ValueError as e:
                    logger.warning(f"Unparseable message from {client.client_id}: {e}")
                    continue
                if not isinstance(message, dict):
                    logger.warning(f"Non-object message from {client.client_id} ignored")
                    continue
                await self.handle_message(client, message)
        except WebSocketDisconnect as e:
            logger.info(f"Hub client disconnected: {client.client_id} (code: {e.code})")
        except RuntimeError as e:
            # socket already closed by the sweep
            logger.info(f"Hub client {client.client_id} closed: {e}")
        finally:
            await self._on_disconnect(client)

    async def handle_message(self, client: HubClient, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        if msg_type == "ping":
            await self._send(client, {"type": "pong", "timestamp": message.get("timestamp")})
            return
        if msg_type == "pong":
            return

        logger.debug(f"Received from {client.client_id}: {msg_type}")
        target_id = message.get("targetId") or message.get("cameraId")

        if msg_type == "identify":
            await self._identify(client, message.get("clientType"))
        elif msg_type == "register-target":
            await self._register_target(client, target_id)
        elif msg_type == "unregister-target":
            await self._unregister_target(client, target_id)
        elif msg_type == "call-request":
            await self._call_request(client, target_id)
        elif msg_type == "hang-up":
            await self._route(client, target_id, {"type": "hang-up", "targetId": target_id})
        elif msg_type in ("offer", "answer"):
            payload = message.get(msg_type)
            if isinstance(payload, dict):
                logger.debug(f"  {msg_type} for {target_id}: {len(payload.get('sdp') or '')} chars of SDP")
            await self._route(client, target_id, {"type": msg_type, "targetId": target_id, msg_type: payload})
        elif msg_type == "ice-candidate":
            self._count_candidate(client, target_id, message.get("candidate"))
            await self._route(
                client, target_id, {"type": "ice-candidate", "targetId": target_id, "candidate": message.get("candidate")}
            )
        else:
            logger.info(f"Unknown message type from {client.client_id}: {msg_type}")

    # ── Handlers ─────────────────────────────────────────────────────────────

    async def _identify(self, client: HubClient, client_type: Optional[str]) -> None:
        role = normalize_role(client_type)
        if role is None:
            logger.warning(f"Client {client.client_id} sent unknown client type {client_type!r}")
            return
        client.role = role
        logger.info(f"Client {client.client_id} identified as {role}")
        if role == ROLE_VIEWER:
            for target_id in self.targets:
                await self._send(client, {"type": "register-target", "targetId": target_id})

    async def _register_target(self, client: HubClient, target_id: Optional[str]) -> None:
        if not target_id:
            return
        if client.role is None:
            client.role = ROLE_CAMERA
        existing = self.targets.get(target_id)
        if existing is not None and existing.producer is not client:
            logger.warning(f"Target {target_id} re-registered by {client.client_id}, replacing {existing.producer.client_id}")
        elif existing is not None:
            return
        self.targets[target_id] = RegisteredTarget(target_id=target_id, producer=client)
        logger.info(f"Target registered: {target_id} by client {client.client_id}")
        await self._send_to_viewers({"type": "register-target", "targetId": target_id})

    async def _unregister_target(self, client: HubClient, target_id: Optional[str]) -> None:
        target = self.targets.get(target_id)
        if target is None or target.producer is not client:
            return
        await self._drop_target(target_id, "unregister-target")

    async def _call_request(self, client: HubClient, target_id: Optional[str]) -> None:
        logger.info(f"Call request for {target_id} from {client.client_id}")
        sent = await self._send_to_producer(
            target_id, {"type": "call-request", "targetId": target_id, "fromClient": client.client_id}
        )
        if not sent:
            await self._send(
                client, {"type": "error", "targetId": target_id, "message": f"Target {target_id} not available"}
            )

    async def _route(self, client: HubClient, target_id: Optional[str], message: Dict[str, Any]) -> None:
        message["fromClient"] = client.client_id
        if client.role == ROLE_VIEWER:
            if not await self._send_to_producer(target_id, message):
                logger.warning(f"Cannot forward {message['type']}: producer of {target_id} not available")
        else:
            await self._send_to_viewers(message)

    def _count_candidate(self, client: HubClient, target_id: Optional[str], candidate: Any) -> None:
        key = f"{target_id}_{client.client_id}"
        count = self.candidate_counts.get(key, 0)
        if not candidate:
            logger.info(f"ICE gathering completed for {target_id} from {client.client_id} ({count} candidates)")
            return
        self.candidate_counts[key] = count + 1
        text = candidate.get("candidate", "") if isinstance(candidate, dict) else str(candidate)
        match = _CANDIDATE_TYPE.search(text)
        logger.debug(f"ICE candidate #{count + 1} for {target_id} ({match.group(1) if match else 'unknown'})")

    # ── Disconnect & sweep ───────────────────────────────────────────────────

    async def _on_disconnect(self, client: HubClient) -> None:
        if self.clients.get(client.client_id) is not client:
            return
        del self.clients[client.client_id]
        for target_id, target in list(self.targets.items()):
            if target.producer is client:
                await self._drop_target(target_id, "target-disconnected")
        for key in [k for k in self.candidate_counts if k.endswith(f"_{client.client_id}")]:
            del self.candidate_counts[key]

    async def _drop_target(self, target_id: str, notice: str) -> None:
        self.targets.pop(target_id, None)
        for key in [k for k in self.candidate_counts if k.startswith(f"{target_id}_")]:
            del self.candidate_counts[key]
        logger.info(f"Target unregistered: {target_id}")
        await self._send_to_viewers({"type": notice, "targetId": target_id})

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            await self.sweep()

    async def sweep(self) -> List[str]:
        """Close clients silent for longer than the connection timeout."""
        now = time.monotonic()
        stale = [c for c in self.clients.values() if now - c.last_seen > self.connection_timeout_s]
        for client in stale:
            logger.warning(f"Client {client.client_id} timed out after {now - client.last_seen:.0f}s")
            try:
                await client.websocket.close(code=1001)
            except Exception as e:
                logger.debug(f"Close of stale client {client.client_id} failed: {e}")
            await self._on_disconnect(client)
        return [client.client_id for client in stale]

    # ── Sending ──────────────────────────────────────────────────────────────

    async def _send(self, client: HubClient, message: Dict[str, Any]) -> bool:
        try:
            await client.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Send to {client.client_id} failed: {e}")
            return False

    async def _send_to_producer(self, target_id: Optional[str], message: Dict[str, Any]) -> bool:
        target = self.targets.get(target_id) if target_id else None
        if target is None or target.producer.client_id not in self.clients:
            return False
        return await self._send(target.producer, message)

    async def _send_to_viewers(self, message: Dict[str, Any]) -> int:
        sent = 0
        for client in list(self.clients.values()):
            if client.role == ROLE_VIEWER and await self._send(client, message):
                sent += 1
        return sent


# Global instance
_relay_hub: Optional[RelayHub] = None


def get_relay_hub() -> Optional[RelayHub]:
    return _relay_hub


def init_relay_hub(
    ice_servers: Optional[List[Dict[str, Any]]] = None,
    connection_timeout_s: float = 60.0,
    sweep_interval_s: float = 10.0,
) -> RelayHub:
    global _relay_hub
    _relay_hub = RelayHub(ice_servers, connection_timeout_s, sweep_interval_s)
    return _relay_hub
