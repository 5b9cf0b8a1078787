"""
UI WebSocket fan-out

Pushes session state changes, per-tick session stats and relay health to
browser clients on /ws. A client may narrow what it receives with
``{"type": "subscribe", "targets": ["cam1", ...]}``; an empty list means
every target. Relay health and snapshots are never filtered.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket

from camsignal.services.session_state import SessionStateChange, SessionStatsUpdate

logger = logging.getLogger(__name__)

MSG_SNAPSHOT = "session_status"
MSG_STATE = "session_state"
MSG_STATS = "session_stats"
MSG_RELAY_HEALTH = "relay_health"


class WebSocketManager:
    def __init__(self):
        # websocket -> subscribed target ids (empty: all)
        self.subscriptions: Dict[WebSocket, Set[str]] = {}

    @property
    def has_clients(self) -> bool:
        return len(self.subscriptions) > 0

    @property
    def client_count(self) -> int:
        return len(self.subscriptions)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.subscriptions[websocket] = set()
        logger.info(f"UI client connected (total: {self.client_count})")

    def disconnect(self, websocket: WebSocket):
        if self.subscriptions.pop(websocket, None) is not None:
            logger.info(f"UI client disconnected (total: {self.client_count})")

    def subscribe(self, websocket: WebSocket, targets: Iterable[str]) -> Set[str]:
        if websocket not in self.subscriptions:
            return set()
        wanted = {str(t) for t in targets if t}
        self.subscriptions[websocket] = wanted
        logger.debug(f"UI client subscribed to {sorted(wanted) or 'all targets'}")
        return wanted

    def handle_client_message(self, websocket: WebSocket, text: str) -> None:
        """Apply a message sent by a UI client. Malformed input is ignored."""
        try:
            message = json.loads(text)
        except ValueError:
            logger.debug("Ignoring non-JSON UI message")
            return
        if isinstance(message, dict) and message.get("type") == "subscribe":
            self.subscribe(websocket, message.get("targets") or [])

    def wants(self, websocket: WebSocket, target_id: Optional[str]) -> bool:
        targets = self.subscriptions.get(websocket)
        if targets is None:
            return False
        return target_id is None or not targets or target_id in targets

    async def send_snapshot(
        self, websocket: WebSocket, status: Optional[Dict[str, Any]], relay_health: Optional[Dict[str, Any]]
    ):
        """Bring one freshly connected client up to date."""
        if status is not None:
            await self._send(websocket, json.dumps({"type": MSG_SNAPSHOT, "data": status}))
        if relay_health is not None:
            await self._send(websocket, json.dumps({"type": MSG_RELAY_HEALTH, "data": relay_health}))

    async def broadcast(self, message_type: str, data: Dict[str, Any], target_id: Optional[str] = None):
        """
        Send a message to every client interested in ``target_id``

        Args:
            message_type: one of the MSG_* types
            data: Message data
            target_id: Target the message is about, None for process-wide news
        """
        recipients = [ws for ws in list(self.subscriptions) if self.wants(ws, target_id)]
        if not recipients:
            return

        message = json.dumps({"type": message_type, "data": data})
        for websocket in recipients:
            await self._send(websocket, message)

    # ── Orchestrator / supervisor listeners ──────────────────────────────────

    async def publish_state_change(self, change: SessionStateChange):
        await self.broadcast(MSG_STATE, change.to_dict(), change.target_id)

    async def publish_stats(self, update: SessionStatsUpdate):
        if self.has_clients:
            await self.broadcast(MSG_STATS, update.to_dict(), update.target_id)

    async def publish_relay_health(self, event: str, health, error: Optional[str] = None):
        data = {"event": event, **health.to_dict()}
        if error:
            data["error"] = str(error)
        await self.broadcast(MSG_RELAY_HEALTH, data)

    async def _send(self, websocket: WebSocket, message: str):
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.warning(f"Error sending to UI client: {e}")
            self.disconnect(websocket)


# Global instance
websocket_manager = WebSocketManager()
