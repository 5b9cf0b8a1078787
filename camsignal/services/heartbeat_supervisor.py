"""
Heartbeat Supervisor

Keeps the shared relay channel alive: periodic ping, ack deadline,
exponential reconnect backoff, and a hard stop after too many attempts.
Connected media is never touched here; listeners decide what a lost relay
means for their sessions.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from camsignal.exceptions import RelayUnreachable, TransportUnavailable
from camsignal.providers.base.transport_adapter import TransportEvent, TransportEventType

logger = logging.getLogger(__name__)

# Relay health events delivered to listeners
RELAY_LOST = "relay_lost"
RELAY_RESTORED = "relay_restored"
RELAY_UNREACHABLE = "relay_unreachable"


class RelayState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    UNREACHABLE = "unreachable"
    STOPPED = "stopped"


@dataclass
class HeartbeatConfig:
    """Relay heartbeat and reconnect configuration"""

    interval_s: float = 25.0
    ack_timeout_s: float = 5.0
    max_missed_acks: int = 2
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30000
    max_reconnect_attempts: int = 10


@dataclass
class RelayConnectionHealth:
    """Current relay health, one per process"""

    state: RelayState = RelayState.CONNECTING
    last_heartbeat_sent_at: float = 0
    last_heartbeat_ack_at: float = 0
    reconnect_attempt: int = 0
    backoff_ms: int = 0
    missed_acks: int = 0
    last_error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def compute_backoff_ms(attempt: int, base_ms: int, cap_ms: int) -> int:
    """min(base × 2^(attempt-1), cap) for attempt >= 1. No jitter."""
    if attempt < 1:
        return 0
    return min(base_ms * 2 ** (attempt - 1), cap_ms)


HealthListener = Callable[[str, RelayConnectionHealth, Optional[Exception]], Any]


class HeartbeatSupervisor:
    """
    Supervises a relay adapter exposing ``is_open``, ``open()``, ``reopen()``
    and ``send_heartbeat()``; acks arrive as HEARTBEAT_ACK events.
    """

    def __init__(self, adapter, config: HeartbeatConfig = None):
        self.adapter = adapter
        self.config = config or HeartbeatConfig()
        self.health = RelayConnectionHealth()

        self._listeners: List[HealthListener] = []
        self._ack_event = asyncio.Event()
        self._lost_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._outage_reported = False

        adapter.add_listener(self._on_transport_event)

    # ── Public API ───────────────────────────────────────────────────────────

    def add_listener(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("HeartbeatSupervisor already running")
            return
        self._running = True
        self.health = RelayConnectionHealth(state=RelayState.CONNECTING)
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"HeartbeatSupervisor started (interval={self.config.interval_s}s, "
            f"ack_timeout={self.config.ack_timeout_s}s)"
        )

    async def stop(self) -> None:
        """Cancel the heartbeat and any pending backoff timer."""
        if not self._running and self._task is None:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.health.state = RelayState.STOPPED
        logger.info("HeartbeatSupervisor stopped")

    def get_state(self) -> Dict[str, Any]:
        data = self.health.to_dict()
        data["running"] = self._running
        return data

    # ── Main loop ────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            if not await self._initial_open():
                if not await self._reconnect():
                    return

            while self._running:
                lost = await self._wait_interval()
                if lost:
                    await self._report_lost("relay channel closed uncleanly")
                    if not await self._reconnect():
                        return
                    continue

                if await self._heartbeat_tick():
                    continue
                if self.health.missed_acks >= self.config.max_missed_acks:
                    await self._report_lost(f"{self.health.missed_acks} heartbeats unacknowledged")
                    if not await self._reconnect():
                        return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Heartbeat supervisor crashed: {e}")
            self.health.last_error = str(e)

    async def _initial_open(self) -> bool:
        try:
            if not self.adapter.is_open:
                await self.adapter.open()
        except TransportUnavailable as e:
            logger.warning(f"Initial relay connect failed: {e}")
            self.health.last_error = str(e)
            await self._report_lost(str(e))
            return False
        self.health.state = RelayState.OPEN
        return True

    async def _wait_interval(self) -> bool:
        """Sleep one heartbeat interval. Returns True when the channel was lost meanwhile."""
        if self._lost_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._lost_event.wait(), timeout=self.config.interval_s)
            return True
        except asyncio.TimeoutError:
            return False

    async def _heartbeat_tick(self) -> bool:
        """Send one ping and wait for its ack. Returns True when acknowledged."""
        self._ack_event.clear()
        self.health.last_heartbeat_sent_at = time.time()
        await self.adapter.send_heartbeat()
        try:
            await asyncio.wait_for(self._ack_event.wait(), timeout=self.config.ack_timeout_s)
        except asyncio.TimeoutError:
            self.health.missed_acks += 1
            logger.warning(f"Relay heartbeat not acknowledged ({self.health.missed_acks}/{self.config.max_missed_acks})")
            return False
        self.health.missed_acks = 0
        return True

    async def _reconnect(self) -> bool:
        """Reopen with backoff until a heartbeat is acknowledged. False once given up."""
        self.health.state = RelayState.RECONNECTING

        while self._running:
            self.health.reconnect_attempt += 1
            attempt = self.health.reconnect_attempt
            if attempt > self.config.max_reconnect_attempts:
                return await self._give_up()

            delay_ms = compute_backoff_ms(attempt, self.config.backoff_base_ms, self.config.backoff_cap_ms)
            self.health.backoff_ms = delay_ms
            logger.info(f"Relay reconnect attempt {attempt}/{self.config.max_reconnect_attempts} in {delay_ms}ms")
            await self._wait_backoff(delay_ms / 1000)

            self._lost_event.clear()
            try:
                await self.adapter.reopen()
            except TransportUnavailable as e:
                self.health.last_error = str(e)
                logger.warning(f"Relay reconnect attempt {attempt} failed: {e}")
                continue

            if await self._confirm_channel():
                self.health.reconnect_attempt = 0
                self.health.backoff_ms = 0
                self.health.missed_acks = 0
                self.health.state = RelayState.OPEN
                self._outage_reported = False
                logger.info(f"Relay channel restored after {attempt} attempt(s)")
                await self._notify(RELAY_RESTORED)
                return True

            logger.warning(f"Relay reopened but heartbeat unacknowledged (attempt {attempt})")

        return False

    async def _confirm_channel(self) -> bool:
        """A reopened channel counts only once it acknowledges a heartbeat."""
        return await self._heartbeat_tick()

    async def _wait_backoff(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)

    async def _give_up(self) -> bool:
        self.health.state = RelayState.UNREACHABLE
        self._running = False
        error = RelayUnreachable(self.config.max_reconnect_attempts)
        self.health.last_error = str(error)
        logger.error(str(error))
        await self._notify(RELAY_UNREACHABLE, error)
        return False

    async def _report_lost(self, reason: str) -> None:
        self.health.last_error = reason
        if self._outage_reported:
            return
        self._outage_reported = True
        logger.warning(f"Relay lost: {reason}")
        await self._notify(RELAY_LOST)

    async def _notify(self, event: str, error: Optional[Exception] = None) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, self.health, error)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Relay health listener failed on {event}: {e}")

    # ── Adapter events ───────────────────────────────────────────────────────

    def _on_transport_event(self, event: TransportEvent) -> None:
        if event.type == TransportEventType.HEARTBEAT_ACK:
            self.health.last_heartbeat_ack_at = time.time()
            self._ack_event.set()
        elif event.type == TransportEventType.TRANSPORT_CLOSED and event.target_id is None and not event.clean:
            self._lost_event.set()
