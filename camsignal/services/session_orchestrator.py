"""
Session Orchestrator

Owns every media session and its state machine:

    IDLE → NEGOTIATING → AWAITING_REMOTE → CONNECTED ⇄ DEGRADED → CLOSED

- One active session per target id, whatever the transport
- Each session has a mailbox drained by a single worker task: public
  operations, transport events, media callbacks, timers and stats results
  are all applied there, in arrival order
- Sessions never wait on each other
- CONNECTED ⇄ DEGRADED hops are silent; listeners only hear about a
  degraded session once it closes
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from camsignal.exceptions import AlreadyNegotiating, SessionClosed, TransportUnavailable
from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.providers.base.media_transport import (
    MediaTransport,
    MediaTransportFactory,
    MEDIA_CONNECTED,
    MEDIA_DISCONNECTED,
    MEDIA_FAILED,
    MEDIA_CLOSED,
)
from camsignal.providers.base.transport_adapter import (
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from camsignal.services.heartbeat_supervisor import RELAY_LOST, RELAY_RESTORED, RELAY_UNREACHABLE
from camsignal.services.ice_batch_policy import IceBatchPolicy
from camsignal.services.session_state import (
    IcePolicy,
    InvalidTransition,
    PRE_MEDIA_STATES,
    Session,
    SessionState,
    SessionStateChange,
    SessionStatsUpdate,
    TransportKind,
    can_transition,
)
from camsignal.services.stats_differencer import QualityThresholds, classify, derive

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

StateListener = Callable[[SessionStateChange], Any]
StatsListener = Callable[[SessionStatsUpdate], Any]


@dataclass
class SessionConfig:
    """Session lifecycle configuration"""

    degraded_window_s: float = 10.0
    manual_teardown_grace_s: float = 2.0
    offer_wait_timeout_s: float = 30.0  # IDLE session waiting for the producer's offer
    stats_interval_s: float = 1.0
    default_ice_policy: IcePolicy = IcePolicy.TRICKLE
    gathering_timeout_s: float = 5.0
    ice_servers: List[Dict[str, Any]] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    quality_thresholds: QualityThresholds = field(default_factory=QualityThresholds)


# ── Per-session runtime ──────────────────────────────────────────────────────

_STOP = object()


@dataclass
class _SessionContext:
    session: Session
    adapter: TransportAdapter
    mailbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None
    media: Optional[MediaTransport] = None
    stats_task: Optional[asyncio.Task] = None
    stats_in_flight: bool = False
    degraded_handle: Optional[asyncio.TimerHandle] = None
    idle_handle: Optional[asyncio.TimerHandle] = None
    pending_remote_candidates: List[IceCandidate] = field(default_factory=list)
    # last state listeners were told about; DEGRADED is never announced
    published_state: SessionState = SessionState.IDLE


class SessionOrchestrator:
    """
    Session lifecycle across every registered transport.
    """

    def __init__(
        self,
        adapters: Optional[List[TransportAdapter]] = None,
        config: SessionConfig = None,
        media_factory: Optional[MediaTransportFactory] = None,
    ):
        self.config = config or SessionConfig()
        self._media_factory = media_factory
        self._adapters: Dict[TransportKind, TransportAdapter] = {}
        self._sessions: Dict[str, _SessionContext] = {}
        self._recently_closed: Dict[str, Session] = {}
        self._state_listeners: List[StateListener] = []
        self._stats_listeners: List[StatsListener] = []
        self._listener_tasks: set = set()
        self.available_targets: set = set()

        self.ice_policy = IceBatchPolicy(
            gathering_timeout_s=self.config.gathering_timeout_s,
            on_gathering_timeout=self._on_gathering_timeout,
        )

        # Log buffer
        self._log_buffer: List[Dict[str, Any]] = []
        self._log_max_size: int = 200

        for adapter in adapters or []:
            self.register_adapter(adapter)

    # ── Wiring ───────────────────────────────────────────────────────────────

    def register_adapter(self, adapter: TransportAdapter) -> None:
        self._adapters[adapter.kind] = adapter
        adapter.add_listener(lambda event, source=adapter: self._on_transport_event(source, event))
        logger.info(f"Registered {adapter.kind.value} transport")

    def get_adapter(self, kind: TransportKind) -> Optional[TransportAdapter]:
        return self._adapters.get(kind)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_stats_listener(self, listener: StatsListener) -> None:
        self._stats_listeners.append(listener)

    async def on_relay_health(self, event: str, health, error: Optional[Exception] = None) -> None:
        """HeartbeatSupervisor listener."""
        if event == RELAY_LOST:
            self._add_log("warning", f"Relay lost: {health.last_error}")
            self._abandon_pre_media(TransportKind.RELAY, "relay lost")
        elif event == RELAY_RESTORED:
            self._add_log("success", "Relay restored")
        elif event == RELAY_UNREACHABLE:
            self._add_log("error", str(error) if error else "Relay unreachable")

    # ── Public API ───────────────────────────────────────────────────────────

    async def start_outbound(
        self, target_id: str, transport_kind: TransportKind, ice_policy: Optional[IcePolicy] = None
    ) -> Session:
        """
        Start viewing ``target_id`` over ``transport_kind``.

        Relay sends a call request and waits IDLE for the producer's offer.
        Pull and managed cloud create the offer at once. Push joins an offer
        already parked by the producer, or waits IDLE for one.

        Raises:
            TransportUnavailable: no open adapter for the transport
            AlreadyNegotiating: the target already has an active session
        """
        adapter = self._require_adapter(transport_kind)
        existing = self._sessions.get(target_id)
        if existing is not None:
            session = existing.session
            if (
                transport_kind == TransportKind.PUSH
                and session.transport_kind == TransportKind.PUSH
                and session.state == SessionState.IDLE
                and session.pending_remote_offer is not None
            ):
                return await self._post(existing, self._accept_parked_offer)
            raise AlreadyNegotiating(target_id, session.state.value)

        ctx = self._create_session(target_id, adapter, ice_policy)
        self._add_log("info", f"{target_id}: outbound {transport_kind.value} session {ctx.session.session_id}")

        if transport_kind == TransportKind.PUSH:
            self._arm_idle_timer(ctx)
            return ctx.session
        return await self._post(ctx, self._begin_outbound)

    async def accept_inbound(
        self, target_id: str, offer: SessionDescription, transport_kind: TransportKind = TransportKind.RELAY
    ) -> Session:
        """
        Answer a producer's offer.

        Raises:
            TransportUnavailable: no open adapter for the transport
            AlreadyNegotiating: the target is past IDLE already
        """
        adapter = self._require_adapter(transport_kind)
        existing = self._sessions.get(target_id)
        if existing is not None:
            if existing.session.state != SessionState.IDLE or existing.session.transport_kind != transport_kind:
                raise AlreadyNegotiating(target_id, existing.session.state.value)
            return await self._post(existing, self._handle_remote_offer, offer, None)

        ctx = self._create_session(target_id, adapter, None)
        return await self._post(ctx, self._handle_remote_offer, offer, None)

    async def teardown(self, target_id: str) -> Optional[Session]:
        """Close the target's session on operator request. None when there is none."""
        ctx = self._sessions.get(target_id)
        if ctx is None:
            return None
        try:
            return await self._post(ctx, self._teardown)
        except SessionClosed:
            return ctx.session

    def get_session(self, target_id: str) -> Optional[Session]:
        ctx = self._sessions.get(target_id)
        if ctx is not None:
            return ctx.session
        return self._recently_closed.get(target_id)

    def list_sessions(self) -> List[Session]:
        return [ctx.session for ctx in self._sessions.values()]

    async def shutdown(self) -> None:
        contexts = list(self._sessions.values())
        for ctx in contexts:
            try:
                await self._post(ctx, self._close_handler, "shutdown")
            except SessionClosed:
                pass
        workers = [ctx.worker for ctx in contexts if ctx.worker]
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        if self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)
        logger.info("SessionOrchestrator shut down")

    # ── Status & Logs ────────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        sessions = [ctx.session.to_dict() for ctx in self._sessions.values()]
        by_state: Dict[str, int] = {}
        total_kbps = 0
        for ctx in self._sessions.values():
            state = ctx.session.state.value
            by_state[state] = by_state.get(state, 0) + 1
            snapshot = ctx.session.stats_snapshot
            if snapshot is not None:
                total_kbps += snapshot.bandwidth_kbps
        return {
            "sessions": sessions,
            "sessions_by_state": by_state,
            "total_bandwidth_kbps": total_kbps,
            "transports": {kind.value: adapter.get_status() for kind, adapter in self._adapters.items()},
            "available_targets": sorted(self.available_targets),
            "log": list(self._log_buffer[-50:]),
        }

    def get_logs(self, limit=100):
        return list(self._log_buffer[-limit:])

    # ── Mailbox ──────────────────────────────────────────────────────────────

    def _create_session(
        self, target_id: str, adapter: TransportAdapter, ice_policy: Optional[IcePolicy]
    ) -> _SessionContext:
        session = Session(
            target_id=target_id,
            transport_kind=adapter.kind,
            ice_policy=ice_policy or self.config.default_ice_policy,
        )
        ctx = _SessionContext(session=session, adapter=adapter)
        ctx.worker = asyncio.ensure_future(self._worker(ctx))
        self._sessions[target_id] = ctx
        self._recently_closed.pop(target_id, None)
        return ctx

    def _enqueue(self, ctx: _SessionContext, handler, *args) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        if ctx.session.state == SessionState.CLOSED:
            future.set_exception(SessionClosed(ctx.session.target_id, ctx.session.close_cause))
            return future
        ctx.mailbox.put_nowait((handler, args, future))
        return future

    async def _post(self, ctx: _SessionContext, handler, *args):
        return await self._enqueue(ctx, handler, *args)

    def _post_nowait(self, ctx: _SessionContext, handler, *args) -> None:
        future = self._enqueue(ctx, handler, *args)
        future.add_done_callback(_consume_result)

    async def _worker(self, ctx: _SessionContext) -> None:
        session = ctx.session
        while True:
            item = await ctx.mailbox.get()
            if item is _STOP:
                break
            handler, args, future = item

            if session.state == SessionState.CLOSED:
                if not future.done():
                    future.set_exception(SessionClosed(session.target_id, session.close_cause))
                continue

            try:
                result = await handler(ctx, *args)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except AlreadyNegotiating as e:
                # a racing operation lost; the session itself is fine
                if not future.done():
                    future.set_exception(e)
                continue
            except Exception as e:
                logger.error(f"{session.target_id}: {getattr(handler, '__name__', handler)} failed: {e}")
                self._add_log("error", f"{session.target_id}: {e}")
                if session.push_request_id is not None:
                    reject = getattr(ctx.adapter, "reject", None)
                    if reject is not None:
                        reject(session.push_request_id, e)
                if session.state != SessionState.CLOSED:
                    try:
                        await self._close(ctx, f"error: {e}")
                    except Exception as close_error:
                        logger.error(f"{session.target_id}: close after error failed: {close_error}")
                if not future.done():
                    future.set_exception(e)
                continue

            if not future.done():
                future.set_result(result)

        # fail whatever is still queued
        while not ctx.mailbox.empty():
            item = ctx.mailbox.get_nowait()
            if item is not _STOP and not item[2].done():
                item[2].set_exception(SessionClosed(session.target_id, session.close_cause))

    # ── Handlers (run on the session worker) ─────────────────────────────────

    async def _begin_outbound(self, ctx: _SessionContext) -> Session:
        session = ctx.session
        await ctx.adapter.request_session(session.target_id)

        if session.transport_kind == TransportKind.RELAY:
            self._arm_idle_timer(ctx)
            return session

        self._transition(ctx, SessionState.NEGOTIATING, "local offer")
        media = self._open_media(ctx)
        offer = await media.create_offer()
        await self.ice_policy.on_local_description(session.session_id, offer)
        self._transition(ctx, SessionState.AWAITING_REMOTE, "offer created")
        return session

    async def _handle_remote_offer(
        self, ctx: _SessionContext, offer: SessionDescription, request_id: Optional[str]
    ) -> Session:
        session = ctx.session
        if session.state != SessionState.IDLE:
            raise AlreadyNegotiating(session.target_id, session.state.value)

        self._cancel_idle_timer(ctx)
        session.pending_remote_offer = None
        if request_id is not None:
            session.push_request_id = request_id

        self._transition(ctx, SessionState.NEGOTIATING, "remote offer")
        media = self._open_media(ctx)
        answer = await media.create_answer(offer)
        await self._apply_pending_remote_candidates(ctx)
        await self.ice_policy.on_local_description(session.session_id, answer)
        self._transition(ctx, SessionState.AWAITING_REMOTE, "answer created")
        return session

    async def _accept_parked_offer(self, ctx: _SessionContext) -> Session:
        session = ctx.session
        offer = session.pending_remote_offer
        if offer is None:
            return session
        return await self._handle_remote_offer(ctx, SessionDescription(sdp=offer, type="offer"), session.push_request_id)

    async def _park_offer(self, ctx: _SessionContext, offer: SessionDescription, request_id: Optional[str]) -> None:
        ctx.session.pending_remote_offer = offer.sdp
        ctx.session.push_request_id = request_id
        self._add_log("info", f"{ctx.session.target_id}: offer parked until a consumer connects")

    async def _handle_remote_answer(self, ctx: _SessionContext, answer: SessionDescription) -> None:
        session = ctx.session
        if ctx.media is None or session.state not in (SessionState.NEGOTIATING, SessionState.AWAITING_REMOTE):
            logger.info(f"{session.target_id}: answer ignored in state {session.state.value}")
            return
        await ctx.media.set_remote_description(answer)
        await self._apply_pending_remote_candidates(ctx)

    async def _add_remote_candidate(self, ctx: _SessionContext, candidate: IceCandidate) -> None:
        if ctx.media is None:
            ctx.pending_remote_candidates.append(candidate)
            return
        await ctx.media.add_remote_candidate(candidate)

    async def _apply_pending_remote_candidates(self, ctx: _SessionContext) -> None:
        pending, ctx.pending_remote_candidates = ctx.pending_remote_candidates, []
        for candidate in pending:
            await ctx.media.add_remote_candidate(candidate)

    async def _local_candidate(self, ctx: _SessionContext, candidate: IceCandidate) -> None:
        await self.ice_policy.on_local_candidate(ctx.session.session_id, candidate)

    async def _gathering_complete(self, ctx: _SessionContext) -> None:
        await self.ice_policy.on_gathering_complete(ctx.session.session_id)

    async def _force_flush(self, ctx: _SessionContext) -> None:
        await self.ice_policy.force_flush(ctx.session.session_id)

    async def _media_state(self, ctx: _SessionContext, state: str) -> None:
        session = ctx.session
        logger.info(f"{session.target_id}: media {state}")

        if state == MEDIA_CONNECTED:
            session.transport_connected = True
            self._start_stats(ctx)
            if session.state == SessionState.DEGRADED:
                self._cancel_degraded_timer(ctx)
                self._transition(ctx, SessionState.CONNECTED, "media recovered", publish=False)
            else:
                self._maybe_connected(ctx)
        elif state == MEDIA_DISCONNECTED:
            session.transport_connected = False
            if session.state == SessionState.CONNECTED:
                self._transition(ctx, SessionState.DEGRADED, "media disconnected", publish=False)
                self._arm_degraded_timer(ctx)
        elif state == MEDIA_FAILED:
            await self._close(ctx, "media failed")
        elif state == MEDIA_CLOSED:
            await self._close(ctx, "media closed")

    async def _media_flow(self, ctx: _SessionContext, kind: str = "") -> None:
        if not ctx.session.media_flow_observed:
            logger.info(f"{ctx.session.target_id}: media flow observed ({kind or 'bytes'})")
        ctx.session.media_flow_observed = True
        self._maybe_connected(ctx)

    async def _collect_stats(self, ctx: _SessionContext) -> None:
        session = ctx.session
        try:
            if ctx.media is None:
                return
            counters = await ctx.media.get_counters()
        finally:
            ctx.stats_in_flight = False

        if counters.bytes_received > 0 and not session.media_flow_observed:
            await self._media_flow(ctx, "bytes")

        rates = derive(session.previous_counter_snapshot, counters)
        session.previous_counter_snapshot = counters
        if session.state not in (SessionState.CONNECTED, SessionState.DEGRADED):
            return

        session.stats_snapshot = rates
        session.quality = classify(rates, self.config.quality_thresholds)
        self._publish_stats(
            SessionStatsUpdate(
                target_id=session.target_id,
                session_id=session.session_id,
                rates=rates,
                quality=session.quality,
                round_trip_time=counters.round_trip_time,
                jitter=counters.jitter,
            )
        )

    async def _teardown(self, ctx: _SessionContext) -> Session:
        await self._close(ctx, "teardown", manual=True)
        return ctx.session

    async def _close_handler(self, ctx: _SessionContext, cause: str) -> Session:
        await self._close(ctx, cause)
        return ctx.session

    async def _channel_closed(self, ctx: _SessionContext, reason: str) -> None:
        if ctx.session.state in PRE_MEDIA_STATES:
            await self._close(ctx, f"signaling closed: {reason}")
        else:
            logger.info(f"{ctx.session.target_id}: signaling closed ({reason}), media kept")

    # ── Transitions ──────────────────────────────────────────────────────────

    def _transition(self, ctx: _SessionContext, new_state: SessionState, cause: str = "", publish: bool = True) -> None:
        session = ctx.session
        old_state = session.state
        if old_state == new_state:
            return
        if not can_transition(old_state, new_state):
            raise InvalidTransition(old_state, new_state)

        session.state = new_state
        session.last_state_change_at = time.time()
        logger.info(f"{session.target_id}: {old_state.value} → {new_state.value} ({cause})")
        if not publish:
            return

        announced, ctx.published_state = ctx.published_state, new_state
        self._add_log("info", f"{session.target_id}: {announced.value} → {new_state.value}")
        self._publish_state(
            SessionStateChange(
                target_id=session.target_id,
                session_id=session.session_id,
                transport_kind=session.transport_kind,
                old_state=announced,
                new_state=new_state,
                cause=cause,
            )
        )

    def _maybe_connected(self, ctx: _SessionContext) -> None:
        session = ctx.session
        if (
            session.state == SessionState.AWAITING_REMOTE
            and session.transport_connected
            and session.media_flow_observed
        ):
            self._transition(ctx, SessionState.CONNECTED, "media flowing")

    async def _close(self, ctx: _SessionContext, cause: str, manual: bool = False) -> None:
        session = ctx.session
        if session.state == SessionState.CLOSED:
            return
        if manual:
            session.manual_teardown = True
        session.close_cause = cause

        self._cancel_idle_timer(ctx)
        self._cancel_degraded_timer(ctx)
        if ctx.stats_task is not None:
            ctx.stats_task.cancel()
            ctx.stats_task = None
        self.ice_policy.discard(session.session_id)

        if ctx.media is not None:
            try:
                await ctx.media.close()
            except Exception as e:
                logger.warning(f"{session.target_id}: media close failed: {e}")
        try:
            await ctx.adapter.close(session.target_id)
        except Exception as e:
            logger.warning(f"{session.target_id}: {ctx.adapter.kind.value} close failed: {e}")

        self._transition(ctx, SessionState.CLOSED, cause)

        if self._sessions.get(session.target_id) is ctx:
            del self._sessions[session.target_id]
        self._recently_closed[session.target_id] = session
        loop = asyncio.get_running_loop()
        loop.call_later(self.config.manual_teardown_grace_s, self._end_grace, session)
        ctx.mailbox.put_nowait(_STOP)

    def _end_grace(self, session: Session) -> None:
        session.manual_teardown = False
        if self._recently_closed.get(session.target_id) is session:
            del self._recently_closed[session.target_id]

    def _in_manual_grace(self, target_id: str) -> bool:
        closed = self._recently_closed.get(target_id)
        return closed is not None and closed.manual_teardown

    # ── Media & timers ───────────────────────────────────────────────────────

    def _open_media(self, ctx: _SessionContext) -> MediaTransport:
        session = ctx.session
        ice_servers = ctx.adapter.ice_servers_for(session.target_id) or self.config.ice_servers
        factory = self._media_factory
        if factory is None:
            from camsignal.providers.media.aiortc_transport import create_aiortc_transport

            factory = create_aiortc_transport
        media = factory(ice_servers)

        media.on_local_candidate = lambda candidate: self._post_nowait(ctx, self._local_candidate, candidate)
        media.on_gathering_complete = lambda: self._post_nowait(ctx, self._gathering_complete)
        media.on_connection_state = lambda state: self._post_nowait(ctx, self._media_state, state)
        media.on_media_flow = lambda kind: self._post_nowait(ctx, self._media_flow, kind)
        ctx.media = media

        buffer = self.ice_policy.attach(
            session.session_id, session.target_id, session.ice_policy, ctx.adapter, describe=media.local_description
        )
        session.ice_policy = buffer.policy
        return media

    def _start_stats(self, ctx: _SessionContext) -> None:
        if ctx.stats_task is None or ctx.stats_task.done():
            ctx.stats_task = asyncio.ensure_future(self._stats_loop(ctx))

    async def _stats_loop(self, ctx: _SessionContext) -> None:
        while ctx.session.state != SessionState.CLOSED:
            await asyncio.sleep(self.config.stats_interval_s)
            if ctx.stats_in_flight:
                logger.debug(f"{ctx.session.target_id}: stats tick skipped, previous still running")
                continue
            ctx.stats_in_flight = True
            self._post_nowait(ctx, self._collect_stats)

    def _arm_degraded_timer(self, ctx: _SessionContext) -> None:
        self._cancel_degraded_timer(ctx)
        ctx.degraded_handle = asyncio.get_running_loop().call_later(
            self.config.degraded_window_s, self._degraded_expired, ctx
        )

    def _degraded_expired(self, ctx: _SessionContext) -> None:
        ctx.degraded_handle = None
        if ctx.session.state == SessionState.DEGRADED:
            self._post_nowait(ctx, self._close_if_degraded)

    async def _close_if_degraded(self, ctx: _SessionContext) -> None:
        if ctx.session.state == SessionState.DEGRADED:
            await self._close(ctx, "degraded window expired")

    @staticmethod
    def _cancel_degraded_timer(ctx: _SessionContext) -> None:
        if ctx.degraded_handle is not None:
            ctx.degraded_handle.cancel()
            ctx.degraded_handle = None

    def _arm_idle_timer(self, ctx: _SessionContext) -> None:
        self._cancel_idle_timer(ctx)
        ctx.idle_handle = asyncio.get_running_loop().call_later(
            self.config.offer_wait_timeout_s, self._idle_expired, ctx
        )

    def _idle_expired(self, ctx: _SessionContext) -> None:
        ctx.idle_handle = None
        if ctx.session.state == SessionState.IDLE:
            self._post_nowait(ctx, self._close_if_idle)

    async def _close_if_idle(self, ctx: _SessionContext) -> None:
        if ctx.session.state == SessionState.IDLE:
            await self._close(ctx, "no offer received")

    @staticmethod
    def _cancel_idle_timer(ctx: _SessionContext) -> None:
        if ctx.idle_handle is not None:
            ctx.idle_handle.cancel()
            ctx.idle_handle = None

    def _on_gathering_timeout(self, session_id: str) -> None:
        for ctx in self._sessions.values():
            if ctx.session.session_id == session_id:
                self._post_nowait(ctx, self._force_flush)
                return

    # ── Transport events (never block the adapter) ───────────────────────────

    def _on_transport_event(self, source: TransportAdapter, event: TransportEvent) -> None:
        etype = event.type
        target_id = event.target_id

        if etype == TransportEventType.TRANSPORT_CLOSED:
            if target_id is None:
                self._abandon_pre_media(source.kind, event.reason or "channel closed")
            else:
                ctx = self._session_on(source, target_id)
                if ctx is not None:
                    self._post_nowait(ctx, self._channel_closed, event.reason)
            return
        if etype == TransportEventType.TARGET_AVAILABLE:
            self.available_targets.update(event.payload or [target_id])
            return
        if etype in (TransportEventType.HEARTBEAT_ACK, TransportEventType.TRANSPORT_OPENED) or target_id is None:
            return

        if etype == TransportEventType.SESSION_TERMINATED and event.reason == "target disconnected":
            self.available_targets.discard(target_id)

        if etype == TransportEventType.OFFER_RECEIVED:
            self._on_remote_offer(source, event)
            return

        ctx = self._session_on(source, target_id)
        if ctx is None:
            if self._in_manual_grace(target_id):
                logger.debug(f"{target_id}: {etype.value} after manual teardown suppressed")
            else:
                logger.debug(f"{target_id}: {etype.value} from {source.kind.value} without a session ignored")
            return

        if etype == TransportEventType.ANSWER_RECEIVED:
            self._post_nowait(ctx, self._handle_remote_answer, event.payload)
        elif etype == TransportEventType.CANDIDATE_RECEIVED:
            self._post_nowait(ctx, self._add_remote_candidate, event.payload)
        elif etype == TransportEventType.SESSION_TERMINATED:
            if event.request_id and ctx.session.push_request_id not in (None, event.request_id):
                return
            self._post_nowait(ctx, self._close_handler, event.reason or "terminated by remote")

    def _session_on(self, source: TransportAdapter, target_id: str) -> Optional[_SessionContext]:
        ctx = self._sessions.get(target_id)
        if ctx is None or ctx.adapter is not source:
            return None
        return ctx

    def _on_remote_offer(self, source: TransportAdapter, event: TransportEvent) -> None:
        target_id = event.target_id
        ctx = self._sessions.get(target_id)

        if ctx is None and self._in_manual_grace(target_id):
            self._add_log("info", f"{target_id}: offer after manual teardown suppressed")
            self._reject_offer(source, event, SessionClosed(target_id, "torn down"))
            return

        if ctx is not None:
            session = ctx.session
            if ctx.adapter is source and session.state == SessionState.IDLE and session.pending_remote_offer is None:
                self._post_nowait(ctx, self._handle_remote_offer, event.payload, event.request_id)
            else:
                logger.warning(f"{target_id}: offer ignored, session is {session.state.value}")
                self._reject_offer(source, event, AlreadyNegotiating(target_id, session.state.value))
            return

        if source.kind not in self._adapters or self._adapters[source.kind] is not source:
            logger.warning(f"{target_id}: offer from unregistered transport ignored")
            return

        ctx = self._create_session(target_id, source, None)
        self._add_log("info", f"{target_id}: inbound {source.kind.value} offer, session {ctx.session.session_id}")
        if source.kind == TransportKind.PUSH and not getattr(source, "auto_accept", True):
            self._post_nowait(ctx, self._park_offer, event.payload, event.request_id)
            self._arm_idle_timer(ctx)
        else:
            self._post_nowait(ctx, self._handle_remote_offer, event.payload, event.request_id)

    @staticmethod
    def _reject_offer(source: TransportAdapter, event: TransportEvent, error: Exception) -> None:
        reject = getattr(source, "reject", None)
        if reject is not None and event.request_id:
            reject(event.request_id, error)

    def _abandon_pre_media(self, kind: Optional[TransportKind], reason: str) -> None:
        for ctx in list(self._sessions.values()):
            if kind is not None and ctx.session.transport_kind != kind:
                continue
            if ctx.session.state in PRE_MEDIA_STATES:
                self._post_nowait(ctx, self._close_if_pre_media, reason)

    async def _close_if_pre_media(self, ctx: _SessionContext, reason: str) -> None:
        if ctx.session.state in PRE_MEDIA_STATES:
            await self._close(ctx, reason)

    # ── Listeners & logs ─────────────────────────────────────────────────────

    def _publish_state(self, change: SessionStateChange) -> None:
        for listener in list(self._state_listeners):
            self._call_listener(listener, change)

    def _publish_stats(self, update: SessionStatsUpdate) -> None:
        for listener in list(self._stats_listeners):
            self._call_listener(listener, update)

    def _call_listener(self, listener: Callable, payload: Any) -> None:
        try:
            result = listener(payload)
        except Exception as e:
            _listener_failed(e)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _listener_failed(task.exception())

    def _require_adapter(self, kind: TransportKind) -> TransportAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise TransportUnavailable(kind.value, "not configured")
        if not adapter.is_open:
            raise TransportUnavailable(kind.value, "channel closed")
        return adapter

    def _add_log(self, level, message):
        entry = {"timestamp": time.time(), "level": level, "message": message}
        self._log_buffer.append(entry)
        if len(self._log_buffer) > self._log_max_size:
            self._log_buffer = self._log_buffer[-self._log_max_size :]


def _listener_failed(error: BaseException) -> None:
    logger.error(f"Session listener failed: {error}")


def _consume_result(future: asyncio.Future) -> None:
    # errors of fire-and-forget posts are already logged by the worker
    if not future.cancelled():
        future.exception()


# Global instance
_session_orchestrator: Optional[SessionOrchestrator] = None


def get_session_orchestrator() -> Optional[SessionOrchestrator]:
    return _session_orchestrator


def init_session_orchestrator(
    adapters: Optional[List[TransportAdapter]] = None,
    config: SessionConfig = None,
    media_factory: Optional[MediaTransportFactory] = None,
) -> SessionOrchestrator:
    global _session_orchestrator
    _session_orchestrator = SessionOrchestrator(adapters, config, media_factory)
    return _session_orchestrator
