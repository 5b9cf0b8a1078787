"""
ICE Batch Policy

Decides when local ICE candidates and the local description leave the
process:

- TRICKLE: the description is sent as soon as it exists and every candidate
  is forwarded on its own right after it.
- BATCHED: candidates are held back; the full description (candidates
  embedded) is sent exactly once, on gathering complete or when the
  gathering timeout forces a flush.

Transports that cannot trickle always run BATCHED.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from camsignal.providers.base.descriptions import SessionDescription, IceCandidate, embed_candidates
from camsignal.providers.base.transport_adapter import TransportAdapter
from camsignal.services.session_state import IcePolicy

logger = logging.getLogger(__name__)

DEFAULT_GATHERING_TIMEOUT_S = 5.0

DescribeFn = Callable[[], Optional[SessionDescription]]


@dataclass
class CandidateBuffer:
    """Unsent local candidates of one session"""

    session_id: str
    target_id: str
    policy: IcePolicy
    adapter: TransportAdapter
    describe: Optional[DescribeFn] = None
    candidates: List[IceCandidate] = field(default_factory=list)
    description: Optional[SessionDescription] = None
    description_sent: bool = False
    gathering_complete: bool = False
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def flushed(self) -> bool:
        return self.policy == IcePolicy.BATCHED and self.description_sent


class IceBatchPolicy:
    """Per-session candidate buffers keyed by session id"""

    def __init__(
        self,
        gathering_timeout_s: float = DEFAULT_GATHERING_TIMEOUT_S,
        on_gathering_timeout: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            gathering_timeout_s: Seconds to wait for gathering complete in batched mode
            on_gathering_timeout: Called with the session id when the timeout fires.
                                  The owner must then call ``force_flush``. Without it
                                  the policy flushes on its own task.
        """
        self.gathering_timeout_s = gathering_timeout_s
        self._on_gathering_timeout = on_gathering_timeout
        self._buffers: Dict[str, CandidateBuffer] = {}

    def attach(
        self,
        session_id: str,
        target_id: str,
        mode: IcePolicy,
        adapter: TransportAdapter,
        describe: Optional[DescribeFn] = None,
    ) -> CandidateBuffer:
        """Start buffering for a negotiation. Replaces any previous buffer of the session."""
        self.discard(session_id)
        if mode == IcePolicy.TRICKLE and not adapter.supports_trickle:
            logger.debug(f"{adapter.kind.value} cannot trickle, batching candidates for {target_id}")
            mode = IcePolicy.BATCHED
        buffer = CandidateBuffer(
            session_id=session_id,
            target_id=target_id,
            policy=mode,
            adapter=adapter,
            describe=describe,
        )
        self._buffers[session_id] = buffer
        return buffer

    def get(self, session_id: str) -> Optional[CandidateBuffer]:
        return self._buffers.get(session_id)

    def mode_of(self, session_id: str) -> Optional[IcePolicy]:
        buffer = self._buffers.get(session_id)
        return buffer.policy if buffer else None

    async def on_local_description(self, session_id: str, description: SessionDescription) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        buffer.description = description

        if buffer.policy == IcePolicy.TRICKLE:
            if buffer.description_sent:
                return
            await buffer.adapter.send_local_description(buffer.target_id, description)
            buffer.description_sent = True
            # candidates that raced ahead of the description
            pending, buffer.candidates = buffer.candidates, []
            for candidate in pending:
                await buffer.adapter.send_candidate(buffer.target_id, candidate)
            return

        if buffer.gathering_complete:
            await self._flush(buffer)
        else:
            self._arm_timeout(buffer)

    async def on_local_candidate(self, session_id: str, candidate: IceCandidate) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        if buffer.policy == IcePolicy.TRICKLE and buffer.description_sent:
            await buffer.adapter.send_candidate(buffer.target_id, candidate)
            return
        if buffer.flushed:
            logger.debug(f"Late candidate for {buffer.target_id} after flush, dropped")
            return
        buffer.candidates.append(candidate)

    async def on_gathering_complete(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None or buffer.gathering_complete:
            return
        buffer.gathering_complete = True
        self._cancel_timeout(buffer)
        if buffer.policy == IcePolicy.BATCHED and buffer.description is not None:
            await self._flush(buffer)

    async def force_flush(self, session_id: str) -> None:
        """Send whatever has been gathered so far. No-op once flushed."""
        buffer = self._buffers.get(session_id)
        if buffer is None or buffer.policy != IcePolicy.BATCHED:
            return
        if buffer.description is None:
            return
        logger.warning(
            f"ICE gathering for {buffer.target_id} did not complete in "
            f"{self.gathering_timeout_s}s, flushing {len(buffer.candidates)} candidate(s)"
        )
        await self._flush(buffer)

    def discard(self, session_id: str) -> None:
        buffer = self._buffers.pop(session_id, None)
        if buffer is not None:
            self._cancel_timeout(buffer)
            buffer.candidates.clear()

    # ── Private ──────────────────────────────────────────────────────────────

    async def _flush(self, buffer: CandidateBuffer) -> None:
        if buffer.description_sent:
            return
        self._cancel_timeout(buffer)

        description = buffer.describe() if buffer.describe else None
        if description is None:
            description = buffer.description
        sdp = embed_candidates(description.sdp, buffer.candidates)
        buffer.description_sent = True
        buffer.candidates = []
        await buffer.adapter.send_local_description(
            buffer.target_id, SessionDescription(sdp=sdp, type=description.type)
        )

    def _arm_timeout(self, buffer: CandidateBuffer) -> None:
        if buffer.timeout_handle is not None or buffer.description_sent:
            return
        loop = asyncio.get_running_loop()
        buffer.timeout_handle = loop.call_later(self.gathering_timeout_s, self._timeout_fired, buffer.session_id)

    def _timeout_fired(self, session_id: str) -> None:
        buffer = self._buffers.get(session_id)
        if buffer is None:
            return
        buffer.timeout_handle = None
        if self._on_gathering_timeout is not None:
            self._on_gathering_timeout(session_id)
        else:
            asyncio.ensure_future(self.force_flush(session_id))

    @staticmethod
    def _cancel_timeout(buffer: CandidateBuffer) -> None:
        if buffer.timeout_handle is not None:
            buffer.timeout_handle.cancel()
            buffer.timeout_handle = None
