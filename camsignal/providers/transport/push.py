"""
Push transport (WHIP-style)

A producer POSTs its offer and keeps the request open. The offer is handed
to the orchestrator as OFFER_RECEIVED; the answer it produces is routed
back through the PushRequestBroker into the same HTTP response.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from camsignal.exceptions import AlreadyNegotiating, AnswerTimeout, SessionClosed, TransportUnavailable
from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.providers.base.transport_adapter import (
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from camsignal.services.push_request_broker import PushRequestBroker
from camsignal.services.session_state import TransportKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushResult:
    """What the ingest route returns to the producer"""

    answer: SessionDescription
    resource_id: str
    target_id: str


class PushTransport(TransportAdapter):
    """Server side of the push handshake"""

    kind = TransportKind.PUSH
    supports_trickle = False

    def __init__(self, broker: PushRequestBroker, answer_timeout_ms: Optional[int] = None, auto_accept: bool = True):
        """
        Args:
            broker: Correlates open producer requests with answers
            answer_timeout_ms: Deadline for an answer (broker default when None)
            auto_accept: Negotiate every offer at once. When False the offer
                         waits for a consumer to connect to the target.
        """
        super().__init__()
        self.broker = broker
        self.answer_timeout_ms = answer_timeout_ms
        self.auto_accept = auto_accept
        self._open = False
        self._pending_by_target: Dict[str, str] = {}
        self._resources: Dict[str, str] = {}  # resource_id -> target_id

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self._open = True

    async def handle_offer(self, target_id: str, offer_sdp: str) -> PushResult:
        """
        Park the producer's request until an answer exists.
        Raises AnswerTimeout, SessionClosed or TransportUnavailable.
        """
        if not self._open:
            raise TransportUnavailable(self.kind.value, "push ingest not open")
        if target_id in self._pending_by_target:
            raise AlreadyNegotiating(target_id, "offer pending")

        request_id = uuid.uuid4().hex[:12]
        answer_future = self.broker.register(request_id, target_id, self.answer_timeout_ms)
        self._pending_by_target[target_id] = request_id
        logger.info(f"Push offer from {target_id} parked as {request_id}")

        self._emit(
            TransportEvent(
                TransportEventType.OFFER_RECEIVED,
                target_id=target_id,
                payload=SessionDescription(sdp=offer_sdp, type="offer"),
                request_id=request_id,
            )
        )

        try:
            answer = await answer_future
        except AnswerTimeout:
            self._emit(
                TransportEvent(
                    TransportEventType.SESSION_TERMINATED,
                    target_id=target_id,
                    request_id=request_id,
                    reason="answer timeout",
                )
            )
            raise
        except asyncio.CancelledError:
            self.broker.fail(request_id, SessionClosed(target_id, "producer went away"))
            self._emit(
                TransportEvent(
                    TransportEventType.SESSION_TERMINATED,
                    target_id=target_id,
                    request_id=request_id,
                    reason="producer went away",
                )
            )
            raise
        finally:
            if self._pending_by_target.get(target_id) == request_id:
                del self._pending_by_target[target_id]

        self._resources[request_id] = target_id
        return PushResult(answer=answer, resource_id=request_id, target_id=target_id)

    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        request_id = self._pending_by_target.get(target_id)
        if request_id is None or not self.broker.fulfill(request_id, description):
            logger.warning(f"No open push request for {target_id}, answer dropped")

    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        logger.debug(f"Push transport does not trickle, candidate for {target_id} ignored")

    async def close(self, target_id: str) -> None:
        request_id = self._pending_by_target.pop(target_id, None)
        if request_id is not None:
            self.broker.fail(request_id, SessionClosed(target_id, "session closed"))
        for resource_id in [rid for rid, tid in self._resources.items() if tid == target_id]:
            del self._resources[resource_id]

    def reject(self, request_id: str, error: Exception) -> bool:
        """Fail one parked offer without touching the target's other resources."""
        return self.broker.fail(request_id, error)

    def terminate(self, target_id: str, resource_id: str) -> bool:
        """Producer deleted its resource. Returns False for an unknown resource."""
        if self._resources.get(resource_id) != target_id:
            return False
        del self._resources[resource_id]
        logger.info(f"Push resource {resource_id} of {target_id} deleted by producer")
        self._emit(
            TransportEvent(
                TransportEventType.SESSION_TERMINATED,
                target_id=target_id,
                request_id=resource_id,
                reason="producer deleted resource",
            )
        )
        return True

    async def shutdown(self) -> None:
        self._open = False
        for target_id in list(self._pending_by_target):
            await self.close(target_id)
        self._resources.clear()

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "auto_accept": self.auto_accept,
                "pending": sorted(self._pending_by_target),
                "resources": dict(self._resources),
            }
        )
        return status
