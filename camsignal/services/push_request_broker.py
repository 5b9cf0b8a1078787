"""
Push Request Broker

Correlates a producer's still-open HTTP push request with the answer the
consumer side produces later. Each request resolves exactly once: answer,
failure or deadline, whichever comes first.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from camsignal.exceptions import AnswerTimeout

logger = logging.getLogger(__name__)

DEFAULT_ANSWER_TIMEOUT_MS = 10000


@dataclass
class PendingPushRequest:
    request_id: str
    target_id: str
    deadline: float  # monotonic seconds
    future: asyncio.Future
    created_at: float = field(default_factory=time.time)
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def resolved(self) -> bool:
        return self.future.done()


class PushRequestBroker:
    """Pending push requests keyed by request id"""

    def __init__(self, default_timeout_ms: int = DEFAULT_ANSWER_TIMEOUT_MS):
        self.default_timeout_ms = default_timeout_ms
        self._pending: Dict[str, PendingPushRequest] = {}

    def register(self, request_id: str, target_id: str, timeout_ms: Optional[int] = None) -> asyncio.Future:
        """
        Create the pending entry and return an awaitable for its answer.

        The entry exists as soon as this returns, so a fulfill issued before
        the caller starts awaiting is not lost. The awaitable raises
        AnswerTimeout at the deadline, or whatever error ``fail`` supplied.
        """
        if request_id in self._pending:
            raise ValueError(f"Push request {request_id} already registered")

        loop = asyncio.get_running_loop()
        timeout_s = (timeout_ms if timeout_ms is not None else self.default_timeout_ms) / 1000
        request = PendingPushRequest(
            request_id=request_id,
            target_id=target_id,
            deadline=loop.time() + timeout_s,
            future=loop.create_future(),
        )
        request.timeout_handle = loop.call_later(timeout_s, self._expire, request_id)
        self._pending[request_id] = request
        logger.debug(f"Push request {request_id} for {target_id} registered ({timeout_s:.1f}s)")
        return request.future

    def fulfill(self, request_id: str, answer: Any) -> bool:
        """Deliver the answer. Returns False when the request is unknown or already resolved."""
        request = self._pop(request_id)
        if request is None:
            return False
        request.future.set_result(answer)
        logger.debug(f"Push request {request_id} answered")
        return True

    def fail(self, request_id: str, error: BaseException) -> bool:
        """Fail the request with ``error``. Returns False when already resolved."""
        request = self._pop(request_id)
        if request is None:
            return False
        request.future.set_exception(error)
        logger.debug(f"Push request {request_id} failed: {error}")
        return True

    def fail_target(self, target_id: str, error: BaseException) -> int:
        """Fail every pending request bound to ``target_id``. Returns the count."""
        ids = [rid for rid, req in self._pending.items() if req.target_id == target_id]
        return sum(1 for rid in ids if self.fail(rid, error))

    def get(self, request_id: str) -> Optional[PendingPushRequest]:
        return self._pending.get(request_id)

    def pending_for(self, target_id: str) -> List[PendingPushRequest]:
        return [req for req in self._pending.values() if req.target_id == target_id]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def shutdown(self, error: BaseException) -> None:
        for request_id in list(self._pending):
            self.fail(request_id, error)

    # ── Private ──────────────────────────────────────────────────────────────

    def _pop(self, request_id: str) -> Optional[PendingPushRequest]:
        request = self._pending.pop(request_id, None)
        if request is None:
            return None
        if request.timeout_handle is not None:
            request.timeout_handle.cancel()
        if request.future.done():
            # caller went away (cancelled) before resolution
            return None
        return request

    def _expire(self, request_id: str) -> None:
        request = self._pop(request_id)
        if request is None:
            return
        logger.warning(f"Push request {request_id} for {request.target_id} timed out")
        request.future.set_exception(AnswerTimeout(request_id, request.target_id))
