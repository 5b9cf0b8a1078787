"""
Pull transport (WHEP-style)

The consumer POSTs its offer as application/sdp and gets the answer in the
response body. The Location header names the session resource, which is
DELETEd on teardown. No candidate trickling: the offer carries everything.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from yarl import URL

from camsignal.exceptions import RemoteDescriptionRejected, TransportUnavailable
from camsignal.providers.base.descriptions import SessionDescription, IceCandidate, strip_candidates
from camsignal.providers.base.transport_adapter import (
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from camsignal.services.session_state import TransportKind

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"
DEFAULT_REQUEST_TIMEOUT_S = 10.0


class PullTransport(TransportAdapter):
    """HTTP offer/answer against a per-target endpoint"""

    kind = TransportKind.PULL
    supports_trickle = False

    def __init__(
        self,
        endpoint_template: str,
        strip_offer_candidates: bool = False,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            endpoint_template: URL with a ``{target_id}`` placeholder
            strip_offer_candidates: Send the offer without a=candidate lines
            request_timeout_s: Total timeout of each HTTP exchange
            headers: Extra headers (e.g. Authorization) sent with every request
        """
        super().__init__()
        self.endpoint_template = endpoint_template
        self.strip_offer_candidates = strip_offer_candidates
        self.request_timeout_s = request_timeout_s
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None
        self._resources: Dict[str, URL] = {}

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._session.closed

    def endpoint_for(self, target_id: str) -> URL:
        return URL(self.endpoint_template.format(target_id=target_id))

    def resource_for(self, target_id: str) -> Optional[URL]:
        return self._resources.get(target_id)

    async def open(self) -> None:
        if self.is_open:
            return
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout_s))
        self._owns_session = True

    async def send_local_description(self, target_id: str, description: SessionDescription) -> None:
        if description.type != "offer":
            raise RemoteDescriptionRejected(f"pull transport only sends offers, got {description.type}")
        if not self.is_open:
            raise TransportUnavailable(self.kind.value, "not opened")

        sdp = strip_candidates(description.sdp) if self.strip_offer_candidates else description.sdp
        endpoint = self.endpoint_for(target_id)
        headers = {**self.headers, "Content-Type": SDP_CONTENT_TYPE, "Accept": SDP_CONTENT_TYPE}

        try:
            async with self._session.post(endpoint, data=sdp.encode(), headers=headers) as response:
                body = await response.text()
                status = response.status
                location = response.headers.get("Location")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(self.kind.value, f"POST {endpoint} failed: {e}") from e

        if status == 404:
            logger.warning(f"Pull endpoint reports no session for {target_id}")
            self._emit(
                TransportEvent(TransportEventType.SESSION_TERMINATED, target_id=target_id, reason="session not found")
            )
            return
        if status not in (200, 201):
            raise RemoteDescriptionRejected(f"POST {endpoint} returned {status}: {body[:200]}")

        if location:
            self._resources[target_id] = endpoint.join(URL(location))
        logger.info(f"Pull answer for {target_id} received ({len(body)} bytes)")
        self._emit(
            TransportEvent(
                TransportEventType.ANSWER_RECEIVED,
                target_id=target_id,
                payload=SessionDescription(sdp=body, type="answer"),
            )
        )

    async def send_candidate(self, target_id: str, candidate: IceCandidate) -> None:
        logger.debug(f"Pull transport does not trickle, candidate for {target_id} ignored")

    async def close(self, target_id: str) -> None:
        resource = self._resources.pop(target_id, None)
        if resource is None or not self.is_open:
            return
        try:
            async with self._session.delete(resource, headers=self.headers) as response:
                if response.status not in (200, 202, 204, 404):
                    logger.warning(f"DELETE {resource} returned {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"DELETE {resource} failed: {e}")

    async def shutdown(self) -> None:
        for target_id in list(self._resources):
            await self.close(target_id)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["endpoint_template"] = self.endpoint_template
        status["resources"] = {target: str(url) for target, url in self._resources.items()}
        return status
