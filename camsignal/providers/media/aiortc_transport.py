"""
aiortc media transport

Receive-only RTCPeerConnection wrapped in the MediaTransport contract.
aiortc gathers every candidate inside setLocalDescription, so local
candidates are replayed from the resulting SDP followed by a single
gathering-complete notification.
"""

import logging
import time
from typing import Optional, List, Dict, Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from camsignal.exceptions import RemoteDescriptionRejected
from camsignal.providers.base.descriptions import SessionDescription, IceCandidate
from camsignal.providers.base.media_transport import MediaTransport
from camsignal.services.stats_differencer import CounterSnapshot

logger = logging.getLogger(__name__)


def build_ice_servers(servers: List[Dict[str, Any]]) -> List[RTCIceServer]:
    """Convert ``{"urls", "username", "credential"}`` dicts to RTCIceServer."""
    result = []
    for server in servers or []:
        urls = server.get("urls") or server.get("uris") or []
        if isinstance(urls, str):
            urls = [urls]
        if not urls:
            continue
        if server.get("username"):
            result.append(
                RTCIceServer(
                    urls=urls,
                    username=server.get("username"),
                    credential=server.get("credential") or server.get("password", ""),
                )
            )
        else:
            result.append(RTCIceServer(urls=urls))
    return result


def _candidates_in_sdp(sdp: str) -> List[IceCandidate]:
    """Collect a=candidate lines with their mid and m-line index."""
    candidates = []
    mline_index = -1
    mid: Optional[str] = None
    for line in sdp.splitlines():
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:") :]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            candidates.append(
                IceCandidate(
                    candidate=line[2:],
                    sdp_mid=mid if mid is not None else str(mline_index),
                    sdp_mline_index=mline_index,
                )
            )
    return candidates


class AiortcMediaTransport(MediaTransport):
    """One aiortc peer connection receiving a camera's video"""

    def __init__(self, ice_servers: List[Dict[str, Any]] = None):
        super().__init__()
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=build_ice_servers(ice_servers)))
        self._closed = False
        self._tracks: List[Any] = []

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = self._pc.connectionState
            logger.debug(f"Peer connection state → {state}")
            self._notify(self.on_connection_state, state)

        @self._pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            self._tracks.append(track)
            self._notify(self.on_media_flow, track.kind)

    async def create_offer(self) -> SessionDescription:
        self._pc.addTransceiver("video", direction="recvonly")
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        self._replay_gathering()
        return self.local_description()

    async def create_answer(self, offer: SessionDescription) -> SessionDescription:
        await self.set_remote_description(offer)
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        self._replay_gathering()
        return self.local_description()

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except Exception as e:
            raise RemoteDescriptionRejected(f"{description.type} rejected: {e}") from e

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        raw = candidate.candidate
        if not raw:
            # end-of-candidates marker
            return
        if raw.startswith("a="):
            raw = raw[2:]
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:") :]
        try:
            parsed = candidate_from_sdp(raw)
        except Exception:
            logger.warning(f"Failed to parse ICE candidate: {raw[:80]}")
            return
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(parsed)

    def local_description(self) -> Optional[SessionDescription]:
        desc = self._pc.localDescription
        if desc is None:
            return None
        return SessionDescription(sdp=desc.sdp, type=desc.type)

    async def get_counters(self) -> CounterSnapshot:
        report = await self._pc.getStats()
        bytes_received = 0
        packets_received = 0
        packets_lost = 0
        freezes = 0
        plis = 0
        nacks = 0
        rtt = None
        jitter = None

        for stats in report.values():
            if stats.type == "inbound-rtp":
                packets_received += getattr(stats, "packetsReceived", 0) or 0
                packets_lost += getattr(stats, "packetsLost", 0) or 0
                freezes += getattr(stats, "freezeCount", 0) or 0
                plis += getattr(stats, "pliCount", 0) or 0
                nacks += getattr(stats, "nackCount", 0) or 0
                if getattr(stats, "jitter", None) is not None:
                    jitter = stats.jitter
            elif stats.type == "transport":
                bytes_received += getattr(stats, "bytesReceived", 0) or 0
            elif stats.type == "remote-inbound-rtp":
                if getattr(stats, "roundTripTime", None) is not None:
                    rtt = stats.roundTripTime

        return CounterSnapshot(
            timestamp=time.monotonic(),
            bytes_received=bytes_received,
            packets_received=packets_received,
            packets_lost=packets_lost,
            freeze_count=freezes,
            pli_count=plis,
            nack_count=nacks,
            round_trip_time=rtt,
            jitter=jitter,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for track in self._tracks:
            track.stop()
        await self._pc.close()

    def _replay_gathering(self) -> None:
        desc = self._pc.localDescription
        if desc is None:
            return
        for candidate in _candidates_in_sdp(desc.sdp):
            self._notify(self.on_local_candidate, candidate)
        self._notify(self.on_gathering_complete)


def create_aiortc_transport(ice_servers: List[Dict[str, Any]]) -> AiortcMediaTransport:
    return AiortcMediaTransport(ice_servers)
