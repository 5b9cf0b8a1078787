"""
SDP value objects shared by media and signaling providers
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any, List


@dataclass(frozen=True)
class SessionDescription:
    """An SDP blob plus its role"""

    sdp: str
    type: str  # "offer" | "answer"

    def to_dict(self) -> Dict[str, str]:
        return {"sdp": self.sdp, "type": self.type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDescription":
        return cls(sdp=data.get("sdp", ""), type=data.get("type", "offer"))


@dataclass(frozen=True)
class IceCandidate:
    """A single ICE candidate in browser (RTCIceCandidateInit) shape"""

    candidate: str
    sdp_mid: Optional[str] = "0"
    sdp_mline_index: Optional[int] = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidate":
        return cls(
            candidate=data.get("candidate", ""),
            sdp_mid=data.get("sdpMid", "0"),
            sdp_mline_index=data.get("sdpMLineIndex", 0),
        )


def strip_candidates(sdp: str) -> str:
    """Remove every a=candidate and a=end-of-candidates line."""
    lines = sdp.splitlines()
    kept = [line for line in lines if not line.startswith(("a=candidate:", "a=end-of-candidates"))]
    return "\r\n".join(kept) + "\r\n"


def embed_candidates(sdp: str, candidates: List[IceCandidate]) -> str:
    """
    Add candidates missing from ``sdp`` to their m-section.

    Candidates are matched to a section by ``a=mid`` first and by m-line
    index otherwise. Candidates already present are not duplicated.
    """
    if not candidates:
        return sdp

    lines = sdp.splitlines()
    present = {line[2:] for line in lines if line.startswith("a=candidate:")}

    # Split into session header + media sections
    sections: List[List[str]] = [[]]
    for line in lines:
        if line.startswith("m="):
            sections.append([])
        sections[-1].append(line)

    media = sections[1:]
    mids = []
    for section in media:
        mid = next((line[len("a=mid:") :] for line in section if line.startswith("a=mid:")), None)
        mids.append(mid)

    for cand in candidates:
        attr = cand.candidate
        if attr.startswith("a="):
            attr = attr[2:]
        if not attr.startswith("candidate:"):
            attr = "candidate:" + attr
        if attr in present:
            continue

        index = None
        if cand.sdp_mid is not None and cand.sdp_mid in mids:
            index = mids.index(cand.sdp_mid)
        elif cand.sdp_mline_index is not None and 0 <= cand.sdp_mline_index < len(media):
            index = cand.sdp_mline_index
        if index is None:
            continue

        section = media[index]
        # Keep candidates ahead of end-of-candidates
        insert_at = len(section)
        for i, line in enumerate(section):
            if line.startswith("a=end-of-candidates"):
                insert_at = i
                break
        section.insert(insert_at, "a=" + attr)
        present.add(attr)

    out = [line for section in sections for line in section]
    return "\r\n".join(out) + "\r\n"
