"""ICE server configuration and candidate payload conversion.

Candidates travel through the signaling store as the JSON a browser's
``RTCIceCandidate.toJSON()`` produces: ``candidate``, ``sdpMid`` and
``sdpMLineIndex``. The store never looks inside them.
"""
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer
from aiortc.sdp import candidate_from_sdp


def build_rtc_configuration(settings) -> RTCConfiguration:
    servers = [RTCIceServer(urls=url) for url in settings.STUN_URLS]
    if settings.TURN_URLS:
        servers.append(RTCIceServer(
            urls=list(settings.TURN_URLS),
            username=settings.TURN_USERNAME,
            credential=settings.TURN_CREDENTIAL,
        ))
    return RTCConfiguration(iceServers=servers)


def candidate_from_json(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Turn a browser candidate payload into an aiortc candidate.

    Returns ``None`` for the empty end-of-candidates marker. Raises
    ``ValueError`` for a malformed candidate line.
    """
    line = (payload.get("candidate") or "").strip()
    if not line:
        return None
    if line.startswith("a="):
        line = line[2:]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if len(line.split()) < 8:
        raise ValueError(f"Malformed ICE candidate: {line!r}")
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidates_from_sdp(sdp: str) -> List[Dict[str, Any]]:
    """Extract every ``a=candidate`` line of a session description as candidate payloads.

    aiortc gathers all candidates before ``setLocalDescription`` returns and
    embeds them in the SDP; publishing them to the candidate log as well lets
    a trickle-ICE peer pick them up the same way it would from a browser.
    """
    sections = []
    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[2:])

    payloads = []
    for index, section in enumerate(sections):
        for candidate in section["candidates"]:
            payloads.append({
                "candidate": candidate,
                "sdpMid": section["mid"],
                "sdpMLineIndex": index,
            })
    return payloads
