"""
Push Ingest Routes

A producer POSTs its SDP offer here and the request stays open until the
session orchestrator answers (or the broker deadline passes). The answer
comes back as 201 with a Location the producer DELETEs to hang up.
"""

from fastapi import APIRouter, HTTPException, Request, Response

from camsignal.exceptions import SignalingError
from camsignal.i18n import get_language_from_request, translate
from camsignal.api.routes.sessions import signaling_http_error

router = APIRouter(prefix="/api/push", tags=["push"])

SDP_CONTENT_TYPE = "application/sdp"

# Transport reference (set by main.py)
_push_transport = None


def set_push_transport(transport):
    """Set the PushTransport instance"""
    global _push_transport
    _push_transport = transport


def _require_transport(lang: str):
    if not _push_transport:
        raise HTTPException(status_code=503, detail=translate("services.push_not_initialized", lang))
    return _push_transport


@router.post("/{target_id}", status_code=201)
async def ingest_offer(target_id: str, request: Request):
    """Accept a producer offer and answer it in the same exchange."""
    lang = get_language_from_request(request)
    transport = _require_transport(lang)

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type != SDP_CONTENT_TYPE:
        raise HTTPException(status_code=415, detail=translate("push.wrong_content_type", lang))

    offer_sdp = (await request.body()).decode("utf-8", errors="replace")
    if not offer_sdp.strip():
        raise HTTPException(status_code=400, detail=translate("push.empty_offer", lang))

    try:
        result = await transport.handle_offer(target_id, offer_sdp)
    except SignalingError as e:
        raise signaling_http_error(e, lang, target_id)

    return Response(
        content=result.answer.sdp,
        status_code=201,
        media_type=SDP_CONTENT_TYPE,
        headers={"Location": f"{router.prefix}/{target_id}/{result.resource_id}"},
    )


@router.delete("/{target_id}/{resource_id}")
async def delete_resource(target_id: str, resource_id: str, request: Request):
    """Producer hangs up."""
    lang = get_language_from_request(request)
    transport = _require_transport(lang)

    if not transport.terminate(target_id, resource_id):
        raise HTTPException(
            status_code=404, detail=translate("push.resource_not_found", lang, resource_id=resource_id)
        )
    return {"success": True}
