"""
Session API Routes

Endpoints for the operator side of the session orchestrator:
- Start viewing a target over any configured transport
- Tear a session down
- Status, logs and relay health
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from camsignal.exceptions import (
    AlreadyNegotiating,
    AnswerTimeout,
    RemoteDescriptionRejected,
    SessionClosed,
    SignalingError,
    TransportUnavailable,
)
from camsignal.i18n import get_language_from_request, translate
from camsignal.services.session_state import IcePolicy, TransportKind

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

# Service references (set by main.py)
_orchestrator = None
_supervisor = None


def set_session_orchestrator(orchestrator):
    """Set the SessionOrchestrator instance"""
    global _orchestrator
    _orchestrator = orchestrator


def set_heartbeat_supervisor(supervisor):
    global _supervisor
    _supervisor = supervisor


# ── Pydantic Models ──────────────────────────────────────────────────────────


class ConnectRequest(BaseModel):
    target_id: str = Field(min_length=1, max_length=128)
    transport: str = TransportKind.RELAY.value
    ice_policy: Optional[str] = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _require_orchestrator(lang: str):
    if not _orchestrator:
        raise HTTPException(status_code=503, detail=translate("services.orchestrator_not_initialized", lang))
    return _orchestrator


def signaling_http_error(error: SignalingError, lang: str, target_id: str = "") -> HTTPException:
    """Map a signaling failure to the HTTP status the API documents."""
    if isinstance(error, AlreadyNegotiating):
        return HTTPException(
            status_code=409, detail=translate("sessions.already_negotiating", lang, target_id=error.target_id)
        )
    if isinstance(error, TransportUnavailable):
        return HTTPException(
            status_code=503, detail=translate("sessions.transport_unavailable", lang, transport=error.transport)
        )
    if isinstance(error, AnswerTimeout):
        return HTTPException(
            status_code=504, detail=translate("push.answer_timeout", lang, target_id=error.target_id or target_id)
        )
    if isinstance(error, RemoteDescriptionRejected):
        return HTTPException(status_code=400, detail=translate("push.offer_rejected", lang, error=str(error)))
    if isinstance(error, SessionClosed):
        return HTTPException(
            status_code=409, detail=translate("push.session_closed", lang, target_id=error.target_id or target_id)
        )
    return HTTPException(status_code=500, detail=str(error))


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status(request: Request):
    lang = get_language_from_request(request)
    return _require_orchestrator(lang).get_status()


@router.post("/connect")
async def connect(req: ConnectRequest, request: Request):
    """Start an outbound session for a target."""
    lang = get_language_from_request(request)
    orchestrator = _require_orchestrator(lang)

    try:
        transport = TransportKind(req.transport)
    except ValueError:
        raise HTTPException(status_code=400, detail=translate("sessions.invalid_transport", lang, transport=req.transport))

    ice_policy = None
    if req.ice_policy:
        try:
            ice_policy = IcePolicy(req.ice_policy)
        except ValueError:
            raise HTTPException(
                status_code=400, detail=translate("sessions.invalid_ice_policy", lang, policy=req.ice_policy)
            )

    try:
        session = await orchestrator.start_outbound(req.target_id, transport, ice_policy)
    except SignalingError as e:
        raise signaling_http_error(e, lang, req.target_id)
    return {"success": True, "session": session.to_dict()}


@router.post("/{target_id}/teardown")
async def teardown(target_id: str, request: Request):
    lang = get_language_from_request(request)
    orchestrator = _require_orchestrator(lang)

    session = await orchestrator.teardown(target_id)
    if session is None:
        raise HTTPException(status_code=404, detail=translate("sessions.not_found", lang, target_id=target_id))
    return {
        "success": True,
        "message": translate("sessions.teardown_ok", lang, target_id=target_id),
        "session": session.to_dict(),
    }


@router.get("/logs")
async def get_logs(request: Request, limit: int = 100):
    lang = get_language_from_request(request)
    return {"logs": _require_orchestrator(lang).get_logs(limit)}


@router.get("/relay-health")
async def get_relay_health(request: Request):
    lang = get_language_from_request(request)
    if not _supervisor:
        raise HTTPException(status_code=503, detail=translate("services.supervisor_not_initialized", lang))
    return _supervisor.get_state()


@router.get("/{target_id}")
async def get_session(target_id: str, request: Request):
    """Current or just-closed session of a target."""
    lang = get_language_from_request(request)
    session = _require_orchestrator(lang).get_session(target_id)
    if session is None:
        raise HTTPException(status_code=404, detail=translate("sessions.not_found", lang, target_id=target_id))
    return session.to_dict()
