from fastapi import APIRouter, HTTPException, Depends, Query, Request, Response, status
from typing import Optional
from teleconsulta.core.config import settings
from teleconsulta.core.errors import SignalingError
from teleconsulta.models.call_room import ParticipantRole
from teleconsulta.schemas.call import JoinRequest, PrejoinResponse, SessionResponse, ToggleResponse
from teleconsulta.schemas.call_room import ParticipantIdentity, RoomKey
from teleconsulta.services.appointments import (
    AppointmentNotFound,
    build_invite_link,
    resolve_role,
    suggested_identity,
)
from teleconsulta.session.call_session import CallSession
from teleconsulta.session.manager import SessionManager, SessionNotFound
from teleconsulta.utils.logger import safe_print
from teleconsulta.utils.timefmt import format_duration

router = APIRouter()


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_ws_manager(request: Request):
    return request.app.state.ws_manager


def get_appointments(request: Request):
    # None when running on the SQL backend without Firebase
    return getattr(request.app.state, "appointments", None)


def session_response(session: CallSession) -> SessionResponse:
    snapshot = session.snapshot()
    return SessionResponse(**snapshot, duration_display=format_duration(snapshot["duration"]))


def _get_session(sessions: SessionManager, session_id: str) -> CallSession:
    try:
        return sessions.get(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_call_session(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager)
):
    """
    Current state of a call session
    """
    return session_response(_get_session(sessions, session_id))


@router.post("/sessions/{session_id}/audio", response_model=ToggleResponse)
async def toggle_audio(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager)
):
    session = _get_session(sessions, session_id)
    return ToggleResponse(session_id=session.id, enabled=session.toggle_audio())


@router.post("/sessions/{session_id}/video", response_model=ToggleResponse)
async def toggle_video(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager)
):
    session = _get_session(sessions, session_id)
    return ToggleResponse(session_id=session.id, enabled=session.toggle_video())


@router.post("/sessions/{session_id}/hangup", response_model=SessionResponse)
async def hang_up(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager)
):
    """
    End the call for both participants
    """
    _get_session(sessions, session_id)
    session = await sessions.hang_up(session_id)
    return session_response(session)


@router.post("/sessions/{session_id}/retry", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def retry(
    session_id: str,
    auto_join: bool = Query(True),
    sessions: SessionManager = Depends(get_session_manager),
    ws_manager=Depends(get_ws_manager)
):
    """
    Replace a failed or ended session with a fresh one for the same participant
    """
    _get_session(sessions, session_id)
    try:
        session = await sessions.retry(session_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await ws_manager.close_session(session_id)
    if auto_join:
        sessions.start_join(session.id)
    return session_response(session)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_session(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager),
    ws_manager=Depends(get_ws_manager)
):
    """
    Release a session without ending the shared room (the participant closed the page)
    """
    _get_session(sessions, session_id)
    await sessions.remove(session_id)
    await ws_manager.close_session(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{tenant_id}/{appointment_id}", response_model=PrejoinResponse)
async def get_prejoin_info(
    tenant_id: str,
    appointment_id: str,
    professional_id: Optional[str] = Query(None, description="Id of the logged-in professional, if any"),
    sessions: SessionManager = Depends(get_session_manager),
    appointments=Depends(get_appointments)
):
    """
    Everything the join screen shows before the participant enters the call
    """
    room = RoomKey(tenant_id=tenant_id, appointment_id=appointment_id)
    response = {
        "tenant_id": tenant_id,
        "appointment_id": appointment_id,
        "room_id": room.room_id,
        "role": ParticipantRole.professional if professional_id else ParticipantRole.patient,
        "invite_link": build_invite_link(settings.APP_BASE_URL, room),
    }

    try:
        if appointments is not None:
            participants = await appointments.lookup(room)
            identity = suggested_identity(participants, professional_id)
            response.update(
                role=resolve_role(participants, professional_id),
                suggested_name=identity.name if identity else None,
                professional_name=participants.professional_name,
                patient_name=participants.patient_name,
                appointment_date=participants.appointment_date,
                start_time=participants.start_time,
            )
        state = await sessions.store.join_room(room)
    except AppointmentNotFound:
        raise HTTPException(status_code=404, detail="Appointment not found")
    except SignalingError as e:
        safe_print(f"Pre-join lookup failed for {room}: {e}")
        raise HTTPException(status_code=502, detail=e.user_message)

    response["room_status"] = state.status.value if state else None
    response["show_medical_record"] = response["role"] == ParticipantRole.professional
    return PrejoinResponse(**response)


@router.post("/{tenant_id}/{appointment_id}/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_call_session(
    tenant_id: str,
    appointment_id: str,
    payload: JoinRequest,
    sessions: SessionManager = Depends(get_session_manager)
):
    """
    Create a call session for this participant and start joining the room
    """
    room = RoomKey(tenant_id=tenant_id, appointment_id=appointment_id)
    identity = ParticipantIdentity(name=payload.name, role=payload.role)
    session = sessions.create(room, identity)
    if payload.auto_join:
        sessions.start_join(session.id)
    return session_response(session)


@router.post("/sessions/{session_id}/join", response_model=SessionResponse)
async def start_join(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager)
):
    """
    Start joining a session created with auto_join disabled
    """
    session = _get_session(sessions, session_id)
    try:
        sessions.start_join(session_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session_response(session)
