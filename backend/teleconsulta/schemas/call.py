from pydantic import BaseModel, Field, field_validator
from typing import Optional
from teleconsulta.models.call_room import ParticipantRole


class JoinRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    role: ParticipantRole
    auto_join: bool = True  # Start the join flow right away instead of waiting for a separate call

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Name cannot be blank')
        return v


class SessionResponse(BaseModel):
    session_id: str
    tenant_id: str
    appointment_id: str
    room_id: str
    phase: str
    role: ParticipantRole
    name: str
    call_role: Optional[str] = None
    remote_name: Optional[str] = None
    duration: int = 0
    duration_display: str = "00:00"
    audio_enabled: bool = False
    video_enabled: bool = False
    invite_link: str = ""
    error: Optional[str] = None


class ToggleResponse(BaseModel):
    session_id: str
    enabled: bool


class PrejoinResponse(BaseModel):
    """What the join screen needs before the participant clicks "join"."""
    tenant_id: str
    appointment_id: str
    room_id: str
    role: ParticipantRole
    suggested_name: Optional[str] = None
    professional_name: Optional[str] = None
    patient_name: Optional[str] = None
    appointment_date: Optional[str] = None
    start_time: Optional[str] = None
    show_medical_record: bool = False
    invite_link: str
    room_status: Optional[str] = None
