from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional
from datetime import datetime
from teleconsulta.models.call_room import RoomStatus, ParticipantRole


class RoomKey(BaseModel):
    """Identity of a call room: one per tenant + appointment pair."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    appointment_id: str = Field(..., min_length=1)

    @property
    def room_id(self) -> str:
        return f"{self.tenant_id}_{self.appointment_id}"

    def __str__(self) -> str:
        return self.room_id


class SessionDescription(BaseModel):
    """Opaque ``{type, sdp}`` pair, same shape as a browser RTCSessionDescriptionInit."""
    type: str
    sdp: str

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        if v not in ("offer", "answer", "pranswer", "rollback"):
            raise ValueError(f"Unknown session description type: {v}")
        return v


class ParticipantIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=120)
    role: ParticipantRole

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Name cannot be blank')
        return v


class CallRoomState(BaseModel):
    """Snapshot of a call room as both signaling backends return it.

    Field aliases are the camelCase names stored in Firestore, so the
    documents stay readable by the browser client.
    """
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    appointment_id: Optional[str] = Field(default=None, alias="appointmentId")
    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None
    created_by: Optional[ParticipantRole] = Field(default=None, alias="createdBy")
    creator_name: Optional[str] = Field(default=None, alias="creatorName")
    joiner_name: Optional[str] = Field(default=None, alias="joinerName")
    joiner_role: Optional[ParticipantRole] = Field(default=None, alias="joinerRole")
    status: RoomStatus = RoomStatus.waiting
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    joined_at: Optional[datetime] = Field(default=None, alias="joinedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")

    @classmethod
    def from_document(cls, room_id: str, data: Dict[str, Any]) -> "CallRoomState":
        """Build from a Firestore document dict (camelCase keys)."""
        return cls.model_validate({**data, "roomId": room_id})
