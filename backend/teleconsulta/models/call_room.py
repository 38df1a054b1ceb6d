from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy import Enum as SAEnum
from teleconsulta.db.session import Base
from enum import Enum


class RoomStatus(str, Enum):
    waiting = 'waiting'
    active = 'active'
    ended = 'ended'


class ParticipantRole(str, Enum):
    professional = 'professional'
    patient = 'patient'


class CandidateLog(str, Enum):
    # Creator appends to callerCandidates, joiner to calleeCandidates
    caller = 'callerCandidates'
    callee = 'calleeCandidates'


class CallRoom(Base):
    __tablename__ = "call_rooms"

    # "{tenant_id}_{appointment_id}"
    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    appointment_id = Column(String, nullable=False)
    offer = Column(JSON, nullable=False)
    answer = Column(JSON(none_as_null=True), nullable=True)
    created_by = Column(SAEnum(ParticipantRole, name='participant_role'), nullable=False)
    creator_name = Column(String, nullable=True)
    joiner_name = Column(String, nullable=True)
    joiner_role = Column(SAEnum(ParticipantRole, name='participant_role'), nullable=True)
    status = Column(SAEnum(RoomStatus, name='call_room_status'), nullable=False, default=RoomStatus.waiting)
    created_at = Column(DateTime(timezone=True), nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
