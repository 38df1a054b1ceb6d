from teleconsulta.models.call_room import CallRoom, RoomStatus, ParticipantRole, CandidateLog
from teleconsulta.models.ice_candidate import IceCandidateRecord

__all__ = [
    "CallRoom",
    "RoomStatus",
    "ParticipantRole",
    "CandidateLog",
    "IceCandidateRecord"
]
