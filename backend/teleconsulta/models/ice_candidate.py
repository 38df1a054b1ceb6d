from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from sqlalchemy import Enum as SAEnum
from teleconsulta.db.session import Base
from teleconsulta.models.call_room import CandidateLog


class IceCandidateRecord(Base):
    __tablename__ = "ice_candidates"

    # Autoincrement id is the insertion order of the log
    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String, nullable=False)
    log = Column(SAEnum(CandidateLog, name='candidate_log'), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ice_candidates_room_log", "room_id", "log", "id"),
    )
