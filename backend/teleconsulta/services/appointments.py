"""Appointment lookup used to pre-populate the join screen.

Appointments, professionals and patients are plain Firestore documents owned
by the scheduling side of the platform; this module only reads them.
"""
import asyncio
from typing import Optional

from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel

from teleconsulta.core.errors import SignalingError
from teleconsulta.models.call_room import ParticipantRole
from teleconsulta.schemas.call_room import ParticipantIdentity, RoomKey


class AppointmentNotFound(LookupError):
    pass


class AppointmentParticipants(BaseModel):
    tenant_id: str
    appointment_id: str
    professional_id: str
    professional_name: Optional[str] = None
    patient_id: str
    patient_name: Optional[str] = None
    appointment_date: Optional[str] = None
    start_time: Optional[str] = None
    status: Optional[str] = None


class AppointmentDirectory:
    def __init__(self, client):
        self._client = client

    def _read(self, path: str, doc_id: str) -> Optional[dict]:
        snapshot = self._client.collection(path).document(doc_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    def _lookup(self, room: RoomKey) -> AppointmentParticipants:
        tenant_path = f"tenants/{room.tenant_id}"
        appointment = self._read(f"{tenant_path}/appointments", room.appointment_id)
        if appointment is None:
            raise AppointmentNotFound(f"Appointment {room.appointment_id} not found")

        professional_id = appointment.get("professionalId") or ""
        patient_id = appointment.get("patientId") or ""
        professional = self._read(f"{tenant_path}/professionals", professional_id) if professional_id else None
        patient = self._read(f"{tenant_path}/patients", patient_id) if patient_id else None

        return AppointmentParticipants(
            tenant_id=room.tenant_id,
            appointment_id=room.appointment_id,
            professional_id=professional_id,
            professional_name=(professional or {}).get("name"),
            patient_id=patient_id,
            patient_name=(patient or {}).get("name"),
            appointment_date=appointment.get("appointmentDate"),
            start_time=appointment.get("startTime"),
            status=appointment.get("status"),
        )

    async def lookup(self, room: RoomKey) -> AppointmentParticipants:
        try:
            return await asyncio.to_thread(self._lookup, room)
        except google_exceptions.GoogleAPIError as e:
            raise SignalingError(f"Could not load appointment: {e}") from e


def resolve_role(participants: AppointmentParticipants, professional_id: Optional[str]) -> ParticipantRole:
    """The logged-in professional of this appointment joins as professional; anyone else as patient."""
    if professional_id and professional_id == participants.professional_id:
        return ParticipantRole.professional
    return ParticipantRole.patient


def suggested_identity(participants: AppointmentParticipants,
                       professional_id: Optional[str]) -> Optional[ParticipantIdentity]:
    role = resolve_role(participants, professional_id)
    if role == ParticipantRole.professional:
        name = participants.professional_name or "Professional"
    else:
        name = participants.patient_name
    if not name:
        return None
    return ParticipantIdentity(name=name, role=role)


def build_invite_link(base_url: str, room: RoomKey) -> str:
    """Link the other participant opens to land on the same join screen."""
    return f"{base_url.rstrip('/')}/#/teleconsulta/{room.tenant_id}/{room.appointment_id}"
