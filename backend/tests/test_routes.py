# -*- coding: utf-8 -*-
"""REST and WebSocket surface, exercised through FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from main import create_app
from teleconsulta.core.config import Settings
from teleconsulta.services.appointments import AppointmentNotFound, AppointmentParticipants


def make_settings(**overrides):
    values = dict(
        SIGNALING_BACKEND="sql",
        DATABASE_URL="sqlite://",
        APPOINTMENT_LOOKUP=False,
        ROOM_JANITOR_INTERVAL_SECONDS=0,
        APP_BASE_URL="https://app.example.com",
    )
    values.update(overrides)
    return Settings(**values)


class FakeAppointments:
    async def lookup(self, room):
        if room.appointment_id == "missing":
            raise AppointmentNotFound(room.appointment_id)
        return AppointmentParticipants(
            tenant_id=room.tenant_id,
            appointment_id=room.appointment_id,
            professional_id="pro-7",
            professional_name="Dra. Ana Souza",
            patient_id="pat-3",
            patient_name="João Pereira",
            appointment_date="2026-10-19",
            start_time="14:30",
        )


@pytest.fixture
def client(store, media, peer_factory):
    app = create_app(config=make_settings(), media=media, peer_factory=peer_factory, store=store,
                     appointments=FakeAppointments())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def bare_client(store, media, peer_factory):
    app = create_app(config=make_settings(), media=media, peer_factory=peer_factory, store=store)
    with TestClient(app) as test_client:
        yield test_client


def poll_phase(client, session_id, phase, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/teleconsulta/sessions/{session_id}").json()
        if body["phase"] == phase:
            return body
        time.sleep(0.02)
    raise AssertionError(f"Session never reached {phase}")


def create_session(client, name="Dra. Ana Souza", role="professional", auto_join=True):
    response = client.post(
        "/api/teleconsulta/clinic-1/appt-42/sessions",
        json={"name": name, "role": role, "auto_join": auto_join},
    )
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_health(self, client):
        body = client.get("/api/health").json()
        assert body == {"status": "healthy", "signaling_backend": "sql", "active_sessions": 0}

    def test_finished_sessions_are_not_active(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")
        client.post(f"/api/teleconsulta/sessions/{session_id}/hangup")

        assert client.get("/api/health").json()["active_sessions"] == 0
        assert client.get(f"/api/teleconsulta/sessions/{session_id}").json()["phase"] == "ended"


class TestPrejoin:

    def test_professional_sees_medical_record(self, client):
        response = client.get("/api/teleconsulta/clinic-1/appt-42", params={"professional_id": "pro-7"})
        assert response.status_code == 200
        body = response.json()

        assert body["role"] == "professional"
        assert body["suggested_name"] == "Dra. Ana Souza"
        assert body["patient_name"] == "João Pereira"
        assert body["show_medical_record"] is True
        assert body["invite_link"] == "https://app.example.com/#/teleconsulta/clinic-1/appt-42"
        assert body["room_status"] is None

    def test_patient_view(self, client):
        body = client.get("/api/teleconsulta/clinic-1/appt-42").json()

        assert body["role"] == "patient"
        assert body["suggested_name"] == "João Pereira"
        assert body["show_medical_record"] is False
        assert body["appointment_date"] == "2026-10-19"
        assert body["start_time"] == "14:30"

    def test_someone_elses_professional_id_is_a_patient(self, client):
        body = client.get("/api/teleconsulta/clinic-1/appt-42", params={"professional_id": "pro-99"}).json()
        assert body["role"] == "patient"

    def test_unknown_appointment(self, client):
        response = client.get("/api/teleconsulta/clinic-1/missing")
        assert response.status_code == 404

    def test_without_appointment_lookup(self, bare_client):
        body = bare_client.get("/api/teleconsulta/clinic-1/appt-42", params={"professional_id": "pro-7"}).json()

        assert body["role"] == "professional"
        assert body["suggested_name"] is None
        assert body["show_medical_record"] is True

    def test_room_status_is_reported(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        body = client.get("/api/teleconsulta/clinic-1/appt-42").json()
        assert body["room_status"] == "waiting"


class TestSessions:

    def test_create_without_auto_join_stays_idle(self, client):
        body = create_session(client, auto_join=False)

        assert body["phase"] == "idle"
        assert body["room_id"] == "clinic-1_appt-42"
        assert body["duration_display"] == "00:00"
        assert body["invite_link"].endswith("/#/teleconsulta/clinic-1/appt-42")

    def test_join_reaches_waiting(self, client):
        session_id = create_session(client, auto_join=False)["session_id"]
        response = client.post(f"/api/teleconsulta/sessions/{session_id}/join")
        assert response.status_code == 200

        body = poll_phase(client, session_id, "waiting")
        assert body["call_role"] == "creator"
        assert body["audio_enabled"] is True

        again = client.post(f"/api/teleconsulta/sessions/{session_id}/join")
        assert again.status_code == 409

    def test_two_participants_connect(self, client):
        creator = create_session(client)["session_id"]
        poll_phase(client, creator, "waiting")
        joiner = create_session(client, name="João Pereira", role="patient")["session_id"]

        joiner_body = poll_phase(client, joiner, "connecting")
        creator_body = poll_phase(client, creator, "connecting")
        assert joiner_body["remote_name"] == "Dra. Ana Souza"
        assert creator_body["remote_name"] == "João Pereira"
        assert client.get("/api/health").json()["active_sessions"] == 2

    def test_toggles(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        audio = client.post(f"/api/teleconsulta/sessions/{session_id}/audio").json()
        video = client.post(f"/api/teleconsulta/sessions/{session_id}/video").json()

        assert audio == {"session_id": session_id, "enabled": False}
        assert video == {"session_id": session_id, "enabled": False}
        body = client.get(f"/api/teleconsulta/sessions/{session_id}").json()
        assert body["audio_enabled"] is False
        assert body["video_enabled"] is False

    def test_hang_up_then_retry(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        ended = client.post(f"/api/teleconsulta/sessions/{session_id}/hangup").json()
        assert ended["phase"] == "ended"

        response = client.post(f"/api/teleconsulta/sessions/{session_id}/retry")
        assert response.status_code == 201
        fresh = response.json()
        assert fresh["session_id"] != session_id
        assert fresh["name"] == "Dra. Ana Souza"
        assert client.get(f"/api/teleconsulta/sessions/{session_id}").status_code == 404
        poll_phase(client, fresh["session_id"], "waiting")

    def test_retry_live_session_conflicts(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        response = client.post(f"/api/teleconsulta/sessions/{session_id}/retry")
        assert response.status_code == 409

    def test_remove_keeps_the_room(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        assert client.delete(f"/api/teleconsulta/sessions/{session_id}").status_code == 204
        assert client.get(f"/api/teleconsulta/sessions/{session_id}").status_code == 404
        assert client.get("/api/teleconsulta/clinic-1/appt-42").json()["room_status"] == "waiting"

    def test_unknown_session(self, client):
        assert client.get("/api/teleconsulta/sessions/nope").status_code == 404
        assert client.post("/api/teleconsulta/sessions/nope/hangup").status_code == 404

    def test_blank_name_is_rejected(self, client):
        response = client.post("/api/teleconsulta/clinic-1/appt-42/sessions", json={"name": "  ", "role": "patient"})
        assert response.status_code == 422

    def test_unknown_role_is_rejected(self, client):
        response = client.post("/api/teleconsulta/clinic-1/appt-42/sessions", json={"name": "Ana", "role": "admin"})
        assert response.status_code == 422


class TestWebSocket:

    def receive_until(self, ws, event_type, limit=50, **fields):
        for _ in range(limit):
            message = ws.receive_json()
            if message["type"] == event_type and all(message.get(k) == v for k, v in fields.items()):
                return message
        raise AssertionError(f"No {event_type} message received")

    def test_snapshot_then_commands(self, client):
        session_id = create_session(client)["session_id"]
        poll_phase(client, session_id, "waiting")

        with client.websocket_connect(f"/api/ws/sessions/{session_id}") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["phase"] == "waiting"

            ws.send_json({"type": "toggle_audio"})
            assert self.receive_until(ws, "audio_toggled")["enabled"] is False

            ws.send_json({"type": "ping"})
            self.receive_until(ws, "pong")

            ws.send_json({"type": "dance"})
            assert "Unknown command" in self.receive_until(ws, "error")["message"]

            ws.send_json({"type": "hang_up"})
            self.receive_until(ws, "phase", phase="ended")

        assert client.get(f"/api/teleconsulta/sessions/{session_id}").json()["phase"] == "ended"

    def test_unknown_session_is_closed(self, client):
        from starlette.websockets import WebSocketDisconnect

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/ws/sessions/nope") as ws:
                ws.receive_json()
