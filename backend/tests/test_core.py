# -*- coding: utf-8 -*-
"""Phases, events, errors and small helpers."""

import pytest

from teleconsulta.core.errors import (
    AnswerAlreadySubmitted,
    MediaAccessError,
    SignalingError,
    TeleconsultaError,
)
from teleconsulta.core.events import EventChannel
from teleconsulta.models.call_room import ParticipantRole
from teleconsulta.schemas.call_room import CallRoomState, ParticipantIdentity, RoomKey
from teleconsulta.session.phases import ConnectionPhase, can_transition
from teleconsulta.utils.timefmt import format_duration


class TestPhases:

    @pytest.mark.parametrize("current,target", [
        (ConnectionPhase.idle, ConnectionPhase.initializing),
        (ConnectionPhase.initializing, ConnectionPhase.waiting),
        (ConnectionPhase.initializing, ConnectionPhase.connecting),
        (ConnectionPhase.waiting, ConnectionPhase.connecting),
        (ConnectionPhase.connecting, ConnectionPhase.connected),
        (ConnectionPhase.connected, ConnectionPhase.reconnecting),
        (ConnectionPhase.reconnecting, ConnectionPhase.connected),
        (ConnectionPhase.waiting, ConnectionPhase.error),
        (ConnectionPhase.connected, ConnectionPhase.ended),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (ConnectionPhase.idle, ConnectionPhase.connected),
        (ConnectionPhase.waiting, ConnectionPhase.connected),
        (ConnectionPhase.connected, ConnectionPhase.waiting),
        (ConnectionPhase.ended, ConnectionPhase.connecting),
        (ConnectionPhase.error, ConnectionPhase.ended),
        (ConnectionPhase.ended, ConnectionPhase.error),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_phases(self):
        assert {p for p in ConnectionPhase if p.is_terminal} == {ConnectionPhase.error, ConnectionPhase.ended}


class TestEventChannel:

    def test_subscribers_get_events_in_order(self):
        channel = EventChannel()
        first, second = channel.subscribe(), channel.subscribe()
        channel.emit("phase", phase="waiting")
        channel.emit("phase", phase="connecting")

        for queue in (first, second):
            assert [queue.get_nowait().data["phase"] for _ in range(2)] == ["waiting", "connecting"]

    def test_close_sends_sentinel_once(self):
        channel = EventChannel()
        queue = channel.subscribe()
        channel.close()
        channel.close()
        channel.emit("phase", phase="ended")

        assert queue.get_nowait() is None
        assert queue.empty()
        assert channel.subscribe().get_nowait() is None

    def test_slow_subscriber_drops_oldest(self):
        channel = EventChannel(maxsize=2)
        queue = channel.subscribe()
        for seconds in range(3):
            channel.emit("duration", seconds=seconds)

        assert [queue.get_nowait().data["seconds"] for _ in range(2)] == [1, 2]

    def test_to_dict(self):
        event = EventChannel().emit("remote_name", name="Maria")
        payload = event.to_dict()

        assert payload["type"] == "remote_name"
        assert payload["name"] == "Maria"
        assert "timestamp" in payload


class TestErrors:

    def test_default_user_message(self):
        error = MediaAccessError()
        assert error.user_message == MediaAccessError.user_message
        assert str(error) == MediaAccessError.user_message

    def test_custom_message_overrides(self):
        error = SignalingError("This consultation has already ended.")
        assert error.user_message == "This consultation has already ended."
        assert SignalingError.user_message != error.user_message

    def test_hierarchy(self):
        assert issubclass(AnswerAlreadySubmitted, SignalingError)
        assert issubclass(SignalingError, TeleconsultaError)


class TestSchemas:

    def test_room_id(self):
        room = RoomKey(tenant_id="t1", appointment_id="a9")
        assert room.room_id == "t1_a9"
        assert str(room) == "t1_a9"

    def test_blank_name_is_rejected(self):
        with pytest.raises(ValueError):
            ParticipantIdentity(name="   ", role="patient")

    def test_name_is_stripped(self):
        assert ParticipantIdentity(name="  Ana ", role="patient").name == "Ana"

    def test_room_document_with_camel_case_keys(self):
        data = {
            "offer": {"type": "offer", "sdp": "v=0"},
            "createdBy": "professional",
            "creatorName": "Dra. Ana",
            "tenantId": "t1",
            "appointmentId": "a9",
            "status": "waiting",
        }
        state = CallRoomState.from_document("t1_a9", data)

        assert state.room_id == "t1_a9"
        assert state.creator_name == "Dra. Ana"
        assert state.created_by == ParticipantRole.professional
        assert state.offer.sdp == "v=0"
        assert state.joined_at is None


class TestFormatDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00:00"),
        (59, "00:59"),
        (61, "01:01"),
        (3600, "60:00"),
        (-5, "00:00"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected
