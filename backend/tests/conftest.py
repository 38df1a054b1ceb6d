# -*- coding: utf-8 -*-
"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the teleconsulta test suite: an in-memory SQL signaling
store, fake capture devices and a fake peer connection that speaks the same
event-emitter API as aiortc's RTCPeerConnection.
"""

import asyncio
import os
from functools import partial

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

os.environ.setdefault("SIGNALING_BACKEND", "sql")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from teleconsulta.db.session import Base, build_engine, build_session_factory
from teleconsulta.models.call_room import ParticipantRole
from teleconsulta.rtc.media import MediaAcquisition, MediaConstraints
from teleconsulta.rtc.peer import PeerConnectionManager
from teleconsulta.schemas.call_room import ParticipantIdentity, RoomKey
from teleconsulta.signaling.sql_store import SqlSignalingStore
import teleconsulta.models  # noqa: F401


def fake_sdp(kind: str, host: str) -> str:
    """A minimal session description carrying one candidate per m-section."""
    return "\r\n".join([
        "v=0",
        f"o=- 0 0 IN IP4 {host}",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=mid:0",
        f"a=candidate:1 1 udp 2130706431 {host} 50000 typ host",
        "m=video 9 UDP/TLS/RTP/SAVPF 96",
        "a=mid:1",
        f"a=candidate:2 1 udp 2130706431 {host} 50002 typ host",
        f"a=x-kind:{kind}",
        "",
    ])


def candidate_payload(port: int, host: str = "192.0.2.10", mid: str = "0", index: int = 0) -> dict:
    return {
        "candidate": f"candidate:{port} 1 udp 2130706431 {host} {port} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": index,
    }


class FakeRTCPeerConnection(AsyncIOEventEmitter):
    """Stands in for aiortc's RTCPeerConnection without touching the network."""

    instances = []

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.localDescription = None
        self.remoteDescription = None
        self.iceConnectionState = "new"
        self.connectionState = "new"
        self.signalingState = "stable"
        self.iceGatheringState = "new"
        self.tracks = []
        self.added_candidates = []
        self.close_calls = 0
        self.on_add_candidate = None
        self.host = f"10.0.0.{len(FakeRTCPeerConnection.instances) + 1}"
        FakeRTCPeerConnection.instances.append(self)

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=fake_sdp("offer", self.host), type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise InvalidStateError("Cannot create answer without a remote offer")
        return RTCSessionDescription(sdp=fake_sdp("answer", self.host), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.iceGatheringState = "complete"

    async def setRemoteDescription(self, description):
        if "v=0" not in description.sdp:
            raise ValueError("Invalid SDP")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("Remote description is not set")
        if self.on_add_candidate is not None:
            hook, self.on_add_candidate = self.on_add_candidate, None
            await hook()
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.set_ice_state("closed")

    def set_ice_state(self, state: str):
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def set_connection_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")


class FakeCaptureTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise NotImplementedError


class FakePlayer:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


class FakeDevices:
    """``MediaPlayer``-shaped factory; flags make a device unavailable."""

    def __init__(self, camera: bool = True, microphone: bool = True):
        self.camera = camera
        self.microphone = microphone
        self.opened = []

    def __call__(self, device, format=None, options=None):
        if device == "camera":
            if not self.camera:
                raise OSError("No such device: camera")
            track = FakeCaptureTrack("video")
            self.opened.append(track)
            return FakePlayer(video=track)
        if not self.microphone:
            raise OSError("Permission denied: microphone")
        track = FakeCaptureTrack("audio")
        self.opened.append(track)
        return FakePlayer(audio=track)


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_fake_peers():
    FakeRTCPeerConnection.instances = []
    yield
    FakeRTCPeerConnection.instances = []


@pytest.fixture(scope="function")
def session_factory():
    """In-memory database, fresh for every test"""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlSignalingStore(session_factory, poll_interval=0.01)


@pytest.fixture
def room():
    return RoomKey(tenant_id="clinic-1", appointment_id="appt-42")


@pytest.fixture
def professional():
    return ParticipantIdentity(name="Dra. Ana Souza", role=ParticipantRole.professional)


@pytest.fixture
def patient():
    return ParticipantIdentity(name="João Pereira", role=ParticipantRole.patient)


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def media(devices):
    return MediaAcquisition(
        MediaConstraints(video_device="camera", audio_device="microphone"),
        player_factory=devices,
    )


@pytest.fixture
def peer_factory():
    return partial(PeerConnectionManager, pc_factory=FakeRTCPeerConnection)
