# -*- coding: utf-8 -*-
"""Local media acquisition, toggleable tracks and the stream handle."""

import fractions
import threading

import pytest
from av import AudioFrame, VideoFrame

from teleconsulta.core.errors import MediaAccessError
from teleconsulta.core.config import Settings
from teleconsulta.rtc.media import MediaAcquisition, MediaConstraints, MediaStream
from teleconsulta.rtc.tracks import ToggleableTrack, black_frame, silent_frame

from conftest import FakeCaptureTrack, FakeDevices


def acquisition(devices):
    return MediaAcquisition(MediaConstraints(video_device="camera", audio_device="microphone"),
                            player_factory=devices)


class FrameSource(FakeCaptureTrack):
    def __init__(self, kind, frame):
        super().__init__(kind)
        self.frame = frame

    async def recv(self):
        return self.frame


class TestMediaAcquisition:

    @pytest.mark.asyncio
    async def test_video_and_audio(self):
        stream = await acquisition(FakeDevices()).acquire()

        assert [t.kind for t in stream.get_tracks()] == ["audio", "video"]
        assert all(isinstance(t, ToggleableTrack) for t in stream.get_tracks())

    @pytest.mark.asyncio
    async def test_audio_only_when_camera_is_missing(self):
        stream = await acquisition(FakeDevices(camera=False)).acquire()

        assert stream.get_video_tracks() == []
        assert len(stream.get_audio_tracks()) == 1

    @pytest.mark.asyncio
    async def test_microphone_is_required(self):
        devices = FakeDevices(microphone=False)
        with pytest.raises(MediaAccessError) as exc:
            await acquisition(devices).acquire()

        assert isinstance(exc.value.__cause__, OSError)
        assert devices.opened[0].readyState == "ended"

    @pytest.mark.asyncio
    async def test_devices_are_opened_off_the_event_loop(self):
        class ThreadRecordingDevices(FakeDevices):
            threads = []

            def __call__(self, device, format=None, options=None):
                self.threads.append(threading.get_ident())
                return super().__call__(device, format=format, options=options)

        devices = ThreadRecordingDevices()
        await acquisition(devices).acquire()

        assert len(devices.threads) == 2
        assert threading.get_ident() not in devices.threads

    @pytest.mark.asyncio
    async def test_player_without_the_track_kind(self):
        class NoTracks:
            audio = None
            video = None

        media = MediaAcquisition(MediaConstraints(), player_factory=lambda *a, **kw: NoTracks())
        with pytest.raises(MediaAccessError):
            await media.acquire()

    def test_constraints_from_settings(self):
        config = Settings(VIDEO_DEVICE="/dev/video2", VIDEO_SIZE="640x480", VIDEO_FRAMERATE="15",
                          AUDIO_DEVICE="hw:1", AUDIO_FORMAT="alsa")
        constraints = MediaConstraints.from_settings(config)

        assert constraints.video_device == "/dev/video2"
        assert constraints.video_options == {"video_size": "640x480", "framerate": "15"}
        assert constraints.audio_device == "hw:1"
        assert constraints.audio_format == "alsa"


class TestMediaStream:

    def test_duplicate_tracks_are_ignored(self):
        track = FakeCaptureTrack("audio")
        stream = MediaStream([track, track])
        assert stream.get_tracks() == [track]

    def test_stop_skips_ended_tracks(self):
        audio, video = FakeCaptureTrack("audio"), FakeCaptureTrack("video")
        video.stop()
        stream = MediaStream([audio, video])
        stream.stop()
        stream.stop()

        assert audio.readyState == "ended"
        assert video.readyState == "ended"


class TestToggleableTrack:

    @pytest.mark.asyncio
    async def test_enabled_track_relays_frames(self):
        frame = AudioFrame(format="s16", layout="mono", samples=160)
        track = ToggleableTrack(FrameSource("audio", frame))

        assert await track.recv() is frame

    @pytest.mark.asyncio
    async def test_disabled_audio_is_silent(self):
        frame = AudioFrame(format="s16", layout="mono", samples=160)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.sample_rate = 8000
        frame.pts = 320
        frame.time_base = fractions.Fraction(1, 8000)
        track = ToggleableTrack(FrameSource("audio", frame))
        track.enabled = False

        out = await track.recv()
        assert out is not frame
        assert out.samples == 160
        assert out.pts == 320
        assert set(bytes(out.planes[0])) == {0}

    def test_black_frame_keeps_size_and_timing(self):
        frame = VideoFrame(width=64, height=48, format="yuv420p")
        frame.pts = 3000
        frame.time_base = fractions.Fraction(1, 90000)
        black = black_frame(frame)

        assert (black.width, black.height) == (64, 48)
        assert black.pts == 3000
        assert set(bytes(black.planes[0])) == {16}

    def test_silent_frame_matches_layout(self):
        frame = AudioFrame(format="s16", layout="stereo", samples=480)
        frame.sample_rate = 48000
        silent = silent_frame(frame)

        assert silent.layout.name == "stereo"
        assert silent.sample_rate == 48000

    def test_stop_stops_the_source(self):
        source = FakeCaptureTrack("video")
        track = ToggleableTrack(source)
        track.stop()

        assert track.readyState == "ended"
        assert source.readyState == "ended"
        assert track.kind == "video"
