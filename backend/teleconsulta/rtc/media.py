import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from teleconsulta.core.errors import MediaAccessError
from teleconsulta.rtc.tracks import ToggleableTrack
from teleconsulta.utils.logger import log


class MediaStream:
    """A group of tracks handed to the UI as one stream handle."""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self.id = uuid.uuid4().hex
        self._tracks: List[MediaStreamTrack] = []
        for track in tracks or []:
            self.add_track(track)

    def add_track(self, track: MediaStreamTrack):
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def stop(self):
        for track in self._tracks:
            if track.readyState == "ended":
                continue
            track.stop()
            log(f"Track {track.kind} stopped")


@dataclass
class MediaConstraints:
    video_device: str = "/dev/video0"
    video_format: Optional[str] = "v4l2"
    video_options: Dict[str, str] = field(default_factory=lambda: {"video_size": "1280x720", "framerate": "30"})
    audio_device: str = "default"
    audio_format: Optional[str] = "pulse"
    audio_options: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "MediaConstraints":
        return cls(
            video_device=settings.VIDEO_DEVICE,
            video_format=settings.VIDEO_FORMAT,
            video_options={"video_size": settings.VIDEO_SIZE, "framerate": settings.VIDEO_FRAMERATE},
            audio_device=settings.AUDIO_DEVICE,
            audio_format=settings.AUDIO_FORMAT,
        )


class MediaAcquisition:
    """Opens the local camera and microphone, degrading to audio-only.

    ``player_factory`` has the signature of aiortc's ``MediaPlayer`` and
    returns an object exposing ``audio`` / ``video`` tracks.
    """

    def __init__(self, constraints: MediaConstraints, player_factory: Callable = MediaPlayer):
        self.constraints = constraints
        self._player_factory = player_factory

    def _open_device(self, kind: str, device: str, fmt: Optional[str], options: Dict[str, str]) -> MediaStreamTrack:
        player = self._player_factory(device, format=fmt, options=options or None)
        track = getattr(player, kind)
        if track is None:
            raise MediaAccessError(f"{device} has no {kind} stream")
        return track

    async def _open(self, kind: str, device: str, fmt: Optional[str], options: Dict[str, str]) -> MediaStreamTrack:
        # Opening a capture device blocks until ffmpeg has probed it
        track = await asyncio.to_thread(self._open_device, kind, device, fmt, options)
        return ToggleableTrack(track)

    async def acquire(self) -> MediaStream:
        """Return a stream with audio and, when the camera opens, video.

        Raises ``MediaAccessError`` when the microphone cannot be opened.
        """
        c = self.constraints
        log("Initializing media...")
        video_track = None
        try:
            video_track = await self._open("video", c.video_device, c.video_format, c.video_options)
        except (OSError, FFmpegError, MediaAccessError) as e:
            log("Could not open camera, falling back to audio only", e)

        try:
            audio_track = await self._open("audio", c.audio_device, c.audio_format, c.audio_options)
        except (OSError, FFmpegError, MediaAccessError) as e:
            log("Could not open microphone", e)
            if video_track is not None:
                video_track.stop()
            raise MediaAccessError() from e

        if video_track is None:
            log("Media initialized with audio only")
            return MediaStream([audio_track])
        log("Media initialized with video and audio")
        return MediaStream([audio_track, video_track])
