from aiortc import MediaStreamTrack
from av import AudioFrame, VideoFrame


def silent_frame(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def black_frame(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    # Y plane at video black, chroma planes at neutral grey
    for index, plane in enumerate(black.planes):
        value = 16 if index == 0 else 128
        plane.update(bytes([value]) * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """Relays a local capture track and honours an ``enabled`` flag.

    Like ``MediaStreamTrack.enabled`` in a browser, a disabled track keeps
    flowing but carries silence or black frames, so muting needs no
    renegotiation.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self):
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return silent_frame(frame)
        return black_frame(frame)

    def stop(self):
        super().stop()
        self._source.stop()
