from typing import Any, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from teleconsulta.core.errors import NegotiationError
from teleconsulta.rtc.ice import candidate_from_json, candidates_from_sdp
from teleconsulta.rtc.media import MediaStream
from teleconsulta.schemas.call_room import SessionDescription
from teleconsulta.session.phases import ConnectionPhase
from teleconsulta.utils.logger import log

NEGOTIATION_ERRORS = (InvalidAccessError, InvalidStateError, ValueError)

ICE_STATE_PHASES = {
    "checking": ConnectionPhase.connecting,
    "connected": ConnectionPhase.connected,
    "completed": ConnectionPhase.connected,
    "disconnected": ConnectionPhase.reconnecting,
    "failed": ConnectionPhase.error,
    "closed": ConnectionPhase.ended,
}

CONNECTION_STATE_PHASES = {
    "connected": ConnectionPhase.connected,
    "failed": ConnectionPhase.error,
}


class PeerConnectionManager:
    """Owns the single peer connection of a call session.

    Remote ICE candidates that arrive before the remote description is applied
    are queued and flushed in arrival order right after it is set; later
    candidates go straight to the connection. A candidate that arrives while
    the flush is running joins the tail of the queue.
    """

    def __init__(
        self,
        configuration: Optional[RTCConfiguration] = None,
        pc_factory: Callable[..., Any] = RTCPeerConnection,
        on_phase: Optional[Callable[[ConnectionPhase], None]] = None,
        on_remote_track: Optional[Callable[[MediaStreamTrack], None]] = None,
    ):
        self._configuration = configuration
        self._pc_factory = pc_factory
        self._on_phase = on_phase
        self._on_remote_track = on_remote_track
        self.pc = None
        self.remote_stream = MediaStream()
        self._queue: List[Dict[str, Any]] = []
        self._remote_description_set = False
        self._flushing = False
        self._closed = False

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description_set

    @property
    def queued_candidates(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def create(self, local_stream: MediaStream):
        """Create the peer connection and attach every local track once."""
        if self.pc is not None:
            raise RuntimeError("Peer connection already created")
        log("Creating peer connection...")
        pc = self._pc_factory(configuration=self._configuration)

        for track in local_stream.get_tracks():
            log(f"Adding local track: {track.kind}")
            pc.addTrack(track)

        @pc.on("track")
        def on_track(track):
            log(f"Remote track received: {track.kind}")
            self.remote_stream.add_track(track)
            if self._on_remote_track:
                self._on_remote_track(track)

        @pc.on("iceconnectionstatechange")
        def on_ice_connection_state_change():
            state = pc.iceConnectionState
            log(f"ICE connection state: {state}")
            self._notify(ICE_STATE_PHASES.get(state))

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            state = pc.connectionState
            log(f"Connection state: {state}")
            self._notify(CONNECTION_STATE_PHASES.get(state))

        @pc.on("signalingstatechange")
        def on_signaling_state_change():
            log(f"Signaling state: {pc.signalingState}")

        @pc.on("icegatheringstatechange")
        def on_ice_gathering_state_change():
            log(f"ICE gathering state: {pc.iceGatheringState}")

        self.pc = pc
        return pc

    def _notify(self, phase: Optional[ConnectionPhase]):
        # Our own close() must not look like the transport ending the call
        if phase is None or self._closed or self._on_phase is None:
            return
        self._on_phase(phase)

    def _local_description(self) -> SessionDescription:
        desc = self.pc.localDescription
        return SessionDescription(type=desc.type, sdp=desc.sdp)

    def local_candidates(self) -> List[Dict[str, Any]]:
        """Candidates gathered for the local description, as browser-style payloads."""
        if self.pc is None or self.pc.localDescription is None:
            return []
        return candidates_from_sdp(self.pc.localDescription.sdp)

    async def create_offer(self) -> SessionDescription:
        log("Creating SDP offer...")
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except NEGOTIATION_ERRORS as e:
            raise NegotiationError(f"Could not create offer: {e}") from e
        return self._local_description()

    async def create_answer(self) -> SessionDescription:
        log("Creating SDP answer...")
        try:
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except NEGOTIATION_ERRORS as e:
            raise NegotiationError(f"Could not create answer: {e}") from e
        return self._local_description()

    async def apply_remote_description(self, description: SessionDescription):
        """Set the remote description, then flush every queued candidate in order."""
        log(f"Setting remote description ({description.type})...")
        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except NEGOTIATION_ERRORS as e:
            raise NegotiationError(f"Could not apply remote {description.type}: {e}") from e
        self._remote_description_set = True
        await self._flush_queue()

    async def add_remote_candidate(self, payload: Dict[str, Any]):
        if self._closed:
            return
        if not self._remote_description_set or self._queue:
            log("Remote description not set yet, queueing candidate")
            self._queue.append(payload)
            return
        await self._apply_candidate(payload)

    async def _flush_queue(self):
        if self._flushing:
            return
        self._flushing = True
        try:
            log(f"Processing {len(self._queue)} queued ICE candidates")
            while self._queue and not self._closed:
                # Stays at the head while applying so new arrivals queue behind it
                try:
                    await self._apply_candidate(self._queue[0])
                finally:
                    if self._queue:
                        self._queue.pop(0)
        finally:
            self._flushing = False

    async def _apply_candidate(self, payload: Dict[str, Any]):
        if self._closed:
            return
        try:
            candidate = candidate_from_json(payload)
        except ValueError as e:
            log(f"Skipping malformed ICE candidate: {e}", payload)
            return
        if candidate is None:
            return
        try:
            await self.pc.addIceCandidate(candidate)
            log("Remote ICE candidate added")
        except Exception as e:
            log(f"Could not add ICE candidate: {e!r}")

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        if self.pc is not None:
            await self.pc.close()
            log("Peer connection closed")
