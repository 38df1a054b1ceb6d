"""Call session state machine for one participant's join attempt.

A ``CallSession`` is created per join attempt and never reused: once it
reaches ``error`` or ``ended`` every resource it owns is released, and a retry
builds a new session. Whichever participant first finds no live room becomes
the creator (writes the offer and waits); the other becomes the joiner (reads
the offer and writes the answer).
"""
import asyncio
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from teleconsulta.core.errors import (
    NegotiationError,
    RoomAlreadyExists,
    TeleconsultaError,
    TransportFailure,
)
from teleconsulta.core.events import EventChannel
from teleconsulta.models.call_room import CandidateLog, RoomStatus
from teleconsulta.rtc.media import MediaAcquisition, MediaStream
from teleconsulta.rtc.peer import PeerConnectionManager
from teleconsulta.schemas.call_room import CallRoomState, ParticipantIdentity, RoomKey
from teleconsulta.session.phases import CallRole, ConnectionPhase, can_transition
from teleconsulta.signaling.base import SignalingStore, Subscription
from teleconsulta.utils.logger import log


class CallSession:
    def __init__(
        self,
        room: RoomKey,
        identity: ParticipantIdentity,
        store: SignalingStore,
        media: MediaAcquisition,
        peer_factory: Callable[..., PeerConnectionManager],
        invite_link: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.id = uuid.uuid4().hex
        self.room = room
        self.identity = identity
        self.invite_link = invite_link
        self.events = EventChannel()

        self._store = store
        self._media = media
        self._peer_factory = peer_factory
        self._clock = clock

        self.phase = ConnectionPhase.idle
        self.call_role: Optional[CallRole] = None
        self.error: Optional[TeleconsultaError] = None
        self.remote_name: Optional[str] = None
        self.local_stream: Optional[MediaStream] = None
        self.peer: Optional[PeerConnectionManager] = None

        self._subscriptions: List[Subscription] = []
        self._answer_applied = False
        self._wrote_room = False
        self._started_at: Optional[float] = None
        self._ticker: Optional[asyncio.Task] = None
        self._cleaned_up = False

    # -- state exposed to the UI ------------------------------------------

    @property
    def is_creator(self) -> bool:
        return self.call_role == CallRole.creator

    @property
    def wrote_room(self) -> bool:
        """True once this session created the room or answered it."""
        return self._wrote_room

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self.peer.remote_stream if self.peer else None

    @property
    def duration(self) -> int:
        """Whole seconds since the call first reached ``connected``."""
        if self._started_at is None:
            return 0
        return max(int(math.floor(self._clock() - self._started_at)), 0)

    @property
    def audio_enabled(self) -> bool:
        tracks = self.local_stream.get_audio_tracks() if self.local_stream else []
        return bool(tracks) and tracks[0].enabled

    @property
    def video_enabled(self) -> bool:
        tracks = self.local_stream.get_video_tracks() if self.local_stream else []
        return bool(tracks) and tracks[0].enabled

    @property
    def error_message(self) -> Optional[str]:
        return self.error.user_message if self.error else None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "tenant_id": self.room.tenant_id,
            "appointment_id": self.room.appointment_id,
            "room_id": self.room.room_id,
            "phase": self.phase.value,
            "role": self.identity.role.value,
            "name": self.identity.name,
            "call_role": self.call_role.value if self.call_role else None,
            "remote_name": self.remote_name,
            "duration": self.duration,
            "audio_enabled": self.audio_enabled,
            "video_enabled": self.video_enabled,
            "invite_link": self.invite_link,
            "error": self.error_message,
        }

    # -- transitions --------------------------------------------------------

    def _set_phase(self, target: ConnectionPhase) -> bool:
        if self.phase == target:
            return False
        if not can_transition(self.phase, target):
            log(f"Ignoring transition {self.phase.value} -> {target.value}")
            return False
        log(f"Phase {self.phase.value} -> {target.value}")
        self.phase = target
        self.events.emit("phase", phase=target.value)
        return True

    def _on_transport_phase(self, phase: ConnectionPhase):
        if self.phase.is_terminal:
            return
        if phase == ConnectionPhase.error:
            self._fail(TransportFailure())
        elif phase == ConnectionPhase.ended:
            self._set_phase(ConnectionPhase.ended)
            self._schedule_cleanup()
        elif phase == ConnectionPhase.connected:
            if self._set_phase(ConnectionPhase.connected) and self._started_at is None:
                # Captured once; reconnects keep counting from the first connect
                self._started_at = self._clock()
                self._ticker = asyncio.ensure_future(self._tick())
        else:
            self._set_phase(phase)

    def _fail(self, error: TeleconsultaError):
        if self.phase.is_terminal:
            return
        log(f"Call failed: {error}")
        self.error = error
        self._set_phase(ConnectionPhase.error)
        self.events.emit("error", message=error.user_message, kind=type(error).__name__)
        self._schedule_cleanup()

    def _schedule_cleanup(self):
        asyncio.ensure_future(self.cleanup())

    async def _tick(self):
        while not self.phase.is_terminal:
            await asyncio.sleep(1)
            if self.phase == ConnectionPhase.connected:
                self.events.emit("duration", seconds=self.duration)

    # -- join flow ----------------------------------------------------------

    async def join(self):
        """Acquire media, pick creator or joiner, and drive the handshake.

        Failures from our error taxonomy end in the ``error`` phase; the
        method itself does not raise them.
        """
        if self.phase != ConnectionPhase.idle:
            raise RuntimeError(f"Cannot join from phase {self.phase.value}")
        self._set_phase(ConnectionPhase.initializing)
        log("Joining call...", {"name": self.identity.name, "role": self.identity.role.value})
        try:
            self.local_stream = await self._media.acquire()
            if self._aborted():
                return
            self.events.emit("media", audio_enabled=self.audio_enabled, video_enabled=self.video_enabled)

            room = await self._store.join_room(self.room)
            if self._aborted():
                return
            if room is None or room.status == RoomStatus.ended:
                try:
                    await self._create_room()
                    return
                except RoomAlreadyExists:
                    # The other participant created it first; join theirs instead
                    log("Room created concurrently by the other participant, joining it")
                    await self._reset_peer()
                    room = await self._store.join_room(self.room)
                    if self._aborted():
                        return
            await self._join_room(room)
        except TeleconsultaError as e:
            self._fail(e)

    def _aborted(self) -> bool:
        # Hung up (or failed) while a suspension point was outstanding
        if not self.phase.is_terminal:
            return False
        asyncio.ensure_future(self._abandon())
        return True

    async def _abandon(self):
        if self._wrote_room and self.phase == ConnectionPhase.ended:
            try:
                await self._store.mark_ended(self.room)
            except TeleconsultaError as e:
                log(f"Could not mark room as ended: {e}")
        await self.cleanup()
        # Media or a peer acquired after cleanup already ran
        if self.local_stream is not None:
            self.local_stream.stop()
        if self.peer is not None:
            await self.peer.close()

    def _new_peer(self) -> PeerConnectionManager:
        peer = self._peer_factory(on_phase=self._on_transport_phase)
        peer.create(self.local_stream)
        self.peer = peer
        return peer

    async def _reset_peer(self):
        if self.peer is not None:
            await self.peer.close()
        self.peer = None

    async def _publish_candidates(self, log_name: CandidateLog):
        for candidate in self.peer.local_candidates():
            await self._store.append_candidate(self.room, log_name, candidate)

    async def _create_room(self):
        log("Room does not exist, creating it...")
        self.call_role = CallRole.creator
        peer = self._new_peer()
        offer = await peer.create_offer()
        if self._aborted():
            return
        await self._store.create_room(self.room, offer, self.identity)
        self._wrote_room = True
        if self._aborted():
            return
        self._set_phase(ConnectionPhase.waiting)
        log("Room created, waiting for the other participant...")
        await self._publish_candidates(CandidateLog.caller)
        await self._subscribe(self._store.subscribe_to_room(self.room, self._on_room_changed))
        await self._subscribe(
            self._store.subscribe_to_candidates(self.room, CandidateLog.callee, self._on_remote_candidate)
        )

    async def _join_room(self, room: Optional[CallRoomState]):
        log("Room exists, joining...")
        self.call_role = CallRole.joiner
        if room is None or room.offer is None:
            raise NegotiationError("Invalid room: it has no offer.")
        if room.creator_name:
            self._set_remote_name(room.creator_name)
        self._set_phase(ConnectionPhase.connecting)

        peer = self._new_peer()
        # Caller candidates may land before the offer is applied; the peer queues them
        await self._subscribe(
            self._store.subscribe_to_candidates(self.room, CandidateLog.caller, self._on_remote_candidate)
        )
        await peer.apply_remote_description(room.offer)
        if self._aborted():
            return
        answer = await peer.create_answer()
        if self._aborted():
            return
        await self._store.submit_answer(self.room, answer, self.identity)
        self._wrote_room = True
        log("Answer sent")
        await self._publish_candidates(CandidateLog.callee)
        await self._subscribe(self._store.subscribe_to_room(self.room, self._on_room_changed))

    async def _subscribe(self, pending):
        subscription = await pending
        if self._cleaned_up:
            subscription.cancel()
        else:
            self._subscriptions.append(subscription)

    def _set_remote_name(self, name: str):
        if name and name != self.remote_name:
            self.remote_name = name
            self.events.emit("remote_name", name=name)

    # -- subscription handlers ------------------------------------------------

    async def _on_remote_candidate(self, payload: Dict[str, Any]):
        if self.phase.is_terminal or self.peer is None:
            return
        await self.peer.add_remote_candidate(payload)

    async def _on_room_changed(self, room: CallRoomState):
        if self.phase.is_terminal:
            return
        if self.is_creator and room.joiner_name:
            self._set_remote_name(room.joiner_name)

        if self.is_creator and room.answer is not None and not self._answer_applied:
            self._answer_applied = True
            log("SDP answer received")
            try:
                await self.peer.apply_remote_description(room.answer)
            except TeleconsultaError as e:
                self._fail(e)
                return
            if self.phase == ConnectionPhase.waiting:
                self._set_phase(ConnectionPhase.connecting)

        if room.status == RoomStatus.ended:
            log("Room ended by the other participant")
            self._set_phase(ConnectionPhase.ended)
            await self.cleanup()

    # -- local commands -------------------------------------------------------

    def _toggle(self, tracks) -> bool:
        if not tracks:
            return False
        track = tracks[0]
        track.enabled = not track.enabled
        return track.enabled

    def toggle_audio(self) -> bool:
        enabled = self._toggle(self.local_stream.get_audio_tracks() if self.local_stream else [])
        log(f"Audio {'on' if enabled else 'off'}")
        self.events.emit("media", audio_enabled=self.audio_enabled, video_enabled=self.video_enabled)
        return enabled

    def toggle_video(self) -> bool:
        enabled = self._toggle(self.local_stream.get_video_tracks() if self.local_stream else [])
        log(f"Video {'on' if enabled else 'off'}")
        self.events.emit("media", audio_enabled=self.audio_enabled, video_enabled=self.video_enabled)
        return enabled

    async def hang_up(self):
        """End the call for both sides and release everything."""
        log("Ending call...")
        try:
            if self._wrote_room and not self.phase.is_terminal:
                await self._store.mark_ended(self.room)
        except TeleconsultaError as e:
            log(f"Could not mark room as ended: {e}")
        finally:
            self._set_phase(ConnectionPhase.ended)
            await self.cleanup()

    async def cleanup(self):
        """Stop local tracks, close the peer connection and cancel subscriptions.

        Idempotent: the second and later calls do nothing.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True
        log("Cleaning up resources...")
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        if self._ticker is not None and self._ticker is not asyncio.current_task():
            self._ticker.cancel()
        if self.local_stream is not None:
            self.local_stream.stop()
        if self.peer is not None:
            await self.peer.close()
        self.events.emit("cleanup")
        self.events.close()

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up
