import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from teleconsulta.core.errors import TeleconsultaError
from teleconsulta.rtc.media import MediaAcquisition
from teleconsulta.rtc.peer import PeerConnectionManager
from teleconsulta.schemas.call_room import ParticipantIdentity, RoomKey
from teleconsulta.session.call_session import CallSession
from teleconsulta.session.phases import ConnectionPhase
from teleconsulta.signaling.base import SignalingStore
from teleconsulta.utils.logger import log

Publisher = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class SessionNotFound(KeyError):
    pass


class SessionManager:
    """Hands out call sessions to the API layer by id.

    One instance lives on ``app.state``. Every join attempt gets its own
    ``CallSession``; a retry replaces a terminal session with a fresh one.
    Session events are forwarded to ``publisher`` (the WebSocket manager).
    """

    def __init__(
        self,
        store: SignalingStore,
        media: MediaAcquisition,
        peer_factory: Callable[..., PeerConnectionManager],
        invite_link_builder: Callable[[RoomKey], str],
        publisher: Optional[Publisher] = None,
        retention: float = 300.0,
    ):
        self.store = store
        self._media = media
        self._peer_factory = peer_factory
        self._invite_link_builder = invite_link_builder
        self._publisher = publisher
        self._retention = retention
        self._sessions: Dict[str, CallSession] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._joins: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def active_count(self) -> int:
        """Sessions that have not reached ``error`` or ``ended``."""
        return sum(1 for s in self._sessions.values() if not s.phase.is_terminal)

    def create(self, room: RoomKey, identity: ParticipantIdentity) -> CallSession:
        session = CallSession(
            room=room,
            identity=identity,
            store=self.store,
            media=self._media,
            peer_factory=self._peer_factory,
            invite_link=self._invite_link_builder(room),
        )
        self._sessions[session.id] = session
        self._watchers[session.id] = asyncio.ensure_future(self._watch(session))
        log(f"Session {session.id} created for room {room.room_id}")
        return session

    def get(self, session_id: str) -> CallSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(session_id)

    def start_join(self, session_id: str) -> asyncio.Task:
        session = self.get(session_id)
        if session.phase != ConnectionPhase.idle or session_id in self._joins:
            raise ValueError(f"Session is already {session.phase.value}")
        task = asyncio.ensure_future(session.join())
        task.add_done_callback(lambda t: self._join_done(session, t))
        self._joins[session_id] = task
        return task

    def _join_done(self, session: CallSession, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log(f"Join of session {session.id} crashed: {error!r}")

    async def _watch(self, session: CallSession):
        """Forward the session's events, then evict it once it has been finished for ``retention`` seconds."""
        queue = session.events.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                if self._publisher is None:
                    continue
                try:
                    await self._publisher(session.id, event.to_dict())
                except Exception as e:
                    log(f"Could not publish {event.type} for session {session.id}: {e!r}")
            if self._sessions.get(session.id) is not session:
                return
            # The final snapshot stays readable so the client can retry
            await asyncio.sleep(self._retention)
            if self._sessions.get(session.id) is session:
                log(f"Evicting finished session {session.id}")
                await self.remove(session.id)
        finally:
            self._watchers.pop(session.id, None)

    async def hang_up(self, session_id: str) -> CallSession:
        session = self.get(session_id)
        await session.hang_up()
        return session

    async def retry(self, session_id: str) -> CallSession:
        """Replace a session in ``error`` or ``ended`` with a fresh ``idle`` one."""
        old = self.get(session_id)
        if not old.phase.is_terminal:
            raise ValueError(f"Session is still {old.phase.value}; hang up before retrying")
        await old.cleanup()
        if old.phase == ConnectionPhase.error and old.wrote_room:
            # The failed call cannot be resumed; close its room so the next join starts a new one
            try:
                await self.store.mark_ended(old.room)
            except TeleconsultaError as e:
                log(f"Could not close room {old.room.room_id}: {e}")
        await self.remove(session_id)
        return self.create(old.room, old.identity)

    async def remove(self, session_id: str):
        """Release a session without touching the shared room (the tab went away)."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await session.cleanup()
        join = self._joins.pop(session_id, None)
        if join is not None and not join.done():
            join.cancel()

    async def shutdown(self):
        for session_id in list(self._sessions):
            await self.remove(session_id)
        watchers = list(self._watchers.values())
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
