"""Signaling store contract shared by the Firestore and SQL backends.

A call room is the only resource the two participants share. Both backends
implement the same set-once rules: a live room is created at most once and
answered at most once, and candidate logs are append-only.
"""
import asyncio
import inspect
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from teleconsulta.models.call_room import CandidateLog
from teleconsulta.schemas.call_room import (
    CallRoomState,
    ParticipantIdentity,
    RoomKey,
    SessionDescription,
)
from teleconsulta.utils.logger import log

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """Ordered delivery of pushed items to one handler on the event loop.

    Backends call ``deliver()`` (from the loop) for every item; the handler
    runs for one item at a time, in delivery order. ``cancel()`` may be
    called any number of times, including from inside the handler.
    """

    def __init__(self, handler: Handler, name: str):
        self.name = name
        self._handler = handler
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False
        self._cancel_callbacks: List[Callable[[], None]] = []
        self._task = asyncio.ensure_future(self._pump())

    @property
    def active(self) -> bool:
        return not self._cancelled

    def add_cancel_callback(self, callback: Callable[[], None]):
        self._cancel_callbacks.append(callback)

    def deliver(self, item: Any):
        if not self._cancelled:
            self._queue.put_nowait(item)

    async def _pump(self):
        while not self._cancelled:
            item = await self._queue.get()
            if self._cancelled:
                break
            try:
                result = self._handler(item)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log(f"Subscription {self.name} handler failed: {e}")

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        for callback in self._cancel_callbacks:
            try:
                callback()
            except Exception as e:
                log(f"Subscription {self.name} cancel callback failed: {e}")
        self._cancel_callbacks = []
        if self._task is not asyncio.current_task():
            self._task.cancel()


class SignalingStore(ABC):
    """Shared mailbox for session descriptions and ICE candidates."""

    @abstractmethod
    async def create_room(self, room: RoomKey, offer: SessionDescription,
                          creator: ParticipantIdentity) -> CallRoomState:
        """Create the room with its offer, only if no live room exists.

        Raises ``RoomAlreadyExists`` when a waiting or active room is present.
        An ended room is replaced by the new one.
        """

    @abstractmethod
    async def join_room(self, room: RoomKey) -> Optional[CallRoomState]:
        """Current room state, or ``None`` when there is no room yet."""

    @abstractmethod
    async def submit_answer(self, room: RoomKey, answer: SessionDescription,
                            joiner: ParticipantIdentity) -> CallRoomState:
        """Write the answer and flip the room to ``active``.

        Raises ``RoomNotFound`` or ``AnswerAlreadySubmitted``.
        """

    @abstractmethod
    async def append_candidate(self, room: RoomKey, log_name: CandidateLog,
                               candidate: Dict[str, Any]) -> None:
        """Append one opaque candidate payload to a log."""

    @abstractmethod
    async def subscribe_to_room(self, room: RoomKey,
                                on_change: Callable[[CallRoomState], Any]) -> Subscription:
        """Current state (if any) followed by every later change."""

    @abstractmethod
    async def subscribe_to_candidates(self, room: RoomKey, log_name: CandidateLog,
                                      on_added: Callable[[Dict[str, Any]], Any]) -> Subscription:
        """Every candidate in the log, including those appended before subscribing."""

    @abstractmethod
    async def mark_ended(self, room: RoomKey) -> None:
        """Set ``status=ended`` once. Missing or already ended rooms are left alone."""

    @abstractmethod
    async def list_stale_rooms(self, cutoff: datetime) -> List[RoomKey]:
        """Rooms still ``waiting`` that were created before ``cutoff``."""

    async def close(self):
        pass
