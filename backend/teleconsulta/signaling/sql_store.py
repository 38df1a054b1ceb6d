import asyncio
import threading
import weakref
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from teleconsulta.core.errors import (
    AnswerAlreadySubmitted,
    RoomAlreadyExists,
    RoomNotFound,
    SignalingError,
)
from teleconsulta.models.call_room import CallRoom, CandidateLog, RoomStatus
from teleconsulta.models.ice_candidate import IceCandidateRecord
from teleconsulta.schemas.call_room import (
    CallRoomState,
    ParticipantIdentity,
    RoomKey,
    SessionDescription,
)
from teleconsulta.signaling.base import SignalingStore, Subscription
from teleconsulta.utils.logger import log
from teleconsulta.utils.timefmt import utcnow

# One lock per SQLite engine, shared by every store bound to it
_sqlite_locks = weakref.WeakKeyDictionary()


def room_state_from_row(row: CallRoom) -> CallRoomState:
    return CallRoomState(
        room_id=row.id,
        tenant_id=row.tenant_id,
        appointment_id=row.appointment_id,
        offer=row.offer,
        answer=row.answer,
        created_by=row.created_by,
        creator_name=row.creator_name,
        joiner_name=row.joiner_name,
        joiner_role=row.joiner_role,
        status=row.status,
        created_at=row.created_at,
        joined_at=row.joined_at,
        ended_at=row.ended_at,
    )


class SqlSignalingStore(SignalingStore):
    """Signaling store on a relational database.

    Create-if-absent relies on the ``call_rooms`` primary key and the answer is
    written with a conditional update, so two participants racing on the same
    room cannot both win. Subscriptions poll every ``poll_interval`` seconds.

    SQLAlchemy sessions are synchronous, so every query runs in a worker
    thread. SQLite connections are shared between sessions, so its queries
    also take a lock.
    """

    def __init__(self, session_factory, poll_interval: float = 0.5):
        self._session_factory = session_factory
        self._poll_interval = poll_interval
        bind = getattr(session_factory, "kw", {}).get("bind")
        self._lock = None
        if bind is not None and bind.dialect.name == "sqlite":
            self._lock = _sqlite_locks.setdefault(bind, threading.Lock())

    def _locked(self, fn, *args):
        if self._lock is None:
            return fn(*args)
        with self._lock:
            return fn(*args)

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._locked, fn, *args)

    def _create_room(self, room: RoomKey, values: Dict[str, Any]):
        db = self._session_factory()
        try:
            existing = db.get(CallRoom, room.room_id)
            if existing is None:
                db.add(CallRoom(id=room.room_id, **values))
            elif existing.status != RoomStatus.ended:
                raise RoomAlreadyExists()
            else:
                # An ended room is history; the next arrival starts a new call in its slot
                result = db.execute(
                    update(CallRoom)
                    .where(CallRoom.id == room.room_id, CallRoom.status == RoomStatus.ended)
                    .values(**values)
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise RoomAlreadyExists()
                db.execute(delete(IceCandidateRecord).where(IceCandidateRecord.room_id == room.room_id))
            db.commit()
        except IntegrityError:
            db.rollback()
            raise RoomAlreadyExists()
        except SQLAlchemyError as e:
            db.rollback()
            raise SignalingError(f"Could not create call room: {e}") from e
        finally:
            db.close()

    async def create_room(self, room: RoomKey, offer: SessionDescription,
                          creator: ParticipantIdentity) -> CallRoomState:
        values = dict(
            tenant_id=room.tenant_id,
            appointment_id=room.appointment_id,
            offer=offer.model_dump(),
            answer=None,
            created_by=creator.role,
            creator_name=creator.name,
            joiner_name=None,
            joiner_role=None,
            status=RoomStatus.waiting,
            created_at=utcnow(),
            joined_at=None,
            ended_at=None,
        )
        await self._run(self._create_room, room, values)
        return CallRoomState(room_id=room.room_id, **values)

    def _load_room(self, room_id: str) -> Optional[CallRoomState]:
        db = self._session_factory()
        try:
            row = db.get(CallRoom, room_id)
            return room_state_from_row(row) if row is not None else None
        finally:
            db.close()

    async def join_room(self, room: RoomKey) -> Optional[CallRoomState]:
        try:
            return await self._run(self._load_room, room.room_id)
        except SQLAlchemyError as e:
            raise SignalingError(f"Could not read call room: {e}") from e

    def _submit_answer(self, room: RoomKey, answer: SessionDescription,
                       joiner: ParticipantIdentity) -> CallRoomState:
        db = self._session_factory()
        try:
            result = db.execute(
                update(CallRoom)
                .where(CallRoom.id == room.room_id, CallRoom.status == RoomStatus.waiting)
                .values(
                    answer=answer.model_dump(),
                    joiner_name=joiner.name,
                    joiner_role=joiner.role,
                    status=RoomStatus.active,
                    joined_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                db.rollback()
                row = db.get(CallRoom, room.room_id)
                if row is None:
                    raise RoomNotFound()
                if row.status == RoomStatus.ended:
                    raise SignalingError("This consultation has already ended.")
                raise AnswerAlreadySubmitted()
            db.commit()
            return room_state_from_row(db.get(CallRoom, room.room_id))
        except SQLAlchemyError as e:
            db.rollback()
            raise SignalingError(f"Could not submit answer: {e}") from e
        finally:
            db.close()

    async def submit_answer(self, room: RoomKey, answer: SessionDescription,
                            joiner: ParticipantIdentity) -> CallRoomState:
        return await self._run(self._submit_answer, room, answer, joiner)

    def _append_candidate(self, room: RoomKey, log_name: CandidateLog, candidate: Dict[str, Any]):
        db = self._session_factory()
        try:
            db.add(IceCandidateRecord(
                room_id=room.room_id,
                log=log_name,
                payload=candidate,
                created_at=utcnow(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise SignalingError(f"Could not store ICE candidate: {e}") from e
        finally:
            db.close()

    async def append_candidate(self, room: RoomKey, log_name: CandidateLog,
                               candidate: Dict[str, Any]) -> None:
        await self._run(self._append_candidate, room, log_name, candidate)

    async def subscribe_to_room(self, room: RoomKey,
                                on_change: Callable[[CallRoomState], Any]) -> Subscription:
        subscription = Subscription(on_change, name=f"room:{room.room_id}")
        task = asyncio.ensure_future(self._poll_room(room, subscription))
        subscription.add_cancel_callback(task.cancel)
        return subscription

    async def _poll_room(self, room: RoomKey, subscription: Subscription):
        last_snapshot = None
        while subscription.active:
            try:
                state = await self._run(self._load_room, room.room_id)
            except SQLAlchemyError as e:
                log(f"Polling room {room.room_id} failed: {e}")
                state = None
            if state is not None:
                snapshot = state.model_dump()
                if snapshot != last_snapshot:
                    last_snapshot = snapshot
                    subscription.deliver(state)
            await asyncio.sleep(self._poll_interval)

    async def subscribe_to_candidates(self, room: RoomKey, log_name: CandidateLog,
                                      on_added: Callable[[Dict[str, Any]], Any]) -> Subscription:
        subscription = Subscription(on_added, name=f"{log_name.value}:{room.room_id}")
        task = asyncio.ensure_future(self._poll_candidates(room, log_name, subscription))
        subscription.add_cancel_callback(task.cancel)
        return subscription

    def _load_candidates(self, room: RoomKey, log_name: CandidateLog, after_id: int) -> List[IceCandidateRecord]:
        db = self._session_factory()
        try:
            return db.execute(
                select(IceCandidateRecord)
                .where(
                    IceCandidateRecord.room_id == room.room_id,
                    IceCandidateRecord.log == log_name,
                    IceCandidateRecord.id > after_id,
                )
                .order_by(IceCandidateRecord.id)
            ).scalars().all()
        finally:
            db.close()

    async def _poll_candidates(self, room: RoomKey, log_name: CandidateLog,
                               subscription: Subscription):
        last_id = 0
        while subscription.active:
            try:
                rows = await self._run(self._load_candidates, room, log_name, last_id)
            except SQLAlchemyError as e:
                log(f"Polling {log_name.value} for {room.room_id} failed: {e}")
                rows = []
            for row in rows:
                last_id = row.id
                subscription.deliver(row.payload)
            await asyncio.sleep(self._poll_interval)

    def _mark_ended(self, room: RoomKey):
        db = self._session_factory()
        try:
            db.execute(
                update(CallRoom)
                .where(CallRoom.id == room.room_id, CallRoom.status != RoomStatus.ended)
                .values(status=RoomStatus.ended, ended_at=utcnow())
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise SignalingError(f"Could not end call room: {e}") from e
        finally:
            db.close()

    async def mark_ended(self, room: RoomKey) -> None:
        await self._run(self._mark_ended, room)

    def _list_stale_rooms(self, cutoff: datetime) -> List[RoomKey]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(CallRoom)
                .where(CallRoom.status == RoomStatus.waiting, CallRoom.created_at < cutoff)
            ).scalars().all()
            return [RoomKey(tenant_id=row.tenant_id, appointment_id=row.appointment_id) for row in rows]
        except SQLAlchemyError as e:
            raise SignalingError(f"Could not list stale rooms: {e}") from e
        finally:
            db.close()

    async def list_stale_rooms(self, cutoff: datetime) -> List[RoomKey]:
        return await self._run(self._list_stale_rooms, cutoff)
