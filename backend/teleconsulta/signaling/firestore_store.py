import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from teleconsulta.core.errors import (
    AnswerAlreadySubmitted,
    RoomAlreadyExists,
    RoomNotFound,
    SignalingError,
)
from teleconsulta.models.call_room import CandidateLog, RoomStatus
from teleconsulta.schemas.call_room import (
    CallRoomState,
    ParticipantIdentity,
    RoomKey,
    SessionDescription,
)
from teleconsulta.signaling.base import SignalingStore, Subscription
from teleconsulta.utils.logger import log
from teleconsulta.utils.timefmt import utcnow


def _create_room_txn(transaction, ref, data: Dict[str, Any]):
    snapshot = ref.get(transaction=transaction)
    stale = []
    if snapshot.exists:
        if (snapshot.to_dict() or {}).get("status") != RoomStatus.ended.value:
            raise RoomAlreadyExists()
        # Candidates of the ended call go with it; reads come before any write
        for log_name in CandidateLog:
            stale.extend(doc.reference for doc in ref.collection(log_name.value).stream(transaction=transaction))
    for doc_ref in stale:
        transaction.delete(doc_ref)
    # set() replaces an ended room entirely, so no stale answer survives
    transaction.set(ref, data)


def _submit_answer_txn(transaction, ref, update: Dict[str, Any]) -> Dict[str, Any]:
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        raise RoomNotFound()
    data = snapshot.to_dict() or {}
    if data.get("status") == RoomStatus.ended.value:
        raise SignalingError("This consultation has already ended.")
    if data.get("answer") or data.get("status") != RoomStatus.waiting.value:
        raise AnswerAlreadySubmitted()
    transaction.update(ref, update)
    return {**data, **update}


def _mark_ended_txn(transaction, ref):
    snapshot = ref.get(transaction=transaction)
    if not snapshot.exists:
        return
    if (snapshot.to_dict() or {}).get("status") == RoomStatus.ended.value:
        return
    transaction.update(ref, {
        "status": RoomStatus.ended.value,
        "endedAt": firestore.SERVER_TIMESTAMP,
    })


class FirestoreSignalingStore(SignalingStore):
    """Signaling store on Cloud Firestore, compatible with the browser client.

    Rooms live in ``{collection}/{tenantId}_{appointmentId}`` with the
    candidate logs as sub-collections. The SDK is synchronous, so every call
    runs in a worker thread, and snapshot listeners hand their results back to
    the event loop.
    """

    def __init__(self, client: firestore.Client, collection: str = "videoCalls"):
        self._client = client
        self._collection = collection

    def _room_ref(self, room: RoomKey):
        return self._client.collection(self._collection).document(room.room_id)

    def _log_ref(self, room: RoomKey, log_name: CandidateLog):
        return self._room_ref(room).collection(log_name.value)

    async def _call(self, action: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        # transactional() raises ValueError once every commit attempt has failed
        except (google_exceptions.GoogleAPIError, ValueError) as e:
            raise SignalingError(f"Could not {action}: {e}") from e

    async def create_room(self, room: RoomKey, offer: SessionDescription,
                          creator: ParticipantIdentity) -> CallRoomState:
        data = {
            "offer": offer.model_dump(),
            "createdBy": creator.role.value,
            "creatorName": creator.name,
            "appointmentId": room.appointment_id,
            "tenantId": room.tenant_id,
            "status": RoomStatus.waiting.value,
            "createdAt": firestore.SERVER_TIMESTAMP,
        }
        txn = firestore.transactional(_create_room_txn)
        await self._call("create call room", txn, self._client.transaction(), self._room_ref(room), data)
        return CallRoomState.from_document(room.room_id, {**data, "createdAt": utcnow()})

    async def join_room(self, room: RoomKey) -> Optional[CallRoomState]:
        snapshot = await self._call("read call room", self._room_ref(room).get)
        if not snapshot.exists:
            return None
        return CallRoomState.from_document(room.room_id, snapshot.to_dict() or {})

    async def submit_answer(self, room: RoomKey, answer: SessionDescription,
                            joiner: ParticipantIdentity) -> CallRoomState:
        update = {
            "answer": answer.model_dump(),
            "joinerName": joiner.name,
            "joinerRole": joiner.role.value,
            "status": RoomStatus.active.value,
            "joinedAt": firestore.SERVER_TIMESTAMP,
        }
        txn = firestore.transactional(_submit_answer_txn)
        data = await self._call("submit answer", txn, self._client.transaction(), self._room_ref(room), update)
        return CallRoomState.from_document(room.room_id, {**data, "joinedAt": utcnow()})

    async def append_candidate(self, room: RoomKey, log_name: CandidateLog,
                               candidate: Dict[str, Any]) -> None:
        await self._call("store ICE candidate", self._log_ref(room, log_name).add, candidate)

    async def subscribe_to_room(self, room: RoomKey,
                                on_change: Callable[[CallRoomState], Any]) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = Subscription(on_change, name=f"room:{room.room_id}")

        def on_snapshot(doc_snapshots, changes, read_time):
            for doc in doc_snapshots:
                if not doc.exists:
                    continue
                try:
                    state = CallRoomState.from_document(doc.id, doc.to_dict() or {})
                except ValueError as e:
                    log(f"Ignoring malformed room document {doc.id}: {e}")
                    continue
                loop.call_soon_threadsafe(subscription.deliver, state)

        watch = await self._call("subscribe to call room", self._room_ref(room).on_snapshot, on_snapshot)
        subscription.add_cancel_callback(watch.unsubscribe)
        return subscription

    async def subscribe_to_candidates(self, room: RoomKey, log_name: CandidateLog,
                                      on_added: Callable[[Dict[str, Any]], Any]) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = Subscription(on_added, name=f"{log_name.value}:{room.room_id}")

        def on_snapshot(col_snapshot, changes, read_time):
            # The first snapshot reports every existing document as ADDED
            for change in changes:
                if change.type.name == "ADDED":
                    loop.call_soon_threadsafe(subscription.deliver, change.document.to_dict())

        watch = await self._call(
            f"subscribe to {log_name.value}", self._log_ref(room, log_name).on_snapshot, on_snapshot
        )
        subscription.add_cancel_callback(watch.unsubscribe)
        return subscription

    async def mark_ended(self, room: RoomKey) -> None:
        txn = firestore.transactional(_mark_ended_txn)
        await self._call("end call room", txn, self._client.transaction(), self._room_ref(room))

    async def list_stale_rooms(self, cutoff: datetime) -> List[RoomKey]:
        query = (
            self._client.collection(self._collection)
            .where(filter=FieldFilter("status", "==", RoomStatus.waiting.value))
            .where(filter=FieldFilter("createdAt", "<", cutoff))
        )
        docs = await self._call("list stale rooms", lambda: list(query.stream()))
        stale = []
        for doc in docs:
            data = doc.to_dict() or {}
            if data.get("tenantId") and data.get("appointmentId"):
                stale.append(RoomKey(tenant_id=data["tenantId"], appointment_id=data["appointmentId"]))
        return stale
