import asyncio
from datetime import timedelta
from typing import List

from teleconsulta.core.errors import SignalingError
from teleconsulta.schemas.call_room import RoomKey
from teleconsulta.signaling.base import SignalingStore
from teleconsulta.utils.logger import log
from teleconsulta.utils.timefmt import utcnow


async def expire_stale_rooms(store: SignalingStore, ttl: timedelta) -> List[RoomKey]:
    """Mark rooms that have waited longer than ``ttl`` for a joiner as ended.

    A creator that closed the browser before anyone joined would otherwise
    leave its room waiting forever, and the next arrival would answer a dead
    offer.
    """
    expired = []
    for room in await store.list_stale_rooms(utcnow() - ttl):
        await store.mark_ended(room)
        log(f"Room {room.room_id} expired after waiting {ttl}")
        expired.append(room)
    return expired


async def run_janitor(store: SignalingStore, ttl: timedelta, interval: float):
    while True:
        try:
            await expire_stale_rooms(store, ttl)
        except SignalingError as e:
            log(f"Room expiry sweep failed: {e}")
        await asyncio.sleep(interval)
