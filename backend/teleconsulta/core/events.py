import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from teleconsulta.utils.timefmt import utcnow


@dataclass
class SessionEvent:
    """One lifecycle notification published by a call session."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "timestamp": self.timestamp, **self.data}


class EventChannel:
    """Fan-out of session events to any number of asyncio queues.

    Each subscriber gets its own queue. A slow subscriber loses its oldest
    events rather than blocking the session. ``close()`` pushes ``None`` so
    consumers can stop.
    """

    def __init__(self, maxsize: int = 256):
        self._maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []
        self._closed = False
        self.last_event: Optional[SessionEvent] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def emit(self, event_type: str, **data) -> SessionEvent:
        event = SessionEvent(type=event_type, data=data)
        self.last_event = event
        if self._closed:
            return event
        for queue in list(self._subscribers):
            self._put(queue, event)
        return event

    def close(self):
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            self._put(queue, None)
        self._subscribers = []

    @staticmethod
    def _put(queue: asyncio.Queue, item):
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(item)
