import json
from typing import Any, Dict, Set
from fastapi import WebSocket, WebSocketDisconnect
from teleconsulta.utils.logger import safe_print


class ConnectionManager:
    def __init__(self):
        # Store active connections: {session_id: set of websockets}
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, session_id: str):
        """Accept a websocket watching one call session"""
        await websocket.accept()
        if session_id not in self.active_connections:
            self.active_connections[session_id] = set()
        self.active_connections[session_id].add(websocket)
        safe_print(f"Watcher connected to session {session_id}")

    def disconnect(self, websocket: WebSocket, session_id: str):
        if session_id in self.active_connections:
            self.active_connections[session_id].discard(websocket)
            if not self.active_connections[session_id]:
                del self.active_connections[session_id]
        safe_print(f"Watcher disconnected from session {session_id}")

    async def broadcast_to_session(self, session_id: str, payload: Dict[str, Any]):
        """Send one session event to every websocket watching that session"""
        if session_id not in self.active_connections:
            return {"sent": 0, "failed": 0}

        message = json.dumps(payload, ensure_ascii=False, default=str)
        sent = 0
        disconnected = set()
        for websocket in list(self.active_connections[session_id]):
            try:
                await websocket.send_text(message)
                sent += 1
            except (WebSocketDisconnect, RuntimeError) as e:
                safe_print(f"Failed to send event to a watcher of session {session_id}: {e}")
                disconnected.add(websocket)

        # Remove disconnected websockets
        if disconnected:
            self.active_connections[session_id] -= disconnected
            if not self.active_connections[session_id]:
                del self.active_connections[session_id]

        return {"sent": sent, "failed": len(disconnected)}

    async def close_session(self, session_id: str):
        for websocket in list(self.active_connections.pop(session_id, ())):
            try:
                await websocket.close()
            except RuntimeError as e:
                safe_print(f"Watcher of session {session_id} already closed: {e}")
