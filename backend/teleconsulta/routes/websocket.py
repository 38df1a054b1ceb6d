from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from teleconsulta.session.manager import SessionNotFound
from teleconsulta.utils.logger import safe_print
from teleconsulta.utils.timefmt import format_duration
import json

router = APIRouter()


@router.websocket("/ws/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str):
    """WebSocket endpoint streaming one call session's events and taking its commands"""
    sessions = websocket.app.state.sessions
    manager = websocket.app.state.ws_manager
    try:
        session = sessions.get(session_id)
    except SessionNotFound:
        safe_print(f"WebSocket connect failed: session {session_id} not found")
        await websocket.close(code=4404, reason="Session not found")
        return

    await manager.connect(websocket, session_id)
    snapshot = session.snapshot()
    await websocket.send_text(json.dumps({
        "type": "snapshot",
        **snapshot,
        "duration_display": format_duration(snapshot["duration"]),
    }, ensure_ascii=False))

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message_data = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid JSON"}))
                continue

            # Handle different command types
            message_type = message_data.get("type")

            if message_type == "toggle_audio":
                enabled = session.toggle_audio()
                await websocket.send_text(json.dumps({"type": "audio_toggled", "enabled": enabled}))

            elif message_type == "toggle_video":
                enabled = session.toggle_video()
                await websocket.send_text(json.dumps({"type": "video_toggled", "enabled": enabled}))

            elif message_type == "hang_up":
                await session.hang_up()

            elif message_type == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))

            else:
                await websocket.send_text(json.dumps({
                    "type": "error",
                    "message": f"Unknown command: {message_type}"
                }))
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, session_id)
