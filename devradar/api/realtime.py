"""
devradar/api/realtime.py
Presence socket: ``/ws?token=<jwt>``.

Frames are JSON envelopes ``{type, payload, timestamp, correlationId?}``.
Client to server: HEARTBEAT, STATUS_UPDATE, POKE (SUBSCRIBE/UNSUBSCRIBE are
rejected). Server to client: CONNECTED, FRIEND_STATUS, POKE, PONG, ERROR,
ACHIEVEMENT.
"""

from fastapi import APIRouter, WebSocket

router = APIRouter()


@router.websocket("/ws")
async def presence_socket(websocket: WebSocket):
    await websocket.app.state.runtime.gateway.handle(websocket)
