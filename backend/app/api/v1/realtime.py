"""
Relay socket.

Frames in both directions are JSON objects {"event": name, "data": {...}}.
A client joins its user group (join_user_room) and, while a chat screen is
open, that interaction's session group (join_room).
"""

import json

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.api.deps import get_socket_relay
from app.core.exceptions import RelayErrorKind
from app.services.group_registry import WebSocketConnection
from app.services.relay_engine import RelayEngine

router = APIRouter()
logger = structlog.get_logger()


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, relay: RelayEngine = Depends(get_socket_relay)):
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    logger.info("socket_connected", connection_id=connection.connection_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await connection.send("error", {
                    "kind": RelayErrorKind.INVALID_PAYLOAD.value,
                    "event": None,
                    "message": "Frames must be JSON objects",
                })
                continue
            await relay.dispatch(connection, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection)
