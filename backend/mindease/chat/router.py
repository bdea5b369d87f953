"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time room chat (join, send, typing, leave)
    - GET /chat/{room_id}/history: Paginated persisted message history
    - GET /chat/{room_id}/presence: Current room roster

Authentication:
    The WebSocket takes its bearer token from the ``token`` query parameter
    (browsers cannot set headers on WebSocket requests) or from an
    ``Authorization: Bearer`` header. A rejected credential closes the
    socket with code 1008 before it is accepted. The HTTP endpoints require
    the ``Authorization`` header.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from mindease.auth.schemas import Identity
from mindease.auth.service import extract_bearer
from mindease.config import get_config
from mindease.rooms.service import RoomDirectory

from .errors import AuthenticationFailure, ValidationFailure
from .protocol import get_protocol

logger = logging.getLogger(__name__)

router = APIRouter()


async def require_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    """FastAPI dependency: resolve the caller from the Authorization header."""
    try:
        return await get_protocol().authenticate(extract_bearer(authorization))
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.message) from exc


def _room_directory() -> RoomDirectory:
    return RoomDirectory.get_instance(get_config().storage.rooms_db_path)


@router.get("/chat/{room_id}/history")
async def get_message_history(
    room_id: str,
    before: Optional[datetime] = Query(None, description="Return messages older than this time"),
    before_id: Optional[str] = Query(None, alias="beforeId", description="Return messages older than this message"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    identity: Identity = Depends(require_identity),
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the ``id`` of the oldest message
    they currently have as ``beforeId``. ``before`` filters on time instead;
    messages that share a timestamp may fall on either side of it.

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /chat/abc123/history?limit=50
        GET /chat/abc123/history?beforeId=9f2c...&limit=50
        GET /chat/abc123/history?before=2026-01-05T10:00:00Z&limit=50
    """
    chat_settings = get_config().chat
    limit = min(limit or chat_settings.history_page_size, chat_settings.max_history_page)

    directory = _room_directory()
    if directory.get_room(room_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")

    messages = directory.get_messages(room_id, limit=limit, before=before, before_id=before_id)

    # Check if there are more messages before the oldest returned
    has_more = False
    if messages:
        older = directory.get_messages(room_id, limit=1, before_id=messages[0].id)
        has_more = len(older) > 0

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more,
    })


@router.get("/chat/{room_id}/presence")
async def get_room_presence(
    room_id: str,
    identity: Identity = Depends(require_identity),
) -> dict:
    """Return the display names currently present in a room."""
    return {"roomId": room_id, "users": get_protocol().presence(room_id)}


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    """WebSocket endpoint for real-time room chat.

    One connection may be in at most one room at a time. Disconnect cleanup
    (implicit leave + unregister) runs exactly once, however the connection
    ends.
    """
    protocol = get_protocol()
    credential = token or extract_bearer(websocket.headers.get("authorization"))

    try:
        identity = await protocol.authenticate(credential)
    except AuthenticationFailure as exc:
        logger.warning(f"[WS] Connection refused: {exc.message}")
        await websocket.close(code=exc.close_code, reason=exc.message)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    await protocol.open_session(connection_id, identity, websocket)
    logger.info(f"[WS] Connection {connection_id} accepted for user {identity.id}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = message.get("text")
            if raw is None:
                protocol.report_error(connection_id, ValidationFailure("Invalid message format: expected text"))
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                protocol.report_error(connection_id, ValidationFailure("Invalid message format: not JSON"))
                continue
            logger.debug("[WS] %s received: type=%s", connection_id, data.get("type", "?") if isinstance(data, dict) else "?")
            await protocol.dispatch(connection_id, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection_id} closed by client")
    except Exception as exc:
        logger.exception(f"[WS] Unexpected error on connection {connection_id}: {exc}")
        try:
            await websocket.close(code=1011, reason="Internal error")
        except RuntimeError:
            logger.debug("Ignored error while closing websocket", exc_info=True)
    finally:
        await protocol.disconnect(connection_id)
