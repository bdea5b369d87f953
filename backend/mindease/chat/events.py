"""Wire shapes for the room chat WebSocket protocol.

Every frame is a JSON object with a ``type`` field naming the event; the
payload fields sit alongside it::

    client -> server   {"type": "send-message", "roomId": "abc", "content": "hi"}
    server -> client   {"type": "message", "id": "...", "content": "hi", ...}
"""
from datetime import datetime
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ClientEvent(str, Enum):
    """Commands a client may send after authenticating."""
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    SEND_MESSAGE = "send-message"
    TYPING = "typing"
    STOP_TYPING = "stop-typing"


class ServerEvent(str, Enum):
    """Events the server emits."""
    CONNECTED = "connected"
    ROOM_USERS = "room-users"
    MESSAGE = "message"
    USER_TYPING = "user-typing"
    USER_STOP_TYPING = "user-stop-typing"
    ERROR = "error"


# =============================================================================
# Client -> server payloads
# =============================================================================


class RoomCommand(BaseModel):
    """Payload of join-room, leave-room, typing and stop-typing."""
    model_config = ConfigDict(extra="ignore")

    roomId: str = Field(..., min_length=1, description="Target room ID")


class SendMessageCommand(RoomCommand):
    """Payload of send-message. Content is validated by the protocol."""
    content: str = Field(..., description="Raw message text")


# =============================================================================
# Server -> client payloads
# =============================================================================


class ConnectedEvent(BaseModel):
    userId: str
    username: str


class RoomUsersEvent(BaseModel):
    """Full roster snapshot, not a diff."""
    roomId: str
    users: List[str]


class MessageEvent(BaseModel):
    id: str
    content: str
    userId: str
    username: str
    timestamp: datetime


class TypingEvent(BaseModel):
    userId: str
    username: str


class ErrorEvent(BaseModel):
    message: str


def envelope(event: ServerEvent, payload: BaseModel) -> dict:
    """Build the JSON-ready frame for ``event``."""
    return {"type": event.value, **payload.model_dump(mode="json")}
