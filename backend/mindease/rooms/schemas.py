"""Pydantic schemas for rooms and persisted chat messages.

These schemas are used by:
    - RoomDirectory: DuckDB storage layer
    - RoomSessionProtocol: room lookup and message persistence on send
    - GET /chat/{room_id}/history: message history pagination
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from mindease.chat.errors import ValidationFailure

MAX_CONTENT_LENGTH = 2000


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class RoomCategory(str, Enum):
    """Topic a support room is filed under."""
    SUPPORT = "support"
    GENERAL = "general"
    WELLNESS = "wellness"
    MINDFULNESS = "mindfulness"
    THERAPY = "therapy"
    PEER_SUPPORT = "peer-support"


class RoomMetadata(BaseModel):
    """Stored room description.

    Attributes:
        id: Room identifier used by clients in join-room/send-message.
        name: Human-readable room name.
        description: Short purpose statement.
        category: Topic category.
        isPublic: Whether the room is listed publicly.
        maxMembers: Capacity in distinct identities present at once.
        isActive: Inactive rooms cannot be joined.
        lastMessage: Preview of the most recent message.
        lastActivity: Time of the most recent message (UTC).
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    category: RoomCategory = Field(default=RoomCategory.GENERAL)
    isPublic: bool = True
    maxMembers: int = Field(default=100, ge=2, le=500)
    isActive: bool = True
    lastMessage: str = ""
    lastActivity: datetime = Field(default_factory=utcnow)


class ChatMessage(BaseModel):
    """A persisted chat message.

    Immutable once created except for ``edited``/``editedAt`` (explicit
    edit) and the soft-delete flag, both store-level operations.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    roomId: str = Field(..., min_length=1)
    senderId: str = Field(..., min_length=1)
    senderDisplayName: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    edited: bool = False
    editedAt: Optional[datetime] = None


def validate_content(content: object, max_length: int = MAX_CONTENT_LENGTH) -> str:
    """Trim message content and enforce the non-empty and length rules.

    Applies to new messages and to edits alike.

    Raises:
        ValidationFailure: Blank content, or longer than ``max_length`` after trimming.
    """
    if not isinstance(content, str):
        raise ValidationFailure("Message content is required")
    text = content.strip()
    if not text:
        raise ValidationFailure("Message content is required")
    if len(text) > max_length:
        raise ValidationFailure(f"Message content exceeds {max_length} characters")
    return text
