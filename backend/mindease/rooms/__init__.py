"""Room directory: room metadata and persisted message history."""

from .schemas import ChatMessage, RoomCategory, RoomMetadata
from .service import RoomDirectory

__all__ = [
    "ChatMessage",
    "RoomCategory",
    "RoomMetadata",
    "RoomDirectory",
]
