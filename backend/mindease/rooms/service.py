"""DuckDB-backed room directory.

Stores room metadata and message history. The chat core consumes it as an
external collaborator through ``get_room``, ``append_message`` and
``update_room_activity``; the remaining methods back the history endpoint,
seeding and store-level message edits.

Database Schema:
    rooms table:
        - id, name, description, category, is_public, max_members, is_active
        - last_message: Preview of the latest message
        - last_activity: Time of the latest message (UTC)
    messages table:
        - seq: Insertion order (sequence), used for stable ordering
        - id, room_id, sender_id, sender_name, content, timestamp
        - edited / edited_at: Explicit edit tracking
        - is_deleted / deleted_at / deleted_by: Soft delete

Timestamps are stored as naive UTC and returned timezone-aware.

Usage:
    directory = RoomDirectory.get_instance()
    room = directory.get_room("abc123")
    directory.append_message(message)
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .schemas import (
    MAX_CONTENT_LENGTH,
    ChatMessage,
    RoomCategory,
    RoomMetadata,
    utcnow,
    validate_content,
)

logger = logging.getLogger(__name__)

_CREATE_ROOMS = """
CREATE TABLE IF NOT EXISTS rooms (
    id            VARCHAR PRIMARY KEY,
    name          VARCHAR NOT NULL,
    description   VARCHAR NOT NULL DEFAULT '',
    category      VARCHAR NOT NULL DEFAULT 'general',
    is_public     BOOLEAN NOT NULL DEFAULT TRUE,
    max_members   INTEGER NOT NULL DEFAULT 100,
    is_active     BOOLEAN NOT NULL DEFAULT TRUE,
    last_message  VARCHAR NOT NULL DEFAULT '',
    last_activity TIMESTAMP NOT NULL
)
"""

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    seq         BIGINT DEFAULT nextval('messages_seq'),
    id          VARCHAR PRIMARY KEY,
    room_id     VARCHAR NOT NULL,
    sender_id   VARCHAR NOT NULL,
    sender_name VARCHAR NOT NULL,
    content     VARCHAR NOT NULL,
    timestamp   TIMESTAMP NOT NULL,
    edited      BOOLEAN NOT NULL DEFAULT FALSE,
    edited_at   TIMESTAMP,
    is_deleted  BOOLEAN NOT NULL DEFAULT FALSE,
    deleted_at  TIMESTAMP,
    deleted_by  VARCHAR
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)"

_MESSAGE_COLUMNS = (
    "id, room_id, sender_id, sender_name, content, timestamp, edited, edited_at"
)

_ROOM_COLUMNS = (
    "id, name, description, category, is_public, max_members, is_active, "
    "last_message, last_activity"
)


def _to_db(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _from_db(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc)


class RoomDirectory:
    """Singleton service for rooms and their message history in DuckDB.

    All calls are synchronous; DuckDB is embedded and the chat core calls
    it from the event loop thread only.
    """

    _instance: Optional["RoomDirectory"] = None
    _default_db_path: str = "rooms.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        self._conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        self._conn.execute(_CREATE_ROOMS)
        self._conn.execute(_CREATE_MESSAGES)
        self._conn.execute(_INDEX)
        logger.info("[RoomDirectory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "RoomDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def create_room(self, room: RoomMetadata) -> RoomMetadata:
        self._conn.execute(
            f"INSERT INTO rooms ({_ROOM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                room.id, room.name, room.description, room.category.value,
                room.isPublic, room.maxMembers, room.isActive,
                room.lastMessage, _to_db(room.lastActivity),
            ],
        )
        logger.info("[RoomDirectory] Created room %s (%s)", room.id, room.name)
        return room

    def get_room(self, room_id: str) -> Optional[RoomMetadata]:
        row = self._conn.execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = ?", [room_id]
        ).fetchone()
        return self._row_to_room(row) if row else None

    def list_rooms(self, active_only: bool = True) -> List[RoomMetadata]:
        """Rooms ordered by most recent activity."""
        where = "WHERE is_active" if active_only else ""
        rows = self._conn.execute(
            f"SELECT {_ROOM_COLUMNS} FROM rooms {where} ORDER BY last_activity DESC"
        ).fetchall()
        return [self._row_to_room(r) for r in rows]

    def update_room_activity(self, room_id: str, last_message: str, at: datetime) -> bool:
        """Update the denormalized last-message summary of a room."""
        result = self._conn.execute(
            "UPDATE rooms SET last_message = ?, last_activity = ? WHERE id = ? RETURNING id",
            [last_message, _to_db(at), room_id],
        ).fetchone()
        return result is not None

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(self, message: ChatMessage) -> ChatMessage:
        """Persist a new message. Raises ``duckdb.Error`` on failure."""
        self._conn.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                message.id, message.roomId, message.senderId,
                message.senderDisplayName, message.content,
                _to_db(message.timestamp), message.edited, _to_db(message.editedAt),
            ],
        )
        return message

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ? AND NOT is_deleted",
            [message_id],
        ).fetchone()
        return self._row_to_message(row) if row else None

    def get_messages(
        self,
        room_id: str,
        limit: int = 50,
        before: Optional[datetime] = None,
        before_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        """Return the latest ``limit`` live messages older than a cursor.

        ``before_id`` pages on insertion order, so messages sharing a
        timestamp are never skipped; ``before`` filters on time. Messages
        are returned in chronological order (oldest first).
        """
        conditions = ["room_id = ?", "NOT is_deleted"]
        params: list = [room_id]
        if before is not None:
            conditions.append("timestamp < ?")
            params.append(_to_db(before))
        if before_id is not None:
            conditions.append("seq < (SELECT seq FROM messages WHERE id = ?)")
            params.append(before_id)
        params.append(limit)

        rows = self._conn.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE {" AND ".join(conditions)}
            ORDER BY seq DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    def edit_message(
        self,
        message_id: str,
        content: str,
        max_length: int = MAX_CONTENT_LENGTH,
    ) -> Optional[ChatMessage]:
        """Replace a message's content and mark it edited.

        The new content is trimmed and checked like a new message.

        Raises:
            ValidationFailure: Blank or over-length content.
        """
        text = validate_content(content, max_length)
        result = self._conn.execute(
            """
            UPDATE messages SET content = ?, edited = TRUE, edited_at = ?
            WHERE id = ? AND NOT is_deleted
            RETURNING id
            """,
            [text, _to_db(utcnow()), message_id],
        ).fetchone()
        if result is None:
            return None
        return self.get_message(message_id)

    def soft_delete_message(self, message_id: str, deleted_by: str) -> bool:
        result = self._conn.execute(
            """
            UPDATE messages SET is_deleted = TRUE, deleted_at = ?, deleted_by = ?
            WHERE id = ? AND NOT is_deleted
            RETURNING id
            """,
            [_to_db(utcnow()), deleted_by, message_id],
        ).fetchone()
        return result is not None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _row_to_room(self, row) -> RoomMetadata:
        return RoomMetadata(
            id=row[0],
            name=row[1],
            description=row[2],
            category=RoomCategory(row[3]),
            isPublic=row[4],
            maxMembers=row[5],
            isActive=row[6],
            lastMessage=row[7],
            lastActivity=_from_db(row[8]),
        )

    def _row_to_message(self, row) -> ChatMessage:
        return ChatMessage(
            id=row[0],
            roomId=row[1],
            senderId=row[2],
            senderDisplayName=row[3],
            content=row[4],
            timestamp=_from_db(row[5]),
            edited=row[6],
            editedAt=_from_db(row[7]),
        )
