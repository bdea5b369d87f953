"""In-memory session registry for chat connections.

Maps each live connection to its authenticated identity and current room,
and keeps the reverse room -> identity index used to compute presence.

Presence is reference counted: a room tracks, per identity, how many live
sessions of that identity are in the room. Two browser tabs of the same user
show up once in the roster, and one tab leaving does not remove the user
while the other tab is still there.

The registry never broadcasts. The protocol layer mutates it under the
per-room lock returned by ``lock()`` and then decides what to send.

Thread Safety:
    Designed for a single asyncio event loop. Mutating methods are
    synchronous, so each one is atomic with respect to other coroutines.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from mindease.auth.schemas import Identity

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One live, authenticated connection.

    Attributes:
        connection_id: Unique per connection.
        identity: Verified identity, fixed for the connection's lifetime.
        current_room: Room the session has joined, or None.
        is_typing: Whether a typing indicator is outstanding in current_room.
    """
    connection_id: str
    identity: Identity
    current_room: Optional[str] = None
    is_typing: bool = False


class SessionRegistry:
    """Authoritative process-local mapping of connections to rooms."""

    def __init__(self) -> None:
        # connection_id -> Session
        self._sessions: Dict[str, Session] = {}

        # room_id -> {identity_id -> live session count}
        self._room_members: Dict[str, Dict[str, int]] = {}

        # room_id -> {connection_id: None}, insertion ordered
        self._room_connections: Dict[str, Dict[str, None]] = {}

        # identity_id -> display name, kept while the identity has a session
        self._display_names: Dict[str, str] = {}
        self._identity_sessions: Dict[str, int] = {}

        # room_id -> single-writer lock. Locks are never discarded: a waiter
        # may still be queued on a lock that looks released.
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def register(self, connection_id: str, identity: Identity) -> Session:
        """Create the session for a freshly authenticated connection."""
        if connection_id in self._sessions:
            raise ValueError(f"Connection {connection_id} is already registered")
        session = Session(connection_id=connection_id, identity=identity)
        self._sessions[connection_id] = session
        self._display_names[identity.id] = identity.displayName
        self._identity_sessions[identity.id] = self._identity_sessions.get(identity.id, 0) + 1
        logger.debug("[Registry] Registered %s as %s", connection_id, identity.id)
        return session

    def unregister(self, connection_id: str) -> Optional[Session]:
        """Remove a session and any room membership it holds.

        Returns:
            The removed session, or None if it was already gone.
        """
        session = self._sessions.get(connection_id)
        if session is None:
            return None
        if session.current_room is not None:
            self._remove_membership(session)
            session.current_room = None
        del self._sessions[connection_id]

        identity_id = session.identity.id
        self._identity_sessions[identity_id] -= 1
        if self._identity_sessions[identity_id] <= 0:
            del self._identity_sessions[identity_id]
            del self._display_names[identity_id]
        logger.debug("[Registry] Unregistered %s", connection_id)
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Room membership
    # =========================================================================

    def set_room(self, connection_id: str, room_id: Optional[str]) -> Optional[str]:
        """Move a session into ``room_id`` (or out of any room with None).

        The session is removed from its previous room's index before being
        added to the new one.

        Returns:
            The room the session was in before the move.

        Raises:
            KeyError: If the connection is not registered.
        """
        session = self._sessions[connection_id]
        previous = session.current_room
        if previous == room_id:
            return previous

        if previous is not None:
            self._remove_membership(session)
        session.current_room = room_id
        session.is_typing = False
        if room_id is not None:
            counts = self._room_members.setdefault(room_id, {})
            counts[session.identity.id] = counts.get(session.identity.id, 0) + 1
            self._room_connections.setdefault(room_id, {})[connection_id] = None
        return previous

    def members_of(self, room_id: str) -> List[str]:
        """Display names present in a room, de-duplicated, in join order."""
        counts = self._room_members.get(room_id, {})
        names = (self._display_names[identity_id] for identity_id in counts)
        return list(dict.fromkeys(names))

    def identity_count(self, room_id: str) -> int:
        """Number of distinct identities present in a room."""
        return len(self._room_members.get(room_id, {}))

    def has_identity(self, room_id: str, identity_id: str) -> bool:
        return identity_id in self._room_members.get(room_id, {})

    def connections_in(self, room_id: str) -> List[str]:
        """Connection ids of sessions in a room, in join order."""
        return list(self._room_connections.get(room_id, {}))

    def rooms(self) -> List[str]:
        """Rooms with at least one live session."""
        return list(self._room_members)

    # =========================================================================
    # Typing state
    # =========================================================================

    def set_typing(self, connection_id: str, typing: bool) -> bool:
        """Record the session's typing flag and return its previous value."""
        session = self._sessions[connection_id]
        previous = session.is_typing
        session.is_typing = typing
        return previous

    # =========================================================================
    # Per-room serialization
    # =========================================================================

    def lock(self, room_id: str) -> asyncio.Lock:
        """Return the single-writer lock for a room."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    # =========================================================================
    # Internal
    # =========================================================================

    def _remove_membership(self, session: Session) -> None:
        room_id = session.current_room
        identity_id = session.identity.id

        connections = self._room_connections.get(room_id)
        if connections is not None:
            connections.pop(session.connection_id, None)
            if not connections:
                del self._room_connections[room_id]

        counts = self._room_members.get(room_id)
        if counts is None or identity_id not in counts:
            logger.warning(
                "[Registry] %s claimed room %s without a membership entry",
                session.connection_id, room_id,
            )
            return
        counts[identity_id] -= 1
        if counts[identity_id] <= 0:
            del counts[identity_id]
        if not counts:
            del self._room_members[room_id]
