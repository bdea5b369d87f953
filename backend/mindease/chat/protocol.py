"""Room session protocol: the state machine behind every chat connection.

A connection moves through ``Unauthenticated -> Authenticated(no room) ->
InRoom(roomId)``. It authenticates once, then issues join/send/typing/leave
commands; each command mutates the session registry under the room's lock
and asks the broadcast router to notify the room.

Protocol Flow:
    1. Connect with a bearer token -> ``authenticate`` -> ``open_session``
       -> Server sends: {type: "connected", userId, username}
    2. {type: "join-room", roomId}
       -> Room broadcast (joiner included): {type: "room-users", roomId, users}
    3. {type: "send-message", roomId, content}
       -> persisted, then room broadcast (sender included): {type: "message", ...}
    4. {type: "typing" | "stop-typing", roomId}
       -> Room broadcast (sender excluded): {type: "user-typing" | "user-stop-typing", userId, username}
    5. {type: "leave-room", roomId}
       -> Room broadcast: {type: "room-users", ...} without the leaver
    6. Transport loss -> ``disconnect``: implicit leave, then unregister.

Errors from a command go to the requesting connection only, as
{type: "error", message}, and leave room state untouched.
"""
import logging
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, Type

from pydantic import BaseModel, ValidationError

from mindease.auth.schemas import Identity
from mindease.auth.service import IdentityVerifier, UserDirectory
from mindease.config import AppConfig, ChatSettings, get_config, require_jwt_secret
from mindease.rooms.schemas import ChatMessage, RoomMetadata, validate_content
from mindease.rooms.service import RoomDirectory

from .broadcast import BroadcastRouter, FrameSender
from .errors import (
    ChatError,
    NotAMember,
    PersistenceFailure,
    RoomFull,
    RoomNotFound,
    ValidationFailure,
)
from .events import (
    ClientEvent,
    ConnectedEvent,
    ErrorEvent,
    MessageEvent,
    RoomCommand,
    RoomUsersEvent,
    SendMessageCommand,
    ServerEvent,
    TypingEvent,
)
from .registry import Session, SessionRegistry

logger = logging.getLogger(__name__)


class RoomStore(Protocol):
    """Room directory operations the protocol depends on."""

    def get_room(self, room_id: str) -> Optional[RoomMetadata]: ...

    def append_message(self, message: ChatMessage) -> ChatMessage: ...

    def update_room_activity(self, room_id: str, last_message: str, at: datetime) -> bool: ...


class CredentialVerifier(Protocol):
    def verify(self, credential: Optional[str]) -> Identity: ...


Handler = Callable[..., Awaitable[object]]


class RoomSessionProtocol:
    """Governs join, send, typing, leave and disconnect for all connections.

    Args:
        registry: Live sessions and room membership.
        router: Per-room fan-out.
        rooms: Room metadata and message persistence.
        verifier: Bearer credential verification.
        settings: Content limits.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        router: BroadcastRouter,
        rooms: RoomStore,
        verifier: CredentialVerifier,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self._rooms = rooms
        self._verifier = verifier
        self._settings = settings or ChatSettings()
        self._closing: Set[str] = set()

        # event name -> (payload model, handler)
        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            ClientEvent.JOIN_ROOM.value: (RoomCommand, self._on_join),
            ClientEvent.LEAVE_ROOM.value: (RoomCommand, self._on_leave),
            ClientEvent.SEND_MESSAGE.value: (SendMessageCommand, self._on_send),
            ClientEvent.TYPING.value: (RoomCommand, self._on_typing),
            ClientEvent.STOP_TYPING.value: (RoomCommand, self._on_stop_typing),
        }

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """Verify a bearer credential. Raises AuthenticationFailure."""
        return self._verifier.verify(credential)

    async def open_session(
        self, connection_id: str, identity: Identity, sender: FrameSender
    ) -> Session:
        """Register an authenticated connection and greet it."""
        session = self.registry.register(connection_id, identity)
        self.router.attach(connection_id, sender)
        self.router.send_to(
            connection_id,
            ServerEvent.CONNECTED,
            ConnectedEvent(userId=identity.id, username=identity.displayName),
        )
        logger.info("[Chat] %s connected as %s", connection_id, identity.displayName)
        return session

    async def disconnect(self, connection_id: str) -> bool:
        """Leave the current room (if any) and unregister the session.

        Safe to call from every disconnect path; only the first call for a
        connection does any work.

        Returns:
            True if this call performed the cleanup.
        """
        if connection_id in self._closing:
            return False
        session = self.registry.get(connection_id)
        if session is None:
            return False

        self._closing.add(connection_id)
        try:
            room_id = session.current_room
            if room_id is not None:
                async with self.registry.lock(room_id):
                    was_typing = self.registry.set_typing(connection_id, False)
                    self.registry.unregister(connection_id)
                    if was_typing:
                        self._broadcast_stop_typing(room_id, session)
                    self._broadcast_roster(room_id)
            else:
                self.registry.unregister(connection_id)
            await self.router.detach(connection_id)
        finally:
            self._closing.discard(connection_id)

        logger.info(
            "[Chat] %s (%s) disconnected%s",
            connection_id,
            session.identity.displayName,
            f" from room {room_id}" if room_id else "",
        )
        return True

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, connection_id: str, frame: object) -> None:
        """Route one inbound frame to its handler.

        Any ChatError raised while handling is reported to the requester
        only.
        """
        try:
            if not isinstance(frame, dict):
                raise ValidationFailure("Invalid message format: expected an object")
            event_type = frame.get("type")
            entry = self._handlers.get(event_type) if isinstance(event_type, str) else None
            if entry is None:
                raise ValidationFailure(f"Unknown event type: {event_type}")
            model, handler = entry
            try:
                command = model.model_validate(frame)
            except ValidationError as exc:
                raise ValidationFailure(f"Invalid payload for {event_type}") from exc
            await handler(connection_id, command)
        except ChatError as exc:
            self.report_error(connection_id, exc)

    async def _on_join(self, connection_id: str, command: RoomCommand) -> None:
        await self.join(connection_id, command.roomId)

    async def _on_leave(self, connection_id: str, command: RoomCommand) -> None:
        await self.leave(connection_id, command.roomId)

    async def _on_send(self, connection_id: str, command: SendMessageCommand) -> None:
        await self.send_message(connection_id, command.roomId, command.content)

    async def _on_typing(self, connection_id: str, command: RoomCommand) -> None:
        await self.typing(connection_id, command.roomId)

    async def _on_stop_typing(self, connection_id: str, command: RoomCommand) -> None:
        await self.stop_typing(connection_id, command.roomId)

    # =========================================================================
    # Commands
    # =========================================================================

    async def join(self, connection_id: str, room_id: str) -> None:
        """Join ``room_id``, leaving any other room first.

        Moving between rooms holds both room locks (taken in room id order),
        so the seat check, the implicit leave and the join happen together.
        A rejected join leaves the session where it was.

        Raises:
            RoomNotFound: Unknown or inactive room.
            RoomFull: Room already holds ``maxMembers`` other identities.
        """
        session = self._require_session(connection_id)
        room = self._rooms.get_room(room_id)
        if room is None or not room.isActive:
            raise RoomNotFound(room_id)
        self._check_capacity(session, room)

        while True:
            previous = session.current_room
            if previous == room_id:
                return
            room_ids = sorted({room_id} if previous is None else {room_id, previous})
            async with AsyncExitStack() as stack:
                for locked_room in room_ids:
                    await stack.enter_async_context(self.registry.lock(locked_room))
                if session.current_room != previous:
                    # Moved while waiting for the locks
                    continue
                self._require_session(connection_id)
                self._check_capacity(session, room)

                was_typing = self.registry.set_typing(connection_id, False)
                self.registry.set_room(connection_id, room_id)
                if previous is not None:
                    if was_typing:
                        self._broadcast_stop_typing(previous, session)
                    self._broadcast_roster(previous)
                self._broadcast_roster(room_id)
                break

        if previous is not None:
            logger.info("[Chat] %s left room %s", session.identity.displayName, previous)
        logger.info("[Chat] %s joined room %s", session.identity.displayName, room_id)

    async def leave(self, connection_id: str, room_id: str) -> None:
        """Leave ``room_id``. A no-op if the session is not in that room."""
        session = self._require_session(connection_id)
        if session.current_room != room_id:
            return

        async with self.registry.lock(room_id):
            if session.current_room != room_id:
                return
            was_typing = self.registry.set_typing(connection_id, False)
            self.registry.set_room(connection_id, None)
            if was_typing:
                self._broadcast_stop_typing(room_id, session)
            self._broadcast_roster(room_id)

        logger.info("[Chat] %s left room %s", session.identity.displayName, room_id)

    async def send_message(self, connection_id: str, room_id: str, content: str) -> ChatMessage:
        """Persist a message and broadcast it to the whole room, sender included.

        Raises:
            NotAMember: The session has not joined ``room_id``.
            ValidationFailure: Empty or over-length content.
            PersistenceFailure: The store refused the message; nothing is broadcast.
        """
        session = self._require_member(connection_id, room_id)
        text = validate_content(content, self._settings.max_content_length)

        async with self.registry.lock(room_id):
            if session.current_room != room_id:
                raise NotAMember(room_id)
            message = ChatMessage(
                roomId=room_id,
                senderId=session.identity.id,
                senderDisplayName=session.identity.displayName,
                content=text,
            )
            try:
                stored = self._rooms.append_message(message)
            except Exception as exc:
                logger.error("[Chat] Failed to persist message in room %s: %s", room_id, exc)
                raise PersistenceFailure() from exc

            self.router.broadcast_to_room(
                room_id,
                ServerEvent.MESSAGE,
                MessageEvent(
                    id=stored.id,
                    content=stored.content,
                    userId=stored.senderId,
                    username=stored.senderDisplayName,
                    timestamp=stored.timestamp,
                ),
            )

        preview = stored.content[: self._settings.last_message_preview]
        try:
            self._rooms.update_room_activity(room_id, preview, stored.timestamp)
        except Exception as exc:
            logger.warning("[Chat] Failed to update activity for room %s: %s", room_id, exc)
        return stored

    async def typing(self, connection_id: str, room_id: str) -> None:
        """Tell the other members that this identity is typing."""
        session = self._require_member(connection_id, room_id)
        async with self.registry.lock(room_id):
            if session.current_room != room_id:
                raise NotAMember(room_id)
            self.registry.set_typing(connection_id, True)
            self.router.broadcast_to_room(
                room_id,
                ServerEvent.USER_TYPING,
                TypingEvent(userId=session.identity.id, username=session.identity.displayName),
                exclude_connection_id=connection_id,
            )

    async def stop_typing(self, connection_id: str, room_id: str) -> None:
        """Tell the other members that this identity stopped typing.

        Sent even without a prior typing event; recipients treat it as a no-op.
        """
        session = self._require_member(connection_id, room_id)
        async with self.registry.lock(room_id):
            if session.current_room != room_id:
                raise NotAMember(room_id)
            self.registry.set_typing(connection_id, False)
            self._broadcast_stop_typing(room_id, session)

    # =========================================================================
    # Queries
    # =========================================================================

    def presence(self, room_id: str) -> List[str]:
        return self.registry.members_of(room_id)

    # =========================================================================
    # Internal
    # =========================================================================

    def _require_session(self, connection_id: str) -> Session:
        session = self.registry.get(connection_id)
        if session is None or connection_id in self._closing:
            raise ChatError("Session is not open")
        return session

    def _require_member(self, connection_id: str, room_id: str) -> Session:
        session = self._require_session(connection_id)
        if session.current_room != room_id:
            raise NotAMember(room_id)
        return session

    def _check_capacity(self, session: Session, room: RoomMetadata) -> None:
        if self.registry.has_identity(room.id, session.identity.id):
            return
        if self.registry.identity_count(room.id) >= room.maxMembers:
            raise RoomFull(room.id, room.maxMembers)

    def _broadcast_roster(self, room_id: str) -> None:
        self.router.broadcast_to_room(
            room_id,
            ServerEvent.ROOM_USERS,
            RoomUsersEvent(roomId=room_id, users=self.registry.members_of(room_id)),
        )

    def _broadcast_stop_typing(self, room_id: str, session: Session) -> None:
        self.router.broadcast_to_room(
            room_id,
            ServerEvent.USER_STOP_TYPING,
            TypingEvent(userId=session.identity.id, username=session.identity.displayName),
            exclude_connection_id=session.connection_id,
        )

    def report_error(self, connection_id: str, error: ChatError) -> None:
        """Send a scoped error event to one connection."""
        logger.info("[Chat] Rejected command from %s: %s", connection_id, error.message)
        self.router.send_to(connection_id, ServerEvent.ERROR, ErrorEvent(message=error.message))


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_protocol: Optional[RoomSessionProtocol] = None


def build_protocol(config: AppConfig) -> RoomSessionProtocol:
    """Wire a protocol instance from configuration.

    Raises:
        RuntimeError: No JWT secret is configured.
    """
    secret_key = require_jwt_secret(config)
    registry = SessionRegistry()
    router = BroadcastRouter(registry, outbox_size=config.chat.outbox_size)
    rooms = RoomDirectory.get_instance(config.storage.rooms_db_path)
    users = UserDirectory.get_instance(config.storage.users_db_path)
    verifier = IdentityVerifier(
        secret_key=secret_key,
        users=users,
        algorithm=config.auth.algorithm,
    )
    return RoomSessionProtocol(registry, router, rooms, verifier, config.chat)


def get_protocol() -> RoomSessionProtocol:
    """Return the global protocol, building it from config on first use."""
    global _protocol
    if _protocol is None:
        _protocol = build_protocol(get_config())
    return _protocol


def set_protocol(protocol: Optional[RoomSessionProtocol]) -> None:
    """Set (or clear) the global protocol instance."""
    global _protocol
    _protocol = protocol
