"""Error taxonomy for the room session protocol.

Every error carries a client-safe ``message``. Recoverable errors are turned
into a scoped ``error`` event for the requesting connection only; they never
mutate room state and never reach other sessions.
"""


class ChatError(Exception):
    """Base exception for chat protocol errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthenticationFailure(ChatError):
    """Raised when a connection credential is missing, invalid or expired,
    or when the identity behind it is unknown or deactivated.

    Fatal to the connection: the transport closes with ``close_code``.
    """
    close_code = 1008

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class NotAMember(ChatError):
    """Raised when a session targets a room it has not joined."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__("Not in this room")


class RoomNotFound(ChatError):
    """Raised when a join targets a room the directory does not know."""
    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__("Room not found")


class RoomFull(ChatError):
    """Raised when a join would exceed the room's member capacity."""
    def __init__(self, room_id: str, capacity: int):
        self.room_id = room_id
        self.capacity = capacity
        super().__init__(f"Room is full ({capacity} members)")


class ValidationFailure(ChatError):
    """Raised for malformed commands or invalid message content."""


class PersistenceFailure(ChatError):
    """Raised when the room directory refuses to store a message."""
    def __init__(self, message: str = "Failed to send message"):
        super().__init__(message)
