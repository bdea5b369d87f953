"""Per-room event fan-out for chat sessions.

Each attached connection owns an ``Outbox``: a bounded FIFO queue drained by
a single writer task. Broadcasting only enqueues, so it never waits on a slow
client, and because the protocol enqueues while holding the room lock, every
recipient in a room sees events in the same order.

Delivery is best-effort. A recipient whose send fails, or whose outbox
overflows, is marked failed: its remaining frames are dropped and its socket
is closed so the transport runs disconnect cleanup. Other recipients and the
sender are never affected.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel

from .events import ServerEvent, envelope
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

# WebSocket close code used when a recipient is dropped
DELIVERY_FAILED_CLOSE_CODE = 1011


class FrameSender(Protocol):
    """The part of a WebSocket the router needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class Outbox:
    """Ordered outbound queue for one connection."""

    def __init__(self, connection_id: str, sender: FrameSender, maxsize: int) -> None:
        self.connection_id = connection_id
        self._sender = sender
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._failed = False
        self._task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

    @property
    def failed(self) -> bool:
        return self._failed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._drain(), name=f"outbox-{self.connection_id}"
            )

    def put(self, frame: dict) -> bool:
        """Enqueue a frame. Returns False if the frame was dropped."""
        if self._failed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Outbox full for connection %s; dropping recipient", self.connection_id
            )
            self._fail()
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued frame has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the writer task. Pending frames are discarded."""
        self._failed = True
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def _fail(self) -> None:
        if self._failed:
            return
        self._failed = True
        self._close_task = asyncio.create_task(
            self._close_sender(), name=f"outbox-close-{self.connection_id}"
        )

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                if self._failed:
                    continue
                await self._sender.send_json(frame)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Failed to deliver to connection %s: %s", self.connection_id, exc)
                self._fail()
            finally:
                self._queue.task_done()

    async def _close_sender(self) -> None:
        try:
            await self._sender.close(code=DELIVERY_FAILED_CLOSE_CODE)
        except Exception:
            logger.debug("Ignored error while closing %s", self.connection_id, exc_info=True)


class BroadcastRouter:
    """Delivers events to every session currently in a room.

    The router only reads the registry; membership is changed by the
    protocol layer alone.

    Args:
        registry: Source of truth for which connections are in which room.
        outbox_size: Per-connection queue bound before a recipient is dropped.
    """

    def __init__(self, registry: SessionRegistry, outbox_size: int = 256) -> None:
        self._registry = registry
        self._outbox_size = outbox_size
        self._outboxes: Dict[str, Outbox] = {}

    def attach(self, connection_id: str, sender: FrameSender) -> Outbox:
        """Create and start the outbox for a connection."""
        if connection_id in self._outboxes:
            raise ValueError(f"Connection {connection_id} already has an outbox")
        outbox = Outbox(connection_id, sender, self._outbox_size)
        self._outboxes[connection_id] = outbox
        outbox.start()
        return outbox

    async def detach(self, connection_id: str) -> None:
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            await outbox.close()

    def send_to(self, connection_id: str, event: ServerEvent, payload: BaseModel) -> bool:
        """Deliver an event to a single connection (scoped errors, greetings)."""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        return outbox.put(envelope(event, payload))

    def broadcast_to_room(
        self,
        room_id: str,
        event: ServerEvent,
        payload: BaseModel,
        exclude_connection_id: Optional[str] = None,
    ) -> int:
        """Fan an event out to the room; returns the number of recipients queued."""
        frame = envelope(event, payload)
        deliveries = 0
        for connection_id in self._registry.connections_in(room_id):
            if connection_id == exclude_connection_id:
                continue
            outbox = self._outboxes.get(connection_id)
            if outbox is not None and outbox.put(frame):
                deliveries += 1
        logger.debug(
            "Broadcast %s to room %s for %d receivers", event.value, room_id, deliveries
        )
        return deliveries

    async def flush(self) -> None:
        """Wait for every outbox to drain."""
        for outbox in list(self._outboxes.values()):
            await outbox.join()

    async def close_all(self) -> None:
        for connection_id in list(self._outboxes):
            await self.detach(connection_id)
