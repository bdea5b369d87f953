"""Tests for the room session protocol.

Sessions are opened directly on the protocol with recording senders, so
each test observes exactly the frames a WebSocket client would receive.
"""
import asyncio

import pytest

from mindease.auth.schemas import Identity
from mindease.chat.broadcast import DELIVERY_FAILED_CLOSE_CODE, BroadcastRouter
from mindease.chat.errors import ChatError
from mindease.chat.protocol import RoomSessionProtocol
from mindease.chat.registry import SessionRegistry
from mindease.config import ChatSettings
from mindease.rooms.schemas import RoomMetadata

from conftest import FailingSender, RecordingSender, settle


def join(room_id):
    return {"type": "join-room", "roomId": room_id}


def leave(room_id):
    return {"type": "leave-room", "roomId": room_id}


def send(room_id, content):
    return {"type": "send-message", "roomId": room_id, "content": content}


class TestConnect:

    @pytest.mark.asyncio
    async def test_open_session_greets_connection(self, protocol, open_client):
        _, alice = await open_client("Alice")
        await settle(protocol)

        assert alice.frames == [{"type": "connected", "userId": "user-alice", "username": "Alice"}]

    @pytest.mark.asyncio
    async def test_authenticate_delegates_to_verifier(self, protocol, token_for):
        identity = await protocol.authenticate(token_for("user-bob"))
        assert identity.displayName == "Bob"


class TestJoin:

    @pytest.mark.asyncio
    async def test_joiner_receives_roster_including_itself(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, join("calm"))
        await settle(protocol)

        assert alice.last("room-users") == {"type": "room-users", "roomId": "calm", "users": ["Alice"]}

    @pytest.mark.asyncio
    async def test_every_member_sees_same_roster(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        c, carol = await open_client("Carol")

        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await protocol.dispatch(c, join("garden"))
        await settle(protocol)

        assert protocol.presence("calm") == ["Alice", "Bob"]
        assert alice.last("room-users")["users"] == ["Alice", "Bob"]
        assert bob.last("room-users")["users"] == ["Alice", "Bob"]
        assert carol.last("room-users")["users"] == ["Carol"]

    @pytest.mark.asyncio
    async def test_unknown_room(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, join("nowhere"))
        await settle(protocol)

        assert alice.last("error") == {"type": "error", "message": "Room not found"}
        assert protocol.registry.get(a).current_room is None

    @pytest.mark.asyncio
    async def test_inactive_room_cannot_be_joined(self, protocol, open_client, rooms):
        rooms.create_room(RoomMetadata(id="closed", name="Closed Room", isActive=False))
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, join("closed"))
        await settle(protocol)

        assert alice.last("error")["message"] == "Room not found"

    @pytest.mark.asyncio
    async def test_full_room_rejects_new_identity(self, protocol, open_client, rooms):
        rooms.create_room(RoomMetadata(id="small", name="Small Circle", maxMembers=2))
        a, _ = await open_client("Alice")
        b, _ = await open_client("Bob")
        c, carol = await open_client("Carol")
        a2, _ = await open_client("Alice", identity_id="user-alice")

        await protocol.dispatch(a, join("small"))
        await protocol.dispatch(b, join("small"))
        await protocol.dispatch(c, join("small"))
        await protocol.dispatch(a2, join("small"))
        await settle(protocol)

        assert carol.last("error")["message"] == "Room is full (2 members)"
        assert protocol.registry.get(c).current_room is None
        # A second tab of a present identity does not take a new seat
        assert protocol.registry.get(a2).current_room == "small"
        assert protocol.presence("small") == ["Alice", "Bob"]

    @pytest.mark.asyncio
    async def test_joining_another_room_leaves_the_first(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))

        await protocol.dispatch(a, join("garden"))
        await settle(protocol)

        assert protocol.registry.get(a).current_room == "garden"
        assert bob.last("room-users")["users"] == ["Bob"]
        assert alice.last("room-users") == {"type": "room-users", "roomId": "garden", "users": ["Alice"]}

    @pytest.mark.asyncio
    async def test_move_rejected_when_seat_taken_while_waiting(self, protocol, open_client, rooms):
        rooms.create_room(RoomMetadata(id="small", name="Small Circle", maxMembers=2))
        a, alice = await open_client("Alice")
        b, _ = await open_client("Bob")
        c, _ = await open_client("Carol")
        await protocol.dispatch(b, join("small"))
        await protocol.dispatch(a, join("calm"))

        calm_lock = protocol.registry.lock("calm")
        await calm_lock.acquire()
        try:
            task = asyncio.create_task(protocol.dispatch(a, join("small")))
            await asyncio.sleep(0)
            await protocol.dispatch(c, join("small"))
        finally:
            calm_lock.release()
        await task
        await settle(protocol)

        assert alice.last("error")["message"] == "Room is full (2 members)"
        assert protocol.registry.get(a).current_room == "calm"
        assert protocol.presence("calm") == ["Alice"]
        assert protocol.presence("small") == ["Bob", "Carol"]


class TestLeave:

    @pytest.mark.asyncio
    async def test_leave_broadcasts_roster_without_leaver(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await settle(protocol)
        frames_before = len(alice.frames)

        await protocol.dispatch(a, leave("calm"))
        await settle(protocol)

        assert bob.last("room-users")["users"] == ["Bob"]
        assert len(alice.frames) == frames_before
        assert protocol.registry.get(a).current_room is None

    @pytest.mark.asyncio
    async def test_leave_other_room_is_noop(self, protocol, open_client):
        a, _ = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await settle(protocol)
        frames_before = list(bob.frames)

        await protocol.dispatch(a, leave("garden"))
        await settle(protocol)

        assert protocol.registry.get(a).current_room == "calm"
        assert bob.frames == frames_before

    @pytest.mark.asyncio
    async def test_leave_while_typing_clears_indicator(self, protocol, open_client):
        a, _ = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await protocol.dispatch(a, {"type": "typing", "roomId": "calm"})

        await protocol.dispatch(a, leave("calm"))
        await settle(protocol)

        assert bob.last("user-stop-typing") == {"type": "user-stop-typing", "userId": "user-alice", "username": "Alice"}


class TestMultipleTabs:

    @pytest.mark.asyncio
    async def test_identity_present_until_last_tab_leaves(self, protocol, open_client):
        tab1, _ = await open_client("Alice", identity_id="user-alice")
        tab2, _ = await open_client("Alice", identity_id="user-alice")
        b, bob = await open_client("Bob")
        for conn in (tab1, tab2, b):
            await protocol.dispatch(conn, join("calm"))
        await settle(protocol)
        assert bob.last("room-users")["users"] == ["Alice", "Bob"]

        await protocol.dispatch(tab1, leave("calm"))
        await settle(protocol)
        assert bob.last("room-users")["users"] == ["Alice", "Bob"]

        await protocol.disconnect(tab2)
        await settle(protocol)
        assert bob.last("room-users")["users"] == ["Bob"]

    @pytest.mark.asyncio
    async def test_every_tab_receives_messages(self, protocol, open_client):
        tab1, first = await open_client("Alice", identity_id="user-alice")
        tab2, second = await open_client("Alice", identity_id="user-alice")
        await protocol.dispatch(tab1, join("calm"))
        await protocol.dispatch(tab2, join("calm"))

        await protocol.dispatch(tab1, send("calm", "hello from tab one"))
        await settle(protocol)

        assert first.last("message")["content"] == "hello from tab one"
        assert second.last("message")["content"] == "hello from tab one"


class TestSendMessage:

    @pytest.mark.asyncio
    async def test_message_reaches_room_including_sender(self, protocol, open_client, rooms):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))

        await protocol.dispatch(a, send("calm", "  hello there  "))
        await settle(protocol)

        message = alice.last("message")
        assert message == bob.last("message")
        assert message["content"] == "hello there"
        assert message["userId"] == "user-alice"
        assert message["username"] == "Alice"
        assert {"id", "timestamp"} <= set(message)
        assert rooms.get_messages("calm")[-1].id == message["id"]

    @pytest.mark.asyncio
    async def test_send_updates_room_activity(self, protocol, open_client, rooms):
        a, _ = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        stored = await protocol.send_message(a, "calm", "x" * 150)

        room = rooms.get_room("calm")
        assert room.lastMessage == "x" * 100
        assert room.lastActivity == stored.timestamp

    @pytest.mark.asyncio
    async def test_no_cross_room_leakage(self, protocol, open_client):
        a, _ = await open_client("Alice")
        c, carol = await open_client("Carol")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(c, join("garden"))

        await protocol.dispatch(a, send("calm", "only for calm"))
        await protocol.dispatch(a, {"type": "typing", "roomId": "calm"})
        await settle(protocol)

        assert carol.of_type("message") == []
        assert carol.of_type("user-typing") == []
        assert all(f["roomId"] == "garden" for f in carol.of_type("room-users"))

    @pytest.mark.asyncio
    async def test_send_without_joining_is_rejected(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(b, join("calm"))

        await protocol.dispatch(a, send("calm", "sneaky"))
        await settle(protocol)

        assert alice.last("error")["message"] == "Not in this room"
        assert bob.of_type("message") == []

    @pytest.mark.asyncio
    async def test_send_on_unknown_connection_is_rejected(self, protocol):
        with pytest.raises(ChatError):
            await protocol.send_message("never-opened", "calm", "hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", "\n\t "])
    async def test_blank_content_rejected(self, protocol, open_client, content):
        a, alice = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        await protocol.dispatch(a, send("calm", content))
        await settle(protocol)

        assert alice.last("error")["message"] == "Message content is required"
        assert alice.of_type("message") == []

    @pytest.mark.asyncio
    async def test_content_at_limit_accepted(self, protocol, open_client):
        a, alice = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        await protocol.dispatch(a, send("calm", "a" * 2000))
        await settle(protocol)

        assert len(alice.last("message")["content"]) == 2000
        assert alice.of_type("error") == []

    @pytest.mark.asyncio
    async def test_content_over_limit_rejected(self, protocol, open_client):
        a, alice = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        await protocol.dispatch(a, send("calm", "a" * 2001))
        await settle(protocol)

        assert alice.last("error")["message"] == "Message content exceeds 2000 characters"
        assert alice.of_type("message") == []

    @pytest.mark.asyncio
    async def test_limit_applies_after_trimming(self, protocol, open_client):
        a, alice = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        await protocol.dispatch(a, send("calm", "  " + "a" * 2000 + "  "))
        await settle(protocol)

        assert alice.of_type("error") == []

    @pytest.mark.asyncio
    async def test_fifo_order_identical_for_all_members(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        c, carol = await open_client("Carol")
        for conn in (a, b, c):
            await protocol.dispatch(conn, join("calm"))

        await asyncio.gather(*(
            protocol.dispatch(conn, send("calm", f"{conn}-{n}"))
            for n in range(5)
            for conn in (a, b)
        ))
        await settle(protocol)

        seen = [[f["content"] for f in s.of_type("message")] for s in (alice, bob, carol)]
        assert len(seen[0]) == 10
        assert seen[0] == seen[1] == seen[2]
        # Per-sender order is preserved within the room order
        assert [m for m in seen[0] if m.startswith(a)] == [f"{a}-{n}" for n in range(5)]

    @pytest.mark.asyncio
    async def test_failing_recipient_does_not_affect_others(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, broken = await open_client("Bob", sender=FailingSender())
        c, carol = await open_client("Carol")
        for conn in (a, b, c):
            await protocol.dispatch(conn, join("calm"))

        await protocol.dispatch(a, send("calm", "still delivered"))
        await settle(protocol)

        assert alice.last("message")["content"] == "still delivered"
        assert carol.last("message")["content"] == "still delivered"
        assert alice.of_type("error") == []
        assert broken.closed_with == DELIVERY_FAILED_CLOSE_CODE


class _BrokenAppendStore:
    """Room store whose message writes fail."""

    def __init__(self, inner):
        self._inner = inner

    def get_room(self, room_id):
        return self._inner.get_room(room_id)

    def append_message(self, message):
        raise RuntimeError("disk full")

    def update_room_activity(self, room_id, last_message, at):
        return self._inner.update_room_activity(room_id, last_message, at)


class _BrokenActivityStore(_BrokenAppendStore):
    """Room store whose activity summary updates fail."""

    def append_message(self, message):
        return self._inner.append_message(message)

    def update_room_activity(self, room_id, last_message, at):
        raise RuntimeError("summary table locked")


def _protocol_with(store, verifier):
    registry = SessionRegistry()
    return RoomSessionProtocol(registry, BroadcastRouter(registry), store, verifier, ChatSettings())


class TestPersistence:

    @pytest.mark.asyncio
    async def test_persistence_failure_means_no_broadcast(self, rooms, verifier):
        chat = _protocol_with(_BrokenAppendStore(rooms), verifier)
        alice, bob = RecordingSender(), RecordingSender()
        await chat.open_session("a", Identity(id="user-alice", displayName="Alice"), alice)
        await chat.open_session("b", Identity(id="user-bob", displayName="Bob"), bob)
        await chat.dispatch("a", join("calm"))
        await chat.dispatch("b", join("calm"))

        await chat.dispatch("a", send("calm", "will not be stored"))
        await settle(chat)

        assert alice.last("error") == {"type": "error", "message": "Failed to send message"}
        assert alice.of_type("message") == []
        assert bob.of_type("message") == []
        assert bob.of_type("error") == []
        assert chat.presence("calm") == ["Alice", "Bob"]
        await chat.router.close_all()

    @pytest.mark.asyncio
    async def test_failed_activity_update_does_not_fail_send(self, rooms, verifier):
        chat = _protocol_with(_BrokenActivityStore(rooms), verifier)
        alice = RecordingSender()
        await chat.open_session("a", Identity(id="user-alice", displayName="Alice"), alice)
        await chat.dispatch("a", join("calm"))

        await chat.dispatch("a", send("calm", "delivered anyway"))
        await settle(chat)

        assert alice.last("message")["content"] == "delivered anyway"
        assert alice.of_type("error") == []
        assert rooms.get_messages("calm")[-1].content == "delivered anyway"
        await chat.router.close_all()


class TestTyping:

    @pytest.mark.asyncio
    async def test_typing_goes_to_others_only(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))

        await protocol.dispatch(a, {"type": "typing", "roomId": "calm"})
        await settle(protocol)

        assert bob.last("user-typing") == {"type": "user-typing", "userId": "user-alice", "username": "Alice"}
        assert alice.of_type("user-typing") == []
        assert protocol.registry.get(a).is_typing is True

    @pytest.mark.asyncio
    async def test_stop_typing_without_start_is_harmless(self, protocol, open_client):
        a, alice = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))

        await protocol.dispatch(a, {"type": "stop-typing", "roomId": "calm"})
        await protocol.dispatch(a, {"type": "stop-typing", "roomId": "calm"})
        await settle(protocol)

        assert len(bob.of_type("user-stop-typing")) == 2
        assert alice.of_type("user-stop-typing") == []
        assert alice.of_type("error") == []
        assert protocol.registry.get(a).is_typing is False
        assert protocol.presence("calm") == ["Alice", "Bob"]

    @pytest.mark.asyncio
    async def test_typing_requires_membership(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, {"type": "typing", "roomId": "calm"})
        await settle(protocol)

        assert alice.last("error")["message"] == "Not in this room"


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_removes_membership(self, protocol, open_client):
        a, _ = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))

        assert await protocol.disconnect(a) is True
        await settle(protocol)

        assert bob.last("room-users")["users"] == ["Bob"]
        assert a not in protocol.registry
        assert protocol.registry.connections_in("calm") == [b]

    @pytest.mark.asyncio
    async def test_disconnect_runs_once(self, protocol, open_client):
        a, _ = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await settle(protocol)
        rosters_before = len(bob.of_type("room-users"))

        results = await asyncio.gather(protocol.disconnect(a), protocol.disconnect(a))
        await settle(protocol)

        assert sorted(results) == [False, True]
        assert len(bob.of_type("room-users")) == rosters_before + 1

    @pytest.mark.asyncio
    async def test_disconnect_while_typing(self, protocol, open_client):
        a, _ = await open_client("Alice")
        b, bob = await open_client("Bob")
        await protocol.dispatch(a, join("calm"))
        await protocol.dispatch(b, join("calm"))
        await protocol.dispatch(a, {"type": "typing", "roomId": "calm"})

        await protocol.disconnect(a)
        await settle(protocol)

        types = [f["type"] for f in bob.frames]
        assert types[-2:] == ["user-stop-typing", "room-users"]

    @pytest.mark.asyncio
    async def test_disconnect_without_room(self, protocol, open_client):
        a, _ = await open_client("Alice")

        assert await protocol.disconnect(a) is True
        assert len(protocol.registry) == 0

    @pytest.mark.asyncio
    async def test_commands_after_disconnect_are_ignored(self, protocol, open_client):
        a, _ = await open_client("Alice")
        await protocol.disconnect(a)

        await protocol.dispatch(a, join("calm"))

        assert protocol.presence("calm") == []


class TestDispatch:

    @pytest.mark.asyncio
    async def test_non_object_frame(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, ["join-room", "calm"])
        await settle(protocol)

        assert alice.last("error")["message"] == "Invalid message format: expected an object"

    @pytest.mark.asyncio
    async def test_unknown_event(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, {"type": "dance", "roomId": "calm"})
        await settle(protocol)

        assert alice.last("error")["message"] == "Unknown event type: dance"

    @pytest.mark.asyncio
    async def test_missing_room_id(self, protocol, open_client):
        a, alice = await open_client("Alice")

        await protocol.dispatch(a, {"type": "join-room"})
        await settle(protocol)

        assert alice.last("error")["message"] == "Invalid payload for join-room"

    @pytest.mark.asyncio
    async def test_non_string_content(self, protocol, open_client):
        a, alice = await open_client("Alice")
        await protocol.dispatch(a, join("calm"))

        await protocol.dispatch(a, {"type": "send-message", "roomId": "calm", "content": 42})
        await settle(protocol)

        assert alice.last("error")["message"] == "Invalid payload for send-message"
