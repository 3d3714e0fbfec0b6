"""Tests for connection sessions: joins, switches, inbox processing and disconnects."""
import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest

from conftest import make_user, settle
from services.errors import ConflictError, NotFoundError, PersistenceError, ValidationError


@pytest.mark.asyncio
async def test_join_default_room_sends_snapshot_to_self(chat, transport):
    alice = await make_user(chat, "alice")
    session = chat.sessions.open("sid-a", alice)

    snapshot = await chat.sessions.join(session)

    assert snapshot.room.name == "general"
    assert session.current_room_id == chat.default_room.id
    assert transport.names("sid-a") == ["roomChanged", "previousMessages", "roomUserList"]
    changed = transport.events("sid-a", "roomChanged")[0]
    assert changed["roomId"] == str(chat.default_room.id)
    members = transport.events("sid-a", "roomUserList")[0]
    assert [m["displayName"] for m in members] == ["alice"]
    assert members[0]["inRoom"] is True


@pytest.mark.asyncio
async def test_join_announces_to_others_but_not_to_self(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))
    await chat.sessions.join(alice)
    transport.clear()

    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(bob)

    joined = transport.events("sid-a", "userJoined")
    assert [p["displayName"] for p in joined] == ["bob"]
    assert joined[0]["message"] == "bob joined the chat"
    assert transport.events("sid-b", "userJoined") == []
    refreshed = transport.events("sid-a", "roomUserList")[-1]
    assert sorted(m["displayName"] for m in refreshed) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_join_history_is_replayed(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))
    await chat.sessions.join(alice)
    await chat.sessions.send(alice, "first")
    await chat.sessions.send(alice, "second")

    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    snapshot = await chat.sessions.join(bob, "general")

    assert [m.text for m in snapshot.messages] == ["first", "second"]
    replay = transport.events("sid-b", "previousMessages")[0]
    assert [m["text"] for m in replay] == ["first", "second"]


@pytest.mark.asyncio
async def test_switch_room_moves_presence(chat, transport):
    alice_id = await make_user(chat, "alice")
    design = await chat.rooms.create(alice_id, "design")
    alice = chat.sessions.open("sid-a", alice_id)
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(alice)
    await chat.sessions.join(bob)
    transport.clear()

    await chat.sessions.switch_room(alice, "design")

    assert alice.current_room_id == design.id
    assert chat.membership.list_members(design.id) == [alice_id.user_id]
    assert alice_id.user_id not in chat.membership.list_members(chat.default_room.id)
    assert [p["displayName"] for p in transport.events("sid-b", "userLeft")] == ["alice"]
    assert transport.events("sid-a", "roomChanged")[0]["roomName"] == "design"


@pytest.mark.asyncio
async def test_switch_is_atomic_for_observers(chat, transport):
    alice_id = await make_user(chat, "alice")
    design = await chat.rooms.create(alice_id, "design")
    alice = chat.sessions.open("sid-a", alice_id)
    await chat.sessions.join(alice)
    rooms = (chat.default_room.id, design.id)
    violations = []
    done = asyncio.Event()

    async def observe():
        while not done.is_set():
            seen = [r for r in rooms if alice_id.user_id in chat.membership.list_members(r)]
            if len(seen) != 1:
                violations.append(seen)
            await asyncio.sleep(0)

    observer = asyncio.create_task(observe())
    for _ in range(3):
        await chat.sessions.switch_room(alice, "design")
        await chat.sessions.switch_room(alice, "general")
    done.set()
    await observer

    assert violations == []


@pytest.mark.asyncio
async def test_switch_requires_a_room(chat):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))

    with pytest.raises(ValidationError):
        await chat.sessions.switch_room(alice, "")


@pytest.mark.asyncio
async def test_joining_public_room_makes_persistent_member(chat):
    owner = await make_user(chat, "owner")
    lobby = await chat.rooms.create(owner, "lobby")
    bob_id = await make_user(chat, "bob")
    bob = chat.sessions.open("sid-b", bob_id)

    await chat.sessions.join(bob, str(lobby.id))

    assert await chat.store.is_member(lobby.id, bob_id.user_id)


@pytest.mark.asyncio
async def test_private_room_is_hidden_from_non_members(chat):
    owner = await make_user(chat, "owner")
    secret = await chat.rooms.create(owner, "secret", is_private=True)
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))

    with pytest.raises(NotFoundError):
        await chat.sessions.join(bob, str(secret.id))
    with pytest.raises(NotFoundError):
        await chat.sessions.join(bob, "secret")
    assert bob.current_room_id is None


@pytest.mark.asyncio
async def test_unknown_room_is_not_found(chat):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))

    with pytest.raises(NotFoundError):
        await chat.sessions.join(alice, str(uuid.uuid4()))
    with pytest.raises(NotFoundError):
        await chat.sessions.join(alice, "nowhere")


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(chat, transport):
    alice_id = await make_user(chat, "alice")
    alice = chat.sessions.open("sid-a", alice_id)
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(alice)
    await chat.sessions.join(bob)
    transport.clear()

    await asyncio.gather(chat.sessions.disconnect(alice), chat.sessions.disconnect(alice))
    await chat.sessions.disconnect(alice)

    assert len(transport.events("sid-b", "userLeft")) == 1
    assert chat.membership.room_of(alice_id.user_id) is None
    assert chat.sessions.get("sid-a") is None
    user = await chat.store.get_user(alice_id.user_id)
    assert user.online is False
    assert user.current_room_id is None


@pytest.mark.asyncio
async def test_disconnect_clears_state_when_store_fails(chat, transport):
    alice_id = await make_user(chat, "alice")
    alice = chat.sessions.open("sid-a", alice_id)
    await chat.sessions.join(alice)
    chat.store.set_presence = AsyncMock(side_effect=PersistenceError("db down"))

    await chat.sessions.disconnect(alice)

    assert chat.membership.room_of(alice_id.user_id) is None
    assert alice.closed is True


@pytest.mark.asyncio
async def test_superseded_session_cannot_move_or_evict_successor(chat):
    alice_id = await make_user(chat, "alice")
    old = chat.sessions.open("sid-old", alice_id)
    await chat.sessions.join(old)
    new = chat.sessions.open("sid-new", alice_id)

    with pytest.raises(ConflictError):
        await chat.sessions.switch_room(old, "general")

    await chat.sessions.join(new)
    assert chat.membership.connection_of(alice_id.user_id) == "sid-new"

    await chat.sessions.disconnect(old)

    assert chat.membership.connection_of(alice_id.user_id) == "sid-new"
    assert chat.sessions.for_user(alice_id.user_id) is new
    user = await chat.store.get_user(alice_id.user_id)
    assert user.online is True


@pytest.mark.asyncio
async def test_inbox_processes_events_in_order(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))

    assert chat.sessions.submit("sid-a", "join", {"roomId": "general"})
    assert chat.sessions.submit("sid-a", "sendMessage", {"text": "one"})
    assert chat.sessions.submit("sid-a", "sendMessage", {"text": "two"})
    await settle(alice)
    await chat.pipeline.drain()

    names = transport.names("sid-a")
    assert names.index("roomChanged") < names.index("newMessage")
    assert [p["text"] for p in transport.events("sid-a", "newMessage")] == ["one", "two"]


@pytest.mark.asyncio
async def test_inbox_reports_refusals_as_error_events(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))

    chat.sessions.submit("sid-a", "sendMessage", {"text": "nobody hears this"})
    chat.sessions.submit("sid-a", "join", {"roomId": "general"})
    chat.sessions.submit("sid-a", "sendMessage", {"text": "   "})
    await settle(alice)

    errors = [p["message"] for p in transport.events("sid-a", "error")]
    assert errors == ["Join a room before sending messages", "Message content is required"]
    assert alice.current_room_id == chat.default_room.id


@pytest.mark.asyncio
async def test_submit_to_unknown_connection(chat):
    assert chat.sessions.submit("ghost", "join", {}) is False


@pytest.mark.asyncio
async def test_typing_goes_to_others_only(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(alice)
    await chat.sessions.join(bob)
    transport.clear()

    await chat.sessions.typing(alice, True)

    assert transport.events("sid-b", "userTyping") == [
        {"userId": str(alice.user_id), "displayName": "alice", "isTyping": True}
    ]
    assert transport.events("sid-a", "userTyping") == []


@pytest.mark.asyncio
async def test_typing_flag_must_be_a_real_boolean(chat, transport):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(alice)
    await chat.sessions.join(bob)
    transport.clear()

    chat.sessions.submit("sid-a", "typing", {"isTyping": "false"})
    chat.sessions.submit("sid-a", "typing", {"isTyping": True})
    await settle(alice)

    assert [p["isTyping"] for p in transport.events("sid-b", "userTyping")] == [False, True]


@pytest.mark.asyncio
async def test_session_whose_seat_is_dropped_leaves_the_room(chat, transport, clock):
    alice = chat.sessions.open("sid-a", await make_user(chat, "alice"))
    bob = chat.sessions.open("sid-b", await make_user(chat, "bob"))
    await chat.sessions.join(alice)
    await chat.sessions.join(bob)
    transport.clear()
    await chat.store.set_presence(alice.user_id, None, False, clock())

    assert await chat.membership.reconcile(chat.default_room.id) == [alice.user_id]

    assert alice.current_room_id is None
    assert [p["message"] for p in transport.events("sid-a", "error")] == [
        "You are no longer in this room, join a room to continue"
    ]
    assert bob.current_room_id == chat.default_room.id
    assert transport.events("sid-b", "error") == []
    with pytest.raises(ValidationError):
        await chat.sessions.send(alice, "anyone?")

    await chat.sessions.join(alice)

    assert alice.current_room_id == chat.default_room.id
    assert chat.membership.room_of(alice.user_id) == chat.default_room.id
