"""HTTP surface tests: rooms, invitations, the public preview and the admin routes."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import api.admin as admin_api
import main
from conftest import ADMIN_KEY, TEST_SECRET, make_settings, make_user
from services.identity import create_access_token


@pytest_asyncio.fixture
async def client(chat, monkeypatch):
    monkeypatch.setattr(admin_api, "settings", make_settings())
    main.app.state.chat = chat
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as c:
        yield c


async def _auth(chat, name):
    identity = await make_user(chat, name, f"{name}@example.com")
    token = create_access_token(str(identity.user_id), TEST_SECRET)
    return identity, {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "service": "realtime-rooms"}


@pytest.mark.asyncio
async def test_requests_without_token_are_unauthorized(client):
    response = await client.get("/rooms")

    assert response.status_code == 401
    assert response.json() == {"error": "Authentication error: No token provided"}


@pytest.mark.asyncio
async def test_cookie_token_is_accepted(chat, client):
    identity = await make_user(chat, "alice")
    client.cookies.set("chat_token", create_access_token(str(identity.user_id), TEST_SECRET))

    response = await client.get("/rooms")

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_create_and_list_rooms(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")

    created = await client.post(
        "/rooms", json={"name": "design", "description": "pixels"}, headers=alice_headers
    )
    secret = await client.post(
        "/rooms", json={"name": "secret", "is_private": True}, headers=alice_headers
    )

    assert created.status_code == 201
    assert created.json()["member_count"] == 1
    assert secret.status_code == 201
    alice_rooms = {r["name"] for r in (await client.get("/rooms", headers=alice_headers)).json()}
    bob_rooms = {r["name"] for r in (await client.get("/rooms", headers=bob_headers)).json()}
    assert alice_rooms == {"general", "design", "secret"}
    assert bob_rooms == {"general", "design"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name, message",
    [
        ("ab", "Room name must be between 3 and 30 characters"),
        ("no/slashes", "Room name can only contain letters, numbers, spaces, hyphens, and underscores"),
        ("   ", "Room name is required"),
    ],
)
async def test_create_room_validation(chat, client, name, message):
    _alice, headers = await _auth(chat, "alice")

    response = await client.post("/rooms", json={"name": name}, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"error": message}


@pytest.mark.asyncio
async def test_duplicate_room_name_conflicts(chat, client):
    _alice, headers = await _auth(chat, "alice")
    await client.post("/rooms", json={"name": "design"}, headers=headers)

    response = await client.post("/rooms", json={"name": "DESIGN"}, headers=headers)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_private_room_detail_is_hidden(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    room = (await client.post("/rooms", json={"name": "secret", "is_private": True}, headers=alice_headers)).json()

    own = await client.get(f"/rooms/{room['id']}", headers=alice_headers)
    other = await client.get(f"/rooms/{room['id']}", headers=bob_headers)
    join = await client.post(f"/rooms/{room['id']}/join", headers=bob_headers)

    assert own.status_code == 200
    assert [m["display_name"] for m in own.json()["members"]] == ["alice"]
    assert other.status_code == 404
    assert join.status_code == 404


@pytest.mark.asyncio
async def test_join_leave_and_deactivate(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    room = (await client.post("/rooms", json={"name": "design"}, headers=alice_headers)).json()

    assert (await client.post(f"/rooms/{room['id']}/join", headers=bob_headers)).status_code == 200
    assert (await client.post(f"/rooms/{room['id']}/join", headers=bob_headers)).status_code == 409

    assert (await client.post(f"/rooms/{room['id']}/leave", headers=bob_headers)).status_code == 200
    again = await client.post(f"/rooms/{room['id']}/leave", headers=bob_headers)
    assert again.status_code == 409
    assert again.json() == {"error": "You are not a member of this room"}

    assert (await client.post(f"/rooms/{room['id']}/leave", headers=alice_headers)).status_code == 200
    gone = await client.get(f"/rooms/{room['id']}", headers=alice_headers)
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_messages_endpoint_returns_history(chat, client):
    alice, headers = await _auth(chat, "alice")
    session = chat.sessions.open("sid-a", alice)
    await chat.sessions.join(session)
    await chat.sessions.send(session, "hello")

    response = await client.get(f"/rooms/{chat.default_room.id}/messages?limit=10", headers=headers)
    too_many = await client.get(f"/rooms/{chat.default_room.id}/messages?limit=500", headers=headers)

    assert [m["text"] for m in response.json()] == ["hello"]
    assert too_many.status_code == 422


@pytest.mark.asyncio
async def test_room_rate_limit_is_enforced(chat, client, redis):
    _alice, headers = await _auth(chat, "alice")
    redis.incr.return_value = 21

    response = await client.post("/rooms", json={"name": "design"}, headers=headers)

    assert response.status_code == 429
    assert response.json() == {"error": "Too many room operations, please try again later."}


# ── Invitations ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_invitation_issue_preview_and_accept(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    room = (await client.post("/rooms", json={"name": "design", "is_private": True}, headers=alice_headers)).json()

    issued = await client.post(
        "/invitations",
        json={"room_id": room["id"], "type": "code", "usage_limit": 1, "message": "welcome"},
        headers=alice_headers,
    )
    assert issued.status_code == 201
    body = issued.json()
    assert body["invite_url"].endswith(f"/invite/{body['code']}")

    preview = await client.get(f"/invite/{body['code']}")
    assert preview.status_code == 200
    assert preview.json()["room_name"] == "design"
    assert preview.json()["invited_by_name"] == "alice"

    accepted = await client.post(f"/invitations/{body['code']}/accept", headers=bob_headers)
    assert accepted.status_code == 200
    assert accepted.json()["room_id"] == room["id"]
    assert (await client.get(f"/rooms/{room['id']}", headers=bob_headers)).status_code == 200


@pytest.mark.asyncio
async def test_accept_errors_map_to_status_codes(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    _carol, carol_headers = await _auth(chat, "carol")
    room = (await client.post("/rooms", json={"name": "design"}, headers=alice_headers)).json()
    code = (await client.post(
        "/invitations", json={"room_id": room["id"], "usage_limit": 1}, headers=alice_headers
    )).json()["code"]

    unknown = await client.post("/invitations/" + "0" * 32 + "/accept", headers=bob_headers)
    member = await client.post(f"/invitations/{code}/accept", headers=alice_headers)
    first = await client.post(f"/invitations/{code}/accept", headers=bob_headers)
    used_up = await client.post(f"/invitations/{code}/accept", headers=carol_headers)

    assert unknown.status_code == 404
    assert member.status_code == 409
    assert first.status_code == 200
    assert used_up.status_code == 410
    assert used_up.json() == {"error": "Invitation has reached its usage limit"}


@pytest.mark.asyncio
async def test_revoke_only_by_issuer(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    room = (await client.post("/rooms", json={"name": "design"}, headers=alice_headers)).json()
    issued = (await client.post("/invitations", json={"room_id": room["id"]}, headers=alice_headers)).json()

    denied = await client.delete(f"/invitations/{issued['id']}", headers=bob_headers)
    revoked = await client.delete(f"/invitations/{issued['id']}", headers=alice_headers)
    preview = await client.get(f"/invitations/code/{issued['code']}")

    assert denied.status_code == 403
    assert revoked.json() == {"message": "Invitation revoked successfully"}
    assert preview.status_code == 404


@pytest.mark.asyncio
async def test_received_and_sent(chat, client):
    _alice, alice_headers = await _auth(chat, "alice")
    _bob, bob_headers = await _auth(chat, "bob")
    room = (await client.post("/rooms", json={"name": "design"}, headers=alice_headers)).json()
    await client.post(
        "/invitations",
        json={"room_id": room["id"], "type": "direct", "invited_username": "bob"},
        headers=alice_headers,
    )

    received = (await client.get("/invitations/received", headers=bob_headers)).json()
    sent = (await client.get("/invitations/sent", headers=alice_headers)).json()

    assert [(r["room_name"], r["invited_by_name"]) for r in received] == [("design", "alice")]
    assert [s["room_name"] for s in sent] == ["design"]


@pytest.mark.asyncio
async def test_unknown_invitation_type_is_rejected(chat, client):
    _alice, headers = await _auth(chat, "alice")

    response = await client.post(
        "/invitations", json={"room_id": str(chat.default_room.id), "type": "fax"}, headers=headers
    )

    assert response.status_code == 422


# ── Admin ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_requires_key(client):
    wrong = await client.get("/admin/overview", headers={"X-Admin-Key": "nope"})
    missing = await client.get("/admin/overview")

    assert wrong.status_code == 403
    assert missing.status_code in (401, 403)


@pytest.mark.asyncio
async def test_admin_overview_and_live_rooms(chat, client):
    alice = await make_user(chat, "alice")
    session = chat.sessions.open("sid-a", alice)
    await chat.sessions.join(session)
    headers = {"X-Admin-Key": ADMIN_KEY}

    overview = (await client.get("/admin/overview", headers=headers)).json()
    live = (await client.get("/admin/rooms/live", headers=headers)).json()

    assert overview["connections"] == 1
    assert overview["seated_users"] == 1
    assert overview["dispatchers"] == 0
    assert live == [{"room_id": str(chat.default_room.id), "online": 1}]


@pytest.mark.asyncio
async def test_admin_expire_job(chat, client, clock):
    alice = await make_user(chat, "alice")
    await chat.sessions.join(chat.sessions.open("sid-a", alice))
    await chat.invitations.issue(alice, chat.default_room.id, expires_in_hours=1)
    clock.advance(hours=2)

    response = await client.post("/admin/jobs/expire-invitations", headers={"X-Admin-Key": ADMIN_KEY})

    assert response.json() == {"expired": 1}
