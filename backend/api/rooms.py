import uuid
from fastapi import APIRouter, Depends, Query
from config import get_settings
from schemas.chat import MemberOut
from schemas.room import (
    RoomCreate, RoomResponse, RoomDetailResponse, MemberResponse, MessageResponse, RoomActionResponse,
)
from services.chat import ChatService
from services.identity import Identity
from api.deps import get_chat, get_current_identity

router = APIRouter(prefix="/rooms", tags=["rooms"])
settings = get_settings()


def _room_response(room, chat: ChatService, member_count: int = 0) -> RoomResponse:
    response = RoomResponse.model_validate(room)
    response.member_count = member_count
    response.online_count = chat.rooms.online_count(room.id)
    return response


def _member_response(m: MemberOut) -> MemberResponse:
    return MemberResponse(
        user_id=m.userId,
        display_name=m.displayName,
        online=m.online,
        in_room=m.inRoom,
        last_seen_at=m.lastSeenAt,
    )


@router.get("", response_model=list[RoomResponse])
async def list_rooms(
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    rows = await chat.rooms.list_visible(identity)
    return [_room_response(room, chat, members) for room, members in rows]


@router.post("", response_model=RoomResponse, status_code=201)
async def create_room(
    body: RoomCreate,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    await chat.rate_limiter.hit(
        "rooms", identity.user_id, settings.ROOMS_PER_WINDOW,
        "Too many room operations, please try again later.",
    )
    room = await chat.rooms.create(identity, body.name, body.description, body.is_private)
    return _room_response(room, chat, member_count=1)


@router.get("/{room_id}", response_model=RoomDetailResponse)
async def get_room(
    room_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    room = await chat.rooms.get(identity, room_id)
    members = [_member_response(m) for m in await chat.rooms.members(identity, room_id)]
    base = _room_response(room, chat, member_count=len(members))
    return RoomDetailResponse(**base.model_dump(), members=members)


@router.get("/{room_id}/members", response_model=list[MemberResponse])
async def get_members(
    room_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    return [_member_response(m) for m in await chat.rooms.members(identity, room_id)]


@router.get("/{room_id}/messages", response_model=list[MessageResponse])
async def get_messages(
    room_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    messages = await chat.rooms.messages(identity, room_id, limit)
    return [MessageResponse.model_validate(m) for m in messages]


@router.post("/{room_id}/join", response_model=RoomActionResponse)
async def join_room(
    room_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    await chat.rate_limiter.hit(
        "rooms", identity.user_id, settings.ROOMS_PER_WINDOW,
        "Too many room operations, please try again later.",
    )
    room = await chat.rooms.join(identity, room_id)
    return RoomActionResponse(message=f"Successfully joined {room.name}", room_id=room.id)


@router.post("/{room_id}/leave", response_model=RoomActionResponse)
async def leave_room(
    room_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    await chat.rate_limiter.hit(
        "rooms", identity.user_id, settings.ROOMS_PER_WINDOW,
        "Too many room operations, please try again later.",
    )
    room = await chat.rooms.leave(identity, room_id)
    return RoomActionResponse(message=f"Successfully left {room.name}", room_id=room.id)
