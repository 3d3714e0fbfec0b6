"""Payloads pushed over the socket. Field names follow the client's camelCase."""
import uuid
from datetime import datetime
from pydantic import BaseModel


class MessageOut(BaseModel):
    id: int
    roomId: uuid.UUID
    userId: uuid.UUID
    displayName: str
    text: str
    createdAt: datetime

    @classmethod
    def from_message(cls, m) -> "MessageOut":
        return cls(
            id=m.id,
            roomId=m.room_id,
            userId=m.user_id,
            displayName=m.display_name,
            text=m.text,
            createdAt=m.created_at,
        )


class MemberOut(BaseModel):
    userId: uuid.UUID
    displayName: str
    online: bool       # has a live connection anywhere
    inRoom: bool       # live connection is sitting in this room
    lastSeenAt: datetime | None = None


class RoomSummary(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    isPrivate: bool
    ownerId: uuid.UUID | None
    onlineCount: int = 0
    lastActivityAt: datetime | None = None

    @classmethod
    def from_room(cls, room, online_count: int = 0) -> "RoomSummary":
        return cls(
            id=room.id,
            name=room.name,
            description=room.description,
            isPrivate=room.is_private,
            ownerId=room.owner_id,
            onlineCount=online_count,
            lastActivityAt=room.last_activity_at,
        )


class RoomSnapshot(BaseModel):
    room: RoomSummary
    messages: list[MessageOut]
    members: list[MemberOut]


class PresenceEvent(BaseModel):
    userId: uuid.UUID
    displayName: str
    roomId: uuid.UUID
    message: str
    timestamp: datetime


class TypingEvent(BaseModel):
    userId: uuid.UUID
    displayName: str
    isTyping: bool
