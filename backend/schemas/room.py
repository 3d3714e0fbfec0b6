import uuid
from datetime import datetime
from pydantic import BaseModel


class RoomCreate(BaseModel):
    name: str
    description: str = ""
    is_private: bool = False


class RoomResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str
    is_private: bool
    owner_id: uuid.UUID | None
    last_activity_at: datetime | None
    created_at: datetime | None
    member_count: int = 0
    online_count: int = 0

    class Config:
        from_attributes = True


class MemberResponse(BaseModel):
    user_id: uuid.UUID
    display_name: str
    online: bool
    in_room: bool
    last_seen_at: datetime | None = None


class RoomDetailResponse(RoomResponse):
    members: list[MemberResponse]


class MessageResponse(BaseModel):
    id: int
    room_id: uuid.UUID
    user_id: uuid.UUID
    display_name: str
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class RoomActionResponse(BaseModel):
    message: str
    room_id: uuid.UUID
