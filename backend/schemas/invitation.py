import uuid
from datetime import datetime
from pydantic import BaseModel, field_validator
from models.invitation import INVITE_KINDS


class InvitationCreate(BaseModel):
    room_id: uuid.UUID
    type: str = "code"
    invited_user_id: uuid.UUID | None = None
    invited_username: str | None = None
    invited_email: str | None = None
    message: str = ""
    expires_in_hours: int = 24
    usage_limit: int = 1

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in INVITE_KINDS:
            raise ValueError(f"type must be one of: {', '.join(INVITE_KINDS)}")
        return v


class InvitationResponse(BaseModel):
    id: uuid.UUID
    code: str
    kind: str
    room_id: uuid.UUID
    issued_by: uuid.UUID
    invited_user_id: uuid.UUID | None
    invited_email: str | None
    message: str
    status: str
    expires_at: datetime
    usage_limit: int
    used_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class IssuedInvitationResponse(InvitationResponse):
    invite_url: str


class ReceivedInvitationResponse(InvitationResponse):
    room_name: str
    room_description: str
    invited_by_name: str


class SentInvitationResponse(InvitationResponse):
    room_name: str


class InvitationPreviewResponse(BaseModel):
    room_id: uuid.UUID
    room_name: str
    room_description: str
    is_private: bool
    invited_by_name: str
    message: str
    expires_at: datetime
    usage_limit: int
    used_count: int


class AcceptInvitationResponse(BaseModel):
    message: str
    room_id: uuid.UUID
    room_name: str
    room_description: str
