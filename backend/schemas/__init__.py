from schemas.room import RoomCreate, RoomResponse, RoomDetailResponse, MemberResponse, MessageResponse, RoomActionResponse
from schemas.invitation import (
    InvitationCreate, InvitationResponse, IssuedInvitationResponse, ReceivedInvitationResponse,
    SentInvitationResponse, InvitationPreviewResponse, AcceptInvitationResponse,
)
from schemas.chat import MessageOut, MemberOut, RoomSummary, RoomSnapshot, PresenceEvent, TypingEvent

__all__ = [
    "RoomCreate", "RoomResponse", "RoomDetailResponse", "MemberResponse", "MessageResponse", "RoomActionResponse",
    "InvitationCreate", "InvitationResponse", "IssuedInvitationResponse", "ReceivedInvitationResponse",
    "SentInvitationResponse", "InvitationPreviewResponse", "AcceptInvitationResponse",
    "MessageOut", "MemberOut", "RoomSummary", "RoomSnapshot", "PresenceEvent", "TypingEvent",
]
