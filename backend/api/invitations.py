"""Invitations API: issue, list, accept, revoke, and the public code preview."""
import uuid
from fastapi import APIRouter, Depends
from config import get_settings
from schemas.invitation import (
    InvitationCreate, InvitationResponse, IssuedInvitationResponse, ReceivedInvitationResponse,
    SentInvitationResponse, InvitationPreviewResponse, AcceptInvitationResponse,
)
from services.chat import ChatService
from services.identity import Identity
from services.notifications import invite_url
from api.deps import get_chat, get_current_identity

router = APIRouter(prefix="/invitations", tags=["invitations"])
public_router = APIRouter(tags=["invitations"])
settings = get_settings()


async def _preview(code: str, chat: ChatService) -> InvitationPreviewResponse:
    invitation, room, inviter = await chat.invitations.preview(code)
    return InvitationPreviewResponse(
        room_id=room.id,
        room_name=room.name,
        room_description=room.description,
        is_private=room.is_private,
        invited_by_name=inviter.display_name,
        message=invitation.message,
        expires_at=invitation.expires_at,
        usage_limit=invitation.usage_limit,
        used_count=invitation.used_count,
    )


# ── Issue ─────────────────────────────────────────────────────────────────────

@router.post("", response_model=IssuedInvitationResponse, status_code=201)
async def create_invitation(
    body: InvitationCreate,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    await chat.rate_limiter.hit(
        "invites", identity.user_id, settings.INVITES_PER_WINDOW,
        "Too many invitations sent, please try again later.",
    )
    invitation, _room = await chat.invitations.issue(
        identity,
        body.room_id,
        body.type,
        target_user_id=body.invited_user_id,
        target_username=body.invited_username,
        target_email=body.invited_email,
        expires_in_hours=body.expires_in_hours,
        usage_limit=body.usage_limit,
        message=body.message,
    )
    return IssuedInvitationResponse(
        **InvitationResponse.model_validate(invitation).model_dump(),
        invite_url=invite_url(invitation.code),
    )


# ── Lists ─────────────────────────────────────────────────────────────────────

@router.get("/received", response_model=list[ReceivedInvitationResponse])
async def received_invitations(
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    return [
        ReceivedInvitationResponse(
            **InvitationResponse.model_validate(inv).model_dump(),
            room_name=room.name,
            room_description=room.description,
            invited_by_name=inviter.display_name,
        )
        for inv, room, inviter in await chat.invitations.received(identity)
    ]


@router.get("/sent", response_model=list[SentInvitationResponse])
async def sent_invitations(
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    return [
        SentInvitationResponse(**InvitationResponse.model_validate(inv).model_dump(), room_name=room.name)
        for inv, room in await chat.invitations.sent(identity)
    ]


@router.get("/code/{code}", response_model=InvitationPreviewResponse)
async def invitation_by_code(code: str, chat: ChatService = Depends(get_chat)):
    return await _preview(code, chat)


# ── Accept / revoke ───────────────────────────────────────────────────────────

@router.post("/{code}/accept", response_model=AcceptInvitationResponse)
async def accept_invitation(
    code: str,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    result = await chat.invitations.redeem(code, identity)
    return AcceptInvitationResponse(
        message=f"Successfully joined {result.room.name}",
        room_id=result.room.id,
        room_name=result.room.name,
        room_description=result.room.description,
    )


@router.delete("/{invitation_id}")
async def revoke_invitation(
    invitation_id: uuid.UUID,
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat),
):
    await chat.invitations.revoke(invitation_id, identity)
    return {"message": "Invitation revoked successfully"}


# ── Public ────────────────────────────────────────────────────────────────────

@public_router.get("/invite/{code}", response_model=InvitationPreviewResponse)
async def public_invite_preview(code: str, chat: ChatService = Depends(get_chat)):
    """Landing-page lookup for shared invite links; no login needed."""
    return await _preview(code, chat)
