"""Invitation lifecycle: issue, redeem, revoke, preview.

Redemption is serialized per code by a keyed lock, and the store counts the
use with a conditional UPDATE in the same transaction as the membership
insert. Either guard alone stops two redemptions of a single-use code from
both succeeding; the UPDATE also covers other workers sharing the database.

Expiry is evaluated against the clock at redemption time. The periodic sweep
in ``services.scheduler`` only tidies the stored status for listings.
"""
import asyncio
import logging
import secrets
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from models import Invitation, Room
from models.invitation import INVITE_KINDS
from services.errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    LimitReachedError,
    NotFoundError,
    ValidationError,
)
from services.identity import Identity
from services.store import ChatStore
from utils.locks import KeyedLock
from utils.time_utils import as_utc, clamp, hours_after, utc_now

logger = logging.getLogger(__name__)

MESSAGE_MAX_LENGTH = 200

_email_adapter = TypeAdapter(EmailStr)

RedeemListener = Callable[[uuid.UUID, uuid.UUID], Awaitable[None]]
Mailer = Callable[..., Awaitable[bool]]


@dataclass(frozen=True)
class RedeemResult:
    invitation: Invitation
    room: Room


class InvitationEngine:
    def __init__(
        self,
        store: ChatStore,
        *,
        min_hours: int = 1,
        max_hours: int = 168,
        max_uses: int = 100,
        clock: Callable[[], datetime] = utc_now,
        mailer: Mailer | None = None,
    ) -> None:
        self._store = store
        self._min_hours = min_hours
        self._max_hours = max_hours
        self._max_uses = max_uses
        self._clock = clock
        self._mailer = mailer
        self._locks = KeyedLock()
        self._listeners: list[RedeemListener] = []
        self._mail_tasks: set[asyncio.Task] = set()

    def subscribe(self, listener: RedeemListener) -> None:
        """Called with (user_id, room_id) after every successful redemption."""
        self._listeners.append(listener)

    # ── Issue ─────────────────────────────────────────────────────────────────

    async def issue(
        self,
        issuer: Identity,
        room_id: uuid.UUID,
        kind: str = "code",
        *,
        target_user_id: uuid.UUID | None = None,
        target_username: str | None = None,
        target_email: str | None = None,
        expires_in_hours: int = 24,
        usage_limit: int = 1,
        message: str = "",
    ) -> tuple[Invitation, Room]:
        if kind not in INVITE_KINDS:
            raise ValidationError(f"Invitation type must be one of: {', '.join(INVITE_KINDS)}")
        try:
            hours = clamp(int(expires_in_hours), self._min_hours, self._max_hours)
            uses = clamp(int(usage_limit), 1, self._max_uses)
        except (TypeError, ValueError):
            raise ValidationError("expiresInHours and usageLimit must be numbers")
        note = (message or "").strip()[:MESSAGE_MAX_LENGTH]

        room = await self._store.get_room(room_id)
        if not room or not room.active:
            raise NotFoundError("Chat room not found")
        if not await self._store.is_member(room_id, issuer.user_id):
            raise ForbiddenError("You must be a member of the room to invite others")

        now = self._clock()
        invited_user_id = None
        invited_email = None

        if kind == "direct":
            target = None
            if target_user_id is not None:
                target = await self._store.get_user(target_user_id)
            elif target_username:
                target = await self._store.get_user_by_name(target_username.strip())
            else:
                raise ValidationError("Direct invitations need a target user")
            if not target:
                raise NotFoundError("User not found")
            if await self._store.is_member(room_id, target.id):
                raise ConflictError("User is already a member of this room")
            if await self._store.has_pending_direct_invite(room_id, target.id, now):
                raise ConflictError("User already has a pending invitation to this room")
            invited_user_id = target.id
        elif kind == "email":
            try:
                invited_email = str(_email_adapter.validate_python((target_email or "").strip()))
            except PydanticValidationError:
                raise ValidationError("A valid email address is required")

        invitation = await self._store.insert_invitation(Invitation(
            code=secrets.token_hex(16),
            room_id=room_id,
            issued_by=issuer.user_id,
            invited_user_id=invited_user_id,
            invited_email=invited_email,
            kind=kind,
            status="pending",
            expires_at=hours_after(now, hours),
            usage_limit=uses,
            used_count=0,
            message=note,
            created_at=now,
        ))
        logger.info(
            f"Invitation {invitation.id} ({kind}, {uses} use(s), {hours}h) issued by {issuer.user_id} for room {room_id}"
        )

        if invited_email and self._mailer:
            task = asyncio.create_task(self._mailer(
                invited_email, issuer.display_name, room.name, invitation.code, note, invitation.expires_at,
            ))
            self._mail_tasks.add(task)
            task.add_done_callback(self._mail_done)
        return invitation, room

    def _mail_done(self, task: asyncio.Task) -> None:
        self._mail_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Invitation email task failed: {task.exception()}")

    # ── Redeem ────────────────────────────────────────────────────────────────

    async def redeem(self, code: str, identity: Identity) -> RedeemResult:
        async with self._locks.hold(code):
            invitation = await self._store.get_invitation_by_code(code)
            if not invitation:
                raise NotFoundError("Invitation not found")
            now = self._clock()
            self._check_redeemable(invitation, identity, now)

            room = await self._store.get_room(invitation.room_id)
            if not room or not room.active:
                raise NotFoundError("Chat room not found")
            if await self._store.is_member(room.id, identity.user_id):
                raise ConflictError("You are already a member of this room")

            updated = await self._store.consume_invitation(invitation.id, identity.user_id, room.id, now)
            if updated is None:
                # Another worker got there first; report what the row says now
                current = await self._store.get_invitation(invitation.id)
                if current:
                    self._check_redeemable(current, identity, now)
                raise LimitReachedError()

        logger.info(
            f"User {identity.user_id} redeemed invitation {updated.id} for room {room.id} "
            f"({updated.used_count}/{updated.usage_limit}, {updated.status})"
        )
        for listener in self._listeners:
            try:
                await listener(identity.user_id, room.id)
            except Exception as e:
                logger.error(f"Redeem listener failed for user {identity.user_id}: {e}")
        return RedeemResult(invitation=updated, room=room)

    def _check_redeemable(self, invitation: Invitation, identity: Identity, now: datetime) -> None:
        if invitation.status == "expired":
            raise ExpiredError("Invitation has been revoked or has expired")
        if invitation.status == "accepted":
            raise LimitReachedError()
        if as_utc(invitation.expires_at) <= now:
            raise ExpiredError()
        if invitation.invited_user_id is not None and invitation.invited_user_id != identity.user_id:
            raise ForbiddenError("This invitation is not for you")
        if invitation.used_count >= invitation.usage_limit:
            raise LimitReachedError()

    # ── Revoke / read ─────────────────────────────────────────────────────────

    async def revoke(self, invitation_id: uuid.UUID, requester: Identity) -> None:
        invitation = await self._store.get_invitation(invitation_id)
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.issued_by != requester.user_id:
            raise ForbiddenError("You can only revoke your own invitations")
        async with self._locks.hold(invitation.code):
            await self._store.set_invitation_status(invitation.id, "expired")
        logger.info(f"Invitation {invitation_id} revoked by {requester.user_id}")

    async def preview(self, code: str):
        """Public view of a redeemable code: (Invitation, Room, inviter)."""
        row = await self._store.invitation_preview(code, self._clock())
        if row is None:
            raise NotFoundError("Invalid or expired invitation")
        return row

    async def received(self, identity: Identity):
        return await self._store.received_invitations(identity.user_id, identity.email, self._clock())

    async def sent(self, identity: Identity, limit: int = 50):
        return await self._store.sent_invitations(identity.user_id, limit)

    async def expire_stale(self) -> int:
        return await self._store.expire_stale_invitations(self._clock())

    async def close(self) -> None:
        for task in list(self._mail_tasks):
            task.cancel()
        await asyncio.gather(*self._mail_tasks, return_exceptions=True)
        self._mail_tasks.clear()
