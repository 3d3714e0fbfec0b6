"""Durable store: every read and write the chat engine makes against the database.

Each public coroutine opens its own session, is bounded by the configured
timeout and turns driver failures into ``PersistenceError`` so callers only
ever deal with the error taxonomy in ``services.errors``.
"""
import asyncio
import functools
import logging
import uuid
from datetime import datetime
from sqlalchemy import select, update, delete, func, case, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from models import User, Room, RoomMember, Message, Invitation
from services.errors import ConflictError, NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


def store_call(fn):
    """Bound a store coroutine by the store timeout and normalise its failures."""

    @functools.wraps(fn)
    async def wrapper(self: "ChatStore", *args, **kwargs):
        try:
            return await asyncio.wait_for(fn(self, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Store call {fn.__name__} timed out after {self.timeout}s")
            raise PersistenceError(f"{fn.__name__} timed out", retryable=True)
        except SQLAlchemyError as e:
            logger.error(f"Store call {fn.__name__} failed: {e}")
            raise PersistenceError(f"{fn.__name__}: {e}")

    return wrapper


class ChatStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout: float = 5.0,
        default_room: str = "general",
    ) -> None:
        self._session_factory = session_factory
        self.timeout = timeout
        self.default_room = default_room

    # ── Users ─────────────────────────────────────────────────────────────────

    @store_call
    async def get_user(self, user_id: uuid.UUID) -> User | None:
        async with self._session_factory() as db:
            return await db.get(User, user_id)

    @store_call
    async def get_user_by_name(self, display_name: str) -> User | None:
        async with self._session_factory() as db:
            result = await db.execute(select(User).where(User.display_name == display_name))
            return result.scalar_one_or_none()

    @store_call
    async def create_user(self, display_name: str, email: str | None = None) -> User:
        async with self._session_factory() as db:
            user = User(display_name=display_name, email=email)
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("A user with this name or email already exists")
            await db.refresh(user)
            return user

    @store_call
    async def set_presence(
        self, user_id: uuid.UUID, room_id: uuid.UUID | None, online: bool, now: datetime
    ) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(current_room_id=room_id, online=online, last_seen_at=now)
            )
            await db.commit()

    @store_call
    async def users_present_in(self, room_id: uuid.UUID) -> set[uuid.UUID]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User.id).where(User.current_room_id == room_id, User.online == True)  # noqa: E712
            )
            return set(result.scalars().all())

    # ── Rooms ─────────────────────────────────────────────────────────────────

    @store_call
    async def ensure_room(self, name: str, description: str = "") -> Room:
        """Get-or-create an ownerless public room (used for the default room)."""
        async with self._session_factory() as db:
            result = await db.execute(select(Room).where(Room.name_key == name.lower()))
            room = result.scalar_one_or_none()
            if room:
                if not room.active:
                    room.active = True
                    await db.commit()
                return room
            room = Room(name=name, name_key=name.lower(), description=description, is_private=False)
            db.add(room)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a startup race with another worker
                await db.rollback()
                result = await db.execute(select(Room).where(Room.name_key == name.lower()))
                return result.scalar_one()
            await db.refresh(room)
            logger.info(f"Created default room {name} ({room.id})")
            return room

    @store_call
    async def create_room(
        self, name: str, description: str, is_private: bool, owner_id: uuid.UUID, now: datetime
    ) -> Room:
        async with self._session_factory() as db:
            room = Room(
                name=name,
                name_key=name.lower(),
                description=description,
                is_private=is_private,
                owner_id=owner_id,
                last_activity_at=now,
                created_at=now,
            )
            db.add(room)
            try:
                await db.flush()
                db.add(RoomMember(room_id=room.id, user_id=owner_id, joined_at=now))
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("A room with this name already exists")
            await db.refresh(room)
            return room

    @store_call
    async def get_room(self, room_id: uuid.UUID) -> Room | None:
        async with self._session_factory() as db:
            return await db.get(Room, room_id)

    @store_call
    async def get_room_by_name(self, name: str) -> Room | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Room).where(Room.name_key == name.lower()))
            return result.scalar_one_or_none()

    @store_call
    async def list_rooms(self, viewer_id: uuid.UUID) -> list[tuple[Room, int, int]]:
        """Active rooms visible to the viewer with (member count, online member count)."""
        async with self._session_factory() as db:
            mine = select(RoomMember.room_id).where(RoomMember.user_id == viewer_id)
            result = await db.execute(
                select(
                    Room,
                    func.count(RoomMember.user_id),
                    func.coalesce(func.sum(case((User.online == True, 1), else_=0)), 0),  # noqa: E712
                )
                .outerjoin(RoomMember, RoomMember.room_id == Room.id)
                .outerjoin(User, User.id == RoomMember.user_id)
                .where(Room.active == True, or_(Room.is_private == False, Room.id.in_(mine)))  # noqa: E712
                .group_by(Room.id)
                .order_by(Room.created_at.desc())
            )
            return [(room, int(members), int(online)) for room, members, online in result.all()]

    @store_call
    async def room_members(self, room_id: uuid.UUID) -> list[tuple[User, datetime]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(User, RoomMember.joined_at)
                .join(RoomMember, RoomMember.user_id == User.id)
                .where(RoomMember.room_id == room_id)
                .order_by(RoomMember.joined_at, User.display_name)
            )
            return [(user, joined_at) for user, joined_at in result.all()]

    @store_call
    async def is_member(self, room_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        async with self._session_factory() as db:
            return await db.get(RoomMember, (room_id, user_id)) is not None

    @store_call
    async def add_room_member(self, room_id: uuid.UUID, user_id: uuid.UUID, now: datetime) -> bool:
        """Insert a persistent membership row; False when it already existed."""
        async with self._session_factory() as db:
            db.add(RoomMember(room_id=room_id, user_id=user_id, joined_at=now))
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                return False
            await db.execute(update(Room).where(Room.id == room_id).values(last_activity_at=now))
            await db.commit()
            return True

    @store_call
    async def remove_room_member(self, room_id: uuid.UUID, user_id: uuid.UUID, now: datetime) -> Room:
        """Delete a persistent membership; deactivates the room once it is empty."""
        async with self._session_factory() as db:
            room = await db.get(Room, room_id)
            if not room or not room.active:
                raise NotFoundError("Chat room not found")
            result = await db.execute(
                delete(RoomMember).where(RoomMember.room_id == room_id, RoomMember.user_id == user_id)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise ConflictError("You are not a member of this room")
            remaining = await db.scalar(
                select(func.count(RoomMember.user_id)).where(RoomMember.room_id == room_id)
            )
            room.last_activity_at = now
            if remaining == 0 and room.name_key != self.default_room.lower():
                room.active = False
                logger.info(f"Room {room.name} ({room_id}) deactivated, no members left")
            await db.commit()
            return room

    # ── Messages ──────────────────────────────────────────────────────────────

    @store_call
    async def insert_message(
        self, room_id: uuid.UUID, user_id: uuid.UUID, display_name: str, text: str, now: datetime
    ) -> Message:
        async with self._session_factory() as db:
            message = Message(
                room_id=room_id, user_id=user_id, display_name=display_name, text=text, created_at=now
            )
            db.add(message)
            await db.execute(update(Room).where(Room.id == room_id).values(last_activity_at=now))
            await db.commit()
            await db.refresh(message)
            return message

    @store_call
    async def recent_messages(self, room_id: uuid.UUID, limit: int) -> list[Message]:
        """Last ``limit`` messages of a room, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Message)
                .where(Message.room_id == room_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    # ── Invitations ───────────────────────────────────────────────────────────

    @store_call
    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        async with self._session_factory() as db:
            db.add(invitation)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("Could not allocate an invitation code, try again")
            await db.refresh(invitation)
            return invitation

    @store_call
    async def get_invitation(self, invitation_id: uuid.UUID) -> Invitation | None:
        async with self._session_factory() as db:
            return await db.get(Invitation, invitation_id)

    @store_call
    async def get_invitation_by_code(self, code: str) -> Invitation | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Invitation).where(Invitation.code == code))
            return result.scalar_one_or_none()

    @store_call
    async def has_pending_direct_invite(
        self, room_id: uuid.UUID, user_id: uuid.UUID, now: datetime
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Invitation.id).where(
                    Invitation.room_id == room_id,
                    Invitation.invited_user_id == user_id,
                    Invitation.status == "pending",
                    Invitation.expires_at > now,
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    @store_call
    async def consume_invitation(
        self, invitation_id: uuid.UUID, user_id: uuid.UUID, room_id: uuid.UUID, now: datetime
    ) -> Invitation | None:
        """Count one use and add the member in a single transaction.

        The usage increment is a conditional UPDATE, so it only lands while the
        invitation is still pending, unexpired and under its limit. Returns
        None when that condition no longer holds; raises ConflictError when the
        user already belongs to the room. Neither case leaves a partial write.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation_id,
                    Invitation.status == "pending",
                    Invitation.used_count < Invitation.usage_limit,
                    Invitation.expires_at > now,
                )
                .values(
                    used_count=Invitation.used_count + 1,
                    status=case(
                        (Invitation.used_count + 1 >= Invitation.usage_limit, "accepted"),
                        else_=Invitation.status,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None
            db.add(RoomMember(room_id=room_id, user_id=user_id, joined_at=now))
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("You are already a member of this room")
            await db.execute(
                update(Room).where(Room.id == room_id).values(last_activity_at=now)
            )
            await db.commit()
            return await db.get(Invitation, invitation_id, populate_existing=True)

    @store_call
    async def set_invitation_status(self, invitation_id: uuid.UUID, status: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Invitation).where(Invitation.id == invitation_id).values(status=status)
            )
            await db.commit()

    @store_call
    async def invitation_preview(self, code: str, now: datetime) -> tuple[Invitation, Room, User] | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Invitation, Room, User)
                .join(Room, Room.id == Invitation.room_id)
                .join(User, User.id == Invitation.issued_by)
                .where(
                    Invitation.code == code,
                    Invitation.status == "pending",
                    Invitation.expires_at > now,
                    Invitation.used_count < Invitation.usage_limit,
                    Room.active == True,  # noqa: E712
                )
            )
            row = result.first()
            return tuple(row) if row else None

    @store_call
    async def received_invitations(
        self, user_id: uuid.UUID, email: str | None, now: datetime
    ) -> list[tuple[Invitation, Room, User]]:
        async with self._session_factory() as db:
            addressed = [Invitation.invited_user_id == user_id]
            if email:
                addressed.append(func.lower(Invitation.invited_email) == email.lower())
            result = await db.execute(
                select(Invitation, Room, User)
                .join(Room, Room.id == Invitation.room_id)
                .join(User, User.id == Invitation.issued_by)
                .where(
                    or_(*addressed),
                    Invitation.status == "pending",
                    Invitation.expires_at > now,
                )
                .order_by(Invitation.created_at.desc())
            )
            return [tuple(row) for row in result.all()]

    @store_call
    async def sent_invitations(self, user_id: uuid.UUID, limit: int = 50) -> list[tuple[Invitation, Room]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Invitation, Room)
                .join(Room, Room.id == Invitation.room_id)
                .where(Invitation.issued_by == user_id)
                .order_by(Invitation.created_at.desc())
                .limit(limit)
            )
            return [tuple(row) for row in result.all()]

    @store_call
    async def expire_stale_invitations(self, now: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                update(Invitation)
                .where(Invitation.status == "pending", Invitation.expires_at <= now)
                .values(status="expired")
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    # ── Admin ─────────────────────────────────────────────────────────────────

    @store_call
    async def counts(self) -> dict[str, int]:
        async with self._session_factory() as db:
            return {
                "users": (await db.execute(select(func.count(User.id)))).scalar() or 0,
                "online_users": (
                    await db.execute(select(func.count(User.id)).where(User.online == True))  # noqa: E712
                ).scalar() or 0,
                "active_rooms": (
                    await db.execute(select(func.count(Room.id)).where(Room.active == True))  # noqa: E712
                ).scalar() or 0,
                "messages": (await db.execute(select(func.count(Message.id)))).scalar() or 0,
                "pending_invitations": (
                    await db.execute(select(func.count(Invitation.id)).where(Invitation.status == "pending"))
                ).scalar() or 0,
            }
