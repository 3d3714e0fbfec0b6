import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime
from models import Message, Room
from schemas.chat import MemberOut
from services.errors import ConflictError, NotFoundError, ValidationError
from services.identity import Identity
from services.membership import RoomMembershipTable
from services.presence import PresenceNotifier
from services.sessions import SessionManager
from services.store import ChatStore
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z0-9 _-]+$")
NAME_MIN, NAME_MAX = 3, 30
DESCRIPTION_MAX = 200


def validate_room_name(name) -> str:
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError("Room name is required")
    name = name.strip()
    if not (NAME_MIN <= len(name) <= NAME_MAX):
        raise ValidationError(f"Room name must be between {NAME_MIN} and {NAME_MAX} characters")
    if not NAME_RE.match(name):
        raise ValidationError("Room name can only contain letters, numbers, spaces, hyphens, and underscores")
    return name


def validate_description(description) -> str:
    description = (description or "").strip()
    if len(description) > DESCRIPTION_MAX:
        raise ValidationError(f"Room description must be at most {DESCRIPTION_MAX} characters")
    return description


class RoomService:
    """Room CRUD for the REST surface, with private rooms visible to members only."""

    def __init__(
        self,
        store: ChatStore,
        membership: RoomMembershipTable,
        notifier: PresenceNotifier,
        sessions: SessionManager,
        *,
        default_room: str = "general",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._membership = membership
        self._notifier = notifier
        self._sessions = sessions
        self._default_room = default_room
        self._clock = clock

    def online_count(self, room_id: uuid.UUID) -> int:
        return self._membership.online_count(room_id)

    async def create(
        self, owner: Identity, name: str, description: str = "", is_private: bool = False
    ) -> Room:
        name = validate_room_name(name)
        description = validate_description(description)
        room = await self._store.create_room(name, description, bool(is_private), owner.user_id, self._clock())
        logger.info(f"Room {room.name} ({room.id}, private={room.is_private}) created by {owner.user_id}")
        return room

    async def list_visible(self, viewer: Identity) -> list[tuple[Room, int]]:
        """Visible rooms with their persistent member counts."""
        rows = await self._store.list_rooms(viewer.user_id)
        return [(room, members) for room, members, _online in rows]

    async def get(self, viewer: Identity, room_id: uuid.UUID) -> Room:
        room = await self._store.get_room(room_id)
        if not room or not room.active:
            raise NotFoundError("Chat room not found")
        if room.is_private and not await self._store.is_member(room_id, viewer.user_id):
            raise NotFoundError("Chat room not found")
        return room

    async def members(self, viewer: Identity, room_id: uuid.UUID) -> list[MemberOut]:
        await self.get(viewer, room_id)
        return await self._notifier.member_list(room_id)

    async def messages(self, viewer: Identity, room_id: uuid.UUID, limit: int) -> list[Message]:
        await self.get(viewer, room_id)
        return await self._store.recent_messages(room_id, limit)

    async def join(self, user: Identity, room_id: uuid.UUID) -> Room:
        # Non-members never get past get() for a private room
        room = await self.get(user, room_id)
        if not await self._store.add_room_member(room_id, user.user_id, self._clock()):
            raise ConflictError("You are already a member of this room")
        logger.info(f"User {user.user_id} joined room {room.name}")
        return room

    async def leave(self, user: Identity, room_id: uuid.UUID) -> Room:
        room = await self._store.remove_room_member(room_id, user.user_id, self._clock())
        logger.info(f"User {user.user_id} left room {room.name}")
        if room.name_key != self._default_room.lower():
            await self._sessions.on_left(user.user_id, room_id)
        return room
