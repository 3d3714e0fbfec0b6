"""Presence and typing fan-out. Nothing here is persisted."""
import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any
from schemas.chat import MemberOut, PresenceEvent, TypingEvent
from services.errors import TransportError
from services.membership import MembershipChange, RoomMembershipTable
from services.store import ChatStore
from services.transport import Transport
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class PresenceNotifier:
    def __init__(
        self,
        store: ChatStore,
        membership: RoomMembershipTable,
        transport: Transport,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._membership = membership
        self._transport = transport
        self._clock = clock

    async def handle_change(self, change: MembershipChange) -> None:
        """Membership table listener: announce the change, then refresh the member list."""
        if change.kind == "joined":
            await self.notify_joined(change.room_id, change.user_id, change.display_name, exclude=change.connection_id)
        else:
            await self.notify_left(change.room_id, change.user_id, change.display_name, exclude=change.connection_id)
        await self.notify_member_list(change.room_id, exclude=change.connection_id)

    async def notify_joined(
        self, room_id: uuid.UUID, user_id: uuid.UUID, display_name: str, *, exclude: str | None = None
    ) -> int:
        event = PresenceEvent(
            userId=user_id,
            displayName=display_name,
            roomId=room_id,
            message=f"{display_name} joined the chat",
            timestamp=self._clock(),
        )
        return await self.fan_out(room_id, "userJoined", event.model_dump(mode="json"), exclude=exclude)

    async def notify_left(
        self, room_id: uuid.UUID, user_id: uuid.UUID, display_name: str, *, exclude: str | None = None
    ) -> int:
        event = PresenceEvent(
            userId=user_id,
            displayName=display_name,
            roomId=room_id,
            message=f"{display_name} left the chat",
            timestamp=self._clock(),
        )
        return await self.fan_out(room_id, "userLeft", event.model_dump(mode="json"), exclude=exclude)

    async def notify_typing(
        self,
        room_id: uuid.UUID,
        user_id: uuid.UUID,
        display_name: str,
        is_typing: bool,
        *,
        exclude: str | None = None,
    ) -> int:
        event = TypingEvent(userId=user_id, displayName=display_name, isTyping=is_typing)
        return await self.fan_out(room_id, "userTyping", event.model_dump(mode="json"), exclude=exclude)

    async def notify_member_list(self, room_id: uuid.UUID, *, exclude: str | None = None) -> int:
        if not self._membership.connections(room_id, exclude=exclude):
            return 0
        members = await self.member_list(room_id)
        payload = [m.model_dump(mode="json") for m in members]
        return await self.fan_out(room_id, "roomUserList", payload, exclude=exclude)

    async def member_list(self, room_id: uuid.UUID) -> list[MemberOut]:
        """Persistent members plus anyone live in the room, with online flags."""
        live = {p.user_id: p for p in self._membership.list_presence(room_id)}
        members = []
        seen = set()
        for user, _joined_at in await self._store.room_members(room_id):
            seen.add(user.id)
            members.append(MemberOut(
                userId=user.id,
                displayName=user.display_name,
                online=self._membership.room_of(user.id) is not None,
                inRoom=user.id in live,
                lastSeenAt=user.last_seen_at,
            ))
        for user_id, seat in live.items():
            if user_id not in seen:
                members.append(MemberOut(
                    userId=user_id, displayName=seat.display_name, online=True, inRoom=True,
                ))
        return members

    async def fan_out(
        self, room_id: uuid.UUID, event: str, payload: Any, *, exclude: str | None = None
    ) -> int:
        """Deliver one event to every live connection in a room concurrently.

        Returns how many peers received it. A failing peer is logged and
        skipped; it never fails the caller.
        """
        connections = self._membership.connections(room_id, exclude=exclude)
        if not connections:
            return 0
        results = await asyncio.gather(
            *[self.send_to(conn, event, payload) for conn in connections],
            return_exceptions=True,
        )
        return sum(1 for ok in results if ok is True)

    async def send_to(self, connection_id: str, event: str, payload: Any) -> bool:
        try:
            await self._transport.send(connection_id, event, payload)
            return True
        except Exception as e:
            err = TransportError(connection_id, str(e))
            logger.warning(f"Failed to deliver {event} to {err.connection_id}: {err.detail}")
            return False
