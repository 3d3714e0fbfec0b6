"""Room membership table: which live connection sits in which room.

The table is the source of truth for presence fan-out. Every user appears in
at most one room. Mutations take the per-room locks only for the in-memory
change; the presence write to the store happens afterwards, and a failed
write rolls the in-memory change back before the error reaches the caller.

Thread Safety:
    Designed for a single asyncio event loop, like the rest of the engine.
"""
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from services.errors import ChatError
from services.store import ChatStore
from utils.locks import KeyedLock
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Presence:
    """One user's seat in a room. Compared by identity so rollbacks only undo their own write."""
    user_id: uuid.UUID
    connection_id: str
    display_name: str
    joined_at: datetime
    committed: bool = False
    # Commit sequence number; 0 until the presence write lands
    generation: int = 0


@dataclass(frozen=True)
class MembershipChange:
    room_id: uuid.UUID
    user_id: uuid.UUID
    display_name: str
    connection_id: str | None
    kind: str  # "joined" | "left" | "dropped"


Listener = Callable[[MembershipChange], Awaitable[None]]


@dataclass
class _Move:
    user_id: uuid.UUID
    previous_room: uuid.UUID | None
    previous_seat: Presence | None
    seat: Presence | None
    target_room: uuid.UUID | None = None


class RoomMembershipTable:
    def __init__(self, store: ChatStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock
        # room_id -> {user_id -> Presence}; dict order is join order
        self._rooms: dict[uuid.UUID, dict[uuid.UUID, Presence]] = {}
        # user_id -> room_id
        self._locations: dict[uuid.UUID, uuid.UUID] = {}
        self._locks = KeyedLock()
        self._listeners: list[Listener] = []
        self._generation = 0

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def list_members(self, room_id: uuid.UUID) -> list[uuid.UUID]:
        return list(self._rooms.get(room_id, {}))

    def list_presence(self, room_id: uuid.UUID) -> list[Presence]:
        return list(self._rooms.get(room_id, {}).values())

    def online_count(self, room_id: uuid.UUID) -> int:
        return len(self._rooms.get(room_id, {}))

    def room_of(self, user_id: uuid.UUID) -> uuid.UUID | None:
        return self._locations.get(user_id)

    def connection_of(self, user_id: uuid.UUID) -> str | None:
        room_id = self._locations.get(user_id)
        if room_id is None:
            return None
        return self._rooms[room_id][user_id].connection_id

    def connections(self, room_id: uuid.UUID, exclude: str | None = None) -> list[str]:
        return [
            p.connection_id for p in self._rooms.get(room_id, {}).values()
            if p.connection_id != exclude
        ]

    def occupancy(self) -> dict[uuid.UUID, int]:
        return {room_id: len(seats) for room_id, seats in self._rooms.items() if seats}

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def add_member(
        self, room_id: uuid.UUID, user_id: uuid.UUID, connection_id: str, display_name: str
    ) -> uuid.UUID | None:
        """Seat a user in ``room_id``, leaving their previous room in the same step.

        Returns the room the user was in before (or None). Re-adding a user to
        the room they already occupy only rebinds the connection.
        """
        while True:
            previous_room = self._locations.get(user_id)
            async with self._locks.hold_many([room_id, previous_room]):
                if self._locations.get(user_id) != previous_room:
                    # Moved while we waited for the locks; retry with the right pair
                    continue
                if previous_room == room_id:
                    self._rooms[room_id][user_id].connection_id = connection_id
                    return previous_room
                move = self._detach(user_id)
                seat = Presence(
                    user_id=user_id,
                    connection_id=connection_id,
                    display_name=display_name,
                    joined_at=self._clock(),
                )
                self._rooms.setdefault(room_id, {})[user_id] = seat
                self._locations[user_id] = room_id
                move.seat = seat
                move.target_room = room_id
                break

        try:
            await self._store.set_presence(user_id, room_id, True, self._clock())
        except ChatError:
            await self._rollback(move)
            raise

        self._generation += 1
        seat.generation = self._generation
        seat.committed = True
        if move.previous_room is not None:
            await self._emit(MembershipChange(
                move.previous_room, user_id, move.previous_seat.display_name, connection_id, "left"
            ))
        await self._emit(MembershipChange(room_id, user_id, display_name, connection_id, "joined"))
        logger.info(f"User {user_id} seated in room {room_id} (from {move.previous_room})")
        return move.previous_room

    async def move_member(
        self, user_id: uuid.UUID, room_id: uuid.UUID, connection_id: str, display_name: str
    ) -> uuid.UUID | None:
        """Relocate a seated user; same atomic step as ``add_member``."""
        return await self.add_member(room_id, user_id, connection_id, display_name)

    async def evict(
        self, user_id: uuid.UUID, connection_id: str | None = None, *, offline: bool = True
    ) -> uuid.UUID | None:
        """Remove a user from whichever room they occupy. Returns that room."""
        while True:
            room_id = self._locations.get(user_id)
            if room_id is None:
                return None
            if await self.remove_member(
                room_id, user_id, connection_id=connection_id, offline=offline, best_effort=True
            ):
                return room_id
            if self._locations.get(user_id) == room_id:
                # Seat belongs to another connection
                return None

    async def remove_member(
        self,
        room_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        connection_id: str | None = None,
        offline: bool = False,
        best_effort: bool = False,
    ) -> bool:
        """Remove a user from ``room_id``.

        With ``connection_id`` the removal only happens if that connection
        still owns the seat, so a superseded connection cannot evict its
        successor. ``best_effort`` keeps the in-memory removal even when the
        store write fails (disconnect path). Returns False when nothing was
        removed.
        """
        async with self._locks.hold(room_id):
            seat = self._rooms.get(room_id, {}).get(user_id)
            if seat is None or (connection_id is not None and seat.connection_id != connection_id):
                return False
            move = self._detach(user_id)

        try:
            await self._store.set_presence(user_id, None, not offline, self._clock())
        except ChatError as e:
            if not best_effort:
                await self._rollback(move)
                raise
            logger.error(f"Presence write for departing user {user_id} failed, keeping removal: {e}")

        await self._emit(MembershipChange(room_id, user_id, seat.display_name, seat.connection_id, "left"))
        logger.info(f"User {user_id} left room {room_id}")
        return True

    async def reconcile(self, room_id: uuid.UUID) -> list[uuid.UUID]:
        """Drop committed seats the store places elsewhere; the store wins.

        Only seats committed before the store read started are judged. A seat
        whose presence write lands while the read is in flight is newer than
        the snapshot and is left alone. Dropped seats are announced with kind
        ``dropped`` and the connection that held them.
        """
        horizon = self._generation
        present = await self._store.users_present_in(room_id)
        dropped: list[Presence] = []
        async with self._locks.hold(room_id):
            for user_id, seat in list(self._rooms.get(room_id, {}).items()):
                if not seat.committed or seat.generation > horizon or user_id in present:
                    continue
                self._detach(user_id)
                dropped.append(seat)
        for seat in dropped:
            logger.warning(f"Membership drift: user {seat.user_id} not in room {room_id} per store, dropped")
            await self._emit(MembershipChange(
                room_id, seat.user_id, seat.display_name, seat.connection_id, "dropped"
            ))
        return [seat.user_id for seat in dropped]

    # ── Internals ─────────────────────────────────────────────────────────────

    def _detach(self, user_id: uuid.UUID) -> _Move:
        """Pull a user out of whatever room they are in. Caller holds that room's lock."""
        previous_room = self._locations.pop(user_id, None)
        previous_seat = None
        if previous_room is not None:
            seats = self._rooms.get(previous_room, {})
            previous_seat = seats.pop(user_id, None)
            if not seats:
                self._rooms.pop(previous_room, None)
        return _Move(user_id=user_id, previous_room=previous_room, previous_seat=previous_seat, seat=None)

    async def _rollback(self, move: _Move) -> None:
        async with self._locks.hold_many([move.target_room, move.previous_room]):
            user_id = move.user_id
            if move.target_room is not None:
                seats = self._rooms.get(move.target_room, {})
                if seats.get(user_id) is not move.seat:
                    # A later transition already replaced our write; leave it alone
                    return
                seats.pop(user_id)
                if not seats:
                    self._rooms.pop(move.target_room, None)
                self._locations.pop(user_id, None)
            elif user_id in self._locations:
                return
            if move.previous_room is not None and move.previous_seat is not None:
                self._rooms.setdefault(move.previous_room, {})[user_id] = move.previous_seat
                self._locations[user_id] = move.previous_room
        logger.warning(f"Rolled back membership change for user {user_id}")

    async def _emit(self, change: MembershipChange) -> None:
        for listener in self._listeners:
            try:
                await listener(change)
            except Exception as e:
                logger.error(f"Membership listener failed for room {change.room_id}: {e}")

    def clear(self) -> None:
        self._rooms.clear()
        self._locations.clear()
