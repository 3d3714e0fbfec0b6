"""Connection sessions: one per live socket, each with its own inbox worker.

Every inbound event for a connection is queued on that connection's inbox and
handled by a single task, so the transitions of one connection never
interleave. Only the newest connection of a user may change rooms; an older
one that is still open gets a ConflictError.
"""
import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from models import Message, Room
from schemas.chat import MessageOut, RoomSnapshot, RoomSummary
from services.broadcast import MessagePipeline
from services.errors import ChatError, ConflictError, NotFoundError, ValidationError
from services.identity import Identity, JWTIdentityVerifier
from services.membership import MembershipChange, RoomMembershipTable
from services.presence import PresenceNotifier
from services.store import ChatStore
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)

CLIENT_EVENTS = ("join", "switchRoom", "sendMessage", "typing")

_CLOSE = object()


@dataclass(eq=False)
class ConnectionSession:
    connection_id: str
    identity: Identity
    current_room_id: uuid.UUID | None = None
    joined_at: datetime | None = None
    last_activity_at: datetime | None = None
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    worker: asyncio.Task | None = None
    closed: bool = False

    @property
    def user_id(self) -> uuid.UUID:
        return self.identity.user_id

    @property
    def display_name(self) -> str:
        return self.identity.display_name


def _room_ref(payload: Any) -> str | None:
    if isinstance(payload, dict):
        return payload.get("roomId") or payload.get("room")
    if isinstance(payload, str):
        return payload
    return None


class SessionManager:
    def __init__(
        self,
        store: ChatStore,
        verifier: JWTIdentityVerifier,
        membership: RoomMembershipTable,
        notifier: PresenceNotifier,
        pipeline: MessagePipeline,
        *,
        default_room: str = "general",
        history_limit: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._membership = membership
        self._notifier = notifier
        self._pipeline = pipeline
        self._default_room = default_room
        self._history_limit = history_limit
        self._clock = clock
        self._sessions: dict[str, ConnectionSession] = {}
        # user_id -> connection_id of the newest session
        self._latest: dict[uuid.UUID, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def authenticate(self, credential: str | None) -> Identity:
        return await self._verifier.verify(credential)

    def open(self, connection_id: str, identity: Identity) -> ConnectionSession:
        now = self._clock()
        session = ConnectionSession(
            connection_id=connection_id, identity=identity, last_activity_at=now
        )
        previous = self._latest.get(identity.user_id)
        if previous is not None:
            logger.info(f"User {identity.user_id}: connection {connection_id} supersedes {previous}")
        self._sessions[connection_id] = session
        self._latest[identity.user_id] = connection_id
        session.worker = asyncio.create_task(self._run(session), name=f"inbox-{connection_id}")
        logger.info(f"Session opened for {identity.display_name} ({identity.user_id}) on {connection_id}")
        return session

    def get(self, connection_id: str) -> ConnectionSession | None:
        return self._sessions.get(connection_id)

    def for_user(self, user_id: uuid.UUID) -> ConnectionSession | None:
        connection_id = self._latest.get(user_id)
        return self._sessions.get(connection_id) if connection_id else None

    def is_current(self, session: ConnectionSession) -> bool:
        return self._latest.get(session.user_id) == session.connection_id

    async def disconnect(self, session: ConnectionSession) -> None:
        """Tear a session down. Safe to call more than once; never raises."""
        if session.closed:
            return
        session.closed = True
        session.inbox.put_nowait((_CLOSE, None))
        if session.worker is not None and session.worker is not asyncio.current_task():
            result, = await asyncio.gather(session.worker, return_exceptions=True)
            if isinstance(result, BaseException):
                logger.error(f"Inbox worker for {session.connection_id} ended with an error: {result!r}")

        self._sessions.pop(session.connection_id, None)
        was_current = self.is_current(session)
        if was_current:
            del self._latest[session.user_id]

        try:
            room_id = await self._membership.evict(
                session.user_id, session.connection_id, offline=was_current
            )
            if room_id is None and was_current:
                # Never seated: still record the user as offline
                await self._store.set_presence(session.user_id, None, False, self._clock())
        except Exception as e:
            logger.error(f"Disconnect cleanup for {session.connection_id} failed: {e}")
        session.current_room_id = None
        logger.info(f"Session closed for {session.display_name} on {session.connection_id}")

    async def close(self) -> None:
        for session in list(self._sessions.values()):
            await self.disconnect(session)

    # ── Inbox ─────────────────────────────────────────────────────────────────

    def submit(self, connection_id: str, event: str, payload: Any = None) -> bool:
        """Queue an inbound event for a connection. False when the connection is gone."""
        session = self._sessions.get(connection_id)
        if session is None or session.closed:
            return False
        session.inbox.put_nowait((event, payload))
        return True

    async def _run(self, session: ConnectionSession) -> None:
        while True:
            event, payload = await session.inbox.get()
            try:
                if event is _CLOSE:
                    return
                if session.closed:
                    continue
                await self._handle(session, event, payload)
            except ChatError as e:
                logger.warning(f"{event} from {session.connection_id} refused: {e.message}")
                await self._notifier.send_to(session.connection_id, "error", {"message": e.message})
            except Exception:
                logger.exception(f"{event} from {session.connection_id} failed")
                await self._notifier.send_to(session.connection_id, "error", {"message": "Something went wrong"})
            finally:
                session.inbox.task_done()

    async def _handle(self, session: ConnectionSession, event: str, payload: Any) -> None:
        if event == "join":
            await self.join(session, _room_ref(payload))
        elif event in ("switchRoom", "relocate"):
            await self.switch_room(session, _room_ref(payload))
        elif event == "sendMessage":
            text = payload.get("text") if isinstance(payload, dict) else payload
            await self.send(session, text)
        elif event == "typing":
            is_typing = payload.get("isTyping") if isinstance(payload, dict) else payload
            await self.typing(session, is_typing is True)
        else:
            raise ValidationError(f"Unknown event: {event}")

    # ── Room transitions ──────────────────────────────────────────────────────

    async def join(self, session: ConnectionSession, room_ref: str | None = None) -> RoomSnapshot:
        return await self._enter_room(session, room_ref)

    async def switch_room(self, session: ConnectionSession, room_ref: str | None) -> RoomSnapshot:
        if not room_ref:
            raise ValidationError("Room is required")
        return await self._enter_room(session, room_ref)

    async def _enter_room(self, session: ConnectionSession, room_ref: str | None) -> RoomSnapshot:
        if session.closed:
            raise ConflictError("Connection is closed")
        if not self.is_current(session):
            raise ConflictError("Session superseded by a newer connection")

        room = await self._resolve_room(room_ref)
        now = self._clock()
        if room.is_private:
            if not await self._store.is_member(room.id, session.user_id):
                # Same answer as for a missing room so private rooms stay hidden
                raise NotFoundError("Chat room not found")
        elif await self._store.add_room_member(room.id, session.user_id, now):
            logger.info(f"User {session.user_id} became a member of {room.name}")

        if session.current_room_id is None:
            previous = await self._membership.add_member(
                room.id, session.user_id, session.connection_id, session.display_name
            )
        else:
            previous = await self._membership.move_member(
                session.user_id, room.id, session.connection_id, session.display_name
            )
        session.current_room_id = room.id
        session.joined_at = now
        session.last_activity_at = now
        if previous != room.id:
            logger.info(f"{session.display_name} moved {previous} -> {room.name} ({room.id})")

        messages = await self._pipeline.history(room.id, self._history_limit)
        members = await self._notifier.member_list(room.id)
        snapshot = RoomSnapshot(
            room=RoomSummary.from_room(room, self._membership.online_count(room.id)),
            messages=[MessageOut.from_message(m) for m in messages],
            members=members,
        )
        await self._to_self(session, "roomChanged", {
            "roomId": str(room.id),
            "roomName": room.name,
            "message": f"Joined {room.name}",
        })
        await self._to_self(session, "previousMessages", [m.model_dump(mode="json") for m in snapshot.messages])
        await self._to_self(session, "roomUserList", [m.model_dump(mode="json") for m in members])
        return snapshot

    async def _resolve_room(self, room_ref: str | None) -> Room:
        ref = (str(room_ref).strip() if room_ref else "") or self._default_room
        try:
            room_id = uuid.UUID(ref)
        except ValueError:
            room = await self._store.get_room_by_name(ref)
        else:
            room = await self._store.get_room(room_id)
        if not room or not room.active:
            raise NotFoundError("Chat room not found")
        return room

    async def _to_self(self, session: ConnectionSession, event: str, payload: Any) -> None:
        await self._notifier.send_to(session.connection_id, event, payload)

    # ── Messages and typing ───────────────────────────────────────────────────

    async def send(self, session: ConnectionSession, text: Any) -> Message:
        message = await self._pipeline.send(session, text)
        session.last_activity_at = self._clock()
        return message

    async def typing(self, session: ConnectionSession, is_typing: bool) -> None:
        if session.current_room_id is None:
            return
        await self._notifier.notify_typing(
            session.current_room_id,
            session.user_id,
            session.display_name,
            is_typing,
            exclude=session.connection_id,
        )

    # ── Driven by other components ────────────────────────────────────────────

    async def on_redeemed(self, user_id: uuid.UUID, room_id: uuid.UUID) -> None:
        """Move the redeemer's live session into the room they just joined."""
        session = self.for_user(user_id)
        if session is None:
            return
        self.submit(session.connection_id, "relocate", {"roomId": str(room_id)})

    async def on_membership_change(self, change: MembershipChange) -> None:
        """Membership table listener: a seat dropped by reconcile takes the session out of the room."""
        if change.kind != "dropped" or change.connection_id is None:
            return
        session = self._sessions.get(change.connection_id)
        if session is None or session.current_room_id != change.room_id:
            return
        session.current_room_id = None
        logger.warning(f"Session {session.connection_id} lost its seat in room {change.room_id}")
        await self._to_self(session, "error", {
            "message": "You are no longer in this room, join a room to continue",
        })

    async def on_left(self, user_id: uuid.UUID, room_id: uuid.UUID) -> None:
        """Send a user who gave up membership of the room they sit in back to the default room."""
        session = self.for_user(user_id)
        if session is None or session.current_room_id != room_id:
            return
        self.submit(session.connection_id, "relocate", {"roomId": self._default_room})
