"""Wires the chat engine together. One ChatService per application instance."""
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from config import Settings
from models import Room
from redis_client import get_redis
from services.broadcast import MessagePipeline
from services.identity import JWTIdentityVerifier
from services.invitations import InvitationEngine, Mailer
from services.membership import RoomMembershipTable
from services.presence import PresenceNotifier
from services.rate_limit import RateLimiter
from services.rooms import RoomService
from services.sessions import SessionManager
from services.store import ChatStore
from services.transport import Transport
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_ROOM_DESCRIPTION = "General discussion for everyone"


class ChatService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: Transport,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
        mailer: Mailer | None = None,
        redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
    ) -> None:
        self.settings = settings
        self.store = ChatStore(
            session_factory,
            timeout=settings.STORE_TIMEOUT_SECONDS,
            default_room=settings.DEFAULT_ROOM,
        )
        self.verifier = JWTIdentityVerifier(self.store, settings.JWT_SECRET_KEY, settings.JWT_ALGORITHM)
        self.membership = RoomMembershipTable(self.store, clock=clock)
        self.notifier = PresenceNotifier(self.store, self.membership, transport, clock=clock)
        self.membership.subscribe(self.notifier.handle_change)
        self.pipeline = MessagePipeline(
            self.store, self.notifier, max_length=settings.MESSAGE_MAX_LENGTH,
            idle_seconds=settings.DISPATCHER_IDLE_SECONDS,
            clock=clock,
        )
        self.sessions = SessionManager(
            self.store,
            self.verifier,
            self.membership,
            self.notifier,
            self.pipeline,
            default_room=settings.DEFAULT_ROOM,
            history_limit=settings.HISTORY_LIMIT,
            clock=clock,
        )
        self.invitations = InvitationEngine(
            self.store,
            min_hours=settings.INVITE_MIN_HOURS,
            max_hours=settings.INVITE_MAX_HOURS,
            max_uses=settings.INVITE_MAX_USES,
            clock=clock,
            mailer=mailer,
        )
        self.membership.subscribe(self.sessions.on_membership_change)
        self.invitations.subscribe(self.sessions.on_redeemed)
        self.rooms = RoomService(
            self.store,
            self.membership,
            self.notifier,
            self.sessions,
            default_room=settings.DEFAULT_ROOM,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(settings.RATE_LIMIT_WINDOW_SECONDS, redis_factory)
        self.default_room: Room | None = None

    async def start(self) -> None:
        self.default_room = await self.store.ensure_room(self.settings.DEFAULT_ROOM, DEFAULT_ROOM_DESCRIPTION)
        logger.info(f"Chat engine ready, default room {self.default_room.name} ({self.default_room.id})")

    async def close(self) -> None:
        await self.sessions.close()
        await self.pipeline.close()
        await self.invitations.close()
        self.membership.clear()
        logger.info("Chat engine stopped")

    def stats(self) -> dict:
        occupancy = self.membership.occupancy()
        return {
            "connections": len(self.sessions),
            "occupied_rooms": len(occupancy),
            "seated_users": sum(occupancy.values()),
            "dispatchers": self.pipeline.dispatcher_count,
        }
