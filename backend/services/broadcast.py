"""Message broadcast pipeline: validate, persist, then fan out in acceptance order.

A message is *accepted* once it is persisted while holding its room's accept
lock, so persistence order is acceptance order. The accept lock is therefore
held across the ``insert_message`` round trip. It is scoped to one room and
the store timeout bounds how long any sender can hold it, so senders in other
rooms never wait on it.

Accepted messages go onto a per-room FIFO queue drained by a single dispatcher
task; the sender gets its acknowledgment as soon as the message is queued. A
dispatcher whose queue stays empty for ``idle_seconds`` retires and is
recreated by the next message for that room.
"""
import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from models import Message
from schemas.chat import MessageOut
from services.errors import ValidationError
from services.presence import PresenceNotifier
from services.store import ChatStore
from utils.locks import KeyedLock
from utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class MessagePipeline:
    def __init__(
        self,
        store: ChatStore,
        notifier: PresenceNotifier,
        *,
        max_length: int = 1000,
        idle_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._max_length = max_length
        self._idle_seconds = idle_seconds
        self._clock = clock
        self._accept_locks = KeyedLock()
        self._queues: dict[uuid.UUID, asyncio.Queue] = {}
        self._dispatchers: dict[uuid.UUID, asyncio.Task] = {}

    @property
    def dispatcher_count(self) -> int:
        return len(self._dispatchers)

    def validate(self, text) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message content is required")
        clean = text.strip()
        if len(clean) > self._max_length:
            raise ValidationError(f"Message must be at most {self._max_length} characters")
        return clean

    async def send(self, session, text) -> Message:
        """Persist and queue a message from a live session. Returns the stored message."""
        clean = self.validate(text)
        room_id = session.current_room_id
        if room_id is None:
            raise ValidationError("Join a room before sending messages")

        async with self._accept_locks.hold(room_id):
            message = await self._store.insert_message(
                room_id, session.user_id, session.display_name, clean, self._clock()
            )
            self._queue_for(room_id).put_nowait(message)
        return message

    async def history(self, room_id: uuid.UUID, limit: int) -> list[Message]:
        return await self._store.recent_messages(room_id, limit)

    async def drain(self, room_id: uuid.UUID | None = None) -> None:
        """Wait until queued messages have been handed to the transport."""
        queues = [self._queues[room_id]] if room_id in self._queues else (
            [] if room_id is not None else list(self._queues.values())
        )
        for queue in queues:
            await queue.join()

    async def close(self) -> None:
        for task in self._dispatchers.values():
            task.cancel()
        await asyncio.gather(*self._dispatchers.values(), return_exceptions=True)
        self._dispatchers.clear()
        self._queues.clear()

    def _queue_for(self, room_id: uuid.UUID) -> asyncio.Queue:
        queue = self._queues.get(room_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[room_id] = queue
            self._dispatchers[room_id] = asyncio.create_task(
                self._dispatch(room_id, queue), name=f"dispatch-{room_id}"
            )
        return queue

    async def _dispatch(self, room_id: uuid.UUID, queue: asyncio.Queue) -> None:
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=self._idle_seconds)
            except asyncio.TimeoutError:
                if queue.empty():
                    self._retire(room_id, queue)
                    return
                continue
            try:
                payload = MessageOut.from_message(message).model_dump(mode="json")
                delivered = await self._notifier.fan_out(room_id, "newMessage", payload)
                logger.debug(f"Message {message.id} delivered to {delivered} connection(s) in {room_id}")
            except Exception:
                # Message is already durable; peers catch up from history
                logger.exception(f"Fan-out of message {message.id} in room {room_id} failed")
            finally:
                queue.task_done()

    def _retire(self, room_id: uuid.UUID, queue: asyncio.Queue) -> None:
        if self._queues.get(room_id) is queue:
            del self._queues[room_id]
            self._dispatchers.pop(room_id, None)
            logger.debug(f"Dispatcher for room {room_id} retired after {self._idle_seconds}s idle")
