import asyncio
from collections.abc import AsyncIterator, Hashable, Iterable
from contextlib import asynccontextmanager


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        # Sorted acquisition so two multi-key holders can never deadlock
        ordered = sorted({k for k in keys if k is not None}, key=str)
        async with _stack(self, ordered):
            yield


@asynccontextmanager
async def _stack(keyed: KeyedLock, keys: list) -> AsyncIterator[None]:
    if not keys:
        yield
        return
    async with keyed.hold(keys[0]):
        async with _stack(keyed, keys[1:]):
            yield
