import logging
from collections.abc import Awaitable, Callable
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from redis_client import get_redis
from services.errors import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window counters in Redis (INCR + EXPIRE), one key per scope and user.

    When Redis cannot be reached the request is let through and a warning is
    logged.
    """

    def __init__(
        self,
        window_seconds: int,
        redis_factory: Callable[[], Awaitable[aioredis.Redis]] = get_redis,
    ) -> None:
        self.window_seconds = window_seconds
        self._redis_factory = redis_factory

    async def hit(self, scope: str, subject, limit: int, message: str | None = None) -> int:
        """Count one request; raises RateLimitedError once ``limit`` is exceeded."""
        key = f"ratelimit:{scope}:{subject}"
        try:
            redis = await self._redis_factory()
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, self.window_seconds)
        except (RedisError, OSError) as e:
            logger.warning(f"Rate limiter unavailable for {scope}, allowing request: {e}")
            return 0
        if count > limit:
            logger.warning(f"Rate limit hit: {scope} by {subject} ({count}/{limit})")
            raise RateLimitedError(message)
        return count
