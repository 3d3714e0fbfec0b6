"""Tests for the Redis-backed rate limiter."""
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.errors import RateLimitedError
from services.rate_limit import RateLimiter


def _limiter(redis):
    async def factory():
        return redis
    return RateLimiter(900, factory)


@pytest.mark.asyncio
async def test_first_hit_sets_window_expiry():
    redis = AsyncMock()
    redis.incr.return_value = 1

    count = await _limiter(redis).hit("invites", "user-1", 10)

    assert count == 1
    redis.incr.assert_awaited_once_with("ratelimit:invites:user-1")
    redis.expire.assert_awaited_once_with("ratelimit:invites:user-1", 900)


@pytest.mark.asyncio
async def test_later_hits_do_not_reset_window():
    redis = AsyncMock()
    redis.incr.return_value = 5

    await _limiter(redis).hit("rooms", "user-1", 20)

    redis.expire.assert_not_awaited()


@pytest.mark.asyncio
async def test_exceeding_limit_raises():
    redis = AsyncMock()
    redis.incr.return_value = 11

    with pytest.raises(RateLimitedError) as exc:
        await _limiter(redis).hit("invites", "user-1", 10, "Too many invitations sent, please try again later.")
    assert exc.value.status_code == 429
    assert exc.value.message == "Too many invitations sent, please try again later."


@pytest.mark.asyncio
async def test_redis_outage_fails_open():
    redis = AsyncMock()
    redis.incr.side_effect = RedisConnectionError("connection refused")

    assert await _limiter(redis).hit("invites", "user-1", 10) == 0
