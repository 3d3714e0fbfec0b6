"""Tests for the store's timeout and driver-error handling."""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from services.errors import PersistenceError
from services.store import ChatStore


class _StalledSession:
    async def __aenter__(self):
        await asyncio.sleep(10)

    async def __aexit__(self, *exc):
        return False


class _BrokenSession:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("connection gone"))

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_slow_store_call_is_a_retryable_persistence_error():
    store = ChatStore(_StalledSession, timeout=0.05)

    with pytest.raises(PersistenceError) as info:
        await store.users_present_in("room")

    assert info.value.retryable is True
    assert "timed out" in info.value.detail
    assert info.value.message == "Service temporarily unavailable"


@pytest.mark.asyncio
async def test_driver_error_becomes_a_persistence_error():
    store = ChatStore(_BrokenSession, timeout=1.0)

    with pytest.raises(PersistenceError) as info:
        await store.get_room_by_name("general")

    assert info.value.retryable is False
    assert info.value.detail.startswith("get_room_by_name")
    assert info.value.message == "Service temporarily unavailable"

