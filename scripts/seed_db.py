#!/usr/bin/env python3
"""
Seed the database with test users and the default room, and print a token for each user.

Usage:
    python scripts/seed_db.py
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import logging
logging.basicConfig(level=logging.INFO)

from database import AsyncSessionLocal, engine, Base
from services.errors import ConflictError
from services.identity import create_access_token
from services.store import ChatStore
from config import get_settings

settings = get_settings()

TEST_USERS = [
    {"display_name": "alice", "email": "alice@example.com"},
    {"display_name": "bob", "email": "bob@example.com"},
    {"display_name": "carol", "email": "carol@example.com"},
    {"display_name": "dave", "email": None},
]


async def seed():
    if not settings.JWT_SECRET_KEY:
        print("  [fail] JWT_SECRET_KEY is not set; tokens would be unusable")
        return

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = ChatStore(AsyncSessionLocal, default_room=settings.DEFAULT_ROOM)
    room = await store.ensure_room(settings.DEFAULT_ROOM, "General discussion for everyone")
    print(f"  [ok] default room #{room.name} ({room.id})")

    for u in TEST_USERS:
        user = await store.get_user_by_name(u["display_name"])
        if user:
            print(f"  [skip] {u['display_name']} already exists")
        else:
            try:
                user = await store.create_user(u["display_name"], u["email"])
            except ConflictError as e:
                print(f"  [fail] {u['display_name']}: {e.message}")
                continue
            print(f"  [ok] created {user.display_name} ({user.id})")

        token = create_access_token(
            str(user.id), settings.JWT_SECRET_KEY, settings.JWT_ALGORITHM, settings.JWT_EXPIRE_MINUTES
        )
        print(f"       token: {token}")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
