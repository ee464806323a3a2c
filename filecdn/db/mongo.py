from __future__ import annotations
"""
Process-wide motor connection for the primary metadata replica.

`connect()` runs once from the app lifespan; replicas look the database up
lazily through `get_db()` so importing them never touches the network.
"""

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from ..config import settings

log = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

FILE_INDEXES = (
    ([("expires_at", 1)], {"sparse": True}),
    ([("storage_provider", 1)], {}),
    ([("created_at", -1)], {}),
)


async def connect() -> None:
    global _client, _db
    if _db is not None:
        return

    client = AsyncIOMotorClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000, tz_aware=True)
    db = client[settings.mongodb_db]
    # fail startup early when the primary is unreachable
    await db.command("ping")

    for keys, options in FILE_INDEXES:
        await db.files.create_index(keys, **options)

    _client, _db = client, db
    log.info("[METADATA] MongoDB primary connected (db=%s)", settings.mongodb_db)


async def disconnect() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


def is_connected() -> bool:
    return _db is not None


def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("MongoDB primary is not connected; filecdn.main lifespan must run first")
    return _db
