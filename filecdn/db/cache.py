from __future__ import annotations
"""
Optional Redis connection shared by the metadata cache, the rate limiter and
the blocklist. Everything here degrades to "no cache" when REDIS_URL is unset.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..config import settings

log = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None


class JsonCache:
    """Thin JSON get/set/delete with TTL over a Redis client."""

    def __init__(self, client: redis.Redis, prefix: str = "filecdn:") -> None:
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(key))
        except Exception as e:
            log.warning("cache get failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            data = json.dumps(value, ensure_ascii=False, default=str)
            return bool(await self.client.set(self._key(key), data, ex=max(1, int(ttl))))
        except Exception as e:
            log.warning("cache set failed for %s: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(self._key(key)))
        except Exception as e:
            log.warning("cache delete failed for %s: %s", key, e)
            return False


async def connect() -> None:
    global _redis
    if _redis is not None or not settings.redis_url:
        return
    client = redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    await client.ping()
    _redis = client
    log.info("Redis cache connected")


async def disconnect() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
    _redis = None


def get_redis() -> Optional[redis.Redis]:
    return _redis


def get_cache() -> Optional[JsonCache]:
    return JsonCache(_redis) if _redis is not None else None
