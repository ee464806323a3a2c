from __future__ import annotations
"""
IP blocklist.

Redis keys `blocked:<ip>` (value = reason, TTL = block duration) are the shared
source of truth when REDIS_URL is configured. Each process keeps a bounded
local map in front of it: expired local entries are dropped on read and by
`sweep()`, and a local miss falls through to Redis.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

log = logging.getLogger(__name__)

KEY_PREFIX = "blocked:"


@dataclass
class BlockEntry:
    ip: str
    reason: str
    expires_at: float

    def as_dict(self) -> Dict[str, object]:
        return {"ip": self.ip, "reason": self.reason, "expires_at": self.expires_at}


class Blocklist:
    def __init__(
        self,
        redis=None,
        static_ips: Iterable[str] = (),
        max_entries: int = 10_000,
        default_duration: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.static_ips = set(static_ips)
        self.max_entries = max(1, int(max_entries))
        self.default_duration = default_duration
        self._clock = clock
        self._local: Dict[str, BlockEntry] = {}

    def _remember(self, entry: BlockEntry) -> None:
        if entry.ip not in self._local and len(self._local) >= self.max_entries:
            victim = min(self._local.values(), key=lambda e: e.expires_at)
            self._local.pop(victim.ip, None)
        self._local[entry.ip] = entry

    async def block(self, ip: str, reason: str, duration: Optional[int] = None) -> BlockEntry:
        seconds = int(duration or self.default_duration)
        entry = BlockEntry(ip=ip, reason=reason, expires_at=self._clock() + seconds)
        self._remember(entry)
        if self.redis is not None:
            try:
                await self.redis.set(KEY_PREFIX + ip, reason, ex=seconds)
            except Exception as e:
                log.error("Failed to mirror block of %s to redis: %s", ip, e)
        log.warning("[SECURITY] IP_BLOCKED ip=%s reason=%s duration=%ss", ip, reason, seconds)
        return entry

    async def unblock(self, ip: str) -> bool:
        removed = self._local.pop(ip, None) is not None
        if self.redis is not None:
            try:
                removed = bool(await self.redis.delete(KEY_PREFIX + ip)) or removed
            except Exception as e:
                log.error("Failed to remove redis block for %s: %s", ip, e)
        if removed:
            log.info("[SECURITY] IP_UNBLOCKED ip=%s", ip)
        return removed

    async def is_blocked(self, ip: str) -> bool:
        if ip in self.static_ips:
            return True
        now = self._clock()
        entry = self._local.get(ip)
        if entry is not None:
            if entry.expires_at > now:
                return True
            self._local.pop(ip, None)
        if self.redis is None:
            return False
        try:
            ttl = await self.redis.ttl(KEY_PREFIX + ip)
            if ttl is None or ttl <= 0:
                return False
            reason = await self.redis.get(KEY_PREFIX + ip) or ""
        except Exception as e:
            log.error("Blocklist lookup failed for %s: %s", ip, e)
            return False
        self._remember(BlockEntry(ip=ip, reason=str(reason), expires_at=now + ttl))
        return True

    def sweep(self) -> int:
        """Drop expired local entries; Redis expires its copies on its own."""
        now = self._clock()
        expired = [ip for ip, e in self._local.items() if e.expires_at <= now]
        for ip in expired:
            self._local.pop(ip, None)
        return len(expired)

    async def load(self) -> int:
        """Warm the local map from Redis at startup."""
        if self.redis is None:
            return 0
        loaded = 0
        now = self._clock()
        try:
            async for key in self.redis.scan_iter(match=KEY_PREFIX + "*"):
                ttl = await self.redis.ttl(key)
                if ttl is None or ttl <= 0:
                    continue
                reason = await self.redis.get(key) or ""
                self._remember(BlockEntry(ip=key[len(KEY_PREFIX):], reason=str(reason), expires_at=now + ttl))
                loaded += 1
        except Exception as e:
            log.error("Error loading blocked IPs: %s", e)
        return loaded

    def entries(self) -> List[BlockEntry]:
        now = self._clock()
        return sorted(
            (e for e in self._local.values() if e.expires_at > now),
            key=lambda e: e.expires_at,
        )
