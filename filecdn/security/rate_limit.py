from __future__ import annotations
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

log = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int = 0


class RateLimiter:
    """`points` hits per `window_s` seconds per key."""

    def __init__(self, points: int, window_s: float) -> None:
        self.points = max(1, int(points))
        self.window_s = max(0.001, float(window_s))

    async def hit(self, key: str) -> RateLimitResult:
        raise NotImplementedError

    def prune(self) -> int:
        # keys in Redis expire on their own
        return 0

    def _retry_after(self, oldest: float, now: float) -> int:
        return max(1, math.ceil(self.window_s - (now - oldest)))


class WindowLimiter(RateLimiter):
    """In-process sliding log; one deque of timestamps per key."""

    def __init__(self, points: int, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(points, window_s)
        self._buckets: Dict[str, Deque[float]] = {}
        self._clock = clock

    def _trim(self, window: Deque[float], now: float) -> None:
        while window and now - window[0] >= self.window_s:
            window.popleft()

    async def hit(self, key: str) -> RateLimitResult:
        now = self._clock()
        window = self._buckets.setdefault(key, deque())
        self._trim(window, now)
        if len(window) >= self.points:
            return RateLimitResult(False, 0, self._retry_after(window[0], now))
        window.append(now)
        return RateLimitResult(True, self.points - len(window))

    def prune(self) -> int:
        """Forget keys with no hit left in the window; returns how many were dropped."""
        now = self._clock()
        idle = []
        for key, window in self._buckets.items():
            self._trim(window, now)
            if not window:
                idle.append(key)
        for key in idle:
            del self._buckets[key]
        return len(idle)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)


class RedisWindowLimiter(RateLimiter):
    """Sliding log in a Redis sorted set, shared by every process.

    The whole window update runs in one MULTI block, so concurrent workers see each
    other's hits; a hit that lands over budget is taken back out again.
    """

    def __init__(self, redis, points: int, window_s: float) -> None:
        super().__init__(points, window_s)
        self.redis = redis

    async def hit(self, key: str) -> RateLimitResult:
        now = time.time()
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now - self.window_s)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.expire(key, max(1, math.ceil(self.window_s)))
            _, _, count, oldest, _ = await pipe.execute()
            if count > self.points:
                await self.redis.zrem(key, member)
                oldest_ts = oldest[0][1] if oldest else now
                return RateLimitResult(False, 0, self._retry_after(oldest_ts, now))
            return RateLimitResult(True, self.points - count)
        except Exception as e:
            # fail open
            log.error("Rate limiter error for %s: %s", key, e)
            return RateLimitResult(True, 0)


def rate_limit_key(ip: str, endpoint: str = "global") -> str:
    return f"rate_limit:{ip}:{endpoint}"
