"""
Rate Limiting
Fixed-window request counters behind an injected store
"""
import logging
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from lms.core.exceptions import RateLimited

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    async def incr(self, key: str, period: int) -> int:
        """Increment the counter for key inside the current window and return it"""
        ...


class MemoryCounterStore:
    """Process-local counters; state lives as long as this object does"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, int]] = {}

    async def incr(self, key: str, period: int) -> int:
        window = int(self._clock() // period)
        current_window, count = self._windows.get(key, (window, 0))
        if current_window != window:
            count = 0
        count += 1
        self._windows[key] = (window, count)
        return count

    def reset(self) -> None:
        self._windows.clear()


class RedisCounterStore:
    """Counters shared across processes through Redis INCR/EXPIRE"""

    def __init__(self, client: Redis):
        self._client = client

    async def incr(self, key: str, period: int) -> int:
        redis_key = f"ratelimit:{key}"
        count = await self._client.incr(redis_key)
        if count == 1:
            await self._client.expire(redis_key, period)
        return int(count)

    async def close(self) -> None:
        await self._client.aclose()


class FallbackCounterStore:
    """Use the primary store, falling back to the secondary while it is unreachable"""

    def __init__(self, primary: CounterStore, fallback: CounterStore):
        self.primary = primary
        self.fallback = fallback

    async def incr(self, key: str, period: int) -> int:
        try:
            return await self.primary.incr(key, period)
        except (RedisError, OSError) as e:
            logger.warning("Rate limit store unavailable, using in-memory counters: %s", e)
            return await self.fallback.incr(key, period)


class RateLimiter:
    """Allow at most ``limit`` hits per key every ``period`` seconds"""

    def __init__(self, store: CounterStore, limit: int, period: int, enabled: bool = True):
        self.store = store
        self.limit = limit
        self.period = period
        self.enabled = enabled

    async def hit(self, key: str) -> int:
        if not self.enabled:
            return 0
        count = await self.store.incr(key, self.period)
        if count > self.limit:
            raise RateLimited(
                f"Rate limit of {self.limit} requests per {self.period}s exceeded",
                {"limit": self.limit, "period": self.period},
            )
        return count


def build_counter_store(redis_url: Optional[str], redis_enabled: bool) -> CounterStore:
    """Redis-backed store with in-memory fallback, or memory only"""
    memory = MemoryCounterStore()
    if not redis_enabled or not redis_url:
        return memory
    return FallbackCounterStore(RedisCounterStore(Redis.from_url(redis_url)), memory)
