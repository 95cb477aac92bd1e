"""RedisCounterStore — distributed atomic counter on redis.asyncio.

Fixed-window counters: INCR the window key and, when the key was just
created (count == 1), EXPIRE it for the window length. Every StreamGuard
process sharing a Redis instance shares the same windows.

Connection and command errors are wrapped in StoreUnavailableError; the rate
limiter turns that into its fail-open (or fail-closed) policy.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from streamguard.errors import StoreUnavailableError
from streamguard.stores.protocol import CounterStore
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)


class RedisCounterStore:
    """CounterStore backed by Redis INCR/EXPIRE."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._redis_url = redis_url
        self._client: redis.Redis = client or redis.from_url(redis_url, decode_responses=True)

    async def increment_with_expiry(self, key: str, ttl_seconds: int) -> int:
        try:
            count = int(await self._client.incr(key))
            if count == 1:
                await self._client.expire(key, ttl_seconds)
            return count
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(str(exc), store="redis") from exc

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as exc:
            logger.warning("redis_health_check_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("redis_counter_closed", redis_url=self._redis_url)


assert isinstance(RedisCounterStore(), CounterStore), (
    "RedisCounterStore does not satisfy CounterStore protocol"
)
