"""Counter store backends.

Every backend exposes one concurrency-critical primitive,
``increment_and_bound``: add a weight to a window counter and make sure the
counter lives at least ``ttl_seconds`` longer, as one indivisible operation.
Callers never read-then-write a counter.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger
from quotagate.app.exceptions import StoreUnavailableError

from .models import BucketKey
from .redis_lua import INCREMENT_AND_BOUND_SCRIPT

logger = get_logger(__name__)


class CounterStore(ABC):
    """Abstract base class for window counter backends."""

    name: str = "store"

    @abstractmethod
    async def increment_and_bound(self, bucket: BucketKey, weight: int, ttl_seconds: int) -> int:
        """Atomically add ``weight`` to the bucket and extend its expiry.

        Args:
            bucket: Window counter to increment
            weight: Units to add (>= 1)
            ttl_seconds: Minimum remaining lifetime of the counter

        Returns:
            The post-increment count
        """

    @abstractmethod
    async def get_count(self, bucket: BucketKey) -> int:
        """Read the current count without modifying it (0 if absent)."""

    async def close(self) -> None:
        """Release backend resources."""


class RedisCounterStore(CounterStore):
    """Shared counter store backed by Redis.

    Uses a server-side Lua script so INCRBY and the conditional EXPIRE happen
    in one round trip with no window where a key exists without an expiry.
    Keys expire on their own; no cleanup is needed.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._redis = redis_client
        self._redis_url = redis_url or settings.redis_url
        self._key_prefix = key_prefix or settings.rate_limit_key_prefix
        self._timeout = timeout or settings.rate_limit_store_timeout

    def _get_redis(self) -> Any:
        """Get or create the Redis client."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_timeout,
            )
        return self._redis

    def key_for(self, bucket: BucketKey) -> str:
        return bucket.redis_key(self._key_prefix)

    async def increment_and_bound(self, bucket: BucketKey, weight: int, ttl_seconds: int) -> int:
        key = self.key_for(bucket)
        try:
            redis_client = self._get_redis()
            result = await asyncio.wait_for(
                redis_client.eval(INCREMENT_AND_BOUND_SCRIPT, 1, key, weight, ttl_seconds),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(f"Redis increment timed out for {key}") from e
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Redis increment failed for {key}: {e}") from e
        return int(result)

    async def get_count(self, bucket: BucketKey) -> int:
        key = self.key_for(bucket)
        try:
            value = await asyncio.wait_for(self._get_redis().get(key), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(f"Redis read timed out for {key}") from e
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Redis read failed for {key}: {e}") from e
        return int(value) if value is not None else 0

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


@dataclass
class CounterEntry:
    """In-process counter state."""
    count: int = 0
    expires_at: float = 0.0


class InMemoryCounterStore(CounterStore):
    """Single-process counter store with the same contract as Redis.

    Suitable for tests and single-instance deployments.

    Memory optimization:
    - Expired entries are dropped when touched
    - Uses OrderedDict for LRU eviction once max_entries is exceeded
    """

    name = "memory"

    def __init__(
        self,
        max_entries: Optional[int] = None,
        key_prefix: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_entries = max_entries or settings.rate_limit_in_memory_max_entries
        self._key_prefix = key_prefix or settings.rate_limit_key_prefix
        self._clock = clock
        self._entries: OrderedDict[str, CounterEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, key: str, now: float) -> Optional[CounterEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _enforce_lru_limit(self) -> None:
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def increment_and_bound(self, bucket: BucketKey, weight: int, ttl_seconds: int) -> int:
        key = bucket.redis_key(self._key_prefix)
        async with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            if entry is None:
                entry = CounterEntry()
                self._entries[key] = entry
            else:
                self._entries.move_to_end(key)
            entry.count += weight
            entry.expires_at = max(entry.expires_at, now + ttl_seconds)
            self._enforce_lru_limit()
            return entry.count

    async def get_count(self, bucket: BucketKey) -> int:
        key = bucket.redis_key(self._key_prefix)
        async with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.count if entry is not None else 0

    async def cleanup(self) -> int:
        """Drop every expired entry; returns the number removed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)
