"""
Catalog snapshot cache with TTL support.

This is the performance cache: a hit means the data is fresh enough to serve
without touching the database. It is not the degraded-availability store; see
api.resilient_fetch.FallbackStore for the copy that is kept regardless of age.

Provides two implementations:
- SnapshotCache: In-memory cache for single-process deployments
- RedisSnapshotCache: Redis-backed cache shared by several API instances

Use create_snapshot_cache() to get the appropriate implementation.
"""

import json
import logging
import random
import time
from typing import Any, Callable, Dict, Optional, TypeVar, Union

T = TypeVar("T")

logger = logging.getLogger(__name__)


class SnapshotCache:
    """
    In-memory map of key -> {data, timestamp} with a freshness window.

    Each worker process holds its own entries. Set SNAPSHOT_CACHE_STORAGE_URL
    to a Redis URL to share them.
    """

    CLEANUP_PROBABILITY = 0.01

    def __init__(
        self,
        ttl_seconds: int = 60,
        enabled: bool = True,
        max_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Freshness window in seconds
            enabled: Whether caching is enabled
            max_size: Maximum number of entries before triggering eviction
            clock: Time source, injectable for tests
        """
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._max_size = max_size
        self._clock = clock

    def _is_fresh(self, cached: Dict[str, Any], now: float) -> bool:
        return now - cached["timestamp"] <= self._ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value when it is within the freshness window, else None."""
        if not self._enabled:
            return None

        cached = self._cache.get(key)
        if cached is None:
            return None

        if not self._is_fresh(cached, self._clock()):
            del self._cache[key]
            return None

        return cached["data"]

    def set(self, key: str, value: Any) -> None:
        if not self._enabled:
            return

        if random.random() < self.CLEANUP_PROBABILITY:
            self.cleanup_expired()

        if key not in self._cache and len(self._cache) >= self._max_size:
            self.cleanup_expired()
            if len(self._cache) >= self._max_size:
                oldest = min(self._cache.items(), key=lambda x: x[1]["timestamp"])[0]
                del self._cache[oldest]

        self._cache[key] = {
            "data": value,
            "timestamp": self._clock(),
        }

    def clear(self) -> None:
        self._cache.clear()

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries from cache.

        Returns:
            Number of entries removed
        """
        if not self._enabled:
            return 0

        now = self._clock()
        expired_keys = [key for key, cached in self._cache.items() if not self._is_fresh(cached, now)]
        for key in expired_keys:
            del self._cache[key]

        return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "ttl_seconds": self._ttl,
            "entry_count": len(self._cache),
            "max_size": self._max_size,
            "backend": "memory",
        }


class RedisSnapshotCache:
    """
    Redis-backed snapshot cache. Expiry is delegated to Redis (SETEX).

    Snapshots are not JSON types, so callers supply serialize/deserialize
    hooks that convert to and from plain dicts. Redis errors degrade to a
    cache miss.
    """

    CACHE_KEY_PREFIX = "dojo:snapshot:"

    def __init__(
        self,
        redis_url: str,
        ttl_seconds: int = 60,
        enabled: bool = True,
        serialize: Callable[[Any], Any] = lambda value: value,
        deserialize: Callable[[Any], Any] = lambda value: value,
    ):
        self._redis_url = redis_url
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._serialize = serialize
        self._deserialize = deserialize
        self._client: Optional[Any] = None
        self._connection_failed = False

        if enabled:
            self._initialize_client()

    def _initialize_client(self) -> None:
        try:
            import redis

            self._client = redis.Redis.from_url(
                self._redis_url,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
                decode_responses=True,
            )
            self._client.ping()
            logger.info(f"Redis snapshot cache connected: {self._redis_url.split('@')[-1]}")
        except Exception as e:
            logger.warning(f"Redis snapshot cache connection failed: {e}")
            self._client = None
            self._connection_failed = True

    def _get_full_key(self, key: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{key}"

    def _safe_redis_call(
        self,
        operation: Callable[[], T],
        operation_name: str,
        fallback: Optional[T] = None,
    ) -> Optional[T]:
        if not self._enabled or self._client is None:
            return fallback
        try:
            return operation()
        except Exception as e:
            logger.warning(f"Redis snapshot cache {operation_name} failed: {e}")
            return fallback

    def get(self, key: str) -> Optional[Any]:
        def get_operation():
            data = self._client.get(self._get_full_key(key))
            return None if data is None else self._deserialize(json.loads(data))

        return self._safe_redis_call(get_operation, "get", fallback=None)

    def set(self, key: str, value: Any) -> None:
        self._safe_redis_call(
            lambda: self._client.setex(
                self._get_full_key(key),
                self._ttl,
                json.dumps(self._serialize(value)),
            ),
            "set",
        )

    def _scan_keys(self):
        cursor = 0
        pattern = f"{self.CACHE_KEY_PREFIX}*"
        while True:
            cursor, keys = self._client.scan(cursor, match=pattern, count=100)
            yield from keys
            if cursor == 0:
                break

    def clear(self) -> None:
        def operation():
            keys = list(self._scan_keys())
            if keys:
                self._client.delete(*keys)

        self._safe_redis_call(operation, "clear")

    def invalidate(self, key: str) -> None:
        self._safe_redis_call(lambda: self._client.delete(self._get_full_key(key)), "invalidate")

    def cleanup_expired(self) -> int:
        # Redis expires keys itself
        return 0

    def get_stats(self) -> Dict[str, Any]:
        entry_count = self._safe_redis_call(lambda: sum(1 for _ in self._scan_keys()), "count", fallback=0)
        return {
            "enabled": self._enabled,
            "ttl_seconds": self._ttl,
            "entry_count": entry_count,
            "max_size": -1,
            "backend": "redis",
            "connected": self._client is not None and not self._connection_failed,
        }


SnapshotCacheType = Union[SnapshotCache, RedisSnapshotCache]


def create_snapshot_cache(
    storage_url: str = "memory://",
    ttl_seconds: int = 60,
    enabled: bool = True,
    max_size: int = 100,
    serialize: Optional[Callable[[Any], Any]] = None,
    deserialize: Optional[Callable[[Any], Any]] = None,
) -> SnapshotCacheType:
    """
    Build the snapshot cache for a storage URL.

    Args:
        storage_url: "memory://" for an in-process cache, or a Redis URL
                     ("redis://", "rediss://") for a shared one
        ttl_seconds: Freshness window in seconds
        enabled: Whether caching is enabled
        max_size: Maximum entries for the in-memory cache (ignored for Redis)
        serialize: Converts a cached value to JSON-compatible data (Redis only)
        deserialize: Inverse of serialize (Redis only)
    """
    if not enabled:
        return SnapshotCache(ttl_seconds=ttl_seconds, enabled=False, max_size=max_size)

    if storage_url.startswith("redis://") or storage_url.startswith("rediss://"):
        kwargs = {}
        if serialize is not None:
            kwargs["serialize"] = serialize
        if deserialize is not None:
            kwargs["deserialize"] = deserialize
        return RedisSnapshotCache(redis_url=storage_url, ttl_seconds=ttl_seconds, enabled=enabled, **kwargs)

    return SnapshotCache(ttl_seconds=ttl_seconds, enabled=enabled, max_size=max_size)
