"""
Resilient catalog fetching.

ResilientFetcher wraps an async loader with three collaborators it is given:

- a performance cache (api.snapshot_cache): serves data still inside its
  freshness window without touching the loader,
- a CircuitBreaker: stops calling a loader that keeps failing,
- a FallbackStore: the last good result per key, kept regardless of age, for
  degraded operation.

A fetch never raises for a loader failure. The result says where the data
came from (live, cache, stale, empty) so callers can show a degraded state.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from api.circuit_breaker import CircuitBreaker
from api.enums import CircuitState, FetchSource
from api.errors import truncate_error
from api.metrics import (
    CATALOG_CIRCUIT_BREAKER_STATE,
    CATALOG_FETCH_DURATION_SECONDS,
    CATALOG_FETCHES_TOTAL,
)
from api.snapshot_cache import SnapshotCache, SnapshotCacheType

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FetchResult(Generic[T]):
    data: Optional[T]
    source: FetchSource
    # True when the data is a fallback copy served because the live fetch was skipped or failed
    stale: bool = False
    error: Optional[str] = None
    fetched_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def degraded(self) -> bool:
        return self.source in (FetchSource.STALE, FetchSource.EMPTY)


class FallbackStore:
    """Last known good value per key, with the time it was stored. Never expires."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._clock = clock

    def put(self, key: str, data: Any) -> None:
        self._entries[key] = {"data": data, "timestamp": self._clock()}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._entries.get(key)

    def age(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._clock() - entry["timestamp"]

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def clear(self) -> None:
        self._entries.clear()


class ResilientFetcher(Generic[T]):
    """
    Fetch values by key through cache, breaker and fallback.

    Order for fetch(key):
    1. fresh cache hit: return it
    2. breaker open: return the fallback copy (stale) or nothing (empty)
    3. live load: on success record it everywhere, on failure count it
       against the breaker and return the fallback copy or nothing
    """

    def __init__(
        self,
        loader: Callable[[str], Awaitable[T]],
        breaker: Optional[CircuitBreaker] = None,
        cache: Optional[SnapshotCacheType] = None,
        fallback: Optional[FallbackStore] = None,
        clock: Callable[[], float] = time.time,
        name: str = "catalog",
    ):
        self._loader = loader
        self._breaker = breaker or CircuitBreaker(name=name)
        self._cache = cache if cache is not None else SnapshotCache(clock=clock)
        self._fallback = fallback or FallbackStore(clock=clock)
        self._clock = clock
        self._name = name

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def cache(self) -> SnapshotCacheType:
        return self._cache

    @property
    def fallback(self) -> FallbackStore:
        return self._fallback

    async def fetch(self, key: str) -> FetchResult[T]:
        cached = self._cache.get(key)
        if cached is not None:
            CATALOG_FETCHES_TOTAL.labels(source=FetchSource.CACHE.value).inc()
            return FetchResult(data=cached, source=FetchSource.CACHE)
        return await self._fetch_live(key)

    async def refresh(self, key: str) -> FetchResult[T]:
        """Skip the performance cache and go to the loader (still subject to the breaker)."""
        self._cache.invalidate(key)
        return await self._fetch_live(key)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop cached copies so the next fetch loads live. The fallback copy is kept."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.invalidate(key)

    async def _fetch_live(self, key: str) -> FetchResult[T]:
        if not self._breaker.allow_request():
            logger.warning(f"{self._name} circuit open, serving last known data for {key!r}")
            self._publish_state()
            return self._serve_fallback(key, error=f"{self._name} temporarily unavailable")

        start = time.monotonic()
        try:
            data = await self._loader(key)
        except Exception as e:
            self._breaker.record_failure()
            self._publish_state()
            logger.warning(f"{self._name} fetch for {key!r} failed: {e}")
            return self._serve_fallback(key, error=truncate_error(str(e)))

        CATALOG_FETCH_DURATION_SECONDS.observe(time.monotonic() - start)
        self._breaker.record_success()
        self._publish_state()
        self._cache.set(key, data)
        self._fallback.put(key, data)
        CATALOG_FETCHES_TOTAL.labels(source=FetchSource.LIVE.value).inc()
        return FetchResult(data=data, source=FetchSource.LIVE, fetched_at=self._clock())

    def _serve_fallback(self, key: str, error: Optional[str]) -> FetchResult[T]:
        entry = self._fallback.get(key)
        if entry is None:
            logger.warning(f"No cached {self._name} data for {key!r}, returning empty result")
            CATALOG_FETCHES_TOTAL.labels(source=FetchSource.EMPTY.value).inc()
            return FetchResult(data=None, source=FetchSource.EMPTY, stale=True, error=error)

        age = self._clock() - entry["timestamp"]
        logger.info(f"Serving {self._name} data for {key!r} from fallback ({age:.0f}s old)")
        CATALOG_FETCHES_TOTAL.labels(source=FetchSource.STALE.value).inc()
        return FetchResult(
            data=entry["data"],
            source=FetchSource.STALE,
            stale=True,
            error=error,
            fetched_at=entry["timestamp"],
        )

    def _publish_state(self) -> None:
        CATALOG_CIRCUIT_BREAKER_STATE.set(1 if self._breaker.state == CircuitState.OPEN else 0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "breaker": self._breaker.get_stats(),
            "cache": self._cache.get_stats(),
        }
