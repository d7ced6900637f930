"""
Response cache shared by every fetch.

Provides:
- In-memory TTL store with access bookkeeping
- Least-recently-accessed eviction (oldest 10% when full)
- Periodic sweep of expired entries
- get_or_set with single-flight loading per key
- Optional persistence hook

Usage:
    cache = ResponseCache(default_ttl=300, max_size=1000)
    await cache.set("bank-of-canada:observations:{}", payload, ttl=3600)
    value = await cache.get("bank-of-canada:observations:{}")
"""
import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TTL = 5 * 60
DEFAULT_MAX_SIZE = 1000
DEFAULT_CLEANUP_INTERVAL = 60
EVICTION_FRACTION = 0.1

# Sentinel for "no cached value" (None is a valid payload)
MISSING = object()


@dataclass
class CacheEntry:
    """Stored payload plus the timestamps used for expiry and eviction."""
    key: str
    value: Any
    created_at: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


class CachePersistence(Protocol):
    """Optional write-through hook; the cache never reads back from it."""

    def save(self, key: str, entry: CacheEntry) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


def build_cache_key(
    source_id: str,
    endpoint: str,
    params: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Build a deterministic cache key for a fetch intent.

    Parameters are serialized with sorted keys so that the same mapping in a
    different insertion order yields the same key.
    """
    param_str = json.dumps(
        {str(k): str(v) for k, v in (params or {}).items()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"{source_id}:{endpoint}:{param_str}"


class ResponseCache:
    """
    In-memory TTL cache.

    Safe for concurrent use from asyncio tasks: the entry map is guarded by a
    single lock and get_or_set serializes loads per key.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_size: int = DEFAULT_MAX_SIZE,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        persistence: Optional[CachePersistence] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            default_ttl: Seconds an entry lives unless set() overrides it
            max_size: Default maximum number of entries
            cleanup_interval: Period of the expired-entry sweep (seconds)
            persistence: Optional write-through hook
            clock: Time source in seconds (injectable for tests)
        """
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self.persistence = persistence
        self._clock = clock

        self._cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._key_locks: Dict[str, asyncio.Lock] = {}

        # Statistics
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key``; an expired entry is dropped and counts as a miss."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return default

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key)
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return default

            entry.access_count += 1
            entry.last_accessed = now
            self._stats["hits"] += 1
            return entry.value

    async def has(self, key: str) -> bool:
        """Check if a key exists and is not expired, without touching stats."""
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key)
                self._stats["expirations"] += 1
                return False
            return True

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        max_size: Optional[int] = None,
    ) -> None:
        """
        Store ``value`` under ``key``, evicting first if the cache is full.

        ``ttl`` and ``max_size`` fall back to the cache defaults.
        """
        if ttl is None:
            ttl = self.default_ttl
        if max_size is None:
            max_size = self.max_size

        async with self._lock:
            if len(self._cache) >= max_size and key not in self._cache:
                self._evict_least_recent()

            now = self._clock()
            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                ttl=ttl,
                last_accessed=now,
            )
            self._cache[key] = entry
            self._stats["sets"] += 1

            if self.persistence is not None:
                try:
                    self.persistence.save(key, entry)
                except Exception as e:
                    logger.warning(f"Failed to persist cache entry {key}: {e}")

    async def delete(self, key: str) -> bool:
        """Remove ``key``; False if it was not cached."""
        async with self._lock:
            if key in self._cache:
                self._remove(key)
                return True
            return False

    async def clear(self) -> int:
        """Drop every entry and return how many there were."""
        async with self._lock:
            count = len(self._cache)
            self._cache.clear()
            if self.persistence is not None:
                try:
                    self.persistence.clear()
                except Exception as e:
                    logger.warning(f"Failed to clear cache persistence: {e}")
            return count

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        max_size: Optional[int] = None,
    ) -> Any:
        """
        Return the cached value, or load, store and return it.

        Concurrent callers for the same key wait for the first caller's load
        instead of starting their own. Loader exceptions propagate and
        nothing is stored.
        """
        value = await self.get(key, MISSING)
        if value is not MISSING:
            return value

        lock = self._key_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                # Another caller may have loaded it while we waited
                value = await self.get(key, MISSING)
                if value is not MISSING:
                    return value

                value = await loader()
                await self.set(key, value, ttl=ttl, max_size=max_size)
                return value
        finally:
            if not lock.locked() and self._key_locks.get(key) is lock:
                del self._key_locks[key]

    async def sweep(self) -> int:
        """
        Remove every expired entry regardless of access.

        Returns:
            Number of entries removed
        """
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._cache.items()
                if entry.is_expired(now)
            ]
            for key in expired_keys:
                self._remove(key)
            self._stats["expirations"] += len(expired_keys)

        if expired_keys:
            logger.debug(f"Cache sweep dropped {len(expired_keys)} expired entries")
        return len(expired_keys)

    def keys(self) -> List[str]:
        return list(self._cache.keys())

    async def get_stats(self) -> Dict[str, Any]:
        """Counters plus size and age of the current entries."""
        async with self._lock:
            now = self._clock()
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = (
                self._stats["hits"] / total_requests
                if total_requests > 0 else 0.0
            )

            oldest = min(self._cache.values(), key=lambda e: e.created_at, default=None)
            newest = max(self._cache.values(), key=lambda e: e.created_at, default=None)
            average_age = (
                sum(now - e.created_at for e in self._cache.values()) / len(self._cache)
                if self._cache else 0.0
            )

            return {
                **self._stats,
                "size": len(self._cache),
                "max_size": self.max_size,
                "hit_rate": round(hit_rate * 100, 2),
                "average_age_seconds": round(average_age, 3),
                "oldest_entry": oldest.key if oldest else None,
                "newest_entry": newest.key if newest else None,
            }

    async def export(self) -> Dict[str, Dict[str, Any]]:
        """Dump entry metadata (not values) for debugging."""
        async with self._lock:
            now = self._clock()
            return {
                key: {
                    "ttl": entry.ttl,
                    "age_seconds": round(now - entry.created_at, 3),
                    "expired": entry.is_expired(now),
                    "access_count": entry.access_count,
                    "last_accessed": entry.last_accessed,
                }
                for key, entry in self._cache.items()
            }

    def _remove(self, key: str) -> None:
        del self._cache[key]
        if self.persistence is not None:
            try:
                self.persistence.remove(key)
            except Exception as e:
                logger.warning(f"Failed to remove cache entry {key} from persistence: {e}")

    def _evict_least_recent(self) -> None:
        """Evict the least recently accessed 10% of entries (at least one)."""
        if not self._cache:
            return

        to_remove = math.ceil(len(self._cache) * EVICTION_FRACTION)
        victims = sorted(self._cache.values(), key=lambda e: e.last_accessed)[:to_remove]
        for entry in victims:
            self._remove(entry.key)
        self._stats["evictions"] += len(victims)
        logger.debug(f"Cache full: evicted {len(victims)} least recently used entries")
