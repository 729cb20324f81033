import logging
import sys
import threading
from collections import OrderedDict
from datetime import timedelta
from fnmatch import fnmatchcase
from typing import Any, TypeVar

from pydantic import BaseModel

from socialgraph.models.cache import CacheEntry, CacheStatistics
from socialgraph.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

_GLOB_CHARS = frozenset("*?[")


def _estimate_size(value: Any) -> int:
    if isinstance(value, BaseModel):
        return len(value.model_dump_json())
    if isinstance(value, (list, tuple)):
        return sys.getsizeof(value) + sum(_estimate_size(item) for item in value)
    return sys.getsizeof(value)


def matches(key: str, pattern: str) -> bool:
    """Match a cache key against a prefix, or a glob if it has wildcards."""
    if _GLOB_CHARS.intersection(pattern):
        return fnmatchcase(key, pattern)
    return key.startswith(pattern)


class CacheEngine:
    """Generic TTL cache with LRU capacity eviction and hit/miss statistics.

    Expiry is checked lazily on ``get`` and in bulk by ``remove_expired``.
    Only implicit removals (expiry and capacity eviction) count towards
    ``eviction_count``; explicit ``remove``/``invalidate`` calls do not.

    All methods are safe to call from several threads.
    """

    def __init__(self, max_entries: int = 1_000, clock: Clock | None = None) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._clock = clock or SystemClock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str, expected_type: type[T] | None = None) -> T | Any | None:
        """Return the cached value, or None on a miss.

        When ``expected_type`` is given, a value of another type is treated
        as a corrupt entry: it is dropped and reported as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if not isinstance(entry, CacheEntry):
                if entry is not None:
                    del self._entries[key]
                self._misses += 1
                return None

            if entry.is_expired(self._clock.now()):
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return None

            if expected_type is not None and not isinstance(entry.value, expected_type):
                logger.warning("Dropping cache entry %s with unexpected shape", key)
                del self._entries[key]
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | timedelta) -> None:
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock.now(),
            ttl=ttl,
            size=_estimate_size(value),
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted least recently used cache entry %s", evicted)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def remove_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def remove_expired(self) -> int:
        """Sweep expired entries and return how many were removed."""
        now = self._clock.now()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
        return len(expired)

    def invalidate(self, pattern: str) -> int:
        """Remove every key matching ``pattern`` and return how many went."""
        with self._lock:
            doomed = [key for key in self._entries if matches(key, pattern)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def keys(self, pattern: str | None = None) -> list[str]:
        with self._lock:
            if pattern is None:
                return list(self._entries)
            return [key for key in self._entries if matches(key, pattern)]

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock.now())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def statistics(self) -> CacheStatistics:
        with self._lock:
            lookups = self._hits + self._misses
            return CacheStatistics(
                total_entries=len(self._entries),
                total_size=sum(entry.size for entry in self._entries.values()),
                hit_rate=self._hits / lookups if lookups else 0.0,
                miss_rate=self._misses / lookups if lookups else 0.0,
                eviction_count=self._evictions,
            )
