"""
Time-bounded in-memory cache.

Provides the TTLCache used by every source adapter (raw source records) and
by the reconciliation engine (merged views). Expiry is lazy: an entry whose
age has reached its TTL is treated as absent by every read, but it stays in
memory until it is overwritten, invalidated, or the cache is cleared. There
is no background sweep.

Example:
    >>> from ironsync.core.cache import TTLCache
    >>> cache: TTLCache[dict] = TTLCache(default_ttl_seconds=900)
    >>> cache.set("zezima", {"total_level": 2277})
    >>> cache.get("zezima")
    {'total_level': 2277}
    >>> cache.has("zezima")
    True
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

# 15 minutes, the default lifetime of every source cache
DEFAULT_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """
    A single cached value with the time it was stored.

    Attributes:
        key: Cache key
        value: Cached value
        stored_at: Clock reading (seconds) when the value was stored
        ttl_seconds: Lifetime of the entry in seconds
    """

    key: str
    value: T
    stored_at: float
    ttl_seconds: float

    def is_valid(self, now: float) -> bool:
        """Return True while the entry is younger than its TTL."""
        return (now - self.stored_at) < self.ttl_seconds

    def age(self, now: float) -> float:
        """Seconds elapsed since the entry was stored."""
        return now - self.stored_at


class TTLCache(Generic[T]):
    """
    Key/value cache where entries expire after a fixed lifetime.

    Invalidation always drops a whole entry; values are never partially
    updated. The clock is injectable so callers (and tests) control time.

    Attributes:
        default_ttl_seconds: Lifetime used when set() is called without a TTL
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize an empty cache.

        Args:
            default_ttl_seconds: Lifetime for entries stored without explicit TTL
            clock: Zero-argument callable returning the current time in seconds

        Raises:
            ValueError: If default_ttl_seconds is not positive
        """
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}

    def now(self) -> float:
        """Current reading of the cache clock."""
        return self._clock()

    def get(self, key: str) -> T | None:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_valid(self._clock()):
            return None
        return entry.value

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        """Store a value, replacing any previous entry for the key."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._entries[key] = CacheEntry(
            key=key, value=value, stored_at=self._clock(), ttl_seconds=ttl
        )

    def has(self, key: str) -> bool:
        """Return True if the key holds a valid (non-expired) entry."""
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self._clock())

    def entry(self, key: str) -> CacheEntry[T] | None:
        """Return the raw entry for a key, expired or not."""
        return self._entries.get(key)

    def entries(self) -> Iterator[CacheEntry[T]]:
        """Iterate over all physically present entries, including expired ones."""
        return iter(list(self._entries.values()))

    def seed(self, entry: CacheEntry[T]) -> bool:
        """
        Insert a pre-built entry, keeping its original stored_at timestamp.

        Used to restore snapshot data. Entries that are already expired are
        ignored so stale seed data is never trusted.

        Returns:
            True if the entry was stored
        """
        if not entry.is_valid(self._clock()):
            return False
        self._entries[entry.key] = entry
        return True

    def invalidate(self, key: str) -> None:
        """Drop the entry for a key. Missing keys are ignored."""
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)


__all__ = ["CacheEntry", "TTLCache", "DEFAULT_TTL_SECONDS"]
