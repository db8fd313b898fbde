"""
In-memory TTL store backing the fresh and stale cache tiers.

Entries are immutable and replaced with a single dict assignment, and no
operation awaits, so on the event loop every read-check-use and every write
on a key is atomic without a lock shared across keys.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from shared.logging import get_logger
from .keys import CacheKey

KeyLike = Union[CacheKey, str]


@dataclass(frozen=True)
class CacheEntry:
    """A stored payload with its expiration metadata."""
    value: Any
    is_error: bool
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class FreshnessStore:
    """Named key/value store with per-entry expiration and lazy eviction."""

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.logger = get_logger(f"proxy.store.{name}")
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._expirations = 0

    def get(self, key: KeyLike) -> Optional[CacheEntry]:
        """Return the live entry for key, or None if missing or expired."""
        key_str = str(key)
        entry = self._entries.get(key_str)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            if self._entries.get(key_str) is entry:
                del self._entries[key_str]
                self._expirations += 1
            self._misses += 1
            return None

        self._hits += 1
        return entry

    def set(self, key: KeyLike, value: Any, ttl: float, *, is_error: bool = False) -> CacheEntry:
        """Upsert an entry, resetting its expiration."""
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        entry = CacheEntry(value=value, is_error=is_error, stored_at=self._clock(), ttl=ttl)
        self._entries[str(key)] = entry
        self._sets += 1
        return entry

    def delete(self, key: KeyLike) -> bool:
        """Remove a single key. Returns True if it existed."""
        removed = self._entries.pop(str(key), None) is not None
        if removed:
            self._deletes += 1
        return removed

    def delete_matching(self, pattern: str) -> int:
        """Remove every key containing pattern as a substring; returns the count removed."""
        removed = 0
        for key_str in [k for k in list(self._entries) if pattern in k]:
            if self._entries.pop(key_str, None) is not None:
                removed += 1
        self._deletes += removed
        self.logger.info("Cleared entries matching pattern", store=self.name, pattern=pattern, count=removed)
        return removed

    def clear(self) -> int:
        """Remove all entries; returns the count removed."""
        removed = len(self._entries)
        self._entries.clear()
        self._deletes += removed
        self.logger.info("Cleared store", store=self.name, count=removed)
        return removed

    def keys(self) -> List[str]:
        """List keys of live (unexpired) entries."""
        now = self._clock()
        return sorted(k for k, entry in list(self._entries.items()) if not entry.is_expired(now))

    def purge_expired(self) -> int:
        """Evict every expired entry; returns the count evicted."""
        now = self._clock()
        purged = 0
        for key_str, entry in list(self._entries.items()):
            if entry.is_expired(now) and self._entries.get(key_str) is entry:
                del self._entries[key_str]
                purged += 1
        self._expirations += purged
        if purged:
            self.logger.debug("Purged expired entries", store=self.name, count=purged)
        return purged

    def __len__(self) -> int:
        return len(self.keys())

    def stats(self) -> Dict[str, Any]:
        """Key count and store-level counters."""
        return {
            "name": self.name,
            "keys": len(self.keys()),
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "deletes": self._deletes,
            "expirations": self._expirations,
        }
