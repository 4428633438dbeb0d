"""In-memory caching with TTL for ripple.

A small TTL cache with LRU eviction, used to keep membership and credential
lookups off the persistence layer on the hot send path:
- Room info rarely changes
- Membership roles are invalidated explicitly on add/remove
- Credential hashes never change for a given user

Each ChatHub owns its own cache instances, so TTLs bound how long another
process' membership change can go unnoticed.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from .metrics import metrics


@dataclass
class CacheEntry:
    """A single cache entry with expiration."""

    value: Any
    expires_at: float

    def is_expired(self) -> bool:
        return time.time() > self.expires_at


@dataclass
class TTLCache:
    """Thread-safe TTL cache with LRU eviction.

    Args:
        name: Name of the cache (for metrics)
        default_ttl: Default TTL in seconds (0 = no expiration, rely on LRU)
        max_size: Maximum number of entries (LRU eviction when exceeded)
    """

    name: str
    default_ttl: float = 3600.0
    max_size: int = 1000
    _data: OrderedDict[str, CacheEntry] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: str) -> tuple[bool, Any]:
        """Get a value from the cache.

        Returns:
            (hit, value) tuple. If hit is False, value is None.
        """
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                metrics.record_cache_miss(self.name)
                return False, None

            if entry.is_expired():
                del self._data[key]
                metrics.record_cache_miss(self.name)
                return False, None

            self._data.move_to_end(key)
            metrics.record_cache_hit(self.name)
            return True, entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: TTL in seconds (uses default_ttl if not specified, 0 = no expiration)
        """
        if ttl is None:
            ttl = self.default_ttl

        with self._lock:
            if key not in self._data and len(self._data) >= self.max_size:
                self._evict_expired()
                while len(self._data) >= self.max_size:
                    self._data.popitem(last=False)

            expires_at = time.time() + ttl if ttl > 0 else float("inf")
            self._data[key] = CacheEntry(value=value, expires_at=expires_at)
            self._data.move_to_end(key)

    def delete(self, key: str) -> bool:
        """Delete a key from the cache. Returns True if the key existed."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate all keys starting with a prefix. Returns the count removed."""
        with self._lock:
            keys_to_delete = [k for k in self._data if k.startswith(prefix)]
            for key in keys_to_delete:
                del self._data[key]
            return len(keys_to_delete)

    def clear(self) -> None:
        """Clear all entries from the cache."""
        with self._lock:
            self._data.clear()

    def _evict_expired(self) -> None:
        """Evict all expired entries. Must be called with lock held."""
        now = time.time()
        expired_keys = [k for k, v in self._data.items() if v.expires_at <= now]
        for key in expired_keys:
            del self._data[key]

    def stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.default_ttl,
            }
