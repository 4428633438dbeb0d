"""Tests for the TTL cache."""

from unittest.mock import patch

from ripple.cache import TTLCache
from ripple.metrics import metrics


class TestTTLCache:
    def test_hit_and_miss(self):
        cache = TTLCache(name="test")
        assert cache.get("k") == (False, None)

        cache.set("k", "v")

        assert cache.get("k") == (True, "v")
        stats = metrics.to_dict()["cache"]["test"]
        assert (stats["hits"], stats["misses"]) == (1, 1)

    def test_cached_none_is_a_hit(self):
        cache = TTLCache(name="test")
        cache.set("k", None)
        assert cache.get("k") == (True, None)

    def test_expiry(self):
        cache = TTLCache(name="test", default_ttl=10)
        with patch("ripple.cache.time.time", return_value=1000.0):
            cache.set("k", "v")
        with patch("ripple.cache.time.time", return_value=1011.0):
            assert cache.get("k") == (False, None)

    def test_zero_ttl_never_expires(self):
        cache = TTLCache(name="test", default_ttl=0)
        cache.set("k", "v")
        with patch("ripple.cache.time.time", return_value=10**12):
            assert cache.get("k") == (True, "v")

    def test_lru_eviction(self):
        """The least recently used entry goes first when full."""
        cache = TTLCache(name="test", max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") == (False, None)
        assert cache.get("a") == (True, 1)
        assert cache.get("c") == (True, 3)

    def test_invalidate_prefix(self):
        cache = TTLCache(name="test")
        cache.set("room1:alice", "owner")
        cache.set("room1:bob", "member")
        cache.set("room2:bob", "member")

        assert cache.invalidate_prefix("room1:") == 2
        assert cache.stats()["size"] == 1

    def test_delete_and_clear(self):
        cache = TTLCache(name="test")
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.delete("k") is False
        cache.set("k", "v")
        cache.clear()
        assert cache.get("k") == (False, None)
