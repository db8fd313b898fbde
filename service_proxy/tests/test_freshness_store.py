"""
Unit tests for the proxy freshness store.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_proxy.app.caching.freshness_store import FreshnessStore
from service_proxy.app.caching.keys import CacheKey
from shared.test_helpers import FakeClock


class TestFreshnessStore:
    """Test cases for FreshnessStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return FreshnessStore("fresh", clock=clock)

    def test_get_missing_key(self, store):
        """Test that an unknown key is absent."""
        assert store.get("unit:/api/units") is None
        assert store.stats()["misses"] == 1

    def test_set_and_get(self, store):
        """Test storing and reading back an entry."""
        key = CacheKey.build("unit", "/api/units?service=33418")
        store.set(key, {"count": 1}, ttl=60)

        entry = store.get(key)

        assert entry is not None
        assert entry.value == {"count": 1}
        assert entry.is_error is False
        assert entry.ttl == 60

    def test_entry_expires_at_deadline(self, store, clock):
        """Test that an entry is absent exactly at stored_at + ttl."""
        store.set("unit:/api/units", "payload", ttl=60)

        clock.advance(59.9)
        assert store.get("unit:/api/units") is not None

        clock.advance(0.1)
        assert store.get("unit:/api/units") is None
        assert store.stats()["expirations"] == 1

    def test_set_resets_expiration(self, store, clock):
        """Test that an upsert restarts the TTL."""
        store.set("k", "v1", ttl=60)
        clock.advance(50)
        store.set("k", "v2", ttl=60)
        clock.advance(50)

        entry = store.get("k")
        assert entry is not None
        assert entry.value == "v2"

    def test_error_entries_are_flagged(self, store):
        """Test that error entries keep their flag."""
        store.set("k", {"kind": "timeout"}, ttl=60, is_error=True)
        assert store.get("k").is_error is True

    def test_non_positive_ttl_rejected(self, store):
        """Test that a zero TTL is refused."""
        with pytest.raises(ValueError):
            store.set("k", "v", ttl=0)

    def test_delete(self, store):
        """Test deleting a single key."""
        store.set("k", "v", ttl=60)
        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None

    def test_delete_matching_counts_exact_removals(self, store):
        """Test substring deletion removes only matching keys."""
        store.set("unit:/api/units?service=1", "a", ttl=60)
        store.set("unit:/api/units?service=2", "b", ttl=60)
        store.set("service:/api/services", "c", ttl=60)
        store.set("announcement:/api/announcements", "d", ttl=60)

        removed = store.delete_matching("unit")

        assert removed == 2
        assert store.keys() == ["announcement:/api/announcements", "service:/api/services"]

    def test_delete_matching_no_match(self, store):
        """Test substring deletion with nothing to remove."""
        store.set("service:/api/services", "c", ttl=60)
        assert store.delete_matching("unit") == 0
        assert len(store) == 1

    def test_clear(self, store):
        """Test clearing the store."""
        store.set("a", 1, ttl=60)
        store.set("b", 2, ttl=60)

        assert store.clear() == 2
        assert store.keys() == []

    def test_keys_excludes_expired(self, store, clock):
        """Test that listed keys are live keys only."""
        store.set("short", 1, ttl=10)
        store.set("long", 2, ttl=100)
        clock.advance(20)

        assert store.keys() == ["long"]

    def test_purge_expired(self, store, clock):
        """Test sweeping expired entries."""
        store.set("short", 1, ttl=10)
        store.set("long", 2, ttl=100)
        clock.advance(20)

        assert store.purge_expired() == 1
        assert store.stats()["expirations"] == 1
        assert store.get("long").value == 2

    def test_stats(self, store):
        """Test store counters."""
        store.set("a", 1, ttl=60)
        store.get("a")
        store.get("missing")
        store.delete("a")

        stats = store.stats()

        assert stats == {
            "name": "fresh",
            "keys": 0,
            "hits": 1,
            "misses": 1,
            "sets": 1,
            "deletes": 1,
            "expirations": 0,
        }
