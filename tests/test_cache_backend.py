"""Tests for cache_backend.py: in-memory TTL cache."""

import time

from cache_backend import InMemoryCache


class TestInMemoryCache:

    def test_roundtrip_json_values(self):
        cache = InMemoryCache()
        cache.set("k", [{"rank": 1}], ttl=60)
        assert cache.get("k") == [{"rank": 1}]

    def test_missing(self):
        assert InMemoryCache().get("nope") is None

    def test_expiry(self, monkeypatch):
        cache = InMemoryCache()
        cache.set("k", 1, ttl=10)
        now = time.time()
        monkeypatch.setattr(time, "time", lambda: now + 11)
        assert cache.get("k") is None

    def test_cleanup_counts_expired(self, monkeypatch):
        cache = InMemoryCache()
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=100)
        now = time.time()
        monkeypatch.setattr(time, "time", lambda: now + 50)
        assert cache.cleanup() == 1
        assert cache.get("b") == 2

    def test_evicts_when_full(self, monkeypatch):
        monkeypatch.setattr(InMemoryCache, "MAX_ENTRIES", 2)
        cache = InMemoryCache()
        cache.set("soon", 1, ttl=5)
        cache.set("later", 2, ttl=500)
        cache.set("new", 3, ttl=50)
        assert cache.get("soon") is None
        assert cache.get("later") == 2
        assert cache.get("new") == 3

    def test_delete_and_clear(self):
        cache = InMemoryCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        assert cache.get("a") is None
        cache.clear()
        assert cache.get("b") is None
