"""Read-side cache for leaderboard pages, Redis or in-process.

When REDIS_URL is configured and reachable the cache lives in Redis and is
shared by every worker; otherwise each process keeps its own TTL cache.
Values are JSON-serialised in both backends.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)          # called once in create_app()
    cache = get_cache()
    cache.set("leaderboard:50:0", rows, ttl=30)
    rows = cache.get("leaderboard:50:0")
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol

import redis

logger = logging.getLogger(__name__)

# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 30) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """Dict of (json, expires_at) with eviction of the soonest-expiring entry."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if time.time() > expires_at:
                del self._store[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 30) -> None:
        raw = json.dumps(value)
        with self._lock:
            if key not in self._store and len(self._store) >= self.MAX_ENTRIES:
                soonest = min(self._store, key=lambda k: self._store[k][1])
                del self._store[soonest]
            self._store[key] = (raw, time.time() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return len(expired)


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """redis.Redis wrapper; a Redis outage degrades to cache misses."""

    def __init__(self, client: redis.Redis, prefix: str = "progression:") -> None:
        self._redis = client
        self._prefix = prefix

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(self._prefix + key)
        except redis.RedisError as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: int = 30) -> None:
        try:
            self._redis.setex(self._prefix + key, ttl, json.dumps(value))
        except redis.RedisError as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(self._prefix + key)
        except redis.RedisError as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def clear(self) -> None:
        try:
            keys = list(self._redis.scan_iter(match=self._prefix + "*"))
            if keys:
                self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis expires keys itself
        return 0


# ── Module-level singleton ────────────────────────────────

_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Initialize the cache backend. Call once from create_app()."""
    global _cache

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        try:
            client = redis.Redis.from_url(redis_url)
            client.ping()
            _cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
            return
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s), using in-memory cache.", e)

    _cache = InMemoryCache()
    app.logger.info("Cache backend: in-memory")


def get_cache() -> CacheBackend:
    """Return the active cache backend. Lazily initializes if needed."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache
