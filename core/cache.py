"""
TTL key/value cache used for MFA codes, attempt counters and replay markers.

Two backends share one small interface:
- RedisCache: shared across workers, atomic via SET NX / GETDEL / INCR
- InMemoryCache: single process, guarded by a lock (dev and tests)

Usage:
    from core.cache import get_cache

    cache = get_cache()
    attempts = cache.incr("mfa:email:attempts:42", ttl=300)
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """Cache operations required by the MFA providers and login throttle.

    add(), pop() and incr() must be atomic: two concurrent callers never both
    win add() or pop() for the same key, and every incr() call counts exactly
    once.
    """

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...

    def pop(self, key: str) -> Optional[Any]: ...

    def incr(self, key: str, ttl: Optional[int] = None) -> int: ...

    def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Thread-safe in-process cache with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._store: dict[str, tuple[Any, Optional[float]]] = {}

    def _expires_at(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _live_entry(self, key: str):
        # Caller holds the lock
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._store[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live_entry(key)
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._store[key] = (value, self._expires_at(ttl))

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._store[key] = (value, self._expires_at(ttl))
            return True

    def pop(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            del self._store[key]
            return entry[0]

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._store[key] = (1, self._expires_at(ttl))
                return 1
            value, expires_at = entry
            self._store[key] = (int(value) + 1, expires_at)
            return int(value) + 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class RedisCache:
    """Redis-backed cache. Values are stored JSON-encoded."""

    def __init__(self, client, prefix: str = "iam:"):
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._client.set(self._key(key), json.dumps(value), ex=ttl or None)

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(self._client.set(self._key(key), json.dumps(value), ex=ttl or None, nx=True))

    def pop(self, key: str) -> Optional[Any]:
        raw = self._client.getdel(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        full_key = self._key(key)
        pipe = self._client.pipeline(transaction=True)
        pipe.incr(full_key)
        if ttl:
            # Only arm the TTL when the counter is created so the window never slides
            pipe.expire(full_key, ttl, nx=True)
        results = pipe.execute()
        return int(results[0])

    def delete(self, key: str) -> None:
        self._client.delete(self._key(key))


_cache = None
_cache_lock = threading.Lock()


def get_cache():
    """Get the process-wide cache, preferring Redis when enabled and reachable."""
    global _cache
    with _cache_lock:
        if _cache is None:
            from config.settings import get_settings
            from config.redis_client import get_redis, redis_available

            if get_settings().redis.use_redis_cache and redis_available():
                _cache = RedisCache(get_redis())
            else:
                logger.warning("Using in-memory cache: MFA counters are not shared across workers")
                _cache = InMemoryCache()
        return _cache


def reset_cache():
    """Drop the process-wide cache (tests)."""
    global _cache
    with _cache_lock:
        _cache = None
