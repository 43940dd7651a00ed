"""
Namespaced caches for embeddings and search results.

Every backend exposes the same surface: ``get``/``set``, ``get_or_compute`` and
``invalidate(namespace)``. Backends that cannot drop a single namespace report
``supports_namespaces = False`` and ``invalidate`` flushes everything they hold.
"""

from __future__ import annotations

import heapq
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

import prime_memory.config as config

logger = config.logger

MISSING = object()

NAMESPACE_EMBEDDINGS = "embeddings"
NAMESPACE_SEARCH = "search"
NAMESPACE_ENTITIES = "entities"


class BaseCache:
    supports_namespaces = True

    def get(self, namespace: str, key: str) -> Any:
        raise NotImplementedError

    def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        raise NotImplementedError

    def _invalidate_namespace(self, namespace: str) -> None:
        raise NotImplementedError

    def get_or_compute(self, namespace: str, key: str, ttl: int, fn: Callable[[], Any]) -> Any:
        cached = self.get(namespace, key)
        if cached is not MISSING:
            logger.debug("cache_hit", extra={"namespace": namespace})
            return cached
        logger.debug("cache_miss", extra={"namespace": namespace})
        value = fn()
        if value is not None:
            self.set(namespace, key, value, ttl)
        return value

    def invalidate(self, namespace: str) -> None:
        if self.supports_namespaces:
            self._invalidate_namespace(namespace)
        else:
            self.flush()


class InProcessCache(BaseCache):
    """
    Thread-safe LRU cache with per-entry expiry.

    Every write first drops entries whose TTL has passed; beyond ``max_entries``
    the least recently used entry is evicted.
    """

    def __init__(
        self,
        supports_namespaces: bool = True,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self.supports_namespaces = supports_namespaces
        self._clock = clock
        self._max_entries = max(1, config.CACHE_MAX_ENTRIES if max_entries is None else max_entries)
        self._lock = threading.Lock()
        self._entries: OrderedDict[tuple[str, str], tuple[float, Any]] = OrderedDict()
        # (expires_at, entry key); may hold stale pairs for overwritten or evicted keys
        self._expiries: list[tuple[float, tuple[str, str]]] = []

    def get(self, namespace: str, key: str) -> Any:
        entry_key = (namespace, key)
        with self._lock:
            entry = self._entries.get(entry_key)
            if entry is None:
                return MISSING
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[entry_key]
                return MISSING
            self._entries.move_to_end(entry_key)
            return value

    def _sweep_expired(self, now: float) -> None:
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, entry_key = heapq.heappop(self._expiries)
            entry = self._entries.get(entry_key)
            if entry is not None and entry[0] == expires_at:
                del self._entries[entry_key]
        if len(self._expiries) > 2 * self._max_entries:
            self._expiries = [(entry[0], entry_key) for entry_key, entry in self._entries.items()]
            heapq.heapify(self._expiries)

    def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
        entry_key = (namespace, key)
        with self._lock:
            now = self._clock()
            self._sweep_expired(now)
            expires_at = now + max(1, ttl)
            self._entries[entry_key] = (expires_at, value)
            self._entries.move_to_end(entry_key)
            heapq.heappush(self._expiries, (expires_at, entry_key))
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()
            self._expiries.clear()

    def _invalidate_namespace(self, namespace: str) -> None:
        with self._lock:
            for entry_key in [k for k in self._entries if k[0] == namespace]:
                del self._entries[entry_key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCache(BaseCache):
    """
    Redis-backed cache.

    Namespaces are versioned: each key embeds the namespace generation, so
    invalidating a namespace is a single INCR and stale keys age out by TTL.
    Redis errors degrade to cache misses.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "prime:cache:",
        client=None,
    ):
        if client is None:
            import redis

            client = redis.Redis.from_url(url, decode_responses=True)
        self._client = client
        self._prefix = key_prefix

    def _generation_key(self, namespace: str) -> str:
        return f"{self._prefix}{namespace}:gen"

    def _entry_key(self, namespace: str, key: str) -> str:
        generation = self._client.get(self._generation_key(namespace)) or 0
        return f"{self._prefix}{namespace}:{generation}:{key}"

    def get(self, namespace: str, key: str) -> Any:
        try:
            raw = self._client.get(self._entry_key(namespace, key))
        except Exception as exc:
            logger.warning(f"Cache get failed for namespace {namespace}: {exc}")
            return MISSING
        if raw is None:
            return MISSING
        return json.loads(raw)

    def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
        try:
            self._client.setex(self._entry_key(namespace, key), max(1, ttl), json.dumps(value))
        except Exception as exc:
            logger.warning(f"Cache set failed for namespace {namespace}: {exc}")

    def flush(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{self._prefix}*"))
            if keys:
                self._client.delete(*keys)
        except Exception as exc:
            logger.warning(f"Cache flush failed: {exc}")

    def _invalidate_namespace(self, namespace: str) -> None:
        try:
            self._client.incr(self._generation_key(namespace))
        except Exception as exc:
            logger.warning(f"Cache invalidation failed for namespace {namespace}: {exc}")


class NullCache(BaseCache):
    """Cache that never stores anything."""

    def get(self, namespace: str, key: str) -> Any:
        return MISSING

    def set(self, namespace: str, key: str, value: Any, ttl: int) -> None:
        return None

    def flush(self) -> None:
        return None

    def _invalidate_namespace(self, namespace: str) -> None:
        return None


_cache: Optional[BaseCache] = None
_cache_lock = threading.Lock()


def build_cache() -> BaseCache:
    if config.CACHE_BACKEND == "redis":
        cache: BaseCache = RedisCache(config.REDIS_URL, key_prefix=config.CACHE_KEY_PREFIX)
        cache.supports_namespaces = config.CACHE_SUPPORTS_NAMESPACES
        return cache
    if config.CACHE_BACKEND == "none":
        return NullCache()
    return InProcessCache(supports_namespaces=config.CACHE_SUPPORTS_NAMESPACES)


def get_cache() -> BaseCache:
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = build_cache()
            logger.info("cache_initialized", extra={"backend": type(_cache).__name__})
        return _cache


def set_cache(cache: Optional[BaseCache]) -> None:
    """Swap the process-wide cache (None rebuilds from configuration on next use)."""
    global _cache
    with _cache_lock:
        _cache = cache
