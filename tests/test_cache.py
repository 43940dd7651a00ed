import os

os.environ.setdefault("DB_BACKEND", "sqlite")

from prime_memory.cache import (
    MISSING,
    NAMESPACE_EMBEDDINGS,
    NAMESPACE_ENTITIES,
    NAMESPACE_SEARCH,
    InProcessCache,
    NullCache,
    RedisCache,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def incr(self, key):
        self.store[key] = str(int(self.store.get(key) or 0) + 1)
        return int(self.store[key])

    def scan_iter(self, match=None):
        prefix = (match or "").rstrip("*")
        return [key for key in list(self.store) if key.startswith(prefix)]

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


class BrokenRedis:
    def get(self, key):
        raise ConnectionError("redis down")

    def setex(self, key, ttl, value):
        raise ConnectionError("redis down")

    def incr(self, key):
        raise ConnectionError("redis down")


def test_get_or_compute_memoizes_until_expiry():
    clock = FakeClock()
    cache = InProcessCache(clock=clock)
    calls = []

    def compute():
        calls.append(1)
        return [1, 2, 3]

    assert cache.get_or_compute(NAMESPACE_SEARCH, "k", 10, compute) == [1, 2, 3]
    assert cache.get_or_compute(NAMESPACE_SEARCH, "k", 10, compute) == [1, 2, 3]
    assert len(calls) == 1

    clock.now += 11
    assert cache.get(NAMESPACE_SEARCH, "k") is MISSING
    cache.get_or_compute(NAMESPACE_SEARCH, "k", 10, compute)
    assert len(calls) == 2


def test_writes_sweep_expired_entries():
    clock = FakeClock()
    cache = InProcessCache(clock=clock, max_entries=10000)
    for index in range(5000):
        cache.set(NAMESPACE_EMBEDDINGS, f"text-{index}", [float(index)], 86400)
    assert len(cache) == 5000

    clock.now += 86401
    cache.set(NAMESPACE_EMBEDDINGS, "fresh", [1.0], 86400)

    assert len(cache) == 1
    assert cache.get(NAMESPACE_EMBEDDINGS, "fresh") == [1.0]


def test_least_recently_used_entry_is_evicted():
    cache = InProcessCache(max_entries=2)
    cache.set(NAMESPACE_SEARCH, "a", [1], 60)
    cache.set(NAMESPACE_SEARCH, "b", [2], 60)
    assert cache.get(NAMESPACE_SEARCH, "a") == [1]

    cache.set(NAMESPACE_SEARCH, "c", [3], 60)

    assert len(cache) == 2
    assert cache.get(NAMESPACE_SEARCH, "b") is MISSING
    assert cache.get(NAMESPACE_SEARCH, "a") == [1]
    assert cache.get(NAMESPACE_SEARCH, "c") == [3]


def test_overwritten_key_keeps_its_new_expiry():
    clock = FakeClock()
    cache = InProcessCache(clock=clock)
    cache.set(NAMESPACE_SEARCH, "q", [1], 10)
    cache.set(NAMESPACE_SEARCH, "q", [2], 100)

    clock.now += 11
    cache.set(NAMESPACE_SEARCH, "other", [3], 100)

    assert cache.get(NAMESPACE_SEARCH, "q") == [2]


def test_namespace_invalidation_is_scoped():
    cache = InProcessCache()
    cache.set(NAMESPACE_SEARCH, "q", [1], 60)
    cache.set(NAMESPACE_ENTITIES, "q", [2], 60)

    cache.invalidate(NAMESPACE_SEARCH)

    assert cache.get(NAMESPACE_SEARCH, "q") is MISSING
    assert cache.get(NAMESPACE_ENTITIES, "q") == [2]


def test_invalidate_flushes_everything_without_namespace_support():
    cache = InProcessCache(supports_namespaces=False)
    cache.set(NAMESPACE_SEARCH, "q", [1], 60)
    cache.set(NAMESPACE_ENTITIES, "q", [2], 60)

    cache.invalidate(NAMESPACE_SEARCH)

    assert len(cache) == 0


def test_none_results_are_not_cached():
    cache = InProcessCache()
    cache.get_or_compute(NAMESPACE_SEARCH, "empty", 60, lambda: None)
    assert cache.get(NAMESPACE_SEARCH, "empty") is MISSING


def test_redis_cache_generations():
    client = FakeRedis()
    cache = RedisCache(key_prefix="test:", client=client)

    cache.set(NAMESPACE_SEARCH, "q", [[1, 0.5]], 30)
    cache.set(NAMESPACE_ENTITIES, "q", [[2, 0.7]], 30)
    assert cache.get(NAMESPACE_SEARCH, "q") == [[1, 0.5]]
    assert client.ttls["test:search:0:q"] == 30

    cache.invalidate(NAMESPACE_SEARCH)
    assert cache.get(NAMESPACE_SEARCH, "q") is MISSING
    assert cache.get(NAMESPACE_ENTITIES, "q") == [[2, 0.7]]

    cache.flush()
    assert client.store == {}


def test_redis_errors_degrade_to_misses():
    cache = RedisCache(client=BrokenRedis())
    assert cache.get_or_compute(NAMESPACE_SEARCH, "q", 30, lambda: [1]) == [1]
    cache.invalidate(NAMESPACE_SEARCH)


def test_null_cache_never_stores():
    cache = NullCache()
    cache.set(NAMESPACE_SEARCH, "q", [1], 60)
    assert cache.get(NAMESPACE_SEARCH, "q") is MISSING
