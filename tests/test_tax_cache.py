import json

import redis

from services.tax_cache import MemoryBackend, RedisBackend, TaxRateCache, cache_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
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

    def delete(self, *keys):
        for k in keys:
            self.store.pop(k, None)

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return iter([k for k in list(self.store) if k.startswith(prefix)])


class BrokenRedis(FakeRedis):
    def get(self, key):
        raise redis.ConnectionError("down")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("down")


def test_cache_key():
    assert cache_key("us", "ca") == "US-CA"
    assert cache_key("de") == "DE"
    assert cache_key("de", "") == "DE"


def test_memory_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TaxRateCache(ttl_seconds=60, backend=MemoryBackend(clock))
    cache.set("US-CA", {"percentage": 7.25})

    clock.now += 59
    assert cache.get("US-CA") == {"percentage": 7.25}

    clock.now += 2
    assert cache.get("US-CA") is None

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["backend"] == "MemoryBackend"


def test_invalidate_and_clear():
    cache = TaxRateCache(ttl_seconds=60, backend=MemoryBackend(FakeClock()))
    cache.set("US", {"percentage": 5})
    cache.set("DE", {"percentage": 19})
    cache.invalidate("US")
    assert cache.get("US") is None
    assert cache.clear() == 1
    assert cache.stats()["size"] == 0
    assert cache.stats()["hits"] == 0


def test_redis_backend_uses_prefix_and_ttl():
    client = FakeRedis()
    cache = TaxRateCache(ttl_seconds=300, backend=RedisBackend(client))
    cache.set("US-CA", {"percentage": 7.25})

    assert client.ttls["tax-rate:US-CA"] == 300
    assert json.loads(client.store["tax-rate:US-CA"]) == {"percentage": 7.25}
    assert cache.get("US-CA") == {"percentage": 7.25}
    assert cache.clear() == 1
    assert client.store == {}


def test_redis_errors_degrade_to_miss(ctx):
    cache = TaxRateCache(ttl_seconds=300, backend=RedisBackend(BrokenRedis()))
    cache.set("US", {"percentage": 5})
    assert cache.get("US") is None
    assert cache.misses == 1
