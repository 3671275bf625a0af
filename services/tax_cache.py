# services/tax_cache.py
"""
Cache-aside store for resolved tax rates.

Keys are "US" or "US-CA"; values are plain dict snapshots of a TaxRate
(never ORM instances, so they survive the session and Redis).
Backend is in-process unless TAX_CACHE_REDIS_URL is set.
"""
from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from flask import current_app

from services.settings import cfg_int, get_cfg

DEFAULT_TTL_SECONDS = 24 * 60 * 60
REDIS_PREFIX = "tax-rate:"


def cache_key(country: str, state: Optional[str] = None) -> str:
    country = (country or "").strip().upper()
    state = (state or "").strip().upper()
    return f"{country}-{state}" if state else country


class MemoryBackend:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return None
            expires_at, value = hit
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> int:
        with self._lock:
            n = len(self._data)
            self._data.clear()
            return n

    def size(self) -> int:
        return len(self._data)


class RedisBackend:
    def __init__(self, client: "redis.Redis", prefix: str = REDIS_PREFIX):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisBackend":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self.prefix + key)
        return json.loads(raw) if raw else None

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.client.setex(self.prefix + key, ttl, json.dumps(value))

    def delete(self, key: str) -> None:
        self.client.delete(self.prefix + key)

    def clear(self) -> int:
        keys = list(self.client.scan_iter(match=self.prefix + "*"))
        if keys:
            self.client.delete(*keys)
        return len(keys)

    def size(self) -> int:
        return sum(1 for _ in self.client.scan_iter(match=self.prefix + "*"))


class TaxRateCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, backend=None):
        self.ttl_seconds = int(ttl_seconds)
        self.backend = backend or MemoryBackend()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            value = self.backend.get(key)
        except redis.RedisError as e:
            # a broken cache only costs a DB lookup
            current_app.logger.warning("[Tax] cache read failed key=%s: %s", key, e)
            value = None
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            self.backend.set(key, value, self.ttl_seconds)
        except redis.RedisError as e:
            current_app.logger.warning("[Tax] cache write failed key=%s: %s", key, e)

    def invalidate(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except redis.RedisError as e:
            current_app.logger.warning("[Tax] cache invalidate failed key=%s: %s", key, e)

    def clear(self) -> int:
        self.hits = 0
        self.misses = 0
        return self.backend.clear()

    def stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "backend": type(self.backend).__name__,
            "ttl_seconds": self.ttl_seconds,
            "size": self.backend.size(),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
        }


_cache: Optional[TaxRateCache] = None
_cache_sig: Optional[Tuple[str, int]] = None


def get_tax_cache() -> TaxRateCache:
    """Process-wide cache, rebuilt when the backing config changes (tests swap it)."""
    global _cache, _cache_sig
    url = get_cfg("TAX_CACHE_REDIS_URL") or ""
    ttl = cfg_int("TAX_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS)
    sig = (url, ttl)
    if _cache is None or _cache_sig != sig:
        backend = RedisBackend.from_url(url) if url else MemoryBackend()
        _cache = TaxRateCache(ttl, backend)
        _cache_sig = sig
    return _cache


def reset_tax_cache() -> None:
    global _cache, _cache_sig
    _cache = None
    _cache_sig = None
