"""Organization search cache — per (user, normalized query), bounded TTL.

Two backends with the same interface:
  - MemorySearchCache: in-process, oldest entry evicted beyond max_entries
  - RedisSearchCache: shared across workers, TTL enforced by Redis SETEX

The cache is injected into CrmClient; get_search_cache() builds the one
selected by settings.search_cache_backend.
"""

import json
import logging
import time
from collections import OrderedDict

from ..config import settings

log = logging.getLogger("leadsync.cache")

_REDIS_PREFIX = "orgsearch:"


def normalize_query(query: str) -> str:
    return " ".join((query or "").lower().split())


def cache_key(user_id, query: str) -> str:
    return f"{user_id}:{normalize_query(query)}"


class MemorySearchCache:
    def __init__(self, ttl_seconds: int | None = None, max_entries: int | None = None, clock=time.monotonic):
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.search_cache_ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.search_cache_max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, list]] = OrderedDict()

    def get(self, user_id, query: str) -> list | None:
        key = cache_key(user_id, query)
        hit = self._entries.get(key)
        if hit is None:
            return None
        stored_at, results = hit
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return results

    def set(self, user_id, query: str, results: list) -> None:
        key = cache_key(user_id, query)
        self._entries.pop(key, None)
        self._entries[key] = (self._clock(), results)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("Search cache evicted %s", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisSearchCache:
    def __init__(self, client=None, ttl_seconds: int | None = None):
        if client is None:
            import redis

            client = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=2,
            )
        self.client = client
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.search_cache_ttl_seconds

    def get(self, user_id, query: str) -> list | None:
        data = self.client.get(f"{_REDIS_PREFIX}{cache_key(user_id, query)}")
        return json.loads(data) if data else None

    def set(self, user_id, query: str, results: list) -> None:
        self.client.setex(
            f"{_REDIS_PREFIX}{cache_key(user_id, query)}", self.ttl, json.dumps(results)
        )

    def clear(self) -> None:
        for key in self.client.scan_iter(match=f"{_REDIS_PREFIX}*"):
            self.client.delete(key)


_default_cache = None


def get_search_cache():
    """Process-wide cache used when a caller doesn't inject one."""
    global _default_cache
    if _default_cache is None:
        if settings.search_cache_backend == "redis":
            _default_cache = RedisSearchCache()
            log.info("Organization search cache using Redis: %s", settings.redis_url)
        else:
            _default_cache = MemorySearchCache()
    return _default_cache
