"""Tests for the organization search cache backends."""

import json
from unittest.mock import MagicMock

from leadsync.cache.search_cache import MemorySearchCache, RedisSearchCache, cache_key, normalize_query

ORGS = [{"id": 1, "name": "Acme Corp", "address": None}]


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_normalize_query():
    assert normalize_query("  ACME   Corp ") == "acme corp"
    assert normalize_query(None) == ""


def test_cache_key_scopes_by_user():
    assert cache_key(1, "Acme") == "1:acme"
    assert cache_key(2, "acme") != cache_key(1, "acme")


def test_memory_hit_on_equivalent_query():
    cache = MemorySearchCache(ttl_seconds=300, max_entries=10)
    cache.set(1, "Acme", ORGS)
    assert cache.get(1, " acme ") == ORGS
    assert cache.get(2, "acme") is None


def test_memory_entry_expires_after_ttl():
    clock = FakeClock()
    cache = MemorySearchCache(ttl_seconds=300, max_entries=10, clock=clock)
    cache.set(1, "acme", ORGS)

    clock.now = 299
    assert cache.get(1, "acme") == ORGS
    clock.now = 300
    assert cache.get(1, "acme") is None
    assert len(cache) == 0


def test_memory_evicts_oldest_beyond_capacity():
    cache = MemorySearchCache(ttl_seconds=300, max_entries=2)
    cache.set(1, "alpha", [])
    cache.set(1, "bravo", [])
    cache.set(1, "charlie", [])

    assert len(cache) == 2
    assert cache.get(1, "alpha") is None
    assert cache.get(1, "charlie") == []


def test_memory_rewrite_refreshes_position():
    cache = MemorySearchCache(ttl_seconds=300, max_entries=2)
    cache.set(1, "alpha", [])
    cache.set(1, "bravo", [])
    cache.set(1, "alpha", ORGS)
    cache.set(1, "charlie", [])

    assert cache.get(1, "alpha") == ORGS
    assert cache.get(1, "bravo") is None


def test_redis_uses_setex_with_ttl():
    client = MagicMock()
    cache = RedisSearchCache(client=client, ttl_seconds=120)

    cache.set(7, "Acme", ORGS)

    client.setex.assert_called_once_with("orgsearch:7:acme", 120, json.dumps(ORGS))


def test_redis_get_decodes_json():
    client = MagicMock()
    client.get.return_value = json.dumps(ORGS)
    cache = RedisSearchCache(client=client, ttl_seconds=120)

    assert cache.get(7, "ACME") == ORGS
    client.get.assert_called_once_with("orgsearch:7:acme")


def test_redis_miss_returns_none():
    client = MagicMock()
    client.get.return_value = None
    assert RedisSearchCache(client=client, ttl_seconds=120).get(7, "acme") is None


def test_redis_clear_deletes_prefixed_keys():
    client = MagicMock()
    client.scan_iter.return_value = ["orgsearch:1:a", "orgsearch:2:b"]
    RedisSearchCache(client=client, ttl_seconds=120).clear()
    assert client.delete.call_count == 2
