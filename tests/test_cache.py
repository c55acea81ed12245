"""Read cache: LRU/TTL behaviour and the handle's cached helpers."""

import pytest

from heliactyl_db import KeyValueDatabase, ReadCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_least_recently_used_entry_is_evicted(clock):
    cache = ReadCache(max_entries=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1  # a is now most recent
    cache.set("c", 3)

    assert "b" not in cache
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_entries_expire_after_ttl(clock):
    cache = ReadCache(clock=clock)
    cache.set("a", 1, ttl=1000)
    clock.advance(0.5)
    assert cache.get("a") == 1
    clock.advance(1.01)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_reads_refresh_entry_age(clock):
    cache = ReadCache(clock=clock)
    cache.set("a", 1, ttl=1000)
    for _ in range(3):
        clock.advance(0.8)
        assert cache.get("a") == 1

    static = ReadCache(clock=clock, update_age_on_get=False)
    static.set("a", 1, ttl=1000)
    clock.advance(0.8)
    assert static.get("a") == 1
    clock.advance(0.8)
    assert static.get("a") is None


def test_default_ttl_applies(clock):
    cache = ReadCache(default_ttl=2000, clock=clock)
    cache.set("a", 1)
    clock.advance(1.9)
    assert "a" in cache
    clock.advance(0.2)
    assert "a" not in cache


def test_delete_pattern_is_anchored_wildcard(clock):
    cache = ReadCache(clock=clock)
    for key in ("heliactyl:user:1", "heliactyl:user:2", "heliactyl:server:1", "other:user:1"):
        cache.set(key, key)

    assert cache.delete_pattern("heliactyl:user:*") == 2
    assert sorted(cache.keys()) == ["heliactyl:server:1", "other:user:1"]
    assert cache.delete_pattern("*:1") == 2
    assert cache.keys() == []


def test_delete_pattern_escapes_regex_characters(clock):
    cache = ReadCache(clock=clock)
    cache.set("a.b", 1)
    cache.set("axb", 2)
    assert cache.delete_pattern("a.*") == 1
    assert cache.keys() == ["axb"]


async def test_get_or_set_caches_non_null_results(clock):
    cache = ReadCache(clock=clock)
    calls = []

    async def factory():
        calls.append(1)
        return {"id": 7}

    async def empty():
        calls.append(1)
        return None

    assert await cache.get_or_set("a", factory) == {"id": 7}
    assert await cache.get_or_set("a", factory) == {"id": 7}
    assert await cache.get_or_set("b", empty) is None
    assert await cache.get_or_set("b", empty) is None
    assert len(calls) == 3


async def test_get_cached_hit_skips_storage(db):
    await db.set("profile", {"name": "steve"})
    assert await db.get_cached("profile") == {"name": "steve"}
    count = db.queue.stats.operation_count

    assert await db.get_cached("profile") == {"name": "steve"}
    assert db.queue.stats.operation_count == count


async def test_get_cached_does_not_cache_missing(db):
    assert await db.get_cached("missing") is None
    assert "heliactyl:missing" not in db.cache


async def test_set_cached_writes_through(db):
    await db.set_cached("coins", 40)
    assert db.cache.get("heliactyl:coins") == 40
    assert await db.get("coins") == 40


async def test_writes_evict_cached_copies(db):
    await db.set_cached("a", 1)
    await db.set("a", 2)
    assert await db.get_cached("a") == 2

    await db.delete("a")
    assert await db.get_cached("a") is None

    await db.set_cached("b", 1)
    await db.clear()
    assert "heliactyl:b" not in db.cache


async def test_clear_cache_exact_and_wildcard(db):
    await db.set_cached("user:1", 1)
    await db.set_cached("user:2", 2)
    await db.set_cached("server:1", 3)

    db.clear_cache("server:1")
    assert "heliactyl:server:1" not in db.cache

    db.clear_cache("user:*")
    assert db.cache.keys() == []


async def test_injected_cache_is_shared(settings):
    cache = ReadCache(max_entries=10)
    first = KeyValueDatabase(settings=settings, cache=cache, namespace="one")
    second = KeyValueDatabase(settings=settings, cache=cache, namespace="two")
    await first.startup()
    await second.startup()
    try:
        await first.set_cached("k", "from one")
        await second.set_cached("k", "from two")
        assert sorted(cache.keys()) == ["one:k", "two:k"]
        second.clear_cache("*")
        assert cache.keys() == ["one:k"]
    finally:
        await first.close()
        await second.close()


def test_non_positive_ttl_is_not_cached(clock):
    cache = ReadCache(default_ttl=2000, clock=clock)
    cache.set("a", 1)
    cache.set("a", 2, ttl=0)
    assert "a" not in cache
    cache.set("b", 1, ttl=-5)
    assert len(cache) == 0


async def test_cached_helpers_honour_zero_ttl(db):
    await db.set_cached("coins", 40, ttl=0)
    assert "heliactyl:coins" not in db.cache
    assert await db.get_cached("coins", ttl=0) == 40
    assert "heliactyl:coins" not in db.cache
