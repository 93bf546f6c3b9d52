from identity_core.storage.cache import MemoryCache


async def test_memory_cache_round_trip_returns_copies(cache):
    value = {"roles": ["A"]}
    await cache.set("k", value, 60)
    value["roles"].append("B")

    fetched = await cache.get("k")
    fetched["roles"].append("C")

    assert await cache.get("k") == {"roles": ["A"]}


async def test_memory_cache_ttl_follows_clock(cache, clock):
    await cache.set("k", True, 60)

    clock.advance(seconds=59)
    assert await cache.get("k") is True
    clock.advance(seconds=1)
    assert await cache.get("k") is None


async def test_non_positive_ttl_is_clamped(cache, clock):
    await cache.set("k", "v", 0)

    assert await cache.get("k") == "v"
    clock.advance(seconds=1)
    assert await cache.get("k") is None


async def test_evict_all_by_prefix(cache):
    await cache.set("session:1", 1, 60)
    await cache.set("session:2", 2, 60)
    await cache.set("user:permissions:1", 3, 60)

    removed = await cache.evict_all("session:")

    assert removed == 2
    assert await cache.get("session:1") is None
    assert await cache.get("user:permissions:1") == 3


async def test_evict_and_close(clock):
    cache = MemoryCache(clock=clock)
    await cache.set("a", 1, 60)
    await cache.set("b", 2, 60)

    await cache.evict("a")
    assert await cache.get("a") is None

    await cache.close()
    assert await cache.get("b") is None
