import asyncio

import pytest

from services.nowplaying.cache import NowPlayingCache, cache_key
from services.nowplaying.errors import CacheUnavailableError


@pytest.fixture
def cache(redis_client, logger) -> NowPlayingCache:
    return NowPlayingCache(redis_client, ttl_seconds=120, logger=logger)


async def test_get_returns_none_on_miss(cache: NowPlayingCache) -> None:
    assert await cache.get("owner-1") is None


async def test_put_then_get_returns_same_snapshot(cache: NowPlayingCache, track) -> None:
    snapshot = track("t1")
    await cache.put("owner-1", snapshot)
    assert await cache.get("owner-1") == snapshot


async def test_put_overwrites_whole_snapshot(cache: NowPlayingCache, track) -> None:
    await cache.put("owner-1", track("t1"))
    await cache.put("owner-1", track("t2"))

    cached = await cache.get("owner-1")
    assert cached.track_id == "t2"
    assert cached.name == "Song t2"


async def test_entries_are_isolated_per_owner(cache: NowPlayingCache, track) -> None:
    await cache.put("owner-1", track("t1"))
    assert await cache.get("owner-2") is None


async def test_put_sets_absolute_expiry(redis_client, cache: NowPlayingCache, track) -> None:
    await cache.put("owner-1", track("t1"))
    ttl_ms = await redis_client.pttl(cache_key("owner-1"))
    assert 0 < ttl_ms <= 120_000


async def test_entry_disappears_after_ttl(redis_client, logger, track) -> None:
    cache = NowPlayingCache(redis_client, ttl_seconds=0.1, logger=logger)
    await cache.put("owner-1", track("t1"))
    assert await cache.get("owner-1") is not None

    await asyncio.sleep(0.25)
    assert await cache.get("owner-1") is None


async def test_unreadable_entry_reads_as_miss(redis_client, cache: NowPlayingCache) -> None:
    await redis_client.set(cache_key("owner-1"), "{not json")
    assert await cache.get("owner-1") is None


async def test_store_outage_raises_from_get_and_put(redis_server, cache: NowPlayingCache, track) -> None:
    redis_server.connected = False
    with pytest.raises(CacheUnavailableError):
        await cache.get("owner-1")
    with pytest.raises(CacheUnavailableError):
        await cache.put("owner-1", track("t1"))


async def test_get_or_none_treats_outage_as_miss(redis_server, cache: NowPlayingCache) -> None:
    redis_server.connected = False
    assert await cache.get_or_none("owner-1") is None
