import asyncio

import pytest

from services.nowplaying.broadcast import TrackBroadcaster, channel_name
from services.nowplaying.errors import CacheUnavailableError


@pytest.fixture
def broadcaster(redis_client, logger) -> TrackBroadcaster:
    return TrackBroadcaster(redis_client, logger=logger, poll_interval=0.05)


async def next_or_none(subscription, timeout: float = 1.0):
    return await asyncio.wait_for(subscription.next_snapshot(), timeout)


async def test_publish_without_subscribers_reaches_nobody(broadcaster, track) -> None:
    assert await broadcaster.publish("owner-1", track("t1")) == 0


async def test_every_subscriber_receives_each_event(broadcaster, track) -> None:
    first = await broadcaster.subscribe("owner-1")
    second = await broadcaster.subscribe("owner-1")
    try:
        assert await broadcaster.publish("owner-1", track("t1")) == 2
        assert (await next_or_none(first)).track_id == "t1"
        assert (await next_or_none(second)).track_id == "t1"
    finally:
        await first.close()
        await second.close()


async def test_events_arrive_in_publish_order(broadcaster, track) -> None:
    async with await broadcaster.subscribe("owner-1") as subscription:
        for track_id in ("t1", "t2", "t3"):
            await broadcaster.publish("owner-1", track(track_id))

        received = [(await next_or_none(subscription)).track_id for _ in range(3)]
    assert received == ["t1", "t2", "t3"]


async def test_subscribers_only_see_their_owner(broadcaster, track) -> None:
    async with await broadcaster.subscribe("owner-2") as subscription:
        await broadcaster.publish("owner-1", track("t1"))
        await broadcaster.publish("owner-2", track("t2"))
        assert (await next_or_none(subscription)).track_id == "t2"


async def test_events_before_subscribe_are_not_replayed(broadcaster, track) -> None:
    await broadcaster.publish("owner-1", track("t1"))
    async with await broadcaster.subscribe("owner-1") as subscription:
        with pytest.raises(asyncio.TimeoutError):
            await next_or_none(subscription, timeout=0.2)


async def test_malformed_events_are_skipped(redis_client, broadcaster, track) -> None:
    async with await broadcaster.subscribe("owner-1") as subscription:
        await redis_client.publish(channel_name("owner-1"), "not-a-snapshot")
        await broadcaster.publish("owner-1", track("t2"))
        assert (await next_or_none(subscription)).track_id == "t2"


async def test_close_ends_a_pending_wait(broadcaster) -> None:
    subscription = await broadcaster.subscribe("owner-1")
    waiter = asyncio.create_task(subscription.next_snapshot())
    await asyncio.sleep(0.1)

    await subscription.close()

    assert await asyncio.wait_for(waiter, 1.0) is None
    assert subscription.closed


async def test_iteration_stops_after_close(broadcaster, track) -> None:
    subscription = await broadcaster.subscribe("owner-1")
    await broadcaster.publish("owner-1", track("t1"))

    received = []
    async for snapshot in subscription:
        received.append(snapshot.track_id)
        await subscription.close()
    assert received == ["t1"]


async def test_close_is_idempotent(broadcaster) -> None:
    subscription = await broadcaster.subscribe("owner-1")
    await subscription.close()
    await subscription.close()


async def test_publish_fails_when_store_is_down(broadcaster, redis_server, track) -> None:
    redis_server.connected = False
    with pytest.raises(CacheUnavailableError):
        await broadcaster.publish("owner-1", track("t1"))


async def test_subscribe_fails_when_store_is_down(broadcaster, redis_server) -> None:
    redis_server.connected = False
    with pytest.raises(CacheUnavailableError):
        await broadcaster.subscribe("owner-1")
