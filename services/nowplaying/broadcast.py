"""Per-owner track-change fan-out over key-store pub/sub.

Delivery is at-most-once: nothing is retained, so a subscriber only sees
events published after its subscription is confirmed. Viewers make up for
that with the initial snapshot from the cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from services.common.logging_utils import with_log_context

from .errors import CacheUnavailableError
from .models import PlaybackSnapshot

CHANNEL_PREFIX = "track:updates:"
SUBSCRIBE_CONFIRM_TIMEOUT = 5.0
# Upper bound on how long a blocked read ignores close().
POLL_INTERVAL = 1.0


def channel_name(owner_id: str) -> str:
    return f"{CHANNEL_PREFIX}{owner_id}"


class TrackSubscription:
    """A lazy, in-order stream of snapshots published for one owner.

    Iterate with ``async for``; iteration ends once close() is called.
    """

    def __init__(
        self,
        pubsub: redis.client.PubSub,
        owner_id: str,
        logger: logging.Logger | logging.LoggerAdapter,
        poll_interval: float = POLL_INTERVAL,
    ):
        self._pubsub = pubsub
        self.owner_id = owner_id
        self.channel = channel_name(owner_id)
        self._log = logger
        self._poll_interval = poll_interval
        self._closed = asyncio.Event()
        # Held around each read so close() never tears the connection down
        # under an in-flight get_message().
        self._read_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __aiter__(self) -> "TrackSubscription":
        return self

    async def __anext__(self) -> PlaybackSnapshot:
        snapshot = await self.next_snapshot()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot

    async def next_snapshot(self) -> Optional[PlaybackSnapshot]:
        """Wait for the next event; None once the subscription is closed."""
        while not self.closed:
            try:
                async with self._read_lock:
                    if self.closed:
                        return None
                    message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=self._poll_interval,
                    )
            except RedisError as e:
                raise CacheUnavailableError(f"Subscription to {self.channel} lost: {e}") from e

            if message is None or message.get("type") != "message":
                continue
            try:
                return PlaybackSnapshot.model_validate_json(message["data"])
            except ValidationError:
                self._log.warning("Dropping malformed event on %s", self.channel)
        return None

    async def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        async with self._read_lock:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except RedisError as e:
                self._log.debug("Unsubscribe from %s failed: %s", self.channel, e)
            finally:
                await self._pubsub.aclose()

    async def __aenter__(self) -> "TrackSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class TrackBroadcaster:
    """publish() / subscribe() on one channel per owner."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        logger: logging.Logger | logging.LoggerAdapter,
        poll_interval: float = POLL_INTERVAL,
    ):
        self._redis = client
        self._log = with_log_context(logger, component="broadcast")
        self._poll_interval = poll_interval

    async def publish(self, owner_id: str, snapshot: PlaybackSnapshot) -> int:
        """Send ``snapshot`` to current subscribers; returns how many got it."""
        try:
            receivers = await self._redis.publish(channel_name(owner_id), snapshot.model_dump_json())
        except RedisError as e:
            raise CacheUnavailableError(f"Publish to {channel_name(owner_id)} failed: {e}") from e
        self._log.debug("Published track %s for %s to %d subscriber(s)", snapshot.track_id, owner_id, receivers)
        return int(receivers)

    async def subscribe(self, owner_id: str) -> TrackSubscription:
        """Subscribe and wait for the server to confirm.

        Returning only after confirmation means any publish() issued after
        this call is guaranteed to reach the new subscription.
        """
        pubsub = self._redis.pubsub()
        channel = channel_name(owner_id)
        try:
            await pubsub.subscribe(channel)
            await self._await_confirmation(pubsub, channel)
        except (RedisError, asyncio.TimeoutError) as e:
            await pubsub.aclose()
            raise CacheUnavailableError(f"Subscribe to {channel} failed: {e}") from e
        return TrackSubscription(pubsub, owner_id, self._log, self._poll_interval)

    @staticmethod
    async def _await_confirmation(pubsub: redis.client.PubSub, channel: str) -> None:
        async with asyncio.timeout(SUBSCRIBE_CONFIRM_TIMEOUT):
            while True:
                message = await pubsub.get_message(timeout=SUBSCRIBE_CONFIRM_TIMEOUT)
                if message and message.get("type") == "subscribe":
                    return
