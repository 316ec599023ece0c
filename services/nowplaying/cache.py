"""Short-lived cache of the latest playing snapshot per owner."""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from services.common.logging_utils import with_log_context

from .errors import CacheUnavailableError
from .models import PlaybackSnapshot

CACHE_KEY_PREFIX = "track:current:"


def cache_key(owner_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{owner_id}"


class NowPlayingCache:
    """Whole-snapshot overwrite with an absolute expiry of ``ttl_seconds``.

    Expiry is delegated to the key store (PX on SET), so entries vanish on
    their own and reads never see a stale value.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: float,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self._redis = client
        self.ttl_ms = max(1, int(ttl_seconds * 1000))
        self._log = with_log_context(logger, component="cache")

    async def put(self, owner_id: str, snapshot: PlaybackSnapshot) -> None:
        try:
            await self._redis.set(cache_key(owner_id), snapshot.model_dump_json(), px=self.ttl_ms)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache write failed for {owner_id}: {e}") from e

    async def get(self, owner_id: str) -> Optional[PlaybackSnapshot]:
        try:
            raw = await self._redis.get(cache_key(owner_id))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache read failed for {owner_id}: {e}") from e
        if raw is None:
            return None
        try:
            return PlaybackSnapshot.model_validate_json(raw)
        except ValidationError:
            self._log.warning("Discarding unreadable cache entry for %s", owner_id)
            return None

    async def get_or_none(self, owner_id: str) -> Optional[PlaybackSnapshot]:
        """Like get(), but an unreachable store reads as a miss."""
        try:
            return await self.get(owner_id)
        except CacheUnavailableError as e:
            self._log.warning("%s; treating as miss", e)
            return None
