"""Approximate "who is watching right now" without a disconnect signal.

Each visit owns two pieces of key-store state:

* ``visitor:{visit_id}`` holding the owner id, with a PX expiry. This is the
  entry heartbeats renew; once it lapses it cannot be renewed.
* a member of the sorted set ``visitors:{owner_id}`` scored by the entry's
  expiry timestamp. The active count is ZCOUNT over scores still in the
  future, so a lapsed entry is never counted even before it is pruned.

A viewer who vanishes keeps counting until ``ttl_seconds`` elapse.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from services.common.logging_utils import with_log_context

from .errors import CacheUnavailableError, NotFoundError
from .models import ProfileVisit, VisitMetadata, new_id, utcnow
from .storage import Database

VISITOR_KEY_PREFIX = "visitor:"
ACTIVE_SET_PREFIX = "visitors:"


def visitor_key(visit_id: str) -> str:
    return f"{VISITOR_KEY_PREFIX}{visit_id}"


def active_set_key(owner_id: str) -> str:
    return f"{ACTIVE_SET_PREFIX}{owner_id}"


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class PresenceStore:
    """Heartbeat-renewed presence entries plus the visit audit trail."""

    def __init__(
        self,
        client: redis.Redis,
        db: Database,
        *,
        ttl_seconds: float,
        logger: logging.Logger | logging.LoggerAdapter,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._redis = client
        self._db = db
        self.ttl_seconds = ttl_seconds
        self._ttl_ms = max(1, int(ttl_seconds * 1000))
        self._clock = clock
        self._log = with_log_context(logger, component="presence")

    async def _now(self) -> float:
        # Scores use the store's clock, the same one that expires the keys.
        if self._clock is not None:
            return self._clock()
        seconds, micros = await self._redis.time()
        return seconds + micros / 1_000_000

    async def begin_visit(self, owner_id: str, metadata: Optional[VisitMetadata] = None) -> str:
        """Write the audit record, then start the presence entry.

        A StorageError on the audit insert propagates. A key-store failure
        is logged only: the visit exists, it just is not counted.
        """
        metadata = metadata or VisitMetadata()
        visit = ProfileVisit(
            id=new_id(),
            user_id=owner_id,
            visitor_ip=metadata.visitor_ip,
            visitor_user_id=metadata.visitor_user_id,
            user_agent=metadata.user_agent,
            referrer_url=metadata.referrer_url,
            started_at=utcnow(),
        )
        await self._db.record_visit(visit)

        try:
            expires_at = await self._now() + self.ttl_seconds
            async with self._redis.pipeline(transaction=True) as pipe:
                await (
                    pipe.set(visitor_key(visit.id), owner_id, px=self._ttl_ms)
                    .zadd(active_set_key(owner_id), {visit.id: expires_at})
                    .pexpire(active_set_key(owner_id), self._ttl_ms)
                    .execute()
                )
        except RedisError as e:
            self._log.warning("Failed to register presence for visit %s: %s", visit.id, e)

        self._log.debug("Visit %s started for owner %s", visit.id, owner_id)
        return visit.id

    async def renew(self, visit_id: str) -> bool:
        """Push the entry's expiry out by one window.

        Returns False when the entry has already lapsed (it is not
        recreated). Raises CacheUnavailableError if the store is down.
        """
        try:
            owner_id = await self._redis.get(visitor_key(visit_id))
            if owner_id is None:
                return False
            owner_id = _decode(owner_id)

            # XX: only touch a key that still exists, so a lapse between the
            # GET above and this SET is not undone.
            renewed = await self._redis.set(visitor_key(visit_id), owner_id, px=self._ttl_ms, xx=True)
            if not renewed:
                return False

            # The key is live, so re-adding a pruned member is not a
            # resurrection.
            expires_at = await self._now() + self.ttl_seconds
            async with self._redis.pipeline(transaction=True) as pipe:
                await (
                    pipe.zadd(active_set_key(owner_id), {visit_id: expires_at})
                    .pexpire(active_set_key(owner_id), self._ttl_ms)
                    .execute()
                )
            return True
        except RedisError as e:
            raise CacheUnavailableError(f"Presence renew failed for visit {visit_id}: {e}") from e

    async def end_visit(self, visit_id: str) -> None:
        """Close the audit record and drop the presence entry immediately."""
        visit = await self._db.get_visit(visit_id)
        await self._db.end_visit(visit_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await (
                    pipe.zrem(active_set_key(visit.user_id), visit_id)
                    .delete(visitor_key(visit_id))
                    .execute()
                )
        except RedisError as e:
            self._log.warning("Failed to drop presence for visit %s: %s", visit_id, e)
        self._log.debug("Visit %s ended for owner %s", visit_id, visit.user_id)

    async def active_count(self, owner_id: str) -> int:
        key = active_set_key(owner_id)
        try:
            now = await self._now()
            async with self._redis.pipeline(transaction=True) as pipe:
                _, count = await (
                    pipe.zremrangebyscore(key, "-inf", now)
                    .zcount(key, f"({now}", "+inf")
                    .execute()
                )
        except RedisError as e:
            raise CacheUnavailableError(f"Active count failed for {owner_id}: {e}") from e
        return max(0, int(count))

    async def visit_for_owner(self, visit_id: str, owner_id: str) -> ProfileVisit:
        """Fetch an open visit and check it was started on this owner's page."""
        visit = await self._db.get_visit(visit_id)
        if visit.user_id != owner_id or visit.ended_at is not None:
            raise NotFoundError(f"Visit {visit_id} is not open for owner {owner_id}")
        return visit
