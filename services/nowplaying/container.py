"""Explicit wiring of every collaborator, built once per process."""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis
from fastapi import WebSocket
from redis.exceptions import RedisError

from services.common.runtime_utils import build_upstream_client, redact_url

from .broadcast import TrackBroadcaster
from .cache import NowPlayingCache
from .config import Settings
from .errors import CacheUnavailableError
from .live_session import LiveUpdateSession
from .orchestrator import RefreshOrchestrator
from .presence import PresenceStore
from .spotify_client import SpotifyClient
from .storage import Database


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        *,
        db: Database,
        redis_client: redis.Redis,
        spotify: SpotifyClient,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self.settings = settings
        self.db = db
        self.redis = redis_client
        self.spotify = spotify
        self.logger = logger

        self.cache = NowPlayingCache(
            redis_client,
            ttl_seconds=settings.now_playing_cache_ttl,
            logger=logger,
        )
        self.presence = PresenceStore(
            redis_client,
            db,
            ttl_seconds=settings.presence_ttl,
            logger=logger,
        )
        self.broadcaster = TrackBroadcaster(redis_client, logger=logger)
        self.orchestrator = RefreshOrchestrator(
            db=db,
            cache=self.cache,
            broadcaster=self.broadcaster,
            spotify=spotify,
            token_refresh_margin=settings.token_refresh_margin,
            logger=logger,
        )

    @classmethod
    def from_settings(cls, settings: Settings, logger: logging.Logger | logging.LoggerAdapter) -> "ServiceContainer":
        db = Database(
            settings.database_url,
            logger=logger,
            min_connections=settings.db_pool_min,
            max_connections=settings.db_pool_max,
        )
        spotify = SpotifyClient(
            settings.spotify_client_id,
            settings.spotify_client_secret,
            settings.spotify_redirect_uri,
            http=build_upstream_client(timeout_seconds=settings.upstream_timeout),
            logger=logger,
            scopes=settings.spotify_scopes,
        )
        return cls(
            settings,
            db=db,
            redis_client=redis.from_url(settings.redis_url),
            spotify=spotify,
            logger=logger,
        )

    async def start(self) -> None:
        """Connect to PostgreSQL and Redis and bring the schema up to date."""
        await asyncio.to_thread(self.db.connect)
        await self.db.run_migrations()
        try:
            await self.redis.ping()
        except RedisError as e:
            raise CacheUnavailableError(f"Failed to connect to Redis: {e}") from e
        self.logger.info("Connected to Redis at %s", redact_url(self.settings.redis_url))

    async def close(self) -> None:
        await self.spotify.aclose()
        await self.redis.aclose()
        self.db.close()

    def live_session(self, websocket: WebSocket) -> LiveUpdateSession:
        return LiveUpdateSession(
            websocket,
            db=self.db,
            cache=self.cache,
            presence=self.presence,
            broadcaster=self.broadcaster,
            heartbeat_interval=self.settings.presence_heartbeat_interval,
            ping_interval=self.settings.live_ping_interval,
            end_visit_on_graceful_close=self.settings.end_visit_on_graceful_close,
            logger=self.logger,
        )
