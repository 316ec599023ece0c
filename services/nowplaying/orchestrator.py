"""On-demand refresh of an owner's now-playing snapshot.

Serves from the cache when it can; otherwise refreshes the access token if
needed, polls upstream, and on a playing result updates the cache, the
listening history and the live broadcast. There is no retry loop here:
callers decide whether to try again.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from services.common.logging_utils import with_log_context

from .broadcast import TrackBroadcaster
from .cache import NowPlayingCache
from .errors import (
    AuthFailedError,
    CacheUnavailableError,
    SharingDisabledError,
    StorageError,
    UpstreamUnavailableError,
)
from .models import PlaybackSnapshot, User, utcnow
from .spotify_client import SpotifyClient
from .storage import Database


class RefreshOrchestrator:
    def __init__(
        self,
        *,
        db: Database,
        cache: NowPlayingCache,
        broadcaster: TrackBroadcaster,
        spotify: SpotifyClient,
        token_refresh_margin: float,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self._db = db
        self._cache = cache
        self._broadcaster = broadcaster
        self._spotify = spotify
        self.token_refresh_margin = token_refresh_margin
        self._log = with_log_context(logger, component="orchestrator")

    async def refresh(self, owner: User, *, force: bool = False) -> PlaybackSnapshot:
        """Return the owner's current snapshot.

        ``force`` skips the cache read (manual refresh). Raises
        SharingDisabledError, AuthFailedError or UpstreamUnavailableError.
        """
        if not owner.is_sharing_enabled:
            raise SharingDisabledError(f"User {owner.id} is not sharing")

        if not force:
            cached = await self._cache.get_or_none(owner.id)
            if cached is not None and cached.is_playing:
                return cached

        access_token = await self._ensure_fresh_token(owner)
        snapshot = await self._spotify.fetch_current_playback(access_token)
        if not snapshot.is_playing:
            return PlaybackSnapshot.idle()

        await self._record(owner, snapshot)
        return snapshot

    async def _ensure_fresh_token(self, owner: User) -> str:
        if not owner.token_expires_within(self.token_refresh_margin):
            return owner.spotify_access_token

        self._log.debug("Refreshing Spotify token for user %s", owner.id)
        try:
            tokens = await self._spotify.refresh_access_token(owner.spotify_refresh_token)
        except AuthFailedError:
            self._log.error("Spotify token refresh rejected for user %s", owner.id)
            raise
        except UpstreamUnavailableError as e:
            raise AuthFailedError(f"Token refresh failed for user {owner.id}: {e}") from e

        expires_at = utcnow() + timedelta(seconds=tokens.expires_in)
        try:
            await self._db.update_user_token(owner.id, tokens.access_token, expires_at, tokens.refresh_token)
        except StorageError:
            # The new token is still valid for this request.
            self._log.warning("Could not persist refreshed token for user %s", owner.id)

        owner.spotify_access_token = tokens.access_token
        owner.token_expires_at = expires_at
        if tokens.refresh_token:
            owner.spotify_refresh_token = tokens.refresh_token
        return tokens.access_token

    async def _record(self, owner: User, snapshot: PlaybackSnapshot) -> None:
        """Cache, persist and (on a track change) broadcast a playing snapshot.

        The publish can reach live viewers before a concurrently connecting
        viewer reads the cache; both converge on the next event.
        """
        try:
            await self._cache.put(owner.id, snapshot)
        except CacheUnavailableError as e:
            self._log.warning("%s", e)

        try:
            changed = await self._db.save_track_to_history(owner.id, snapshot)
        except StorageError:
            self._log.warning("Failed to save track %s to history for user %s", snapshot.track_id, owner.id)
            changed = True

        if not changed:
            return
        try:
            await self._broadcaster.publish(owner.id, snapshot)
        except CacheUnavailableError as e:
            self._log.warning("Failed to notify track change: %s", e)
