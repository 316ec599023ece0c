"""PostgreSQL persistence for users, profiles, listening history and visits.

psycopg2 is blocking, so every public coroutine runs its query function in
a worker thread with its own pooled connection.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, TypeVar

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from services.common.logging_utils import with_log_context

from .errors import NotFoundError, StorageError
from .models import (
    PlaybackSnapshot,
    Profile,
    ProfileUpdate,
    ProfileVisit,
    TokenBundle,
    Track,
    User,
    new_id,
    utcnow,
)

T = TypeVar("T")

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        spotify_id VARCHAR(255) UNIQUE NOT NULL,
        email VARCHAR(255) UNIQUE NOT NULL,
        display_name VARCHAR(255) NOT NULL,
        profile_url VARCHAR(255) UNIQUE NOT NULL,
        spotify_access_token TEXT NOT NULL,
        spotify_refresh_token TEXT NOT NULL,
        token_expires_at TIMESTAMP WITH TIME ZONE NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_sharing_enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        theme VARCHAR(50) NOT NULL DEFAULT 'default',
        background_color VARCHAR(20) NOT NULL DEFAULT '#121212',
        text_color VARCHAR(20) NOT NULL DEFAULT '#FFFFFF',
        custom_message TEXT,
        show_stats BOOLEAN NOT NULL DEFAULT TRUE,
        show_history BOOLEAN NOT NULL DEFAULT TRUE,
        animation_style VARCHAR(50) NOT NULL DEFAULT 'fade',
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tracks (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        spotify_track_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        artist VARCHAR(255) NOT NULL,
        album VARCHAR(255) NOT NULL,
        album_art_url TEXT,
        track_url TEXT,
        duration_ms INTEGER NOT NULL,
        is_currently_playing BOOLEAN NOT NULL DEFAULT FALSE,
        played_at TIMESTAMP WITH TIME ZONE NOT NULL,
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profile_visits (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        visitor_ip VARCHAR(45),
        visitor_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
        user_agent TEXT,
        referrer_url TEXT,
        started_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        ended_at TIMESTAMP WITH TIME ZONE
    )
    """,
    "CREATE INDEX IF NOT EXISTS tracks_user_id_idx ON tracks(user_id)",
    "CREATE INDEX IF NOT EXISTS tracks_played_at_idx ON tracks(played_at)",
    # At most one currently-playing row per owner.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS tracks_one_playing_idx
        ON tracks(user_id) WHERE is_currently_playing
    """,
    "CREATE INDEX IF NOT EXISTS profile_visits_user_id_idx ON profile_visits(user_id)",
    "CREATE INDEX IF NOT EXISTS profile_visits_started_at_idx ON profile_visits(started_at)",
)

_PROFILE_URL_STRIP = re.compile(r"[^a-z0-9-]")


def slugify_profile_url(display_name: str) -> str:
    """Lowercase, spaces to hyphens, drop everything outside [a-z0-9-]."""
    base = display_name.lower().replace(" ", "-")
    return _PROFILE_URL_STRIP.sub("", base)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (TypeError, ValueError):
        return False
    return True


def _str_ids(row: dict, *keys: str) -> dict:
    # UUID columns come back as uuid.UUID; models use plain strings.
    for key in keys:
        if isinstance(row.get(key), uuid.UUID):
            row[key] = str(row[key])
    return row


class Database:
    """PostgreSQL connection pool plus the queries the service needs."""

    def __init__(
        self,
        url: str,
        *,
        logger: logging.Logger | logging.LoggerAdapter,
        min_connections: int = 1,
        max_connections: int = 10,
    ):
        """Store connection settings; the pool is opened by connect()."""
        self.url = url
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.pool: Optional[ThreadedConnectionPool] = None
        self._log = with_log_context(logger, component="database")

    def connect(self):
        """Open the pool with explicit UTF-8 client encoding."""
        if not self.url:
            raise ValueError("DATABASE_URL not set")
        try:
            self.pool = ThreadedConnectionPool(
                self.min_connections,
                self.max_connections,
                self.url,
                options="-c client_encoding=UTF8",
            )
        except psycopg2.Error as e:
            raise StorageError(f"Failed to connect to PostgreSQL: {e}") from e
        self._log.info("Connected to PostgreSQL (pool %d-%d)", self.min_connections, self.max_connections)

    def close(self):
        if self.pool:
            self.pool.closeall()
            self.pool = None

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        """Borrow a connection for one transaction; commit on success."""
        if self.pool is None:
            self.connect()
        conn = self.pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except psycopg2.Error as e:
            self._log.error("%s failed: %s", operation, e)
            raise StorageError(f"{operation} failed") from e

    # ── Schema ────────────────────────────────────────────────────

    def _run_migrations_sync(self):
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    async def run_migrations(self):
        await self._run("run migrations", self._run_migrations_sync)
        self._log.info("Database schema is up to date")

    # ── Users ─────────────────────────────────────────────────────

    def _fetch_user_sync(self, column: str, value: str) -> Optional[User]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT * FROM users WHERE {column} = %s", (value,))
            row = cursor.fetchone()
        return User.model_validate(_str_ids(dict(row), "id")) if row else None

    async def get_user_by_id(self, user_id: str) -> User:
        if not _is_uuid(user_id):
            raise NotFoundError(f"User {user_id} not found")
        user = await self._run("get user", self._fetch_user_sync, "id", user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_user_by_profile_url(self, profile_url: str) -> User:
        user = await self._run("get user by profile url", self._fetch_user_sync, "profile_url", profile_url)
        if user is None:
            raise NotFoundError(f"Profile {profile_url} not found")
        return user

    def _unique_profile_url(self, cursor, display_name: str) -> str:
        base = slugify_profile_url(display_name)
        cursor.execute("SELECT COUNT(*) AS taken FROM users WHERE profile_url = %s", (base,))
        if not base or cursor.fetchone()["taken"]:
            suffix = str(uuid.uuid4())[-6:]
            base = f"{base}-{suffix}" if base else suffix
        return base

    def _create_or_update_user_sync(
        self,
        spotify_id: str,
        email: str,
        display_name: str,
        tokens: TokenBundle,
    ) -> User:
        now = utcnow()
        expires_at = now + timedelta(seconds=tokens.expires_in)
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE spotify_id = %s FOR UPDATE", (spotify_id,))
            row = cursor.fetchone()
            if row:
                cursor.execute(
                    """
                    UPDATE users SET
                        spotify_access_token = %s,
                        spotify_refresh_token = COALESCE(%s, spotify_refresh_token),
                        token_expires_at = %s,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (tokens.access_token, tokens.refresh_token, expires_at, now, row["id"]),
                )
                return User.model_validate(_str_ids(dict(cursor.fetchone()), "id"))

            user_id = new_id()
            cursor.execute(
                """
                INSERT INTO users (
                    id, spotify_id, email, display_name, profile_url,
                    spotify_access_token, spotify_refresh_token, token_expires_at,
                    is_active, is_sharing_enabled, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, TRUE, %s, %s)
                RETURNING *
                """,
                (
                    user_id, spotify_id, email, display_name,
                    self._unique_profile_url(cursor, display_name),
                    tokens.access_token, tokens.refresh_token or "", expires_at, now, now,
                ),
            )
            user = User.model_validate(_str_ids(dict(cursor.fetchone()), "id"))
            cursor.execute(
                """
                INSERT INTO profiles (id, user_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                """,
                (new_id(), user_id, now, now),
            )
        self._log.info("Created user %s with profile url %s", user.id, user.profile_url)
        return user

    async def create_or_update_user(
        self,
        spotify_id: str,
        email: str,
        display_name: str,
        tokens: TokenBundle,
    ) -> User:
        return await self._run(
            "create or update user",
            self._create_or_update_user_sync,
            spotify_id, email, display_name, tokens,
        )

    def _execute_sync(self, query: str, params: tuple) -> int:
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    async def update_user_settings(self, user_id: str, is_sharing_enabled: bool):
        updated = await self._run(
            "update user settings",
            self._execute_sync,
            "UPDATE users SET is_sharing_enabled = %s, updated_at = %s WHERE id = %s",
            (is_sharing_enabled, utcnow(), user_id),
        )
        if not updated:
            raise NotFoundError(f"User {user_id} not found")

    async def update_user_token(
        self,
        user_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: Optional[str] = None,
    ):
        await self._run(
            "update user token",
            self._execute_sync,
            """
            UPDATE users SET
                spotify_access_token = %s,
                spotify_refresh_token = COALESCE(%s, spotify_refresh_token),
                token_expires_at = %s,
                updated_at = %s
            WHERE id = %s
            """,
            (access_token, refresh_token, expires_at, utcnow(), user_id),
        )

    # ── Profiles ──────────────────────────────────────────────────

    def _get_profile_sync(self, user_id: str) -> Optional[Profile]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM profiles WHERE user_id = %s", (user_id,))
            row = cursor.fetchone()
        return Profile.model_validate(_str_ids(dict(row), "id", "user_id")) if row else None

    async def get_profile(self, user_id: str) -> Profile:
        profile = await self._run("get profile", self._get_profile_sync, user_id)
        if profile is None:
            raise NotFoundError(f"Profile for user {user_id} not found")
        return profile

    async def update_profile(self, user_id: str, updates: ProfileUpdate):
        fields = updates.model_dump()
        updated = await self._run(
            "update profile",
            self._execute_sync,
            """
            UPDATE profiles SET
                theme = %(theme)s,
                background_color = %(background_color)s,
                text_color = %(text_color)s,
                custom_message = %(custom_message)s,
                show_stats = %(show_stats)s,
                show_history = %(show_history)s,
                animation_style = %(animation_style)s,
                updated_at = %(updated_at)s
            WHERE user_id = %(user_id)s
            """,
            {**fields, "updated_at": utcnow(), "user_id": user_id},
        )
        if not updated:
            raise NotFoundError(f"Profile for user {user_id} not found")

    # ── Listening history ─────────────────────────────────────────

    def _save_track_sync(self, user_id: str, snapshot: PlaybackSnapshot, played_at: datetime) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id FROM tracks
                WHERE user_id = %s AND spotify_track_id = %s AND is_currently_playing
                FOR UPDATE
                """,
                (user_id, snapshot.track_id),
            )
            existing = cursor.fetchone()
            if existing:
                cursor.execute("UPDATE tracks SET played_at = %s WHERE id = %s", (played_at, existing["id"]))
                return False

            # Flip then insert: keeps at most one playing row per owner.
            cursor.execute(
                "UPDATE tracks SET is_currently_playing = FALSE WHERE user_id = %s AND is_currently_playing",
                (user_id,),
            )
            track = Track.from_snapshot(user_id, snapshot, played_at)
            cursor.execute(
                """
                INSERT INTO tracks (
                    id, user_id, spotify_track_id, name, artist, album, album_art_url,
                    track_url, duration_ms, is_currently_playing, played_at, created_at
                ) VALUES (
                    %(id)s, %(user_id)s, %(spotify_track_id)s, %(name)s, %(artist)s, %(album)s,
                    %(album_art_url)s, %(track_url)s, %(duration_ms)s, %(is_currently_playing)s,
                    %(played_at)s, %(created_at)s
                )
                """,
                track.model_dump(),
            )
            return True

    async def save_track_to_history(
        self,
        user_id: str,
        snapshot: PlaybackSnapshot,
        played_at: Optional[datetime] = None,
    ) -> bool:
        """Record a playing snapshot; returns True when a new row was inserted."""
        try:
            return await self._run(
                "save track to history",
                self._save_track_sync,
                user_id, snapshot, played_at or utcnow(),
            )
        except StorageError as e:
            if isinstance(e.__cause__, psycopg2.errors.UniqueViolation):
                # A concurrent poll already recorded this transition.
                self._log.info("Concurrent history write for user %s; keeping existing row", user_id)
                return False
            raise

    def _recent_tracks_sync(self, user_id: str, limit: int) -> list[Track]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM tracks
                WHERE user_id = %s
                ORDER BY played_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [Track.model_validate(_str_ids(dict(row), "id", "user_id")) for row in rows]

    async def get_recent_tracks(self, user_id: str, limit: int) -> list[Track]:
        return await self._run("get recent tracks", self._recent_tracks_sync, user_id, limit)

    # ── Visits ────────────────────────────────────────────────────

    async def record_visit(self, visit: ProfileVisit):
        await self._run(
            "record profile visit",
            self._execute_sync,
            """
            INSERT INTO profile_visits (
                id, user_id, visitor_ip, visitor_user_id, user_agent, referrer_url, started_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                visit.id, visit.user_id, visit.visitor_ip, visit.visitor_user_id,
                visit.user_agent, visit.referrer_url, visit.started_at,
            ),
        )

    def _get_visit_sync(self, visit_id: str) -> Optional[ProfileVisit]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM profile_visits WHERE id = %s", (visit_id,))
            row = cursor.fetchone()
        if not row:
            return None
        return ProfileVisit.model_validate(_str_ids(dict(row), "id", "user_id", "visitor_user_id"))

    async def get_visit(self, visit_id: str) -> ProfileVisit:
        if not _is_uuid(visit_id):
            raise NotFoundError(f"Visit {visit_id} not found")
        visit = await self._run("get profile visit", self._get_visit_sync, visit_id)
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found")
        return visit

    async def end_visit(self, visit_id: str, ended_at: Optional[datetime] = None):
        await self._run(
            "end profile visit",
            self._execute_sync,
            "UPDATE profile_visits SET ended_at = %s WHERE id = %s AND ended_at IS NULL",
            (ended_at or utcnow(), visit_id),
        )
