import logging
from datetime import timedelta
from typing import Optional

import fakeredis
import pytest

from services.nowplaying.errors import AuthFailedError, NotFoundError, StorageError
from services.nowplaying.models import (
    PlaybackSnapshot,
    Profile,
    ProfileUpdate,
    ProfileVisit,
    SpotifyProfile,
    TokenBundle,
    Track,
    User,
    new_id,
    utcnow,
)


def playing(track_id: str, name: Optional[str] = None) -> PlaybackSnapshot:
    return PlaybackSnapshot(
        is_playing=True,
        track_id=track_id,
        name=name or f"Song {track_id}",
        artist="Artist",
        album="Album",
        album_art_url=f"https://img.example/{track_id}.jpg",
        track_url=f"https://open.spotify.com/track/{track_id}",
        duration_ms=180000,
        progress_ms=1000,
    )


class FakeDatabase:
    """In-memory stand-in for services.nowplaying.storage.Database."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.profiles: dict[str, Profile] = {}
        self.tracks: list[Track] = []
        self.visits: dict[str, ProfileVisit] = {}
        self.token_updates: list[tuple] = []
        self.fail_history = False
        self.fail_visits = False
        self.connected = False

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    async def run_migrations(self) -> None:
        pass

    def add_user(
        self,
        *,
        display_name: str = "Test Owner",
        profile_url: str = "test-owner",
        sharing: bool = True,
        active: bool = True,
        expires_in: int = 3600,
        show_stats: bool = True,
        show_history: bool = True,
    ) -> User:
        now = utcnow()
        user = User(
            id=new_id(),
            spotify_id=f"spotify-{profile_url}",
            email=f"{profile_url}@example.com",
            display_name=display_name,
            profile_url=profile_url,
            spotify_access_token="access-token",
            spotify_refresh_token="refresh-token",
            token_expires_at=now + timedelta(seconds=expires_in),
            is_active=active,
            is_sharing_enabled=sharing,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        self.profiles[user.id] = Profile(
            id=new_id(),
            user_id=user.id,
            show_stats=show_stats,
            show_history=show_history,
            created_at=now,
            updated_at=now,
        )
        return user

    # users

    async def get_user_by_id(self, user_id: str) -> User:
        if user_id not in self.users:
            raise NotFoundError(f"User {user_id} not found")
        return self.users[user_id].model_copy()

    async def get_user_by_profile_url(self, profile_url: str) -> User:
        for user in self.users.values():
            if user.profile_url == profile_url:
                return user.model_copy()
        raise NotFoundError(f"Profile {profile_url} not found")

    async def create_or_update_user(self, spotify_id, email, display_name, tokens: TokenBundle) -> User:
        for user in self.users.values():
            if user.spotify_id == spotify_id:
                user.spotify_access_token = tokens.access_token
                return user.model_copy()
        user = self.add_user(display_name=display_name, profile_url=display_name.lower().replace(" ", "-"))
        user.spotify_id = spotify_id
        return user.model_copy()

    async def update_user_settings(self, user_id: str, is_sharing_enabled: bool):
        if user_id not in self.users:
            raise NotFoundError(f"User {user_id} not found")
        self.users[user_id].is_sharing_enabled = is_sharing_enabled

    async def update_user_token(self, user_id, access_token, expires_at, refresh_token=None):
        self.token_updates.append((user_id, access_token, expires_at, refresh_token))
        user = self.users[user_id]
        user.spotify_access_token = access_token
        user.token_expires_at = expires_at
        if refresh_token:
            user.spotify_refresh_token = refresh_token

    # profiles

    async def get_profile(self, user_id: str) -> Profile:
        if user_id not in self.profiles:
            raise NotFoundError(f"Profile for user {user_id} not found")
        return self.profiles[user_id]

    async def update_profile(self, user_id: str, updates: ProfileUpdate):
        if user_id not in self.profiles:
            raise NotFoundError(f"Profile for user {user_id} not found")
        self.profiles[user_id] = self.profiles[user_id].model_copy(update=updates.model_dump())

    # history

    async def save_track_to_history(self, user_id, snapshot: PlaybackSnapshot, played_at=None) -> bool:
        if self.fail_history:
            raise StorageError("save track to history failed")
        played_at = played_at or utcnow()
        for i, track in enumerate(self.tracks):
            if track.user_id == user_id and track.is_currently_playing:
                if track.spotify_track_id == snapshot.track_id:
                    self.tracks[i] = track.model_copy(update={"played_at": played_at})
                    return False
                self.tracks[i] = track.model_copy(update={"is_currently_playing": False})
        self.tracks.append(Track.from_snapshot(user_id, snapshot, played_at))
        return True

    async def get_recent_tracks(self, user_id: str, limit: int) -> list[Track]:
        owned = [t for t in self.tracks if t.user_id == user_id]
        return sorted(owned, key=lambda t: t.played_at, reverse=True)[:limit]

    # visits

    async def record_visit(self, visit: ProfileVisit):
        if self.fail_visits:
            raise StorageError("record profile visit failed")
        self.visits[visit.id] = visit

    async def get_visit(self, visit_id: str) -> ProfileVisit:
        if visit_id not in self.visits:
            raise NotFoundError(f"Visit {visit_id} not found")
        return self.visits[visit_id]

    async def end_visit(self, visit_id: str, ended_at=None):
        visit = self.visits.get(visit_id)
        if visit is not None and visit.ended_at is None:
            self.visits[visit_id] = visit.model_copy(update={"ended_at": ended_at or utcnow()})


class FakeSpotify:
    """Scriptable stand-in for SpotifyClient."""

    def __init__(self):
        self.playback = PlaybackSnapshot.idle()
        self.playback_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.playback_calls = 0
        self.seen_tokens: list[str] = []
        self.refreshed_with: list[str] = []
        self.tokens = TokenBundle(access_token="new-access-token", expires_in=3600, refresh_token="new-refresh-token")
        self.profile = SpotifyProfile(id="spotify-new", email="new@example.com", display_name="New Owner")

    def authorize_url(self, state: str) -> str:
        return f"https://accounts.spotify.com/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenBundle:
        if code == "bad-code":
            raise AuthFailedError("Token endpoint rejected request: 400")
        return self.tokens

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        self.refreshed_with.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.tokens

    async def fetch_profile(self, access_token: str) -> SpotifyProfile:
        return self.profile

    async def fetch_current_playback(self, access_token: str) -> PlaybackSnapshot:
        self.playback_calls += 1
        self.seen_tokens.append(access_token)
        if self.playback_error is not None:
            raise self.playback_error
        return self.playback

    async def aclose(self) -> None:
        pass


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("nowplaying.tests")


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_spotify() -> FakeSpotify:
    return FakeSpotify()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server)
    yield client
    await client.aclose()


@pytest.fixture
def owner(fake_db: FakeDatabase) -> User:
    return fake_db.add_user()


@pytest.fixture
def track():
    """Factory for playing snapshots: ``track("t1")``."""
    return playing
