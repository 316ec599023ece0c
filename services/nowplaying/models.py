"""Data models shared by the core, the store and the HTTP layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PlaybackSnapshot(BaseModel):
    """An immutable reading of what an owner is playing at poll time.

    Track fields are only meaningful while ``is_playing`` is true; an idle
    snapshot carries ``None`` everywhere else.
    """

    model_config = ConfigDict(frozen=True)

    is_playing: bool = False
    track_id: Optional[str] = None
    name: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_art_url: Optional[str] = None
    track_url: Optional[str] = None
    duration_ms: Optional[int] = None
    progress_ms: Optional[int] = None

    @classmethod
    def idle(cls) -> "PlaybackSnapshot":
        return cls(is_playing=False)


class TokenBundle(BaseModel):
    """Token endpoint response."""
    access_token: str
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expires_in: int
    # Only present on code exchange, and occasionally on refresh.
    refresh_token: Optional[str] = None


class SpotifyProfile(BaseModel):
    """The subset of the upstream account profile used at login."""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class User(BaseModel):
    id: str
    spotify_id: str
    email: str
    display_name: str
    profile_url: str
    spotify_access_token: str = Field(exclude=True)
    spotify_refresh_token: str = Field(exclude=True)
    token_expires_at: datetime = Field(exclude=True)
    is_active: bool = True
    is_sharing_enabled: bool = True
    created_at: datetime
    updated_at: datetime

    def token_expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token is expired or inside the safety margin."""
        now = now or utcnow()
        return self.token_expires_at <= now + timedelta(seconds=margin_seconds)

    def public(self) -> "UserPublic":
        return UserPublic(id=self.id, display_name=self.display_name, profile_url=self.profile_url)


class UserPublic(BaseModel):
    id: str
    display_name: str
    profile_url: str


class Profile(BaseModel):
    id: str
    user_id: str
    theme: str = "default"
    background_color: str = "#121212"
    text_color: str = "#FFFFFF"
    custom_message: Optional[str] = None
    show_stats: bool = True
    show_history: bool = True
    animation_style: str = "fade"
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    """Fields an owner may change on their profile."""
    theme: str = "default"
    background_color: str = "#121212"
    text_color: str = "#FFFFFF"
    custom_message: Optional[str] = None
    show_stats: bool = True
    show_history: bool = True
    animation_style: str = "fade"


class SharingSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_sharing_enabled: bool = Field(alias="isSharingEnabled")


class Track(BaseModel):
    """One row of an owner's listening history."""
    id: str
    user_id: str
    spotify_track_id: str
    name: str
    artist: str
    album: str
    album_art_url: Optional[str] = None
    track_url: Optional[str] = None
    duration_ms: int
    is_currently_playing: bool = False
    played_at: datetime
    created_at: datetime

    @classmethod
    def from_snapshot(cls, user_id: str, snapshot: PlaybackSnapshot, played_at: datetime) -> "Track":
        return cls(
            id=new_id(),
            user_id=user_id,
            spotify_track_id=snapshot.track_id or "",
            name=snapshot.name or "",
            artist=snapshot.artist or "",
            album=snapshot.album or "",
            album_art_url=snapshot.album_art_url,
            track_url=snapshot.track_url,
            duration_ms=snapshot.duration_ms or 0,
            is_currently_playing=True,
            played_at=played_at,
            created_at=played_at,
        )


class ProfileVisit(BaseModel):
    """Durable audit record of one page view."""
    id: str
    user_id: str
    visitor_ip: Optional[str] = Field(default=None, exclude=True)
    visitor_user_id: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, exclude=True)
    referrer_url: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None


class VisitMetadata(BaseModel):
    """Request details captured when a viewer opens a profile."""
    visitor_ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer_url: Optional[str] = None
    visitor_user_id: Optional[str] = None


class ProfileResponse(BaseModel):
    """What a visitor sees on a public profile."""
    user: UserPublic
    profile: Profile
    current_track: Optional[PlaybackSnapshot] = None
    recent_tracks: list[Track] = []
    viewer_count: int = 0
