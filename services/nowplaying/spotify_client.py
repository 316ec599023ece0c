"""Async client for the Spotify accounts and Web API endpoints we use.

Responses are turned into typed models here and nowhere else; the rest of
the service never sees raw upstream JSON.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from services.common.logging_utils import log_timing, with_log_context

from .errors import AuthFailedError, UpstreamUnavailableError
from .models import PlaybackSnapshot, SpotifyProfile, TokenBundle

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _album_art_url(album: dict) -> Optional[str]:
    """Pick the medium image (second entry) when available, else the only one."""
    images = album.get("images")
    if not isinstance(images, list) or not images:
        return None
    image = images[1] if len(images) > 1 else images[0]
    if not isinstance(image, dict):
        return None
    return _as_str(image.get("url"))


def parse_playback(payload: Optional[dict]) -> PlaybackSnapshot:
    """Convert a currently-playing response body into a snapshot.

    No body, a null ``item`` (ads, private sessions) or ``is_playing: false``
    all yield the idle snapshot.
    """
    if not payload:
        return PlaybackSnapshot.idle()

    item = payload.get("item")
    if not isinstance(item, dict) or payload.get("is_playing") is not True:
        return PlaybackSnapshot.idle()

    track_id = _as_str(item.get("id"))
    if not track_id:
        raise UpstreamUnavailableError("Playback item has no track id")

    album = item.get("album") if isinstance(item.get("album"), dict) else {}
    artists = item.get("artists") if isinstance(item.get("artists"), list) else []
    artist = None
    if artists and isinstance(artists[0], dict):
        artist = _as_str(artists[0].get("name"))
    external_urls = item.get("external_urls") if isinstance(item.get("external_urls"), dict) else {}

    return PlaybackSnapshot(
        is_playing=True,
        track_id=track_id,
        name=_as_str(item.get("name")),
        artist=artist,
        album=_as_str(album.get("name")),
        album_art_url=_album_art_url(album),
        track_url=_as_str(external_urls.get("spotify")),
        duration_ms=_as_int(item.get("duration_ms")),
        progress_ms=_as_int(payload.get("progress_ms")),
    )


class SpotifyClient:
    """OAuth code flow, token refresh, profile and playback lookups."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        http: httpx.AsyncClient,
        logger: logging.Logger | logging.LoggerAdapter,
        scopes: Optional[list[str]] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or []
        self._http = http
        self._log = with_log_context(logger, component="spotify")
        self._timed_api_get = log_timing(self._log, "Spotify API call")(self._api_get)
        self._timed_token_request = log_timing(self._log, "Spotify token request")(self._token_request)

    def authorize_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{SPOTIFY_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenBundle:
        return await self._timed_token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        })

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        return await self._timed_token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def fetch_profile(self, access_token: str) -> SpotifyProfile:
        payload = await self._timed_api_get("/me", access_token)
        if payload is None:
            raise UpstreamUnavailableError("Empty profile response")
        try:
            return SpotifyProfile.model_validate(payload)
        except ValueError as e:
            raise UpstreamUnavailableError(f"Malformed profile response: {e}") from e

    async def fetch_current_playback(self, access_token: str) -> PlaybackSnapshot:
        payload = await self._timed_api_get("/me/player/currently-playing", access_token)
        return parse_playback(payload)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _token_request(self, data: dict[str, str]) -> TokenBundle:
        try:
            resp = await self._http.post(
                SPOTIFY_TOKEN_URL,
                data=data,
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Token request failed: {e}") from e

        if resp.status_code in (400, 401):
            raise AuthFailedError(f"Token endpoint rejected request: {resp.status_code} {resp.text[:200]}")
        if resp.status_code != 200:
            raise UpstreamUnavailableError(
                f"Token endpoint returned {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            return TokenBundle.model_validate(resp.json())
        except ValueError as e:
            raise UpstreamUnavailableError(f"Malformed token response: {e}") from e

    async def _api_get(self, path: str, access_token: str) -> Optional[dict]:
        try:
            resp = await self._http.get(
                f"{SPOTIFY_API_BASE_URL}{path}",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"GET {path} failed: {e}") from e

        if resp.status_code == 204:
            return None
        if resp.status_code == 401:
            raise AuthFailedError(f"GET {path} rejected access token")
        if resp.status_code != 200:
            raise UpstreamUnavailableError(
                f"GET {path} returned {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"GET {path} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(f"GET {path} returned unexpected body")
        return payload
