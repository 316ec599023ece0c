"""
Now Playing Share: FastAPI service.

Owners log in with Spotify and get a public profile page showing what they
are listening to right now. Visitors load the profile over HTTP, then keep
a WebSocket open on /ws/tracks/{profile_url} to receive track changes as
they happen.

Redis holds the short-lived state (cached snapshot, viewer presence, the
per-owner broadcast channel); PostgreSQL holds users, profiles, listening
history and the visit audit trail.
"""

import ipaddress
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse, RedirectResponse

from services.common.logging_utils import configure_service_logger, log_request

from .config import Settings
from .container import ServiceContainer
from .errors import (
    AuthFailedError,
    CacheUnavailableError,
    NotFoundError,
    NowPlayingError,
    SharingDisabledError,
    StorageError,
    UpstreamUnavailableError,
)
from .models import ProfileResponse, ProfileUpdate, SharingSettingsUpdate, User, VisitMetadata

# ── Logging ─────────────────────────────────────────────────────────
log = configure_service_logger("nowplaying")

# ── FastAPI app ─────────────────────────────────────────────────────
app = FastAPI(title="Now Playing Share", version="1.0.0")
# Tests preset a container here; startup only builds one when absent.
app.state.services = None
app.state.owns_services = False

# ── Cookies ─────────────────────────────────────────────────────────
USER_COOKIE = "user_id"
VISIT_COOKIE = "visit_id"
STATE_COOKIE = "spotify_auth_state"
USER_COOKIE_MAX_AGE = 30 * 24 * 3600
STATE_COOKIE_MAX_AGE = 15 * 60

# profile_visits.visitor_ip is VARCHAR(45), the longest IPv6 text form.
MAX_CLIENT_IP_LENGTH = 45

# Failure type -> HTTP status for the authenticated API.
_ERROR_STATUS = {
    NotFoundError: 404,
    SharingDisabledError: 403,
    AuthFailedError: 502,
    UpstreamUnavailableError: 502,
    CacheUnavailableError: 503,
    StorageError: 500,
}


def _http_error(err: NowPlayingError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS.items():
        if isinstance(err, error_type):
            return HTTPException(status_code=status_code, detail=str(err))
    return HTTPException(status_code=500, detail=str(err))


def get_services(request: Request) -> ServiceContainer:
    services = request.app.state.services
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


async def current_user(request: Request, services: ServiceContainer = Depends(get_services)) -> User:
    """Resolve the logged-in owner from the ``user_id`` cookie."""
    user_id = request.cookies.get(USER_COOKIE)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return await services.db.get_user_by_id(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail="Not authenticated")
    except StorageError as e:
        raise _http_error(e)


def _set_cookie(response, settings: Settings, name: str, value: str, *, max_age: Optional[int] = None, httponly: bool = True):
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=httponly,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _client_ip(request: Request) -> str:
    """Viewer address, bounded to what the visitor_ip column holds."""
    services = request.app.state.services
    if services is not None and services.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        try:
            return str(ipaddress.ip_address(forwarded))
        except ValueError:
            log.debug("Ignoring malformed X-Forwarded-For %r", forwarded[:64])
    host = request.client.host if request.client else "unknown"
    return host[:MAX_CLIENT_IP_LENGTH]


# ════════════════════════════════════════════════════════════════════
# Middleware
# ════════════════════════════════════════════════════════════════════

@app.middleware("http")
async def access_log(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    log_request(
        log,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        client_ip=_client_ip(request),
        started_at=started_at,
    )
    return response


# ════════════════════════════════════════════════════════════════════
# Routes
# ════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {"status": "ok", "service": "nowplaying"}


# ── Spotify OAuth ───────────────────────────────────────────────────

@app.get("/auth/spotify")
async def auth_spotify(services: ServiceContainer = Depends(get_services)):
    """Start the authorization-code flow."""
    state = uuid.uuid4().hex
    response = RedirectResponse(services.spotify.authorize_url(state), status_code=307)
    _set_cookie(response, services.settings, STATE_COOKIE, state, max_age=STATE_COOKIE_MAX_AGE)
    return response


@app.get("/auth/spotify/callback")
async def auth_spotify_callback(
    request: Request,
    code: str = Query(""),
    state: str = Query(""),
    error: Optional[str] = Query(None),
    services: ServiceContainer = Depends(get_services),
):
    """Finish the OAuth flow, then create or refresh the owner's account."""
    if error:
        raise HTTPException(status_code=400, detail=f"Authorization denied: {error}")
    expected_state = request.cookies.get(STATE_COOKIE)
    if not code or not state or state != expected_state:
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    try:
        tokens = await services.spotify.exchange_code(code)
        spotify_profile = await services.spotify.fetch_profile(tokens.access_token)
    except (AuthFailedError, UpstreamUnavailableError) as e:
        log.error(f"Spotify login failed: {e}")
        raise _http_error(e)

    try:
        user = await services.db.create_or_update_user(
            spotify_profile.id,
            spotify_profile.email or f"{spotify_profile.id}@spotify.invalid",
            spotify_profile.display_name or spotify_profile.id,
            tokens,
        )
    except StorageError as e:
        log.error(f"Failed to store user {spotify_profile.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process user data")

    log.info(f"User {user.id} logged in")
    response = RedirectResponse(f"/profile/{user.profile_url}", status_code=307)
    _set_cookie(response, services.settings, USER_COOKIE, user.id, max_age=USER_COOKIE_MAX_AGE)
    response.delete_cookie(STATE_COOKIE)
    return response


@app.get("/auth/logout")
async def auth_logout():
    response = RedirectResponse("/", status_code=307)
    response.delete_cookie(USER_COOKIE)
    return response


@app.get("/auth/status")
async def auth_status(request: Request, services: ServiceContainer = Depends(get_services)):
    user_id = request.cookies.get(USER_COOKIE)
    if not user_id:
        return {"authenticated": False}
    try:
        user = await services.db.get_user_by_id(user_id)
    except NotFoundError:
        response = JSONResponse({"authenticated": False})
        response.delete_cookie(USER_COOKIE)
        return response
    except StorageError as e:
        raise _http_error(e)
    return {"authenticated": True, "user": user.public().model_dump()}


# ── Public profile ──────────────────────────────────────────────────

async def _visitor_user_id(request: Request, services: ServiceContainer, owner: User) -> Optional[str]:
    """Logged-in visitors are attributed on the visit record, owners are not."""
    user_id = request.cookies.get(USER_COOKIE)
    if not user_id or user_id == owner.id:
        return None
    try:
        return (await services.db.get_user_by_id(user_id)).id
    except NowPlayingError:
        return None


async def build_profile_response(services: ServiceContainer, owner: User) -> ProfileResponse:
    """Assemble the public view; optional sections degrade to empty."""
    try:
        profile = await services.db.get_profile(owner.id)
    except NowPlayingError as e:
        raise _http_error(e)

    current_track = None
    try:
        snapshot = await services.orchestrator.refresh(owner)
        current_track = snapshot if snapshot.is_playing else None
    except (AuthFailedError, UpstreamUnavailableError, SharingDisabledError) as e:
        log.warning(f"No current track for {owner.id}: {e}")

    recent_tracks = []
    if profile.show_history:
        try:
            recent_tracks = await services.db.get_recent_tracks(owner.id, services.settings.history_limit)
        except StorageError as e:
            log.error(f"Failed to load history for {owner.id}: {e}")

    viewer_count = 0
    if profile.show_stats:
        try:
            viewer_count = await services.presence.active_count(owner.id)
        except CacheUnavailableError as e:
            log.warning(f"Viewer count unavailable for {owner.id}: {e}")

    return ProfileResponse(
        user=owner.public(),
        profile=profile,
        current_track=current_track,
        recent_tracks=recent_tracks,
        viewer_count=viewer_count,
    )


@app.get("/profile/{profile_url}")
async def public_profile(profile_url: str, request: Request, services: ServiceContainer = Depends(get_services)):
    try:
        owner = await services.db.get_user_by_profile_url(profile_url)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except StorageError as e:
        raise _http_error(e)
    if not owner.is_active or not owner.is_sharing_enabled:
        raise HTTPException(status_code=404, detail="Profile not available")

    metadata = VisitMetadata(
        visitor_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer_url=request.headers.get("referer"),
        visitor_user_id=await _visitor_user_id(request, services, owner),
    )
    visit_id = None
    try:
        visit_id = await services.presence.begin_visit(owner.id, metadata)
    except NowPlayingError as e:
        log.warning(f"Failed to record visit to {owner.id}: {e}")

    body = await build_profile_response(services, owner)
    response = JSONResponse(body.model_dump(mode="json"))
    if visit_id:
        # Read by the page script, so not httponly.
        _set_cookie(response, services.settings, VISIT_COOKIE, visit_id, httponly=False)
    return response


# ── Owner API ───────────────────────────────────────────────────────

@app.get("/api/profile")
async def get_own_profile(user: User = Depends(current_user), services: ServiceContainer = Depends(get_services)):
    try:
        profile = await services.db.get_profile(user.id)
    except NowPlayingError as e:
        raise _http_error(e)
    return {"user": user.public().model_dump(), "profile": profile.model_dump(mode="json"),
            "is_sharing_enabled": user.is_sharing_enabled}


@app.put("/api/profile")
async def update_own_profile(
    updates: ProfileUpdate,
    user: User = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
):
    try:
        await services.db.update_profile(user.id, updates)
    except NowPlayingError as e:
        raise _http_error(e)
    return {"success": True}


@app.put("/api/profile/settings")
async def update_sharing_settings(
    payload: SharingSettingsUpdate,
    user: User = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
):
    try:
        await services.db.update_user_settings(user.id, payload.is_sharing_enabled)
    except NowPlayingError as e:
        raise _http_error(e)
    log.info(f"User {user.id} set sharing to {payload.is_sharing_enabled}")
    return {"success": True, "isSharingEnabled": payload.is_sharing_enabled}


@app.get("/api/tracks/current")
async def current_track(user: User = Depends(current_user), services: ServiceContainer = Depends(get_services)):
    try:
        snapshot = await services.orchestrator.refresh(user)
    except NowPlayingError as e:
        raise _http_error(e)
    return snapshot.model_dump()


@app.post("/api/tracks/refresh")
async def refresh_track(user: User = Depends(current_user), services: ServiceContainer = Depends(get_services)):
    """Manual refresh: always polls upstream."""
    try:
        snapshot = await services.orchestrator.refresh(user, force=True)
    except NowPlayingError as e:
        raise _http_error(e)
    return snapshot.model_dump()


@app.get("/api/tracks/history")
async def track_history(
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
):
    try:
        tracks = await services.db.get_recent_tracks(user.id, limit)
    except NowPlayingError as e:
        raise _http_error(e)
    return {"tracks": [track.model_dump(mode="json") for track in tracks]}


@app.post("/api/visits/end")
async def end_visit(request: Request, services: ServiceContainer = Depends(get_services)):
    visit_id = request.cookies.get(VISIT_COOKIE)
    if not visit_id:
        raise HTTPException(status_code=400, detail="No active visit")
    try:
        await services.presence.end_visit(visit_id)
    except NowPlayingError as e:
        raise _http_error(e)
    response = JSONResponse({"success": True})
    response.delete_cookie(VISIT_COOKIE)
    return response


# ── Live updates ────────────────────────────────────────────────────

@app.websocket("/ws/tracks/{profile_url}")
async def live_tracks(websocket: WebSocket, profile_url: str):
    services = websocket.app.state.services
    if services is None:
        await websocket.close(code=1011, reason="Service is starting up")
        return
    visit_id = websocket.cookies.get(VISIT_COOKIE)
    await services.live_session(websocket).run(profile_url, visit_id)


# ════════════════════════════════════════════════════════════════════
# Lifecycle
# ════════════════════════════════════════════════════════════════════

@app.on_event("startup")
async def startup():
    if app.state.services is None:
        settings = Settings.from_env()
        services = ServiceContainer.from_settings(settings, log)
        await services.start()
        app.state.services = services
        app.state.owns_services = True

    settings = app.state.services.settings
    log.info("Now Playing Share starting up")
    log.info(
        f"Config: env={settings.app_env}, cache_ttl={settings.now_playing_cache_ttl}s, "
        f"presence_ttl={settings.presence_ttl}s, heartbeat={settings.presence_heartbeat_interval}s, "
        f"ping={settings.live_ping_interval}s, token_margin={settings.token_refresh_margin}s, "
        f"end_visit_on_close={settings.end_visit_on_graceful_close}"
    )


@app.on_event("shutdown")
async def shutdown():
    if app.state.owns_services and app.state.services is not None:
        await app.state.services.close()
        app.state.services = None
        app.state.owns_services = False
    log.info("Now Playing Share shutting down")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Settings.from_env().server_port)
