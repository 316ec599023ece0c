"""Per-viewer live connection: Connecting -> Validating -> Streaming -> Closed.

While streaming, four tasks share one lifetime:

* relay      - forwards every broadcast event to the viewer, in order
* watch      - reads the transport until the viewer disconnects
* keepalive  - sends ``{"type": "ping"}`` so idle proxies keep the socket
* heartbeat  - renews the viewer's presence entry

The first of relay/watch/keepalive to finish ends the session and the
others are cancelled. Heartbeat failures are logged and never end it.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from services.common.logging_utils import with_log_context

from .broadcast import TrackBroadcaster, TrackSubscription
from .cache import NowPlayingCache
from .errors import CacheUnavailableError, NotFoundError, NowPlayingError, StorageError
from .models import User
from .presence import PresenceStore
from .storage import Database

PING_MESSAGE = json.dumps({"type": "ping"})
GRACEFUL_CLOSE_CODES = {status.WS_1000_NORMAL_CLOSURE, status.WS_1001_GOING_AWAY}


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    VALIDATING = "validating"
    STREAMING = "streaming"
    CLOSED = "closed"


class LiveUpdateSession:
    def __init__(
        self,
        websocket: WebSocket,
        *,
        db: Database,
        cache: NowPlayingCache,
        presence: PresenceStore,
        broadcaster: TrackBroadcaster,
        heartbeat_interval: float,
        ping_interval: float,
        end_visit_on_graceful_close: bool,
        logger: logging.Logger | logging.LoggerAdapter,
    ):
        self._ws = websocket
        self._db = db
        self._cache = cache
        self._presence = presence
        self._broadcaster = broadcaster
        self.heartbeat_interval = heartbeat_interval
        self.ping_interval = ping_interval
        self.end_visit_on_graceful_close = end_visit_on_graceful_close
        self._log = with_log_context(logger, component="live-session")

        self.state = SessionState.CONNECTING
        self.owner: Optional[User] = None
        self.visit_id: Optional[str] = None
        self.close_code: Optional[int] = None
        self._client_gone = False
        self._send_lock = asyncio.Lock()

    async def run(self, profile_url: str, visit_id: Optional[str]) -> None:
        if not await self._validate(profile_url, visit_id):
            return

        await self._ws.accept()
        self.state = SessionState.STREAMING
        self._log.info("Viewer %s streaming owner %s", self.visit_id, self.owner.id)

        # Subscribe before reading the cache so nothing published in between
        # is lost.
        try:
            subscription = await self._broadcaster.subscribe(self.owner.id)
        except CacheUnavailableError as e:
            self._log.error("Cannot stream owner %s: %s", self.owner.id, e)
            await self._close_transport(status.WS_1011_INTERNAL_ERROR)
            self.state = SessionState.CLOSED
            return

        try:
            await self._stream(subscription)
        finally:
            await subscription.close()
            self.state = SessionState.CLOSED
            await self._close_transport(status.WS_1000_NORMAL_CLOSURE)
            await self._maybe_end_visit()
            self._log.info("Viewer %s left owner %s (code=%s)", self.visit_id, self.owner.id, self.close_code)

    async def _validate(self, profile_url: str, visit_id: Optional[str]) -> bool:
        """Check owner and visit; on failure close before the upgrade completes."""
        self.state = SessionState.VALIDATING
        # Close reasons are capped at 123 bytes, so keep them fixed.
        reason = "Profile not found"
        code = status.WS_1008_POLICY_VIOLATION
        try:
            owner = await self._db.get_user_by_profile_url(profile_url)
            if not owner.is_active or not owner.is_sharing_enabled:
                reason = "Profile not available"
            elif not visit_id:
                reason = "Missing visit"
            else:
                reason = "Invalid visit"
                await self._presence.visit_for_owner(visit_id, owner.id)
                self.owner = owner
                self.visit_id = visit_id
                reason = None
        except NotFoundError as e:
            self._log.debug("Live session lookup failed: %s", e)
        except StorageError as e:
            reason = "Storage unavailable"
            code = status.WS_1011_INTERNAL_ERROR
            self._log.error("Live session validation failed for %s: %s", profile_url, e)

        if reason is None:
            return True

        self._log.info("Rejected live session for %s: %s", profile_url, reason)
        self.state = SessionState.CLOSED
        await self._ws.close(code=code, reason=reason)
        return False

    async def _stream(self, subscription: TrackSubscription) -> None:
        initial = await self._cache.get_or_none(self.owner.id)
        if initial is not None and initial.is_playing:
            if not await self._send(initial.model_dump_json()):
                return

        terminal = {
            asyncio.create_task(self._relay(subscription), name="relay"),
            asyncio.create_task(self._watch_disconnect(), name="watch"),
            asyncio.create_task(self._keepalive(), name="keepalive"),
        }
        heartbeat = asyncio.create_task(self._heartbeat(), name="heartbeat")
        try:
            done, _ = await asyncio.wait(terminal, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self._log.error(
                        "Live session task %s failed",
                        task.get_name(),
                        exc_info=task.exception(),
                    )
        finally:
            everything = terminal | {heartbeat}
            for task in everything:
                task.cancel()
            await asyncio.gather(*everything, return_exceptions=True)

    async def _relay(self, subscription: TrackSubscription) -> None:
        try:
            async for snapshot in subscription:
                if not await self._send(snapshot.model_dump_json()):
                    return
        except CacheUnavailableError as e:
            self._log.warning("Relay for owner %s stopped: %s", self.owner.id, e)

    async def _watch_disconnect(self) -> None:
        # Viewers never send anything meaningful; we only read to learn
        # when the socket goes away.
        while True:
            message = await self._ws.receive()
            if message["type"] == "websocket.disconnect":
                self._client_gone = True
                self.close_code = message.get("code", status.WS_1000_NORMAL_CLOSURE)
                return

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            if not await self._send(PING_MESSAGE):
                return

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await self._presence.renew(self.visit_id)
            except CacheUnavailableError as e:
                self._log.warning("Failed to renew visitor activity: %s", e)
                continue
            if not renewed:
                # Lapsed entries are never recreated; keep streaming but
                # stop renewing.
                self._log.info("Presence for visit %s lapsed; heartbeat stopped", self.visit_id)
                return

    async def _send(self, text: str) -> bool:
        if self._client_gone:
            return False
        try:
            async with self._send_lock:
                await self._ws.send_text(text)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._log.debug("Send to viewer %s failed: %s", self.visit_id, e)
            self._client_gone = True
            return False

    async def _close_transport(self, code: int) -> None:
        if self._client_gone:
            return
        self._client_gone = True
        try:
            await self._ws.close(code=code)
        except (RuntimeError, OSError) as e:
            self._log.debug("Close for viewer %s failed: %s", self.visit_id, e)

    async def _maybe_end_visit(self) -> None:
        if not self.end_visit_on_graceful_close or self.close_code not in GRACEFUL_CLOSE_CODES:
            return
        try:
            await self._presence.end_visit(self.visit_id)
        except NowPlayingError as e:
            self._log.warning("Failed to end visit %s: %s", self.visit_id, e)
