"""Typed failures raised by the now-playing core.

Library exceptions (redis, psycopg2, httpx) are translated into these at
the collaborator boundary so callers only ever handle one taxonomy.
"""


class NowPlayingError(Exception):
    """Base class for all service failures."""


class NotFoundError(NowPlayingError):
    """Owner, profile or visit does not exist."""


class SharingDisabledError(NowPlayingError):
    """Owner exists but is inactive or has sharing turned off."""


class AuthFailedError(NowPlayingError):
    """Upstream rejected our credentials or the token refresh failed."""


class UpstreamUnavailableError(NowPlayingError):
    """Upstream API errored, returned garbage or timed out."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CacheUnavailableError(NowPlayingError):
    """The expiring key store could not be reached.

    Callers treat this exactly like a cache miss; it is never shown to a
    viewer.
    """


class StorageError(NowPlayingError):
    """The relational store failed a read or write."""
