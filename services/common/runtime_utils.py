"""Shared runtime helpers for Python services."""

from __future__ import annotations

import os
from typing import Optional
from urllib.parse import urlsplit

import httpx

DEFAULT_UPSTREAM_TIMEOUT = 10.0

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def env_str(name: str, default: str = "") -> str:
    """Read a string env var, treating blank values as unset."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(name: str, default: str) -> int:
    """Parse an integer env var using a string default value."""
    return int(os.getenv(name, default))


def env_float(name: str, default: str) -> float:
    """Parse a float env var using a string default value."""
    return float(os.getenv(name, default))


def env_bool(name: str, default: bool = False) -> bool:
    """Parse a boolean env var ("1", "true", "yes", "on" are truthy)."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY_VALUES


def upstream_timeout(seconds: float = DEFAULT_UPSTREAM_TIMEOUT) -> httpx.Timeout:
    """Return a bounded timeout so a hung upstream never pins a request."""
    return httpx.Timeout(seconds)


def build_upstream_client(
    *,
    timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT,
    user_agent: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Build an AsyncClient with upstream timeout defaults."""
    client_kwargs: dict = {"timeout": upstream_timeout(timeout_seconds)}
    if user_agent is not None:
        client_kwargs["headers"] = {"User-Agent": user_agent}
    if transport is not None:
        client_kwargs["transport"] = transport
    return httpx.AsyncClient(**client_kwargs)


def redact_url(url: str) -> str:
    """Drop credentials from a connection URL so it is safe to log."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"
