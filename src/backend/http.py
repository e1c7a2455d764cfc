"""Shared HTTP plumbing: client construction and uniform response checks.

Every backend call site goes through ``check_response`` (status) and, for
JSON envelopes, ``unwrap_envelope`` (body), so session expiry is detected
the same way everywhere.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.chat.errors import (
    AUTH_ERROR_CODES,
    ApiError,
    AuthExpiredError,
    PersistenceError,
    TransportError,
)
from src.config import settings

logger = logging.getLogger(__name__)


def make_client() -> httpx.AsyncClient:
    """Build the default async client from settings."""
    return httpx.AsyncClient(
        timeout=settings.request_timeout,
        headers=settings.get_auth_headers(),
    )


def _structured_error(body: Any) -> tuple[str, str, dict[str, Any] | None] | None:
    """Extract ``(code, message, details)`` from a ``{"error": {...}}`` body."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if not isinstance(error, dict) or not error.get("code"):
        return None
    details = error.get("details")
    return (
        str(error["code"]),
        str(error.get("message") or "Request failed"),
        details if isinstance(details, dict) else None,
    )


def _raise_structured(code: str, message: str, details: dict[str, Any] | None, status: int) -> None:
    if code in AUTH_ERROR_CODES:
        raise AuthExpiredError(message)
    raise ApiError(code, message, details, status_code=status)


async def check_response(response: httpx.Response) -> None:
    """Raise the matching engine error for a non-success response.

    401 (or an auth error code in the body) -> ``AuthExpiredError``;
    structured body -> ``ApiError``; anything else -> ``TransportError``.
    """
    if response.is_success:
        return
    await response.aread()
    try:
        body = response.json()
    except ValueError:
        body = None

    structured = _structured_error(body)
    if response.status_code == 401:
        message = structured[1] if structured else "Session expired"
        raise AuthExpiredError(message)
    if structured is not None:
        _raise_structured(*structured, response.status_code)
    raise TransportError(f"HTTP {response.status_code} from {response.request.url}")


def unwrap_envelope(response: httpx.Response) -> dict[str, Any]:
    """Return ``data`` from a ``{"success": ..., "data": ...}`` JSON envelope."""
    try:
        body = response.json()
    except ValueError as exc:
        msg = f"Invalid JSON from {response.request.url}"
        raise PersistenceError(msg) from exc
    if not isinstance(body, dict):
        msg = f"Unexpected response body from {response.request.url}"
        raise PersistenceError(msg)
    if body.get("success") is False:
        structured = _structured_error(body)
        if structured is None:
            msg = f"Request to {response.request.url} was not successful"
            raise PersistenceError(msg)
        _raise_structured(*structured, response.status_code)
    data = body.get("data")
    return data if isinstance(data, dict) else {}


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Send a request and return the unwrapped ``data`` object."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        msg = f"{method} {url} failed: {exc}"
        raise TransportError(msg) from exc
    await check_response(response)
    return unwrap_envelope(response)
