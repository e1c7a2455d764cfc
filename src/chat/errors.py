"""Error taxonomy for the conversation engine."""

from __future__ import annotations

from typing import Any

# Structured error codes that mean the user's session is gone
AUTH_ERROR_CODES = frozenset({"UNAUTHORIZED", "INVALID_SESSION", "SESSION_EXPIRED"})


class ChatError(Exception):
    """Base class for errors surfaced to the chat UI."""


class TransportError(ChatError):
    """Network, HTTP or stream failure without a structured error body."""


class ApiError(ChatError):
    """Structured error returned by the backend."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, message={self.message!r})"


class AuthExpiredError(ChatError):
    """The backend rejected the session. Routed to re-authentication, never shown inline."""


class PersistenceError(ChatError):
    """A persistence call failed or returned a body the engine cannot use."""


class GenerationCancelled(Exception):  # noqa: N818
    """The caller stopped the generation. Not an error and never reported."""
