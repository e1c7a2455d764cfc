"""Streaming client for the generation backend."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

from src.backend.http import check_response, make_client
from src.chat.errors import TransportError
from src.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.chat.models import Message

logger = logging.getLogger(__name__)


def build_request(
    mode: str,
    messages: list[Message],
    *,
    conversation_id: str | None = None,
    mode_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Request body: mode, ordered turns and the mode-specific sub-configuration."""
    payload: dict[str, Any] = {
        **(mode_config or {}),
        "mode": mode,
        "messages": [m.to_api() for m in messages],
    }
    if conversation_id:
        payload["conversationId"] = conversation_id
    return payload


class GenerationClient:
    """Opens a streamed generation request and hands back the raw byte chunks.

    Args:
        client: Shared ``httpx.AsyncClient`` (default built from settings).
        url: Generation endpoint (default ``settings.chat_url()``).
    """

    def __init__(self, client: httpx.AsyncClient | None = None, url: str | None = None) -> None:
        self._client = client
        self._url = url or settings.chat_url()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = make_client()
        return self._client

    @asynccontextmanager
    async def open_stream(self, payload: dict[str, Any]) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST the request and yield the response body as byte chunks.

        Non-success statuses raise before anything is yielded. Transport
        failures while reading surface as ``TransportError``. Leaving the
        block closes the response.
        """
        client = self._get_client()
        try:
            async with client.stream("POST", self._url, json=payload) as response:
                await check_response(response)
                logger.debug(
                    "Generation stream opened (%d messages)", len(payload.get("messages", []))
                )
                yield response.aiter_bytes()
        except httpx.HTTPError as exc:
            msg = f"Generation request failed: {exc}"
            raise TransportError(msg) from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
