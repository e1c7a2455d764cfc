"""HTTP client for the conversation persistence API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from src.backend.http import make_client, request_json
from src.backend.retry import retry_async
from src.chat.errors import PersistenceError
from src.chat.models import ConversationRecord
from src.config import settings

if TYPE_CHECKING:
    import httpx

    from src.chat.models import ConversationMetadata, Message

logger = logging.getLogger(__name__)


class ConversationsClient:
    """``create`` / ``update`` / ``fetch_by_id`` against the web backend.

    Loads are retried with backoff on transport and 5xx failures; writes are
    not, because the save coordinator supersedes them with the next save.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        url: str | None = None,
        *,
        max_retries: int | None = None,
        retry_initial_delay: float | None = None,
    ) -> None:
        self._client = client
        self._url = (url or settings.conversations_url()).rstrip("/")
        self._max_retries = settings.load_max_retries if max_retries is None else max_retries
        self._initial_delay = (
            settings.retry_initial_delay if retry_initial_delay is None else retry_initial_delay
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = make_client()
        return self._client

    async def create(
        self,
        mode: str,
        messages: list[Message],
        metadata: ConversationMetadata,
        project_id: str | None = None,
    ) -> str:
        body = {
            "mode": mode,
            "messages": [m.to_wire() for m in messages],
            "metadata": metadata.to_wire(),
        }
        if project_id:
            body["projectId"] = project_id
        data = await request_json(self._get_client(), "POST", self._url, json=body)
        conversation_id = data.get("id")
        if not conversation_id:
            msg = "Create conversation response did not include an id"
            raise PersistenceError(msg)
        return str(conversation_id)

    async def update(
        self,
        conversation_id: str,
        messages: list[Message],
        metadata: ConversationMetadata,
    ) -> None:
        body = {
            "id": conversation_id,
            "messages": [m.to_wire() for m in messages],
            "metadata": metadata.to_wire(),
        }
        await request_json(self._get_client(), "PATCH", self._url, json=body)

    async def fetch_by_id(self, conversation_id: str) -> ConversationRecord:
        url = f"{self._url}/{conversation_id}"

        async def _fetch():
            return await request_json(self._get_client(), "GET", url)

        data = await retry_async(
            _fetch,
            max_retries=self._max_retries,
            initial_delay=self._initial_delay,
            max_delay=settings.retry_max_delay,
        )
        try:
            record = ConversationRecord.model_validate(data)
        except ValidationError as exc:
            msg = f"Conversation {conversation_id} has an unexpected shape"
            raise PersistenceError(msg) from exc
        if record.id is None:
            record.id = conversation_id
        return record

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
