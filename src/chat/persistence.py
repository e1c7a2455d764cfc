"""SaveCoordinator — debounced, sequenced persistence of the active conversation.

Mutations call ``schedule()``. A save runs after a quiet window; while a
stream is in flight the save is deferred and flushed once when the stream
ends. A newer save always supersedes an older in-flight one, so there are
never two concurrent writes for the same conversation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from src.chat.errors import AuthExpiredError, ChatError
from src.config import settings

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.chat.models import ConversationMetadata, ConversationRecord, Message

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationBackend(Protocol):
    """Durable store for conversations (HTTP API or local database)."""

    async def create(
        self,
        mode: str,
        messages: list[Message],
        metadata: ConversationMetadata,
        project_id: str | None = None,
    ) -> str:
        """Persist a new conversation and return its ID."""
        ...

    async def update(
        self,
        conversation_id: str,
        messages: list[Message],
        metadata: ConversationMetadata,
    ) -> None:
        """Overwrite an existing conversation."""
        ...

    async def fetch_by_id(self, conversation_id: str) -> ConversationRecord:
        """Load a conversation with its generation status."""
        ...


class SaveCoordinator:
    """Debounce timer plus a monotonically increasing save sequence.

    Args:
        backend: Where conversations are written.
        mode: Chat mode recorded on creation.
        snapshot: Returns ``(active_messages, metadata)`` at save time.
        debounce: Quiet window in seconds (default from settings).
        conversation_id: Existing ID, if the conversation was already saved.
        project_id: Optional grouping ID passed on creation.
        on_created: Called once with the newly issued ID after the first save.
        on_auth_expired: Called when a save is rejected for an expired session.
    """

    def __init__(
        self,
        backend: ConversationBackend,
        mode: str,
        snapshot: Callable[[], tuple[list[Message], ConversationMetadata]],
        *,
        debounce: float | None = None,
        conversation_id: str | None = None,
        project_id: str | None = None,
        on_created: Callable[[str], None] | None = None,
        on_auth_expired: Callable[[], Any] | None = None,
    ) -> None:
        self._backend = backend
        self._mode = mode
        self._snapshot = snapshot
        self._debounce = settings.save_debounce_seconds if debounce is None else debounce
        self._project_id = project_id
        self._on_created = on_created
        self._on_auth_expired = on_auth_expired

        self.conversation_id = conversation_id
        self._timer: asyncio.Task | None = None
        self._save_task: asyncio.Task | None = None
        self._seq = 0
        self._streaming = False
        self._pending = False
        self._alive = True

    # -- State -----------------------------------------------------------------

    @property
    def save_pending(self) -> bool:
        """True while a save is deferred behind an active stream."""
        return self._pending

    @property
    def in_flight(self) -> bool:
        return self._save_task is not None and not self._save_task.done()

    # -- Scheduling ------------------------------------------------------------

    def schedule(self) -> None:
        """Record a mutation: (re)start the quiet window, or defer while streaming."""
        if not self._alive:
            return
        self._cancel_timer()
        if self._streaming:
            self._pending = True
            return
        self._timer = asyncio.get_running_loop().create_task(self._fire_after(self._debounce))

    def stream_started(self) -> None:
        self._streaming = True

    def stream_finished(self) -> None:
        """Release deferred saves: exactly one flush if anything was pending."""
        if not self._streaming:
            return
        self._streaming = False
        if self._pending and self._alive:
            self._pending = False
            self._cancel_timer()
            self._start_save()

    def cancel_pending(self) -> None:
        """Forget scheduled and in-flight saves without writing anything."""
        self._cancel_timer()
        self._cancel_save()
        self._pending = False
        self._streaming = False

    async def flush(self) -> None:
        """Save now and wait for the result."""
        self._cancel_timer()
        self._start_save()
        task = self._save_task
        if task is not None:
            # A superseding save cancels this task; wait() does not raise for that.
            await asyncio.wait([task])

    async def settle(self) -> None:
        """Write out a scheduled or deferred save, or wait for the one in flight."""
        if self._timer is not None or self._pending:
            self._pending = False
            self._streaming = False
            await self.flush()
        elif self._save_task is not None and not self._save_task.done():
            await asyncio.wait([self._save_task])

    def close(self) -> None:
        """Teardown: cancel everything silently and refuse further work."""
        self._alive = False
        self.cancel_pending()

    # -- Internal --------------------------------------------------------------

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        if self._streaming:
            self._pending = True
            return
        self._start_save()

    def _start_save(self) -> None:
        if not self._alive:
            return
        self._cancel_save()
        self._seq += 1
        self._save_task = asyncio.get_running_loop().create_task(self._save(self._seq))

    async def _save(self, seq: int) -> None:
        messages, metadata = self._snapshot()
        if not messages:
            return
        conversation_id = self.conversation_id
        try:
            if conversation_id:
                await self._backend.update(conversation_id, messages, metadata)
                if self._is_current(seq):
                    logger.debug(
                        "Saved conversation %s (%d messages)", conversation_id, len(messages)
                    )
                return
            new_id = await self._backend.create(
                self._mode, messages, metadata, self._project_id
            )
        except AuthExpiredError:
            if self._is_current(seq) and self._on_auth_expired is not None:
                self._on_auth_expired()
            return
        except ChatError as exc:
            if self._is_current(seq):
                logger.warning("Failed to save conversation: %s", exc)
            return

        if not self._is_current(seq):
            logger.debug("Discarding superseded create result %s", new_id)
            return
        if self.conversation_id is None:
            self.conversation_id = new_id
            logger.info("Created conversation %s", new_id)
            if self._on_created is not None:
                self._on_created(new_id)

    def _is_current(self, seq: int) -> bool:
        return self._alive and seq == self._seq

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
            logger.debug("Superseded in-flight save")
        self._save_task = None
