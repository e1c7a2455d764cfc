"""ConversationEngine — the state engine behind every chat screen.

Owns one conversation: the branch forest, the in-flight generation, the
save coordinator and the auxiliary mode metadata. All public methods must
be called from the event loop that owns the engine; there is no locking
because the loop gives exclusive access between suspension points.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from src.backend.conversations import ConversationsClient
from src.backend.generation import GenerationClient, build_request
from src.chat.branches import BranchStore
from src.chat.errors import AuthExpiredError, ChatError, GenerationCancelled
from src.chat.metadata import MetadataMerger
from src.chat.models import GenerationRecoveryInfo, GenerationStatus, Message
from src.chat.persistence import SaveCoordinator
from src.chat.regeneration import can_regenerate, plan_regeneration
from src.chat.stream import CancelToken, ingest_stream

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.chat.models import Branch, BranchState, ConversationMetadata, ConversationRecord
    from src.chat.persistence import ConversationBackend
    from src.chat.stream import StreamResult

logger = logging.getLogger(__name__)

INTERRUPTED_SUFFIX = "\n\n[Generation was interrupted. Regenerate to continue.]"
DEFAULT_GENERATION_ERROR = "An error occurred during generation"


class _PlaceholderSink:
    """Writes stream updates into one specific message of one specific branch."""

    def __init__(self, store: BranchStore, branch_id: str, message_id: str) -> None:
        self._store = store
        self._branch_id = branch_id
        self._message_id = message_id

    def on_content(self, full_content: str) -> None:
        self._store.update_message(self._branch_id, self._message_id, content=full_content)

    def on_metadata(self, fragment: dict[str, Any]) -> None:
        self._store.update_message(self._branch_id, self._message_id, metadata=fragment)


class ConversationEngine:
    """Branching chat conversation with streamed generation and debounced saves.

    Args:
        mode: Chat mode sent with every request and recorded on creation.
        generation: Streaming generation client.
        backend: Persistence backend (HTTP client or local store).
        conversation_id: ID of an already persisted conversation.
        project_id: Optional grouping ID passed when the conversation is created.
        mode_config: Mode-specific sub-configuration merged into each request.
        on_error: Called with every transport/API error.
        on_conversation_created: Called once with the ID issued by the first save.
        on_auth_expired: Called instead of ``on_error`` when the session expired.
        save_debounce: Quiet window for saves in seconds (default from settings).
    """

    def __init__(
        self,
        mode: str,
        *,
        generation: GenerationClient | None = None,
        backend: ConversationBackend | None = None,
        conversation_id: str | None = None,
        project_id: str | None = None,
        mode_config: dict[str, Any] | None = None,
        on_error: Callable[[ChatError], None] | None = None,
        on_conversation_created: Callable[[str], None] | None = None,
        on_auth_expired: Callable[[], None] | None = None,
        save_debounce: float | None = None,
    ) -> None:
        self.mode = mode
        self._generation = generation or GenerationClient()
        self._mode_config = dict(mode_config or {})
        self._on_error = on_error
        self._on_conversation_created = on_conversation_created
        self._on_auth_expired = on_auth_expired

        self._backend = backend or ConversationsClient()
        self._store = BranchStore()
        self._metadata = MetadataMerger(self._store)
        self._saver = SaveCoordinator(
            self._backend,
            mode,
            self._save_snapshot,
            debounce=save_debounce,
            conversation_id=conversation_id,
            project_id=project_id,
            on_created=self._handle_created,
            on_auth_expired=self._handle_auth_expired,
        )
        self._store.subscribe(self._saver.schedule)

        self._token: CancelToken | None = None
        self._stream_task: asyncio.Task | None = None
        self._is_loading = False
        self._is_loading_history = False
        self._error: ChatError | None = None
        self._recovery: GenerationRecoveryInfo | None = None
        self._restored_metadata: ConversationMetadata | None = None
        self._last_result: StreamResult | None = None
        self._load_seq = 0
        self._alive = True

    # -- Observable state ------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        """Messages of the active branch."""
        return self._store.messages

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_loading_history(self) -> bool:
        return self._is_loading_history

    @property
    def error(self) -> ChatError | None:
        return self._error

    @property
    def conversation_id(self) -> str | None:
        return self._saver.conversation_id

    @property
    def branches(self) -> list[Branch]:
        return self._store.branches

    @property
    def current_branch_id(self) -> str:
        return self._store.current_branch_id

    @property
    def branch_state(self) -> BranchState:
        """Synchronous deep snapshot of the whole forest."""
        return self._store.snapshot()

    @property
    def can_regenerate(self) -> bool:
        return can_regenerate(self._store.messages, is_loading=self._is_loading)

    @property
    def generation_recovery(self) -> GenerationRecoveryInfo | None:
        return self._recovery

    @property
    def restored_metadata(self) -> ConversationMetadata | None:
        return self._restored_metadata

    @property
    def last_tokens_used(self) -> int | None:
        return self._last_result.tokens_used if self._last_result else None

    @property
    def last_done_extras(self) -> dict[str, Any]:
        """Extra fields of the last completed stream's done frame (e.g. ``quizComplete``)."""
        return dict(self._last_result.extras) if self._last_result else {}

    @property
    def save_coordinator(self) -> SaveCoordinator:
        return self._saver

    @property
    def backend(self) -> ConversationBackend:
        return self._backend

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` after every change to the forest (e.g. each streamed fragment)."""
        self._store.subscribe(listener)

    # -- Branching -------------------------------------------------------------

    def fork_from_message(self, index: int) -> Branch | None:
        return self._store.fork_from_message(index)

    def switch_branch(self, branch_id: str) -> bool:
        return self._store.switch_branch(branch_id)

    def can_fork(self, index: int) -> bool:
        return self._store.can_fork(index)

    # -- Generation ------------------------------------------------------------

    async def send_message(self, text: str) -> None:
        """Append a user turn and stream the assistant reply into a placeholder.

        Ignored while another generation is in flight or for blank text.
        Errors are reported through ``error`` / ``on_error``, not raised.
        """
        if not self._alive or not text.strip():
            return
        if self._is_loading:
            logger.debug("send_message ignored: generation already in progress")
            return
        branch_id = self._store.current_branch_id
        self._store.append_message(Message(role="user", content=text), branch_id)
        await self._generate(branch_id, self._store.messages_for(branch_id))

    async def regenerate_last_message(self) -> None:
        """Drop the last assistant reply and stream a new one for the same user turn.

        On failure the branch is restored to exactly its pre-attempt state.
        """
        if not self._alive:
            return
        plan = plan_regeneration(
            self._store.current_branch_id,
            self._store.messages,
            is_loading=self._is_loading,
        )
        if plan is None:
            logger.debug("regenerate_last_message ignored: nothing to regenerate")
            return
        self._store.truncate(plan.branch_id, plan.user_index)
        await self._generate(plan.branch_id, plan.request_messages, rollback=plan.original)

    def stop_generation(self) -> None:
        """Cancel the in-flight generation, keeping whatever was streamed so far.

        The request itself is aborted, so a stalled server cannot keep
        ``send_message`` waiting.
        """
        token = self._token
        if token is None:
            return
        self._abort_stream()
        self._is_loading = False
        self._saver.stream_finished()
        logger.info("Generation stopped")

    def _abort_stream(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None

    async def _stream(
        self, payload: dict[str, Any], sink: _PlaceholderSink, token: CancelToken
    ) -> StreamResult:
        async with self._generation.open_stream(payload) as chunks:
            return await ingest_stream(chunks, sink, token)

    async def _generate(
        self,
        branch_id: str,
        request_messages: list[Message],
        rollback: tuple[Message, ...] | None = None,
    ) -> None:
        token = CancelToken()
        self._token = token
        self._is_loading = True
        self._error = None
        self._saver.stream_started()

        placeholder = Message(role="assistant", content="")
        self._store.append_message(placeholder, branch_id)
        sink = _PlaceholderSink(self._store, branch_id, placeholder.id)
        payload = build_request(
            self.mode,
            request_messages,
            conversation_id=self.conversation_id,
            mode_config=self._mode_config,
        )

        task = asyncio.get_running_loop().create_task(self._stream(payload, sink, token))
        self._stream_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            # Only an abort via the token is absorbed; outer cancellation propagates.
            if not token.cancelled:
                raise
            logger.debug("Stream aborted after stop")
        except GenerationCancelled:
            logger.debug("Stream exited after cancellation")
        except AuthExpiredError:
            if not token.cancelled:
                self._discard_attempt(branch_id, placeholder.id, rollback)
                self._handle_auth_expired()
        except ChatError as exc:
            if not token.cancelled:
                self._discard_attempt(branch_id, placeholder.id, rollback)
                self._report(exc)
        else:
            self._last_result = result
            logger.info(
                "Generation finished: %d chars, tokens=%s, end marker=%s",
                len(result.content),
                result.tokens_used,
                result.ended_by_marker,
            )
        finally:
            self._finish(token)

    def _discard_attempt(
        self,
        branch_id: str,
        placeholder_id: str,
        rollback: tuple[Message, ...] | None,
    ) -> None:
        if rollback is not None:
            self._store.replace_messages(branch_id, list(rollback))
            logger.info("Regeneration rolled back on branch %s", branch_id)
        else:
            self._store.remove_message(branch_id, placeholder_id)

    def _finish(self, token: CancelToken) -> None:
        if self._token is not token:
            return
        self._token = None
        self._stream_task = None
        self._is_loading = False
        self._saver.stream_finished()

    # -- Loading ---------------------------------------------------------------

    async def load_conversation(self, conversation_id: str) -> None:
        """Replace the current conversation with a persisted one.

        Restores the forest (or wraps legacy flat history), the auxiliary
        metadata and, if the last server-side generation never finished
        cleanly, ``generation_recovery``.
        """
        if not self._alive:
            return
        self.stop_generation()
        await self._saver.settle()
        self._saver.cancel_pending()
        self._load_seq += 1
        seq = self._load_seq
        self._is_loading_history = True
        self._recovery = None
        self._restored_metadata = None

        try:
            record = await self._backend.fetch_by_id(conversation_id)
        except AuthExpiredError:
            if self._load_is_current(seq):
                self._handle_auth_expired()
            return
        except ChatError as exc:
            if self._load_is_current(seq):
                logger.error("Failed to load conversation %s: %s", conversation_id, exc)
                self._report(exc)
            return
        finally:
            if self._load_is_current(seq):
                self._is_loading_history = False

        if not self._load_is_current(seq):
            return
        self._restored_metadata = self._metadata.restore(record.metadata, record.messages)
        self._saver.conversation_id = conversation_id
        self._error = None
        self._apply_recovery(record)
        logger.info(
            "Loaded conversation %s (%d branches, %d messages on active branch)",
            conversation_id,
            len(self._store.branches),
            self._store.message_count,
        )

    def _load_is_current(self, seq: int) -> bool:
        return self._alive and seq == self._load_seq

    def _apply_recovery(self, record: ConversationRecord) -> None:
        status = record.generation_status
        if status == GenerationStatus.GENERATING:
            if record.pending_content:
                self._store.append_message(
                    Message(
                        role="assistant",
                        content=record.pending_content + INTERRUPTED_SUFFIX,
                        metadata={"interrupted": True},
                    )
                )
            self._recovery = GenerationRecoveryInfo(
                status=GenerationStatus.GENERATING,
                pending_content=record.pending_content or None,
            )
        elif status == GenerationStatus.FAILED:
            self._recovery = GenerationRecoveryInfo(
                status=GenerationStatus.FAILED,
                error=record.generation_error or DEFAULT_GENERATION_ERROR,
            )

    def clear_generation_recovery(self) -> None:
        self._recovery = None

    def clear_messages(self) -> None:
        """Start a brand-new conversation in this engine."""
        self.stop_generation()
        self._saver.cancel_pending()
        self._saver.conversation_id = None
        self._store.reset()
        self._error = None
        self._recovery = None

    # -- Metadata --------------------------------------------------------------

    def set_external_metadata(self, partial: dict[str, Any]) -> None:
        """Shallow-merge mode-specific state (``options``, ``state``, ...)."""
        self._metadata.set_external(partial)

    def get_metadata(self) -> ConversationMetadata:
        return self._metadata.build()

    def _save_snapshot(self) -> tuple[list[Message], ConversationMetadata]:
        return self._store.messages, self._metadata.build()

    # -- Teardown --------------------------------------------------------------

    def close(self) -> None:
        """Tear down: cancel generation and saves; late results are ignored."""
        self._alive = False
        self._abort_stream()
        self._is_loading = False
        self._saver.close()

    # -- Callbacks -------------------------------------------------------------

    def _report(self, exc: ChatError) -> None:
        if not self._alive:
            return
        logger.error("Chat error: %r", exc)
        self._error = exc
        if self._on_error is not None:
            self._on_error(exc)

    def _handle_created(self, conversation_id: str) -> None:
        if self._on_conversation_created is not None:
            self._on_conversation_created(conversation_id)

    def _handle_auth_expired(self) -> None:
        if not self._alive:
            return
        logger.warning("Session expired, handing off to re-authentication")
        if self._on_auth_expired is not None:
            self._on_auth_expired()
