"""BranchStore — owns the conversation forest and the active-branch pointer.

Pure data operations, no I/O. Every mutation notifies subscribed listeners
synchronously so the persistence layer can schedule a save.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from src.chat.models import Branch, BranchState, Message

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class BranchStore:
    """Append-only forest of branches, each with its own message list.

    Branch records are never removed or edited. Message lists only grow,
    except for explicit truncation (regeneration) and wholesale replacement
    (rollback, restore).
    """

    def __init__(self, state: BranchState | None = None) -> None:
        self._branches: list[Branch] = []
        self._messages: dict[str, list[Message]] = {}
        self._current_id = ""
        self._listeners: list[Callable[[], None]] = []
        self._load(state or BranchState.fresh())

    # -- Listeners -------------------------------------------------------------

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Register a callback invoked after every mutation."""
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in self._listeners:
            listener()

    # -- Read ------------------------------------------------------------------

    @property
    def current_branch_id(self) -> str:
        return self._current_id

    @property
    def branches(self) -> list[Branch]:
        """Branch records in creation order."""
        return list(self._branches)

    @property
    def messages(self) -> list[Message]:
        """Messages of the active branch."""
        return list(self._messages.get(self._current_id, []))

    @property
    def message_count(self) -> int:
        return len(self._messages.get(self._current_id, []))

    def get_branch(self, branch_id: str) -> Branch | None:
        return next((b for b in self._branches if b.id == branch_id), None)

    def messages_for(self, branch_id: str) -> list[Message]:
        return list(self._messages.get(branch_id, []))

    def can_fork(self, index: int) -> bool:
        return 0 <= index < self.message_count

    def snapshot(self) -> BranchState:
        """Deep copy of the forest, safe to hand to async code or serialize."""
        return BranchState(
            branches=[b.model_copy() for b in self._branches],
            current_branch_id=self._current_id,
            messages_by_branch={
                bid: [m.model_copy(deep=True) for m in msgs]
                for bid, msgs in self._messages.items()
            },
        )

    # -- Mutations -------------------------------------------------------------

    def append_message(self, message: Message, branch_id: str | None = None) -> None:
        """Append to the given branch (default: the active one)."""
        target = branch_id or self._current_id
        if target not in self._messages:
            logger.debug("Append to unknown branch %s ignored", target)
            return
        self._messages[target].append(message)
        self._changed()

    def update_message(
        self,
        branch_id: str,
        message_id: str,
        *,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Replace a message's content and/or shallow-merge its metadata.

        Returns False when the branch or message no longer exists.
        """
        msgs = self._messages.get(branch_id)
        if msgs is None:
            return False
        for i, msg in enumerate(msgs):
            if msg.id != message_id:
                continue
            update: dict[str, Any] = {}
            if content is not None:
                update["content"] = content
            if metadata is not None:
                update["metadata"] = {**(msg.metadata or {}), **metadata}
            if update:
                msgs[i] = msg.model_copy(update=update)
                self._changed()
            return True
        return False

    def remove_message(self, branch_id: str, message_id: str) -> bool:
        """Drop a single message by ID. Returns True if something was removed."""
        msgs = self._messages.get(branch_id)
        if msgs is None:
            return False
        kept = [m for m in msgs if m.id != message_id]
        if len(kept) == len(msgs):
            return False
        self._messages[branch_id] = kept
        self._changed()
        return True

    def fork_from_message(self, index: int) -> Branch | None:
        """Create a branch holding messages ``[0, index]`` of the active one and activate it.

        Out-of-range indices are ignored and return None.
        """
        if not self.can_fork(index):
            logger.debug("Fork at index %d ignored (%d messages)", index, self.message_count)
            return None
        source = self._messages[self._current_id]
        branch = Branch(
            name=f"Branch {len(self._branches) + 1}",
            parent_branch_id=self._current_id,
            fork_point_index=index,
        )
        self._branches.append(branch)
        self._messages[branch.id] = list(source[: index + 1])
        self._current_id = branch.id
        logger.info("Forked branch %s from %s at %d", branch.id, branch.parent_branch_id, index)
        self._changed()
        return branch

    def switch_branch(self, branch_id: str) -> bool:
        """Activate an existing branch. Unknown IDs are ignored."""
        if branch_id not in self._messages:
            logger.debug("Switch to unknown branch %s ignored", branch_id)
            return False
        if branch_id != self._current_id:
            self._current_id = branch_id
            self._changed()
        return True

    def truncate_active(self, index: int) -> None:
        """Drop every message after ``index`` in the active branch."""
        self.truncate(self._current_id, index)

    def truncate(self, branch_id: str, index: int) -> None:
        msgs = self._messages.get(branch_id)
        if msgs is None or not 0 <= index < len(msgs) - 1:
            return
        self._messages[branch_id] = msgs[: index + 1]
        self._changed()

    def replace_messages(self, branch_id: str, messages: list[Message]) -> None:
        """Swap a branch's whole message list (used for rollback)."""
        if branch_id not in self._messages:
            return
        self._messages[branch_id] = list(messages)
        self._changed()

    def restore(self, state: BranchState, *, notify: bool = False) -> None:
        """Replace the entire forest, e.g. after loading a conversation."""
        self._load(state)
        if notify:
            self._changed()

    def reset(self) -> None:
        """Start over with a fresh single-branch forest."""
        self._load(BranchState.fresh())
        self._changed()

    # -- Internal --------------------------------------------------------------

    def _load(self, state: BranchState) -> None:
        self._branches = list(state.branches)
        self._messages = {
            b.id: list(state.messages_by_branch.get(b.id, [])) for b in self._branches
        }
        self._current_id = state.current_branch_id
