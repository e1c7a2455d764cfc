"""MetadataMerger — carries mode-specific state alongside the branch forest."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from src.chat.models import BranchState, ConversationMetadata

if TYPE_CHECKING:
    from src.chat.branches import BranchStore
    from src.chat.models import Message

logger = logging.getLogger(__name__)

# Keys owned by the engine rather than by the calling UI
_FOREST_KEYS = frozenset({"branchState", "lastActiveBranchId"})


class MetadataMerger:
    """Holds auxiliary UI state and bundles it with the forest for saving.

    Auxiliary keys are stored in wire form (``options``, ``state``,
    ``brainstormState``...) and merged shallowly.
    """

    def __init__(self, store: BranchStore) -> None:
        self._store = store
        self._aux: dict[str, Any] = {}

    def set_external(self, partial: dict[str, Any]) -> None:
        """Shallow-merge UI-supplied state. Forest keys are ignored."""
        self._aux.update({k: v for k, v in partial.items() if k not in _FOREST_KEYS})

    def build(self) -> ConversationMetadata:
        """Combined snapshot: auxiliary state + current forest + active branch."""
        state = self._store.snapshot()
        return ConversationMetadata.model_validate({
            **self._aux,
            "branchState": state,
            "lastActiveBranchId": state.current_branch_id,
        })

    def restore(
        self,
        raw: dict[str, Any] | None,
        flat_messages: list[Message],
    ) -> ConversationMetadata | None:
        """Rehydrate the forest and auxiliary state from persisted metadata.

        A stored forest is restored verbatim onto ``lastActiveBranchId``.
        Without one (legacy flat history), or when the stored forest is
        inconsistent, a single main branch wrapping ``flat_messages`` is
        synthesized. Returns the parsed metadata, or None if there was none.
        """
        metadata: ConversationMetadata | None = None
        if raw:
            metadata = self._parse(raw)

        state = self._restored_forest(metadata, flat_messages)
        self._store.restore(state)

        self._aux = {}
        if raw:
            self._aux = {k: v for k, v in raw.items() if k not in _FOREST_KEYS}
        return metadata

    def _parse(self, raw: dict[str, Any]) -> ConversationMetadata:
        try:
            return ConversationMetadata.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Stored branch state is invalid, using flat history: %s", exc)
            rest = {k: v for k, v in raw.items() if k not in _FOREST_KEYS}
            return ConversationMetadata.model_validate(rest)

    @staticmethod
    def _restored_forest(
        metadata: ConversationMetadata | None,
        flat_messages: list[Message],
    ) -> BranchState:
        if metadata is None or metadata.branch_state is None:
            return BranchState.fresh(flat_messages)
        state = metadata.branch_state
        target = metadata.last_active_branch_id
        if target and any(b.id == target for b in state.branches):
            return state.model_copy(update={"current_branch_id": target})
        return state
