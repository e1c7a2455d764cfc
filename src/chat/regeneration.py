"""Planning helpers for regenerating the last assistant turn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.chat.models import Message


@dataclass(frozen=True)
class RegenerationPlan:
    """Where to cut the branch and what to resend.

    Attributes:
        branch_id: Branch the attempt targets.
        user_index: Index of the most recent user message (kept).
        original: The full message list before the attempt, for rollback.
    """

    branch_id: str
    user_index: int
    original: tuple[Message, ...]

    @property
    def request_messages(self) -> list[Message]:
        """Messages sent to the backend: everything up to and including the user turn."""
        return list(self.original[: self.user_index + 1])


def can_regenerate(messages: list[Message], *, is_loading: bool) -> bool:
    """Not streaming, at least two messages, and the last one is an assistant turn."""
    if is_loading or len(messages) < 2:
        return False
    return messages[-1].role == "assistant"


def last_user_index(messages: list[Message]) -> int:
    """Index of the most recent user message, or -1 if there is none."""
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return -1


def plan_regeneration(
    branch_id: str,
    messages: list[Message],
    *,
    is_loading: bool,
) -> RegenerationPlan | None:
    """Return a plan, or None when regeneration is not possible."""
    if not can_regenerate(messages, is_loading=is_loading):
        return None
    index = last_user_index(messages)
    if index < 0:
        return None
    return RegenerationPlan(branch_id=branch_id, user_index=index, original=tuple(messages))
