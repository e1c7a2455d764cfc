"""Data models for the conversation state engine.

All models serialize with camelCase aliases so persisted payloads stay
compatible with the web backend (``parentBranchId``, ``messagesByBranch``...).
Python code uses the snake_case field names.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAIN_BRANCH_NAME = "main"


def make_id() -> str:
    """Generate a new message or branch ID."""
    return uuid.uuid4().hex


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for JSON transport using the camelCase aliases."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Message(_WireModel):
    """A single conversation turn.

    ``content`` grows while the assistant turn is streaming, one copy per
    fragment. Instances are frozen and shared between forked branches:
    updates go through ``model_copy`` so earlier snapshots stay untouched.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    id: str = Field(default_factory=make_id)
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: str = Field(default_factory=now_iso)
    metadata: dict[str, Any] | None = None

    def to_api(self) -> dict[str, str]:
        """Format for the generation backend (role and content only)."""
        return {"role": self.role, "content": self.content}


class Branch(_WireModel):
    """One branch of the conversation forest. Never mutated after creation."""

    id: str = Field(default_factory=make_id)
    name: str
    parent_branch_id: str | None = Field(default=None, alias="parentBranchId")
    fork_point_index: int = Field(default=0, alias="forkPointIndex")
    created_at: str = Field(default_factory=now_iso, alias="createdAt")


class BranchState(_WireModel):
    """Arena representation of the forest: flat branch list plus message map."""

    branches: list[Branch]
    current_branch_id: str = Field(alias="currentBranchId")
    messages_by_branch: dict[str, list[Message]] = Field(
        default_factory=dict, alias="messagesByBranch"
    )

    @model_validator(mode="after")
    def _check_references(self) -> BranchState:
        ids = {b.id for b in self.branches}
        if not ids:
            msg = "Branch state has no branches"
            raise ValueError(msg)
        if self.current_branch_id not in ids:
            msg = f"Current branch '{self.current_branch_id}' is not in the forest"
            raise ValueError(msg)
        orphans = set(self.messages_by_branch) - ids
        if orphans:
            msg = f"Messages reference unknown branches: {sorted(orphans)}"
            raise ValueError(msg)
        return self

    @classmethod
    def fresh(cls, messages: list[Message] | None = None) -> BranchState:
        """Build a single-branch forest, optionally wrapping a flat history."""
        main = Branch(name=MAIN_BRANCH_NAME, fork_point_index=0)
        return cls(
            branches=[main],
            current_branch_id=main.id,
            messages_by_branch={main.id: list(messages or [])},
        )


class ConversationMetadata(_WireModel):
    """Auxiliary mode state bundled with the forest for persistence.

    Unknown keys (e.g. ``brainstormState``) are kept as extra fields and
    round-trip verbatim.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    mode_options: Any = Field(default=None, alias="options")
    mode_transient_state: Any = Field(default=None, alias="state")
    branch_state: BranchState | None = Field(default=None, alias="branchState")
    last_active_branch_id: str | None = Field(default=None, alias="lastActiveBranchId")


class GenerationStatus(StrEnum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationRecoveryInfo(_WireModel):
    """What the engine knows about a generation interrupted in a prior session."""

    status: GenerationStatus
    pending_content: str | None = Field(default=None, alias="pendingContent")
    error: str | None = None


class ConversationRecord(_WireModel):
    """A conversation as returned by the persistence backend."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    mode: str | None = None
    messages: list[Message] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    generation_status: GenerationStatus | None = Field(
        default=GenerationStatus.IDLE, alias="generationStatus"
    )
    pending_content: str | None = Field(default=None, alias="pendingContent")
    generation_error: str | None = Field(default=None, alias="generationError")


class StreamFrame(BaseModel):
    """Payload of one ``data:`` line in a generation stream."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    content: str | None = None
    metadata: dict[str, Any] | None = None
    done: bool = False
    tokens_used: int | None = Field(default=None, alias="tokensUsed")
    error: str | None = None
