"""ConversationStore — aiosqlite persistence backend for conversations."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite

from src.chat.errors import PersistenceError
from src.chat.models import ConversationRecord, GenerationStatus, Message, make_id
from src.config import settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from src.chat.models import ConversationMetadata

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    mode TEXT NOT NULL,
    messages TEXT NOT NULL,
    metadata TEXT,
    project_id TEXT,
    generation_status TEXT NOT NULL DEFAULT 'idle',
    pending_content TEXT,
    generation_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ConversationStore:
    """Persists conversations in SQLite.

    Implements the same ``create`` / ``update`` / ``fetch_by_id`` contract as
    the HTTP client, so the engine can run without a web backend. Database
    failures surface as ``PersistenceError``. Singleton accessed via
    ``ConversationStore.get()``; pass an explicit *db_path* for test
    isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: ConversationStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            try:
                await db.execute(_CREATE_TABLE)
                await db.commit()
            except sqlite3.Error:
                await db.close()
                raise
            self._initialised = True
        return db

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection; sqlite failures become PersistenceError."""
        try:
            db = await self._connect()
        except (sqlite3.Error, OSError) as exc:
            msg = f"Cannot open conversation database {self._db_path}: {exc}"
            raise PersistenceError(msg) from exc
        try:
            yield db
        except sqlite3.Error as exc:
            msg = f"Failed to {action}: {exc}"
            raise PersistenceError(msg) from exc
        finally:
            await db.close()

    @staticmethod
    def _dump_messages(messages: list[Message]) -> str:
        return json.dumps([m.to_wire() for m in messages])

    # -- Backend contract ------------------------------------------------------

    async def create(
        self,
        mode: str,
        messages: list[Message],
        metadata: ConversationMetadata,
        project_id: str | None = None,
    ) -> str:
        """Insert a new conversation. Returns the issued ID."""
        conversation_id = make_id()
        now = _now()
        async with self._session("create conversation") as db:
            await db.execute(
                """
                INSERT INTO conversations
                    (id, mode, messages, metadata, project_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    mode,
                    self._dump_messages(messages),
                    json.dumps(metadata.to_wire()),
                    project_id,
                    now,
                    now,
                ),
            )
            await db.commit()
        logger.info("Stored new conversation %s (%s)", conversation_id, mode)
        return conversation_id

    async def update(
        self,
        conversation_id: str,
        messages: list[Message],
        metadata: ConversationMetadata,
    ) -> None:
        """Overwrite messages and metadata. Raises PersistenceError for unknown IDs."""
        async with self._session(f"update conversation {conversation_id}") as db:
            cursor = await db.execute(
                """
                UPDATE conversations
                SET messages = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    self._dump_messages(messages),
                    json.dumps(metadata.to_wire()),
                    _now(),
                    conversation_id,
                ),
            )
            await db.commit()
            updated = cursor.rowcount
        if updated == 0:
            msg = f"Conversation {conversation_id} not found"
            raise PersistenceError(msg)

    async def fetch_by_id(self, conversation_id: str) -> ConversationRecord:
        """Load a conversation. Raises PersistenceError for unknown IDs."""
        async with self._session(f"load conversation {conversation_id}") as db:
            cursor = await db.execute(
                """
                SELECT id, mode, messages, metadata, generation_status,
                       pending_content, generation_error
                FROM conversations WHERE id = ?
                """,
                (conversation_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            msg = f"Conversation {conversation_id} not found"
            raise PersistenceError(msg)
        return ConversationRecord(
            id=row[0],
            mode=row[1],
            messages=[Message.model_validate(m) for m in json.loads(row[2])],
            metadata=json.loads(row[3]) if row[3] else None,
            generation_status=GenerationStatus(row[4]),
            pending_content=row[5],
            generation_error=row[6],
        )

    # -- Generation tracking ---------------------------------------------------

    async def set_generation_status(
        self,
        conversation_id: str,
        status: GenerationStatus,
        *,
        pending_content: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Record server-side generation progress. Returns True if a row was updated."""
        async with self._session(f"update generation status of {conversation_id}") as db:
            cursor = await db.execute(
                """
                UPDATE conversations
                SET generation_status = ?, pending_content = ?, generation_error = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (str(status), pending_content, error, _now(), conversation_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_ids(self) -> list[str]:
        """Return conversation IDs, most recently updated first."""
        async with self._session("list conversations") as db:
            cursor = await db.execute("SELECT id FROM conversations ORDER BY updated_at DESC")
            rows = await cursor.fetchall()
        return [row[0] for row in rows]
