"""Shared test fixtures."""

import pytest
from fakes import FakeBackend

from src.chat.engine import ConversationEngine
from src.storage.conversations import ConversationStore


@pytest.fixture
def backend() -> FakeBackend:
    """In-memory persistence backend that records every write."""
    return FakeBackend()


@pytest.fixture
async def make_engine(backend: FakeBackend):
    """Build engines wired to the fake backend; every engine is closed after the test."""
    engines: list[ConversationEngine] = []

    def _make(generation, **kwargs) -> ConversationEngine:
        kwargs.setdefault("save_debounce", 10.0)
        engine = ConversationEngine(
            kwargs.pop("mode", "explanation"),
            generation=generation,
            backend=kwargs.pop("backend", backend),
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def conversation_store(tmp_path):
    """Create a ConversationStore backed by a temporary database."""
    ConversationStore._reset()
    store = ConversationStore(db_path=tmp_path / "conversations.db")
    ConversationStore._instance = store
    yield store
    ConversationStore._reset()
