"""Tests for ConversationStore — aiosqlite persistence backend."""

import pytest
from fakes import FakeGeneration, content_stream

from src.chat.engine import INTERRUPTED_SUFFIX, ConversationEngine
from src.chat.errors import PersistenceError
from src.chat.models import BranchState, ConversationMetadata, GenerationStatus, Message
from src.storage.conversations import ConversationStore


def _metadata(messages: list[Message]) -> ConversationMetadata:
    state = BranchState.fresh(messages)
    return ConversationMetadata.model_validate({
        "options": {"topic": "fractions"},
        "branchState": state,
        "lastActiveBranchId": state.current_branch_id,
    })


# -- create / fetch ------------------------------------------------------------


async def test_create_and_fetch(conversation_store: ConversationStore) -> None:
    messages = [Message(role="user", content="hi"), Message(role="assistant", content="Hello")]

    conversation_id = await conversation_store.create("explanation", messages, _metadata(messages))
    record = await conversation_store.fetch_by_id(conversation_id)

    assert record.id == conversation_id
    assert record.mode == "explanation"
    assert record.messages == messages
    assert record.metadata["options"] == {"topic": "fractions"}
    assert record.generation_status is GenerationStatus.IDLE


async def test_fetch_unknown_raises(conversation_store: ConversationStore) -> None:
    with pytest.raises(PersistenceError):
        await conversation_store.fetch_by_id("nope")


# -- update --------------------------------------------------------------------


async def test_update_overwrites(conversation_store: ConversationStore) -> None:
    first = [Message(role="user", content="hi")]
    conversation_id = await conversation_store.create("explanation", first, _metadata(first))

    second = [*first, Message(role="assistant", content="Hello")]
    await conversation_store.update(conversation_id, second, _metadata(second))

    record = await conversation_store.fetch_by_id(conversation_id)
    assert [m.content for m in record.messages] == ["hi", "Hello"]


async def test_update_unknown_raises(conversation_store: ConversationStore) -> None:
    with pytest.raises(PersistenceError):
        await conversation_store.update("nope", [], ConversationMetadata())


# -- generation status ---------------------------------------------------------


async def test_set_generation_status(conversation_store: ConversationStore) -> None:
    msgs = [Message(role="user", content="Q")]
    conversation_id = await conversation_store.create("explanation", msgs, _metadata(msgs))

    updated = await conversation_store.set_generation_status(
        conversation_id, GenerationStatus.GENERATING, pending_content="Partial"
    )

    record = await conversation_store.fetch_by_id(conversation_id)
    assert updated
    assert record.generation_status is GenerationStatus.GENERATING
    assert record.pending_content == "Partial"


async def test_set_generation_status_unknown(conversation_store: ConversationStore) -> None:
    assert not await conversation_store.set_generation_status("nope", GenerationStatus.FAILED)


async def test_list_ids(conversation_store: ConversationStore) -> None:
    msgs = [Message(role="user", content="Q")]
    first = await conversation_store.create("explanation", msgs, _metadata(msgs))
    second = await conversation_store.create("quiz", msgs, _metadata(msgs))
    assert set(await conversation_store.list_ids()) == {first, second}


async def test_database_errors_become_persistence_errors(tmp_path) -> None:
    store = ConversationStore(db_path=tmp_path)
    msgs = [Message(role="user", content="Q")]

    with pytest.raises(PersistenceError, match="Cannot open conversation database"):
        await store.create("explanation", msgs, _metadata(msgs))
    with pytest.raises(PersistenceError):
        await store.fetch_by_id("c1")
    with pytest.raises(PersistenceError):
        await store.list_ids()


def test_singleton(conversation_store: ConversationStore) -> None:
    assert ConversationStore.get() is conversation_store


# -- Engine round trip ---------------------------------------------------------


async def test_engine_saves_and_reloads(conversation_store: ConversationStore) -> None:
    writer = ConversationEngine(
        "explanation",
        generation=FakeGeneration(content_stream("Hello")),
        backend=conversation_store,
        save_debounce=0,
    )
    writer.set_external_metadata({"options": {"topic": "cells"}})
    await writer.send_message("hi")
    writer.fork_from_message(0)
    await writer.save_coordinator.settle()
    conversation_id = writer.conversation_id
    fork_id = writer.current_branch_id
    writer.close()

    reader = ConversationEngine(
        "explanation", generation=FakeGeneration(), backend=conversation_store
    )
    await reader.load_conversation(conversation_id)

    assert len(reader.branches) == 2
    assert reader.current_branch_id == fork_id
    assert [m.content for m in reader.messages] == ["hi"]
    assert reader.restored_metadata.mode_options == {"topic": "cells"}
    reader.close()


async def test_engine_recovers_interrupted_generation(
    conversation_store: ConversationStore,
) -> None:
    msgs = [Message(role="user", content="Q")]
    conversation_id = await conversation_store.create("explanation", msgs, _metadata(msgs))
    await conversation_store.set_generation_status(
        conversation_id, GenerationStatus.GENERATING, pending_content="Half an ans"
    )

    engine = ConversationEngine(
        "explanation", generation=FakeGeneration(), backend=conversation_store
    )
    await engine.load_conversation(conversation_id)

    assert engine.messages[-1].content == "Half an ans" + INTERRUPTED_SUFFIX
    assert engine.generation_recovery.status is GenerationStatus.GENERATING

    await engine.save_coordinator.settle()
    record = await conversation_store.fetch_by_id(conversation_id)
    assert record.messages[-1].metadata == {"interrupted": True}
    engine.close()
