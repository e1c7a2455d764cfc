"""Tests for the conversation persistence HTTP client."""

import json

import httpx
import pytest

from src.backend.conversations import ConversationsClient
from src.chat.errors import ApiError, AuthExpiredError, PersistenceError, TransportError
from src.chat.models import ConversationMetadata, GenerationStatus, Message

URL = "http://tutor.test/api/conversations"


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def _client(recorder: Recorder, **kwargs) -> ConversationsClient:
    kwargs.setdefault("retry_initial_delay", 0)
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return ConversationsClient(client=http, url=URL, **kwargs)


def _ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data})


# -- create --------------------------------------------------------------------


async def test_create_posts_and_returns_id() -> None:
    recorder = Recorder(_ok({"id": "c42"}))
    client = _client(recorder)
    messages = [Message(role="user", content="hi")]
    metadata = ConversationMetadata.model_validate({"options": {"a": 1}})

    conversation_id = await client.create("explanation", messages, metadata, project_id="p1")

    assert conversation_id == "c42"
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == URL
    body = recorder.body()
    assert body["mode"] == "explanation"
    assert body["projectId"] == "p1"
    assert body["messages"][0]["content"] == "hi"
    assert body["metadata"] == {"options": {"a": 1}}


async def test_create_without_project_omits_key() -> None:
    recorder = Recorder(_ok({"id": "c1"}))
    await _client(recorder).create("explanation", [], ConversationMetadata())
    assert "projectId" not in recorder.body()


async def test_create_without_id_raises() -> None:
    client = _client(Recorder(_ok({})))
    with pytest.raises(PersistenceError):
        await client.create("explanation", [], ConversationMetadata())


async def test_create_is_not_retried() -> None:
    recorder = Recorder(httpx.Response(503))
    with pytest.raises(TransportError):
        await _client(recorder).create("explanation", [], ConversationMetadata())
    assert len(recorder.requests) == 1


# -- update --------------------------------------------------------------------


async def test_update_patches_with_id() -> None:
    recorder = Recorder(_ok({}))
    messages = [Message(role="user", content="hi")]

    await _client(recorder).update("c1", messages, ConversationMetadata())

    assert recorder.requests[0].method == "PATCH"
    assert recorder.body()["id"] == "c1"
    assert recorder.body()["messages"][0]["role"] == "user"


async def test_unsuccessful_envelope_raises_persistence_error() -> None:
    recorder = Recorder(httpx.Response(200, json={"success": False}))
    with pytest.raises(PersistenceError):
        await _client(recorder).update("c1", [], ConversationMetadata())


async def test_envelope_auth_code_raises_auth_expired() -> None:
    body = {"success": False, "error": {"code": "INVALID_SESSION", "message": "Sign in"}}
    recorder = Recorder(httpx.Response(200, json=body))
    with pytest.raises(AuthExpiredError):
        await _client(recorder).update("c1", [], ConversationMetadata())


# -- fetch_by_id ---------------------------------------------------------------


async def test_fetch_parses_record() -> None:
    recorder = Recorder(
        _ok({
            "id": "c1",
            "mode": "quiz",
            "messages": [{"id": "m1", "role": "user", "content": "Q"}],
            "metadata": {"options": {"n": 5}},
            "generationStatus": "failed",
            "generationError": "Upstream timeout",
        })
    )

    record = await _client(recorder).fetch_by_id("c1")

    assert str(recorder.requests[0].url) == f"{URL}/c1"
    assert record.mode == "quiz"
    assert record.messages[0].id == "m1"
    assert record.generation_status is GenerationStatus.FAILED
    assert record.generation_error == "Upstream timeout"


async def test_fetch_fills_missing_id() -> None:
    record = await _client(Recorder(_ok({"messages": []}))).fetch_by_id("c7")
    assert record.id == "c7"


async def test_fetch_retries_server_errors() -> None:
    recorder = Recorder(httpx.Response(503), httpx.Response(500), _ok({"id": "c1"}))

    record = await _client(recorder, max_retries=2).fetch_by_id("c1")

    assert record.id == "c1"
    assert len(recorder.requests) == 3


async def test_fetch_gives_up_after_max_retries() -> None:
    recorder = Recorder(httpx.Response(503))
    with pytest.raises(TransportError):
        await _client(recorder, max_retries=2).fetch_by_id("c1")
    assert len(recorder.requests) == 3


async def test_fetch_does_not_retry_client_errors() -> None:
    body = {"error": {"code": "NOT_FOUND", "message": "No such conversation"}}
    recorder = Recorder(httpx.Response(404, json=body))

    with pytest.raises(ApiError) as exc_info:
        await _client(recorder, max_retries=2).fetch_by_id("c1")

    assert exc_info.value.code == "NOT_FOUND"
    assert len(recorder.requests) == 1


async def test_fetch_rejects_malformed_record() -> None:
    recorder = Recorder(_ok({"messages": "not a list"}))
    with pytest.raises(PersistenceError):
        await _client(recorder).fetch_by_id("c1")
