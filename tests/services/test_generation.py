# tests/services/test_generation.py
"""Tests for the AI generation client and its fallbacks."""

import json
from datetime import timedelta
from types import SimpleNamespace

import httpx
import pytest

from bavard.core.constants import ASSISTANT_APOLOGY, ASSISTANT_USER_ID
from bavard.schemas.feed import FeedPost
from bavard.services.generation import (
    ChatTurn,
    CircuitBreaker,
    CircuitState,
    GenerationClient,
    GenerationConfig,
    GenerationDisabledError,
    GenerationError,
    categorize_media,
    chronological_ranking,
    generate_assistant_reply,
    history_from_messages,
    rank_posts,
)

from tests.conftest import T0, make_generation_client


def _post(post_id: str, minutes: int) -> FeedPost:
    return FeedPost(
        id=post_id,
        title=f"post {post_id}",
        user_id="bob",
        created_at=T0 + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_chat_sends_prompt_history_and_credentials() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"response": "Hi there"})

    client = make_generation_client(handler)
    try:
        reply = await client.chat("hello", [ChatTurn("user", "earlier"), ChatTurn("assistant", "ok")])
    finally:
        await client.close()

    assert reply == "Hi there"
    request = seen[0]
    assert request.url.path == "/chat"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert body["prompt"] == "hello"
    assert body["history"] == [
        {"role": "user", "content": "earlier"},
        {"role": "assistant", "content": "ok"},
    ]


@pytest.mark.asyncio
async def test_assistant_reply_falls_back_to_apology() -> None:
    client = make_generation_client(lambda request: httpx.Response(503))
    try:
        reply = await generate_assistant_reply(client, "hello", [])
    finally:
        await client.close()

    assert reply == ASSISTANT_APOLOGY


@pytest.mark.asyncio
async def test_empty_reply_counts_as_failure() -> None:
    client = make_generation_client(lambda request: httpx.Response(200, json={"response": "   "}))
    try:
        with pytest.raises(GenerationError):
            await client.chat("hello", [])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_disabled_client_never_calls_out() -> None:
    config = GenerationConfig(
        base_url=None,
        api_key=None,
        timeout_seconds=1.0,
        failure_threshold=1,
        recovery_timeout_seconds=1.0,
    )
    client = GenerationClient(config)

    assert client.enabled is False
    with pytest.raises(GenerationDisabledError):
        await client.chat("hello", [])
    assert await generate_assistant_reply(client, "hello", []) == ASSISTANT_APOLOGY


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    client = make_generation_client(handler, failure_threshold=2)
    try:
        for _ in range(2):
            with pytest.raises(GenerationError):
                await client.chat("hello", [])
        assert client.circuit_state is CircuitState.OPEN

        with pytest.raises(GenerationError, match="circuit breaker is open"):
            await client.chat("hello", [])
    finally:
        await client.close()

    assert len(calls) == 2


def test_circuit_breaker_half_open_recovery(mocker) -> None:
    now = mocker.patch("bavard.services.generation.time.monotonic", return_value=100.0)
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10.0)

    breaker.record_failure()
    assert breaker.is_open() is True

    now.return_value = 111.0
    assert breaker.is_open() is False
    assert breaker.state is CircuitState.HALF_OPEN

    breaker.record_success()
    assert breaker.state is CircuitState.CLOSED


def test_chronological_ranking_is_newest_first() -> None:
    posts = [_post("a", 0), _post("b", 10), _post("c", 5)]

    assert chronological_ranking(posts) == ["b", "c", "a"]


@pytest.mark.asyncio
async def test_rank_posts_sanitizes_model_output() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["userId"] == "alice"
        assert body["contactIds"] == ["bob"]
        return httpx.Response(200, json={"rankedPostIds": ["a", "ghost", "a"]})

    client = make_generation_client(handler)
    posts = [_post("a", 0), _post("b", 10), _post("c", 5)]
    try:
        ranked, fallback = await rank_posts(client, "alice", posts, ["bob"])
    finally:
        await client.close()

    assert fallback is False
    assert ranked == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_rank_posts_falls_back_on_failure() -> None:
    client = make_generation_client(lambda request: httpx.Response(500))
    posts = [_post("a", 0), _post("b", 10)]
    try:
        ranked, fallback = await rank_posts(client, "alice", posts, [])
        empty = await rank_posts(client, "alice", [], [])
    finally:
        await client.close()

    assert (ranked, fallback) == (["b", "a"], True)
    assert empty == ([], False)


@pytest.mark.asyncio
async def test_categorize_media() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["mediaUrl"].endswith("cat.png"):
            return httpx.Response(200, json={"categories": ["pets", "cats"]})
        return httpx.Response(400)

    client = make_generation_client(handler)
    try:
        assert await categorize_media(client, "http://cdn/cat.png") == ["pets", "cats"]
        assert await categorize_media(client, "http://cdn/other.png") == []
    finally:
        await client.close()


def test_history_from_messages_assigns_roles() -> None:
    messages = [
        SimpleNamespace(kind="text", text="hi", sender_id="alice"),
        SimpleNamespace(kind="text", text="hello!", sender_id=ASSISTANT_USER_ID),
        SimpleNamespace(kind="image", text=None, sender_id="alice"),
    ]

    assert history_from_messages(messages) == [
        ChatTurn("user", "hi"),
        ChatTurn("assistant", "hello!"),
    ]
