# src/bavard/services/generation.py
"""Client for the external AI generation endpoints.

The assistant reply, feed ranking and media categorization models are opaque
HTTP services. Every call goes through a circuit breaker, and each public
helper has a deterministic fallback so callers never block on the model.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from bavard.core.constants import ASSISTANT_APOLOGY, ASSISTANT_USER_ID
from bavard.core.errors import TransientIOError
from bavard.core.settings import settings
from bavard.schemas.feed import FeedPost

logger = logging.getLogger(__name__)

HTTP_INTERNAL_SERVER_ERROR = 500

ASSISTANT_PERSONA = (
    "You are JUSU AI, a friendly assistant inside the BAVARD chat app. "
    "Answer conversationally and concisely, using markdown for lists or code."
)


class GenerationError(TransientIOError):
    """Raised when a generation endpoint fails or is unavailable."""


class GenerationDisabledError(GenerationError):
    """Raised when no generation endpoint is configured."""


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance."""
    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if service is back - limited requests allowed


@dataclass
class CircuitBreaker:
    """Circuit breaker guarding the generation endpoints."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 1

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        return self._state


@dataclass(frozen=True)
class GenerationConfig:
    """Immutable configuration for generation calls."""

    base_url: str | None
    api_key: str | None
    timeout_seconds: float
    failure_threshold: int
    recovery_timeout_seconds: float

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


@dataclass(frozen=True)
class ChatTurn:
    """One prior turn of assistant conversation history."""

    role: str  # "user" or "assistant"
    content: str


def load_generation_config() -> GenerationConfig:
    """Build configuration object from global settings."""
    return GenerationConfig(
        base_url=settings.ai_base_url,
        api_key=settings.ai_api_key,
        timeout_seconds=float(settings.ai_timeout_seconds),
        failure_threshold=settings.ai_failure_threshold,
        recovery_timeout_seconds=float(settings.ai_recovery_timeout_seconds),
    )


class GenerationClient:
    """HTTP wrapper around the chat, rank and categorize endpoints."""

    def __init__(
        self,
        config: GenerationConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_generation_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit_breaker.state

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise GenerationDisabledError("AI generation is not configured")

        async with self._client_lock:
            if self._client is None:
                headers = {}
                if self.config.api_key:
                    headers["Authorization"] = f"Bearer {self.config.api_key}"
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url or "",
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    headers=headers,
                    transport=self._transport,
                )
        return self._client

    async def _post(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        if self._circuit_breaker.is_open():
            raise GenerationError("Generation circuit breaker is open - service unavailable")

        client = await self._ensure_client()
        try:
            response = await client.post(path, json=dict(payload))
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            raise GenerationError(f"Generation request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            raise GenerationError(f"Generation endpoint responded with {response.status_code}")
        self._circuit_breaker.record_success()
        if response.status_code >= 400:
            raise GenerationError(f"Generation endpoint rejected request ({response.status_code})")

        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationError("Generation endpoint returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise GenerationError("Generation endpoint returned an unexpected payload")
        return body

    async def chat(self, prompt: str, history: Sequence[ChatTurn]) -> str:
        """Return the assistant's reply to ``prompt`` given prior turns."""
        body = await self._post(
            "/chat",
            {
                "system": ASSISTANT_PERSONA,
                "prompt": prompt,
                "history": [{"role": turn.role, "content": turn.content} for turn in history],
            },
        )
        reply = body.get("response")
        if not isinstance(reply, str) or not reply.strip():
            raise GenerationError("Generation endpoint returned an empty reply")
        return reply

    async def rank(
        self,
        user_id: str,
        posts: Sequence[FeedPost],
        contact_ids: Sequence[str],
    ) -> list[str]:
        """Return post ids in the order the ranking model recommends."""
        body = await self._post(
            "/rank",
            {
                "userId": user_id,
                "contactIds": list(contact_ids),
                "posts": [
                    {
                        "id": post.id,
                        "title": post.title,
                        "description": post.description,
                        "userId": post.user_id,
                        "likes": post.likes,
                    }
                    for post in posts
                ],
            },
        )
        ranked = body.get("rankedPostIds")
        if not isinstance(ranked, list):
            raise GenerationError("Ranking endpoint returned no ranking")
        return [str(post_id) for post_id in ranked]

    async def categorize(self, media_url: str) -> list[str]:
        """Return short category labels describing a media item."""
        body = await self._post("/categorize", {"mediaUrl": media_url})
        categories = body.get("categories")
        if not isinstance(categories, list):
            raise GenerationError("Categorize endpoint returned no categories")
        return [str(category) for category in categories]

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


def history_from_messages(messages: Sequence[Any]) -> list[ChatTurn]:
    """Convert stored assistant-conversation messages into chat turns."""
    turns = []
    for message in messages:
        if message.kind != "text" or not message.text:
            continue
        role = "assistant" if message.sender_id == ASSISTANT_USER_ID else "user"
        turns.append(ChatTurn(role=role, content=message.text))
    return turns


async def generate_assistant_reply(
    client: GenerationClient,
    prompt: str,
    history: Sequence[ChatTurn],
) -> str:
    """Return the assistant reply, or the fixed apology when generation fails."""
    try:
        return await client.chat(prompt, history)
    except GenerationError as exc:
        logger.warning("Assistant reply failed, sending apology: %s", exc)
        return ASSISTANT_APOLOGY


def chronological_ranking(posts: Sequence[FeedPost]) -> list[str]:
    """Deterministic fallback order: newest first, ties by id."""
    ordered = sorted(posts, key=lambda post: (post.created_at, post.id), reverse=True)
    return [post.id for post in ordered]


async def rank_posts(
    client: GenerationClient,
    user_id: str,
    posts: Sequence[FeedPost],
    contact_ids: Sequence[str],
) -> tuple[list[str], bool]:
    """Rank posts for ``user_id``; returns the ids and whether the fallback was used.

    Unknown ids from the model are dropped and any omitted posts are appended
    in fallback order, so the result is always a permutation of the input.
    """
    if not posts:
        return [], False

    fallback = chronological_ranking(posts)
    try:
        ranked = await client.rank(user_id, posts, contact_ids)
    except GenerationError as exc:
        logger.warning("Feed ranking failed, using chronological order: %s", exc)
        return fallback, True

    known = set(fallback)
    result: list[str] = []
    for post_id in ranked:
        if post_id in known and post_id not in result:
            result.append(post_id)
    result.extend(post_id for post_id in fallback if post_id not in result)
    return result, False


async def categorize_media(client: GenerationClient, media_url: str) -> list[str]:
    """Categorize media, returning no categories when the model is unavailable."""
    try:
        return await client.categorize(media_url)
    except GenerationError as exc:
        logger.warning("Media categorization failed: %s", exc)
        return []


class _GenerationClientSingleton:
    """Singleton wrapper for GenerationClient."""

    _instance: GenerationClient | None = None

    @classmethod
    def get_instance(cls) -> GenerationClient:
        if cls._instance is None:
            cls._instance = GenerationClient()
        return cls._instance


def get_generation_client() -> GenerationClient:
    """Return a singleton generation client instance."""
    return _GenerationClientSingleton.get_instance()
