# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "bavard-test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORY_REAPER_ENABLED", "false")

from bavard.api.v1 import dependencies as deps
from bavard.core.security import create_access_token
from bavard.db.session import Base, get_db, get_session_factory
from bavard.main import app as fastapi_app
from bavard.models import User
from bavard.services.chat import ChatService, _ChatServiceSingleton
from bavard.services.contacts import ContactService
from bavard.services.conversation_store import ConversationStore
from bavard.services.ephemeral import StoryService
from bavard.services.generation import GenerationClient, GenerationConfig, _GenerationClientSingleton
from bavard.services.message_bus import MessageBus, _MessageBusSingleton
from bavard.services.notification_ledger import NotificationLedger
from bavard.services.read_tracking import ReadTracker
from bavard.services.storage import InMemoryObjectStorage, _ObjectStorageSingleton

TEST_DB_URL = "sqlite://"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock; returns the same instant until advanced."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def ai_handler(request: httpx.Request) -> httpx.Response:
    """Fake generation endpoint used by API tests."""
    if request.url.path == "/chat":
        return httpx.Response(200, json={"response": "Hello from JUSU AI"})
    if request.url.path == "/rank":
        return httpx.Response(500, json={"error": "model offline"})
    return httpx.Response(404)


def make_generation_client(
    handler: Callable[[httpx.Request], httpx.Response] = ai_handler,
    failure_threshold: int = 3,
) -> GenerationClient:
    config = GenerationConfig(
        base_url="http://ai.test",
        api_key="test-key",
        timeout_seconds=5.0,
        failure_threshold=failure_threshold,
        recovery_timeout_seconds=60.0,
    )
    return GenerationClient(config, transport=httpx.MockTransport(handler))


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_singletons() -> Iterator[None]:
    """Drop process-wide service instances between tests."""
    holders = (
        _MessageBusSingleton,
        _ChatServiceSingleton,
        _GenerationClientSingleton,
        _ObjectStorageSingleton,
    )
    for holder in holders:
        holder._instance = None
    yield
    for holder in holders:
        holder._instance = None


@pytest.fixture()
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(bus: MessageBus, clock: FakeClock) -> ConversationStore:
    return ConversationStore(bus, clock=clock)


@pytest.fixture()
def tracker(bus: MessageBus) -> ReadTracker:
    return ReadTracker(bus)


@pytest.fixture()
def ledger(bus: MessageBus, clock: FakeClock) -> NotificationLedger:
    return NotificationLedger(bus, clock=clock)


@pytest.fixture()
def contact_service(store: ConversationStore, clock: FakeClock) -> ContactService:
    return ContactService(store, clock=clock)


@pytest.fixture()
def story_service(bus: MessageBus, clock: FakeClock) -> StoryService:
    return StoryService(bus, clock=clock)


@pytest.fixture()
def chat_service(
    store: ConversationStore,
    ledger: NotificationLedger,
    contact_service: ContactService,
) -> ChatService:
    return ChatService(store, ledger, contact_service, generation=make_generation_client())


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make_user(user_id: str, display_name: str | None = None, email: str | None = None) -> User:
        user = User(
            id=user_id,
            display_name=display_name or user_id.title(),
            email=email or f"{user_id}@example.com",
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture()
def alice(make_user: Callable[..., User]) -> User:
    return make_user("alice", "Alice")


@pytest.fixture()
def bob(make_user: Callable[..., User]) -> User:
    return make_user("bob", "Bob")


@pytest.fixture()
def carol(make_user: Callable[..., User]) -> User:
    return make_user("carol", "Carol")


@pytest.fixture()
def storage() -> InMemoryObjectStorage:
    return InMemoryObjectStorage("http://test")


@pytest.fixture()
def app(
    session_factory: sessionmaker[Session],
    bus: MessageBus,
    storage: InMemoryObjectStorage,
) -> Iterator[FastAPI]:
    store = ConversationStore(bus)
    chat = ChatService(
        store,
        NotificationLedger(bus),
        ContactService(store),
        generation=make_generation_client(),
    )
    generation = make_generation_client()

    def _get_session_override() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    overrides: dict[Callable[..., Any], Callable[..., Any]] = {
        get_db: _get_session_override,
        get_session_factory: lambda: session_factory,
        deps.get_bus: lambda: bus,
        deps.get_chat: lambda: chat,
        deps.get_storage: lambda: storage,
        deps.get_generation: lambda: generation,
    }
    fastapi_app.dependency_overrides.update(overrides)
    try:
        yield fastapi_app
    finally:
        for dependency in overrides:
            fastapi_app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def auth_headers(user_id: str, name: str | None = None, email: str | None = None) -> dict[str, str]:
    """Return bearer headers carrying auth-provider style claims."""
    claims = {"name": name or user_id.title(), "email": email or f"{user_id}@example.com"}
    token = create_access_token(user_id, claims)
    return {"Authorization": f"Bearer {token}"}
