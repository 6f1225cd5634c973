"""
Test configuration and fixtures
"""

import os

# Point the application engine at a throwaway SQLite file before anything imports settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_lessonchat.db")

import pytest
from fastapi.testclient import TestClient

from lessonchat.main import app
from lessonchat.core.database import get_db
from lessonchat.models import Base, ChatSession, Learner, Tenant, Video, VideoChunk
from lessonchat.services.chat_orchestrator import ChatOrchestrator
from lessonchat.services.chat_store import ChatHistoryStore
from lessonchat.services.cost_tracker import CostTracker
from lessonchat.services.prompt_builder import PromptBuilder
from lessonchat.services.rate_limiter import RateLimiter
from lessonchat.services.response_cache import ResponseCache
from lessonchat.services.retry_service import RetryService
from lessonchat.services.vector_search import PgVectorChunkIndex, VectorSearchService
from tests.utils.mock_services import (
    FakeEmbeddingService,
    FakeLLMClient,
    InMemoryKeyValueStore,
    WordTokenCounter,
    no_sleep,
)
from tests.utils.db import SESSION_ID, TestingSessionLocal, VIDEO_ID, VIDEO_TITLE, engine


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def seeded_db(db_session):
    """One basic-tier tenant, one learner, one video with three chunks and an open session."""
    tenant = Tenant(id=1, name="Acme Academy", tier="basic", is_active=True)
    learner = Learner(id=1, tenant_id=1, display_name="Sam", is_active=True)
    video = Video(id=VIDEO_ID, tenant_id=1, title=VIDEO_TITLE, duration_seconds=600)
    chunks = [
        VideoChunk(id="chunk-1", video_id=VIDEO_ID, chunk_index=0, start_seconds=0, end_seconds=60,
                   text="A stop loss closes a position once the price falls to a set level.",
                   embedding=[1.0, 0.0, 0.0]),
        VideoChunk(id="chunk-2", video_id=VIDEO_ID, chunk_index=1, start_seconds=60, end_seconds=120,
                   text="Position sizing keeps any single loss small relative to the account.",
                   embedding=[0.9, 0.1, 0.0]),
        VideoChunk(id="chunk-3", video_id=VIDEO_ID, chunk_index=2, start_seconds=120, end_seconds=180,
                   text="Candlestick charts show open, high, low and close for each period.",
                   embedding=[0.0, 1.0, 0.0]),
    ]
    session = ChatSession(id=SESSION_ID, learner_id=1, tenant_id=1)
    db_session.add_all([tenant, learner, video, *chunks, session])
    db_session.commit()
    return db_session


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def make_orchestrator(seeded_db, kv_store, fake_llm, fake_embeddings, monkeypatch):
    """Build a ChatOrchestrator over the test database, the in-memory store and scripted fakes."""
    word_counter = WordTokenCounter()
    monkeypatch.setattr("lessonchat.services.chat_orchestrator.token_counter", word_counter)

    def build(**overrides):
        components = dict(
            store=ChatHistoryStore(TestingSessionLocal),
            rate_limiter=RateLimiter(store=kv_store, prefix="test:"),
            cost_tracker=CostTracker(TestingSessionLocal),
            cache=ResponseCache(store=kv_store, prefix="test:", ttl=60),
            retriever=VectorSearchService(PgVectorChunkIndex(TestingSessionLocal)),
            embeddings=fake_embeddings,
            prompt_builder=PromptBuilder(model="deepseek-chat", counter=word_counter),
            llm_client=fake_llm,
            retry_service=RetryService(max_attempts=3, base_delay=0.0, max_delay=0.0, sleep=no_sleep),
        )
        components.update(overrides)
        return ChatOrchestrator(**components)

    return build


@pytest.fixture(scope="function")
def client(seeded_db, make_orchestrator, monkeypatch):
    """Create a test client with database dependency and service overrides."""
    orchestrator = make_orchestrator()
    monkeypatch.setattr("lessonchat.api.routes.chat.chat_orchestrator", orchestrator)
    monkeypatch.setattr("lessonchat.api.routes.chat.chat_store", orchestrator.store)
    monkeypatch.setattr("lessonchat.api.routes.usage.cost_tracker", orchestrator.cost_tracker)
    monkeypatch.setattr("lessonchat.api.routes.admin.cost_tracker", orchestrator.cost_tracker)
    monkeypatch.setattr("lessonchat.api.routes.admin.rate_limiter", orchestrator.rate_limiter)
    monkeypatch.setattr("lessonchat.api.routes.admin.response_cache", orchestrator.cache)

    def override_get_db():
        try:
            yield seeded_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
