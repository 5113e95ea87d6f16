"""Pytest configuration and fixtures for AB Jail Core tests.

This module provides fixtures for:
- Database: SQLite in-memory with the full schema
- Storage: LocalBlobStorage rooted in a temporary directory
- Inference: InferenceClient doubles returning canned model answers
- HTTP client: AsyncClient for FastAPI testing with dependencies overridden
"""

import json
from collections.abc import AsyncGenerator, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from abjail_core.config import IngestConfig, Settings
from abjail_core.domain.models import Base
from abjail_core.domain.services.inference import (
    ChatResponse,
    InferenceClient,
    ModelInfo,
)
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with safe defaults."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        blob_storage_path=str(tmp_path / "blobs"),
        secret_key="test-secret-key-do-not-use-in-production",
        site_url="https://abjail.test",
        openai_api_key="sk-test",
        report_email_to="compliance@platform.test",
        report_email_from="reports@abjail.test",
        resend_api_key="re_test",
        log_json=False,
    )


@pytest.fixture
def ingest_config() -> IngestConfig:
    """Ingestion tunables with the default platform domain."""
    return IngestConfig(platform_domains=["actblue.com"])


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@pytest.fixture
def repo(db_session) -> SubmissionRepository:
    return SubmissionRepository(db_session)


@pytest.fixture
def storage(test_settings) -> LocalBlobStorage:
    return LocalBlobStorage(test_settings.blob_storage_path, test_settings.secret_key)


# -----------------------------------------------------------------------------
# Inference Fixtures
# -----------------------------------------------------------------------------


def make_chat_response(content: Any, model_name: str = "gpt-4o-mini") -> ChatResponse:
    """Build a ChatResponse; dict content is serialized to JSON."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return ChatResponse(
        content=content,
        model_info=ModelInfo(
            model_name=model_name,
            provider="openai",
            temperature=0.0,
            max_tokens=1500,
            input_tokens=100,
            output_tokens=50,
            latency_ms=10,
        ),
        finish_reason="stop",
    )


@pytest.fixture
def chat_response():
    """Factory for canned ChatResponse objects."""
    return make_chat_response


@pytest.fixture
def mock_inference_client():
    """Create a mock inference client."""
    client = AsyncMock(spec=InferenceClient)
    client.chat.return_value = make_chat_response(
        {"violations": [], "summary": "No clear violations.", "overall_confidence": 0.3}
    )
    return client


# -----------------------------------------------------------------------------
# FastAPI Test Client Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_dispatcher() -> MagicMock:
    """Dispatcher double recording enqueued pipeline work."""
    dispatcher = MagicMock()
    dispatcher.process_submission.return_value = "task-1"
    dispatcher.ocr_media.return_value = "task-2"
    return dispatcher


@pytest.fixture
def mock_orchestrator() -> MagicMock:
    """Orchestrator double for manual trigger routes."""
    orchestrator = MagicMock()
    orchestrator.classify = AsyncMock()
    orchestrator.extract_sender = AsyncMock()
    orchestrator.capture_landing = AsyncMock()
    orchestrator.on_comment_added = AsyncMock()
    orchestrator.ocr_stage = MagicMock()
    orchestrator.ocr_stage.run = AsyncMock()
    return orchestrator


@pytest.fixture
def mock_notifier() -> AsyncMock:
    notifier = AsyncMock()
    notifier.send.return_value = "email-123"
    return notifier


@pytest.fixture
def test_app(
    test_settings,
    sync_session_factory,
    mock_dispatcher,
    mock_orchestrator,
    mock_notifier,
) -> Generator[FastAPI, None, None]:
    """Create a FastAPI test application with test settings and DB override."""
    from abjail_core.api.deps import (
        get_app_settings,
        get_db,
        get_dispatcher,
        get_orchestrator,
        get_report_service,
    )
    from abjail_core.domain.services.reports import ReportService
    from abjail_core.main import app

    def override_get_db():
        session = sync_session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def override_get_orchestrator():
        mock_orchestrator.repo = SubmissionRepository(sync_session_factory())
        return mock_orchestrator

    def override_get_report_service():
        return ReportService(
            repo=SubmissionRepository(sync_session_factory()),
            notifier=mock_notifier,
            storage=LocalBlobStorage(test_settings.blob_storage_path, test_settings.secret_key),
            to_email=test_settings.report_email_to,
            from_email=test_settings.report_email_from,
            site_url=test_settings.site_url,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: test_settings
    app.dependency_overrides[get_dispatcher] = lambda: mock_dispatcher
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator
    app.dependency_overrides[get_report_service] = override_get_report_service

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app, db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing FastAPI endpoints.

    Note: The db_session fixture is included to ensure the test database
    is set up before the client is created.
    """
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


# -----------------------------------------------------------------------------
# Cleanup Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    from abjail_core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
