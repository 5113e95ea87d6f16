"""Pytest configuration and fixtures for worker tests.

These fixtures enable testing Celery tasks without requiring:
- Running Redis/Celery
- A MySQL database
- OpenAI, OCR.space or the screenshot service
"""

import os
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

# Add worker and core packages to path
worker_path = Path(__file__).parent.parent
core_path = worker_path.parent / "core"
sys.path.insert(0, str(worker_path))
sys.path.insert(0, str(core_path))

# Set test environment variables before importing celery_app
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture(scope="session")
def celery_config() -> dict[str, Any]:
    """Celery configuration for testing."""
    return {
        "broker_url": "memory://",
        "result_backend": "cache+memory://",
        "task_always_eager": True,
        "task_eager_propagates": True,
    }


@pytest.fixture
def mock_celery_app():
    """Celery app configured for eager execution."""
    from abjail_worker.celery_app import app

    app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )
    return app


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """SQLite in-memory session with the core schema."""
    from abjail_core.domain.models import Base

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def patched_session_scope(db_session):
    """Route abjail_core.infra.db.session_scope to the test session."""

    @contextmanager
    def _scope():
        yield db_session
        db_session.commit()

    with patch("abjail_core.infra.db.session_scope", _scope):
        yield db_session


@pytest.fixture
def mock_orchestrator():
    """PipelineOrchestrator double returned by from_settings()."""
    orchestrator = AsyncMock()
    with patch(
        "abjail_core.domain.services.pipeline.PipelineOrchestrator.from_settings",
        return_value=orchestrator,
    ):
        yield orchestrator


@pytest.fixture
def make_submission(db_session):
    """Factory inserting a submission last updated N minutes ago."""
    from abjail_core.domain.models import Submission

    def _make(status: str, minutes_ago: int, **fields: Any) -> Submission:
        stamp = datetime.utcnow() - timedelta(minutes=minutes_ago)
        submission = Submission(
            image_url="sms://no-image",
            processing_status=status,
            created_at=stamp,
            updated_at=stamp,
            **fields,
        )
        db_session.add(submission)
        db_session.commit()
        return submission

    return _make
