"""API dependencies for dependency injection."""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.orm import Session

from abjail_core.config import IngestConfig, Settings, get_settings
from abjail_core.domain.services.ingest import IngestService
from abjail_core.domain.services.pipeline import (
    CeleryPipelineDispatcher,
    PipelineOrchestrator,
)
from abjail_core.domain.services.reports import ReportService, ResendNotifier
from abjail_core.infra.db import get_sync_session_factory
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage


def get_db() -> Session:
    """Get a database session."""
    session_factory = get_sync_session_factory()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings() -> Settings:
    return get_settings()


def get_ingest_config(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> IngestConfig:
    return IngestConfig.from_settings(settings)


def get_repository(db: Annotated[Session, Depends(get_db)]) -> SubmissionRepository:
    return SubmissionRepository(db)


def get_storage(settings: Annotated[Settings, Depends(get_app_settings)]) -> LocalBlobStorage:
    return LocalBlobStorage(settings.blob_storage_path, settings.secret_key)


def get_ingest_service(
    repo: Annotated[SubmissionRepository, Depends(get_repository)],
    config: Annotated[IngestConfig, Depends(get_ingest_config)],
) -> IngestService:
    return IngestService(repo=repo, config=config)


def get_dispatcher(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> CeleryPipelineDispatcher:
    """Get the dispatcher that enqueues pipeline tasks on the worker."""
    return CeleryPipelineDispatcher.from_settings(settings)


async def get_orchestrator(
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> AsyncGenerator[PipelineOrchestrator, None]:
    """Get an orchestrator for stages run inline by manual triggers."""
    orchestrator = PipelineOrchestrator.from_settings(db, settings)
    try:
        yield orchestrator
    finally:
        await orchestrator.aclose()


def get_report_service(
    repo: Annotated[SubmissionRepository, Depends(get_repository)],
    storage: Annotated[LocalBlobStorage, Depends(get_storage)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ReportService:
    return ReportService(
        repo=repo,
        notifier=ResendNotifier(api_key=settings.resend_api_key),
        storage=storage,
        to_email=settings.report_email_to,
        from_email=settings.report_email_from,
        site_url=settings.site_url,
        signed_url_ttl=settings.signed_url_ttl_seconds,
    )


# Type aliases for cleaner route signatures
DBSession = Annotated[Session, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
IngestConfigDep = Annotated[IngestConfig, Depends(get_ingest_config)]
Repository = Annotated[SubmissionRepository, Depends(get_repository)]
Storage = Annotated[LocalBlobStorage, Depends(get_storage)]
IngestServiceDep = Annotated[IngestService, Depends(get_ingest_service)]
Dispatcher = Annotated[CeleryPipelineDispatcher, Depends(get_dispatcher)]
Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
ReportServiceDep = Annotated[ReportService, Depends(get_report_service)]
