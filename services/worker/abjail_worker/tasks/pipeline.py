"""Pipeline tasks.

Each task opens a database session, builds a PipelineOrchestrator and runs
one coroutine with asyncio.run(). Stage failures are already converted to
results and terminal statuses by the core services, so tasks do not retry.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from abjail_worker.celery_app import app


def _run(work: Callable[[Any], Awaitable[Any]]) -> Any:
    """Run work(orchestrator) inside a fresh session."""
    # Import here to avoid circular imports
    from abjail_core.domain.services.pipeline import PipelineOrchestrator
    from abjail_core.infra.db import session_scope

    async def _main(session) -> Any:
        orchestrator = PipelineOrchestrator.from_settings(session)
        try:
            return await work(orchestrator)
        finally:
            await orchestrator.aclose()

    with session_scope() as session:
        return asyncio.run(_main(session))


@app.task(name="pipeline.process_submission", bind=True, max_retries=0)
def process_submission(self, submission_id: str, landing_url: Optional[str] = None) -> dict:
    """Classification and sender in parallel, then landing capture."""
    result = _run(lambda o: o.process_submission(submission_id, landing_url))
    return {"status": "ok", "submission_id": submission_id, **result.to_dict()}


@app.task(name="pipeline.classify", bind=True, max_retries=0)
def classify(self, submission_id: str) -> dict:
    from abjail_core.domain.services.classification import ClassifyOptions

    result = _run(
        lambda o: o.classify(submission_id, ClassifyOptions(replace_existing=True))
    )
    return {
        "status": "ok" if result.ok else "error",
        "submission_id": submission_id,
        "violation_count": result.violation_count,
        "ms": result.ms,
        "error": result.error,
    }


@app.task(name="pipeline.extract_sender", bind=True, max_retries=0)
def extract_sender(self, submission_id: str) -> dict:
    result = _run(lambda o: o.extract_sender(submission_id))
    return {
        "status": "ok" if result.ok else "error",
        "submission_id": submission_id,
        "sender_name": result.sender_name,
        "error": result.error,
    }


@app.task(name="pipeline.capture_landing", bind=True, max_retries=0)
def capture_landing(self, submission_id: str, url: str) -> dict:
    """Screenshot the landing page; re-classifies on success."""
    capture, reclassified = _run(lambda o: o.capture_landing(submission_id, url))
    return {
        "status": "ok" if capture.ok else "error",
        "submission_id": submission_id,
        "screenshot_ref": capture.screenshot_ref,
        "error": capture.error,
        "reclassified": reclassified.ok if reclassified else None,
    }


@app.task(name="pipeline.ocr_media", bind=True, max_retries=0)
def ocr_media(self, submission_id: str, media: list[dict]) -> dict:
    """OCR MMS media, then run the pipeline when the message is fundraising."""
    result = _run(lambda o: o.ocr_media(submission_id, media))
    if result is None:
        return {"status": "skipped", "submission_id": submission_id}
    return {
        "status": "ok" if result.ok else "error",
        "submission_id": submission_id,
        "is_fundraising": result.is_fundraising,
        "error": result.error,
    }
