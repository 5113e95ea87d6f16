"""Maintenance tasks."""

from datetime import datetime, timedelta
from typing import Optional

from abjail_worker.celery_app import app


@app.task(name="maintenance.fail_stale_submissions", bind=True, max_retries=3)
def fail_stale_submissions(self, older_than_minutes: Optional[int] = None) -> dict:
    """Move submissions stuck in ocr/classified to error.

    A worker crash between the start and end of a stage can leave a
    submission non-terminal; this sweep restores the terminal-status
    guarantee.

    Args:
        older_than_minutes: Age threshold (defaults to the stale_submission_minutes setting).

    Returns:
        Dictionary with the ids moved to error.
    """
    # Import here to avoid circular imports
    from abjail_core.config import get_settings
    from abjail_core.domain.models import ProcessingStatus
    from abjail_core.domain.services import status
    from abjail_core.infra.db import session_scope
    from abjail_core.infra.repository import SubmissionRepository
    from abjail_core.observability import get_logger

    logger = get_logger(__name__)
    minutes = older_than_minutes or get_settings().stale_submission_minutes
    cutoff = datetime.utcnow() - timedelta(minutes=minutes)

    try:
        with session_scope() as session:
            repo = SubmissionRepository(session)
            stale_ids = repo.find_stale(
                [ProcessingStatus.OCR, ProcessingStatus.CLASSIFIED], older_than=cutoff
            )
            failed = [
                submission_id
                for submission_id in stale_ids
                if status.transition(repo, submission_id, ProcessingStatus.ERROR)
            ]
    except Exception as e:
        raise self.retry(exc=e)

    if failed:
        logger.warning("maintenance:stale_submissions_failed", count=len(failed), ids=failed)
    return {"status": "ok", "checked": len(stale_ids), "failed": failed}
