"""Unit tests for maintenance tasks.

Tests cover:
- fail_stale_submissions moving stuck submissions to error
- Fresh and terminal submissions left untouched
- Retry on database failure
- Beat schedule registration
"""

from contextlib import contextmanager
from unittest.mock import patch

import pytest

from abjail_core.domain.models import ProcessingStatus, Submission


class TestFailStaleSubmissions:
    def test_task_is_registered(self, mock_celery_app):
        from abjail_worker.tasks.maintenance import fail_stale_submissions

        assert fail_stale_submissions.name == "maintenance.fail_stale_submissions"

    def test_moves_stale_submissions_to_error(
        self, mock_celery_app, patched_session_scope, make_submission
    ):
        from abjail_worker.tasks.maintenance import fail_stale_submissions

        stuck_ocr = make_submission(ProcessingStatus.OCR, minutes_ago=90)
        stuck_classified = make_submission(ProcessingStatus.CLASSIFIED, minutes_ago=45)

        result = fail_stale_submissions(older_than_minutes=30)

        assert result["status"] == "ok"
        assert sorted(result["failed"]) == sorted([stuck_ocr.id, stuck_classified.id])
        for submission_id in (stuck_ocr.id, stuck_classified.id):
            row = patched_session_scope.get(Submission, submission_id)
            patched_session_scope.refresh(row)
            assert row.processing_status == ProcessingStatus.ERROR

    def test_leaves_fresh_and_terminal_submissions(
        self, mock_celery_app, patched_session_scope, make_submission
    ):
        from abjail_worker.tasks.maintenance import fail_stale_submissions

        fresh = make_submission(ProcessingStatus.CLASSIFIED, minutes_ago=1)
        done = make_submission(ProcessingStatus.DONE, minutes_ago=500)

        result = fail_stale_submissions(older_than_minutes=30)

        assert result["failed"] == []
        assert result["checked"] == 0
        for submission_id, expected in (
            (fresh.id, ProcessingStatus.CLASSIFIED),
            (done.id, ProcessingStatus.DONE),
        ):
            row = patched_session_scope.get(Submission, submission_id)
            patched_session_scope.refresh(row)
            assert row.processing_status == expected

    def test_retries_on_database_error(self, mock_celery_app):
        from abjail_worker.tasks.maintenance import fail_stale_submissions

        @contextmanager
        def _broken_scope():
            raise RuntimeError("database unavailable")
            yield  # pragma: no cover

        # Called directly, Task.retry() re-raises the original exception
        with patch("abjail_core.infra.db.session_scope", _broken_scope):
            with pytest.raises(RuntimeError, match="database unavailable"):
                fail_stale_submissions(older_than_minutes=30)


class TestBeatSchedule:
    def test_stale_sweep_is_scheduled(self, mock_celery_app):
        entry = mock_celery_app.conf.beat_schedule["fail-stale-submissions-periodic"]

        assert entry["task"] == "maintenance.fail_stale_submissions"
        assert entry["schedule"] > 0
