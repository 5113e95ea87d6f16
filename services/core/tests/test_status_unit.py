"""Unit tests for the processing status state machine."""

import pytest

from abjail_core.domain.models import ProcessingStatus
from abjail_core.domain.services import status
from tests.factories import create_submission


class TestTransitionTable:
    @pytest.mark.parametrize(
        "source,target,allowed",
        [
            ("ocr", "classified", True),
            ("ocr", "done", True),
            ("classified", "done", True),
            ("classified", "ocr", False),
            ("done", "classified", True),
            ("done", "ocr", True),
            ("error", "ocr", True),
            ("error", "done", True),
            ("done", "done", True),
        ],
    )
    def test_can_transition(self, source, target, allowed):
        assert status.can_transition(source, target) is allowed

    def test_every_state_can_fail(self):
        assert status.allowed_sources(ProcessingStatus.ERROR) == {
            "ocr",
            "classified",
            "done",
            "error",
        }

    def test_classified_is_not_a_source_of_ocr(self):
        assert "classified" not in status.allowed_sources(ProcessingStatus.OCR)


class TestTransition:
    def test_moves_forward(self, repo, db_session):
        submission = create_submission(db_session, processing_status=ProcessingStatus.OCR)

        assert status.transition(repo, submission.id, ProcessingStatus.CLASSIFIED)
        assert repo.current_status(submission.id) == "classified"

    def test_same_state_is_success(self, repo, db_session):
        submission = create_submission(db_session, processing_status=ProcessingStatus.CLASSIFIED)

        assert status.transition(repo, submission.id, ProcessingStatus.CLASSIFIED)

    def test_refused_move_leaves_state(self, repo, db_session):
        submission = create_submission(db_session, processing_status=ProcessingStatus.CLASSIFIED)

        assert not status.transition(repo, submission.id, ProcessingStatus.OCR)
        assert repo.current_status(submission.id) == "classified"

    def test_unknown_target(self, repo, db_session):
        submission = create_submission(db_session)
        with pytest.raises(ValueError):
            status.transition(repo, submission.id, "archived")

    def test_missing_submission(self, repo):
        assert not status.transition(repo, "missing", ProcessingStatus.DONE)

    def test_require_transition_raises(self, repo, db_session):
        submission = create_submission(db_session, processing_status=ProcessingStatus.CLASSIFIED)

        with pytest.raises(status.InvalidTransitionError) as exc_info:
            status.require_transition(repo, submission.id, ProcessingStatus.OCR)

        assert exc_info.value.current == "classified"
        assert exc_info.value.target == "ocr"
