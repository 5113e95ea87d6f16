"""Processing status state machine for submissions.

Every change of processing_status goes through transition(), which runs a
conditional UPDATE restricted to the legal source states. Concurrent
stages therefore cannot move a submission backwards from a state they did
not observe.

    ocr        -> classified | done | error
    classified -> done | error
    done       -> classified | ocr | error
    error      -> ocr | classified | done | error

Moving to the current state is a no-op that reports success.
"""

from abjail_core.domain.models import ProcessingStatus
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)


TRANSITIONS: dict[str, frozenset[str]] = {
    ProcessingStatus.OCR: frozenset(
        {ProcessingStatus.CLASSIFIED, ProcessingStatus.DONE, ProcessingStatus.ERROR}
    ),
    ProcessingStatus.CLASSIFIED: frozenset({ProcessingStatus.DONE, ProcessingStatus.ERROR}),
    ProcessingStatus.DONE: frozenset(
        {ProcessingStatus.CLASSIFIED, ProcessingStatus.OCR, ProcessingStatus.ERROR}
    ),
    ProcessingStatus.ERROR: frozenset(
        {
            ProcessingStatus.OCR,
            ProcessingStatus.CLASSIFIED,
            ProcessingStatus.DONE,
            ProcessingStatus.ERROR,
        }
    ),
}

TERMINAL_STATUSES = frozenset({ProcessingStatus.DONE, ProcessingStatus.ERROR})


class InvalidTransitionError(Exception):
    """Raised by require_transition() when a move is refused."""

    def __init__(self, submission_id: str, current: str | None, target: str):
        super().__init__(f"Cannot move {submission_id} from {current} to {target}")
        self.submission_id = submission_id
        self.current = current
        self.target = target


def can_transition(source: str, target: str) -> bool:
    return source == target or target in TRANSITIONS.get(source, frozenset())


def allowed_sources(target: str) -> set[str]:
    """States from which target may be reached."""
    return {source for source, targets in TRANSITIONS.items() if target in targets}


def transition(repo: SubmissionRepository, submission_id: str, target: str) -> bool:
    """Move a submission to target if the transition table allows it.

    Returns:
        True when the submission is in the target state afterwards.
    """
    if target not in TRANSITIONS:
        raise ValueError(f"Unknown processing status: {target}")

    if repo.transition_status(submission_id, target, allowed_sources(target)):
        return True

    current = repo.current_status(submission_id)
    if current == target:
        return True

    logger.warning(
        "status:transition_refused",
        context=PipelineContext(submission_id=submission_id, stage="status"),
        current=current,
        target=target,
    )
    return False


def require_transition(repo: SubmissionRepository, submission_id: str, target: str) -> None:
    """Like transition() but raises InvalidTransitionError when refused."""
    if not transition(repo, submission_id, target):
        raise InvalidTransitionError(submission_id, repo.current_status(submission_id), target)
