"""Case API routes.

Provides endpoints for:
- GET /api/cases/{id} - Case with violations and comments
- POST /api/cases/{id}/comments - Add a reviewer comment and re-classify
- GET /api/cases/{id}/landing-url - Landing URL and signed screenshot link
"""

from fastapi import APIRouter, HTTPException, status

from abjail_core.api.deps import AppSettings, Orchestrator, Repository, Storage
from abjail_core.api.schemas import (
    CaseResponse,
    CommentCreate,
    CommentCreateResponse,
    LandingUrlResponse,
)
from abjail_core.domain.models import CommentKind
from abjail_core.infra.storage import StorageError, is_blob_ref
from abjail_core.observability import PipelineContext, get_logger

router = APIRouter(prefix="/api/cases", tags=["cases"])

logger = get_logger(__name__)

MAX_COMMENT_LENGTH = 240
MAX_COMMENTS_PER_CASE = 10


@router.get("/{case_id}", response_model=CaseResponse, summary="Get a case")
async def get_case(case_id: str, repo: Repository):
    submission = repo.get(case_id)
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    return CaseResponse.from_model(
        submission,
        repo.list_violations(case_id),
        repo.list_comments(case_id),
    )


@router.post(
    "/{case_id}/comments",
    response_model=CommentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a reviewer comment",
)
async def add_comment(
    case_id: str,
    request: CommentCreate,
    repo: Repository,
    orchestrator: Orchestrator,
):
    """Store a reviewer comment and re-run classification inline.

    Comments are limited in length and in number per case; only reviewer
    comments count towards the limit.
    """
    content = request.content.strip()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="empty_content")
    if len(content) > MAX_COMMENT_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="content_too_long")

    if repo.get(case_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    if repo.count_comments(case_id, kind=CommentKind.USER) >= MAX_COMMENTS_PER_CASE:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="comments_limit_reached",
        )

    comment = repo.add_comment(case_id, content, kind=CommentKind.USER)
    repo.add_audit(
        actor="anonymous",
        action="reclassify",
        submission_id=case_id,
        payload={"via": "comment", "length": len(content)},
    )

    result = await orchestrator.on_comment_added(case_id)
    logger.info(
        "cases:comment_added",
        context=PipelineContext(submission_id=case_id, stage="comment"),
        comment_id=comment.id,
        ok=result.ok,
    )
    return CommentCreateResponse(
        ok=result.ok,
        comment_id=comment.id,
        violation_count=result.violation_count,
        ms=result.ms,
        error=result.error,
    )


@router.get(
    "/{case_id}/landing-url",
    response_model=LandingUrlResponse,
    summary="Get the landing page of a case",
)
async def get_landing_url(
    case_id: str,
    repo: Repository,
    storage: Storage,
    settings: AppSettings,
):
    submission = repo.get(case_id)
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")

    screenshot_url = None
    ref = submission.landing_screenshot_url
    if ref and is_blob_ref(ref):
        try:
            screenshot_url = storage.sign(
                ref, settings.signed_url_ttl_seconds, base_url=settings.site_url
            )
        except StorageError as e:
            logger.warning("cases:sign_failed", ref=ref, error=str(e))

    return LandingUrlResponse(
        landing_url=submission.landing_url,
        landing_screenshot_url=screenshot_url,
        landing_render_status=submission.landing_render_status,
        landing_rendered_at=submission.landing_rendered_at,
    )
