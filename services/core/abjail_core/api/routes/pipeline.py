"""Manual pipeline triggers.

Provides endpoints for:
- POST /api/classify - Run classification inline
- POST /api/sender - Run sender extraction inline
- POST /api/screenshot - Capture a landing page, then re-classify
"""

from fastapi import APIRouter, HTTPException, status

from abjail_core.api.deps import Orchestrator
from abjail_core.api.schemas import (
    ClassifyRequest,
    ClassifyResponse,
    ScreenshotRequest,
    ScreenshotResponse,
    SenderRequest,
    SenderResponse,
)
from abjail_core.domain.services.classification import ClassifyOptions

router = APIRouter(prefix="/api", tags=["pipeline"])

# Stage error code -> HTTP status
ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "openai_key_missing": status.HTTP_400_BAD_REQUEST,
    "openai_failed": status.HTTP_502_BAD_GATEWAY,
    "invalid_url": status.HTTP_400_BAD_REQUEST,
}


def raise_for_error(error: str | None) -> None:
    raise HTTPException(
        status_code=ERROR_STATUS.get(error or "", status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=error or "unexpected_error",
    )


@router.post("/classify", response_model=ClassifyResponse, summary="Classify a submission")
async def classify(request: ClassifyRequest, orchestrator: Orchestrator):
    """Run one classification pass; the submission ends in done or error."""
    result = await orchestrator.classify(
        request.submission_id,
        ClassifyOptions(
            include_existing_comments=request.include_existing_comments,
            extra_comments=request.extra_comments,
            replace_existing=request.replace_existing,
        ),
    )
    if not result.ok:
        raise_for_error(result.error)
    return ClassifyResponse(
        ok=True,
        violation_count=result.violation_count,
        ms=result.ms,
        summary=result.summary,
    )


@router.post("/sender", response_model=SenderResponse, summary="Extract the sender")
async def extract_sender(request: SenderRequest, orchestrator: Orchestrator):
    result = await orchestrator.extract_sender(request.submission_id)
    if not result.ok:
        raise_for_error(result.error)
    return SenderResponse(ok=True, sender_name=result.sender_name, sender_type=result.sender_type)


@router.post("/screenshot", response_model=ScreenshotResponse, summary="Capture a landing page")
async def screenshot(request: ScreenshotRequest, orchestrator: Orchestrator):
    """Capture the landing page and re-classify with it on success.

    Capture failures are reported in the body; only an invalid URL or an
    unknown case is an HTTP error.
    """
    if orchestrator.repo.get(request.case_id) is None:
        raise_for_error("not_found")

    capture, reclassified = await orchestrator.capture_landing(request.case_id, request.url)
    if capture.error == "invalid_url":
        raise_for_error("invalid_url")

    return ScreenshotResponse(
        ok=capture.ok,
        url=capture.url,
        screenshot_ref=capture.screenshot_ref,
        ms=capture.ms,
        error=capture.error,
        step=capture.step,
        reclassified=reclassified.ok if reclassified else None,
    )
