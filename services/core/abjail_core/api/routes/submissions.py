"""Manual submission API routes.

Provides endpoints for:
- POST /api/upload - Store a screenshot/PDF (data URL) as a new submission
- POST /api/ocr - OCR a submission's evidence, then queue the pipeline
"""

from fastapi import APIRouter, HTTPException, status

from abjail_core.api.deps import AppSettings, Dispatcher, Orchestrator, Repository, Storage
from abjail_core.api.schemas import OcrRequest, OcrResponse, UploadRequest, UploadResponse
from abjail_core.domain.models import MessageType, ProcessingStatus
from abjail_core.infra.storage import StorageError, parse_data_url
from abjail_core.observability import PipelineContext, get_logger

router = APIRouter(prefix="/api", tags=["submissions"])

logger = get_logger(__name__)

ALLOWED_UPLOAD_TYPES = {"image/jpeg", "image/png", "image/heic", "image/heif", "image/webp", "application/pdf"}
MESSAGE_TYPES = {MessageType.SMS, MessageType.EMAIL, MessageType.UNKNOWN}


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload evidence as a new submission",
)
async def upload(
    request: UploadRequest,
    repo: Repository,
    storage: Storage,
    settings: AppSettings,
):
    """Store an uploaded screenshot or PDF and create its submission."""
    try:
        data, content_type = parse_data_url(request.data_url)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_data_url")
    if content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unsupported_type")

    message_type = request.message_type if request.message_type in MESSAGE_TYPES else MessageType.UNKNOWN
    ref = storage.put(settings.bucket_incoming, data, content_type)
    submission = repo.insert_submission(
        image_url=ref,
        message_type=message_type,
        processing_status=ProcessingStatus.OCR,
        public=True,
    )
    logger.info(
        "upload:stored",
        context=PipelineContext(submission_id=submission.id, stage="upload"),
        ref=ref,
        size=len(data),
    )
    return UploadResponse(id=submission.id, image_url=ref)


@router.post(
    "/ocr",
    response_model=OcrResponse,
    summary="Run OCR for a submission",
)
async def run_ocr(
    request: OcrRequest,
    repo: Repository,
    storage: Storage,
    orchestrator: Orchestrator,
    dispatcher: Dispatcher,
):
    """OCR the supplied data URL, or the stored evidence when none is given.

    Fundraising results queue the standard pipeline.
    """
    submission = repo.get(request.submission_id)
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")

    try:
        if request.data_url:
            data, mime = parse_data_url(request.data_url)
        else:
            data, mime = storage.get(submission.image_url), storage.content_type(submission.image_url)
    except (ValueError, StorageError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="evidence_unavailable")

    result = await orchestrator.ocr_stage.run(request.submission_id, data, mime)
    if not result.ok:
        if result.error == "not_found":
            code = status.HTTP_404_NOT_FOUND
        elif result.error == "ocrspace_key_missing":
            code = status.HTTP_400_BAD_REQUEST
        else:
            code = status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=result.error)

    queued = False
    if result.is_fundraising:
        try:
            dispatcher.process_submission(request.submission_id, result.landing_url)
            queued = True
        except Exception as e:
            logger.error(
                "ocr:enqueue_failed",
                context=PipelineContext(submission_id=request.submission_id, stage="ocr"),
                error=str(e),
                exc_info=True,
            )

    return OcrResponse(
        ok=True,
        text=result.text,
        confidence=result.confidence,
        ms=result.ms,
        is_fundraising=result.is_fundraising,
        landing_url=result.landing_url,
        truncated=result.truncated,
        duplicate_of=result.duplicate_of,
        queued=queued,
    )
