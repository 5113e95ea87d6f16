"""OCR evidence extraction.

This module handles:
1. Image preprocessing with Pillow (resize, grayscale, contrast, threshold)
2. Calling the OCR.space API (form-encoded data URI or multipart upload)
3. One retry against the unprocessed original with a longer timeout
4. Storing the recognized text on the submission (OcrStage)

PDFs skip preprocessing and are always uploaded as multipart files.

Usage:
    capability = OcrSpaceCapability(api_key="...")
    service = OcrService(capability=capability, max_pages=3)

    result = await service.extract_text(image_bytes, "image/jpeg")
    print(result.text, result.confidence, result.truncated)

    stage = OcrStage(repo=repo, ocr=service, config=ingest_config)
    outcome = await stage.run(submission_id, image_bytes, "image/jpeg")
"""

import io
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from abjail_core.config import IngestConfig
from abjail_core.domain.models import ProcessingStatus
from abjail_core.domain.services import status
from abjail_core.domain.services.dedupe import build_fingerprint, simhash_band_columns
from abjail_core.domain.services.ingest import compute_fundraising_score
from abjail_core.domain.services.landing_url import LandingUrlExtractor
from abjail_core.infra.repository import DuplicateHashError, SubmissionRepository
from abjail_core.infra.storage import to_data_url
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class OcrError(Exception):
    """Base exception for OCR errors."""
    pass


class OcrConfigError(OcrError):
    """OCR provider is not configured."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

PDF_MIME = "application/pdf"
TARGET_WIDTH = 1600
BINARIZE_THRESHOLD = 180

IMAGE_TIMEOUTS = (30.0, 45.0)
PDF_TIMEOUTS = (90.0, 150.0)

EXIT_CODE_SUCCESS = 1
CONFIDENCE_SUCCESS = 0.8
CONFIDENCE_PARTIAL = 0.5

OCR_METHOD = "ocrspace"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class OcrPage:
    text: str


@dataclass
class OcrResponse:
    """Parsed provider response."""

    pages: list[OcrPage]
    exit_code: Optional[int]


@dataclass
class OcrResult:
    """Result of OcrService.extract_text()."""

    text: str
    confidence: float
    page_count: int
    truncated: bool = False


@dataclass
class OcrStageResult:
    """Result of OcrStage.run()."""

    ok: bool
    text: str = ""
    confidence: float = 0.0
    ms: int = 0
    is_fundraising: bool = False
    landing_url: Optional[str] = None
    truncated: bool = False
    duplicate_of: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# CAPABILITY
# =============================================================================


class OcrCapability(Protocol):
    """External OCR provider."""

    async def extract(
        self,
        data: bytes,
        mime: str,
        timeout: float,
        as_file: bool,
    ) -> OcrResponse:
        ...


class OcrSpaceCapability:
    """OCR.space HTTP API."""

    def __init__(
        self,
        api_key: Optional[str],
        url: str = "https://api.ocr.space/parse/image",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.url = url
        self._client = client

    async def extract(
        self,
        data: bytes,
        mime: str,
        timeout: float,
        as_file: bool,
    ) -> OcrResponse:
        """Send one OCR request.

        Args:
            data: Image or PDF bytes.
            mime: Content type of data.
            timeout: Request timeout in seconds.
            as_file: Multipart upload instead of a base64 data URI form.

        Raises:
            OcrConfigError: If no API key is configured.
            OcrError: On transport errors or a provider-reported failure.
        """
        if not self.api_key:
            raise OcrConfigError("ocrspace_key_missing")

        form = {
            "apikey": self.api_key,
            "language": "eng",
            "isOverlayRequired": "false",
        }
        if mime == PDF_MIME:
            form["filetype"] = "PDF"

        client = self._client or httpx.AsyncClient()
        try:
            if as_file:
                extension = "pdf" if mime == PDF_MIME else mime.split("/")[-1]
                files = {"file": (f"upload.{extension}", data, mime)}
                response = await client.post(self.url, data=form, files=files, timeout=timeout)
            else:
                form["base64Image"] = to_data_url(data, mime)
                response = await client.post(self.url, data=form, timeout=timeout)
            payload = response.json()
        except httpx.TimeoutException as e:
            raise OcrError(f"OCR timeout after {timeout}s") from e
        except httpx.HTTPError as e:
            raise OcrError(f"OCR request failed: {e}") from e
        except ValueError as e:
            raise OcrError(f"OCR response is not JSON: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400 or payload.get("IsErroredOnProcessing"):
            detail = payload.get("ErrorMessage") or payload.get("ErrorDetails") or response.status_code
            raise OcrError(f"OCR provider error: {detail}")

        pages = [
            OcrPage(text=result.get("ParsedText") or "")
            for result in payload.get("ParsedResults") or []
        ]
        return OcrResponse(pages=pages, exit_code=payload.get("OCRExitCode"))


# =============================================================================
# PREPROCESSING
# =============================================================================


def preprocess_image(data: bytes) -> bytes:
    """Prepare an image for OCR.

    Resizes to a fixed width, converts to grayscale, stretches contrast and
    binarizes at a fixed threshold. Returns PNG bytes.

    Raises:
        OcrError: If the image cannot be decoded.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise OcrError(f"Cannot decode image: {e}") from e

    if image.width != TARGET_WIDTH and image.width > 0:
        height = max(1, round(image.height * TARGET_WIDTH / image.width))
        image = image.resize((TARGET_WIDTH, height), Image.Resampling.LANCZOS)

    image = ImageOps.autocontrast(image.convert("L"))
    image = image.point(lambda p: 255 if p > BINARIZE_THRESHOLD else 0)

    out = io.BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


# =============================================================================
# SERVICE
# =============================================================================


class OcrService:
    """Text extraction with preprocessing and a single retry."""

    def __init__(self, capability: OcrCapability, max_pages: int = 3):
        self.capability = capability
        self.max_pages = max_pages

    async def extract_text(self, data: bytes, mime: str) -> OcrResult:
        """Extract text from an image or PDF.

        Raises:
            OcrConfigError: If the provider is not configured.
            OcrError: If both attempts fail.
        """
        is_pdf = mime == PDF_MIME
        first_timeout, retry_timeout = PDF_TIMEOUTS if is_pdf else IMAGE_TIMEOUTS

        if is_pdf:
            first_data, first_mime, first_as_file = data, mime, True
        else:
            try:
                first_data, first_mime = preprocess_image(data), "image/png"
            except OcrError as e:
                logger.warning("ocr:preprocess_failed", error=str(e))
                first_data, first_mime = data, mime
            first_as_file = False

        try:
            response = await self.capability.extract(
                first_data, first_mime, first_timeout, first_as_file
            )
        except OcrConfigError:
            raise
        except OcrError as e:
            logger.warning("ocr:attempt_1_failed", error=str(e), retry_timeout=retry_timeout)
            response = await self.capability.extract(data, mime, retry_timeout, True)

        return self._to_result(response)

    def _to_result(self, response: OcrResponse) -> OcrResult:
        pages = response.pages
        truncated = len(pages) > self.max_pages
        kept = pages[: self.max_pages]
        text = "\n\n".join(page.text.strip() for page in kept if page.text.strip())
        confidence = (
            CONFIDENCE_SUCCESS if response.exit_code == EXIT_CODE_SUCCESS else CONFIDENCE_PARTIAL
        )
        return OcrResult(
            text=text,
            confidence=confidence,
            page_count=len(kept),
            truncated=truncated,
        )


# =============================================================================
# STAGE
# =============================================================================


class OcrStage:
    """Runs OCR for a submission and stores the result."""

    def __init__(
        self,
        repo: SubmissionRepository,
        ocr: OcrService,
        config: Optional[IngestConfig] = None,
        extractor: Optional[LandingUrlExtractor] = None,
    ):
        self.repo = repo
        self.ocr = ocr
        self.config = config or IngestConfig()
        self.extractor = extractor or LandingUrlExtractor(config=self.config)

    async def run(self, submission_id: str, data: bytes, mime: str) -> OcrStageResult:
        """OCR evidence bytes for a submission.

        The recognized text is appended to any text already stored (SMS
        bodies), the fingerprint columns are recomputed together and the
        fundraising heuristic is re-run. OCR failure moves the submission to
        error.
        """
        context = PipelineContext(submission_id=submission_id, stage="ocr")
        submission = self.repo.get(submission_id)
        if submission is None:
            return OcrStageResult(ok=False, error="not_found")

        start = time.monotonic()
        try:
            result = await self.ocr.extract_text(data, mime)
        except OcrConfigError as e:
            logger.error("ocr:not_configured", context=context)
            status.transition(self.repo, submission_id, ProcessingStatus.ERROR)
            return OcrStageResult(ok=False, error=str(e))
        except OcrError as e:
            logger.warning("ocr:failed", context=context, error=str(e))
            status.transition(self.repo, submission_id, ProcessingStatus.ERROR)
            return OcrStageResult(ok=False, error="ocrspace_failed")
        elapsed_ms = int((time.monotonic() - start) * 1000)

        existing = (submission.raw_text or "").strip()
        combined = f"{existing}\n\n{result.text}".strip() if existing else result.text

        score, is_fundraising = compute_fundraising_score(
            combined, self.config.fundraising_keywords
        )

        landing_url = submission.landing_url
        if not landing_url:
            try:
                landing_url = await self.extractor.extract_canonical_landing_url(combined)
            except Exception as e:
                logger.warning("ocr:landing_url_failed", context=context, error=str(e))
                landing_url = None

        fields = {
            "raw_text": combined,
            "ocr_method": OCR_METHOD,
            "ocr_confidence": result.confidence,
            "ocr_ms": elapsed_ms,
            "is_fundraising": is_fundraising,
            "public": is_fundraising,
            "landing_url": landing_url,
        }
        fingerprint = build_fingerprint(combined)

        duplicate_of = None
        try:
            self.repo.update_fields(submission_id, **fields, **fingerprint.to_columns())
        except DuplicateHashError as e:
            duplicate_of = e.existing_id
            logger.warning("ocr:fingerprint_conflict", context=context, existing_id=e.existing_id)
            self.repo.update_fields(
                submission_id,
                **fields,
                normalized_text=fingerprint.normalized_text,
                normalized_hash=None,
                simhash64=None,
                **simhash_band_columns(None),
            )

        # Non-fundraising text is stored but never classified
        status.transition(
            self.repo,
            submission_id,
            ProcessingStatus.OCR if is_fundraising else ProcessingStatus.DONE,
        )

        logger.info(
            "ocr:stored",
            context=context,
            chars=len(result.text),
            confidence=result.confidence,
            ms=elapsed_ms,
            truncated=result.truncated,
            score=score,
        )
        return OcrStageResult(
            ok=True,
            text=combined,
            confidence=result.confidence,
            ms=elapsed_ms,
            is_fundraising=is_fundraising,
            landing_url=landing_url,
            truncated=result.truncated,
            duplicate_of=duplicate_of,
        )
