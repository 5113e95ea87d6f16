"""Pipeline orchestration.

Wires the stages together once a submission exists:

    trigger_pipelines    classification + sender, concurrently
    process_submission   triggers, then landing capture when a URL exists
    capture_landing      screenshot; on success re-classify with comments
    ocr_media            MMS media -> blob -> OCR -> process_submission

Every concurrent fan-out goes through dispatch_and_join(), which awaits
all branches and reports every failure instead of dropping it.

The HTTP layer does not call the orchestrator directly for inbound
channels; it enqueues Celery tasks through CeleryPipelineDispatcher and
the worker runs the coroutine with asyncio.run().

Usage:
    orchestrator = PipelineOrchestrator.from_settings(db)
    try:
        result = await orchestrator.process_submission(submission_id)
    finally:
        await orchestrator.aclose()
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional

import httpx
from sqlalchemy.orm import Session

from abjail_core.config import IngestConfig, Settings, get_settings
from abjail_core.domain.models import ProcessingStatus
from abjail_core.domain.services import status
from abjail_core.domain.services.classification import (
    ClassificationResult,
    ClassificationService,
    ClassifyOptions,
)
from abjail_core.domain.services.inference import InferenceClient, get_inference_client
from abjail_core.domain.services.landing_url import LandingUrlExtractor
from abjail_core.domain.services.ocr import (
    OcrService,
    OcrSpaceCapability,
    OcrStage,
    OcrStageResult,
)
from abjail_core.domain.services.screenshot import (
    CaptureResult,
    HttpScreenshotCapability,
    LandingCaptureService,
    is_capturable_url,
)
from abjail_core.domain.services.sender import SenderExtractionService, SenderResult
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)

MEDIA_DOWNLOAD_TIMEOUT = 20.0
OCR_MIME_TYPES = ("image/", "application/pdf")


# =============================================================================
# FAN-OUT
# =============================================================================


@dataclass
class JoinResult:
    """Outcome of dispatch_and_join().

    Attributes:
        outcomes: Result per branch that completed.
        failures: Exception per branch that raised.
    """

    outcomes: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "outcomes": {
                name: getattr(value, "__dict__", value) for name, value in self.outcomes.items()
            },
            "failures": {name: repr(exc) for name, exc in self.failures.items()},
        }


async def dispatch_and_join(
    branches: dict[str, Awaitable[Any]],
    context: Optional[PipelineContext] = None,
) -> JoinResult:
    """Run named awaitables concurrently and wait for all of them."""
    names = list(branches)
    results = await asyncio.gather(*branches.values(), return_exceptions=True)

    joined = JoinResult()
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            joined.failures[name] = result
            logger.error(
                "pipeline:branch_failed",
                context=context,
                branch=name,
                error=repr(result),
            )
        else:
            joined.outcomes[name] = result
    return joined


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class ProcessResult:
    """Outcome of process_submission()."""

    triggers: JoinResult
    capture: Optional[CaptureResult] = None
    reclassification: Optional[ClassificationResult] = None

    def to_dict(self) -> dict:
        return {
            "triggers": self.triggers.to_dict(),
            "capture": self.capture.__dict__ if self.capture else None,
            "reclassification": (
                self.reclassification.__dict__ if self.reclassification else None
            ),
        }


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class PipelineOrchestrator:
    """Runs the post-ingest stages for a submission."""

    def __init__(
        self,
        repo: SubmissionRepository,
        classifier: ClassificationService,
        sender: SenderExtractionService,
        capture: Optional[LandingCaptureService] = None,
        ocr_stage: Optional[OcrStage] = None,
        storage: Optional[LocalBlobStorage] = None,
        platform_domains: tuple[str, ...] | list[str] = ("actblue.com",),
        incoming_bucket: str = "incoming",
        media_auth: Optional[tuple[str, str]] = None,
        inference: Optional[InferenceClient] = None,
    ):
        self.repo = repo
        self.classifier = classifier
        self.sender = sender
        self.capture = capture
        self.ocr_stage = ocr_stage
        self.storage = storage
        self.platform_domains = list(platform_domains)
        self.incoming_bucket = incoming_bucket
        self.media_auth = media_auth
        self._inference = inference

    @classmethod
    def from_settings(
        cls,
        db: Session,
        settings: Optional[Settings] = None,
    ) -> "PipelineOrchestrator":
        """Build an orchestrator and all its stages from settings."""
        settings = settings or get_settings()
        config = IngestConfig.from_settings(settings)
        repo = SubmissionRepository(db)
        storage = LocalBlobStorage(settings.blob_storage_path, settings.secret_key)
        inference = get_inference_client(settings)
        extractor = LandingUrlExtractor(config=config)

        ocr = OcrService(
            OcrSpaceCapability(api_key=settings.ocrspace_api_key, url=settings.ocrspace_url),
            max_pages=settings.ocr_max_pages,
        )
        capture = LandingCaptureService(
            repo=repo,
            storage=storage,
            capability=HttpScreenshotCapability(
                base_url=settings.screenshot_service_url,
                token=settings.screenshot_service_token,
            ),
            platform_domains=config.platform_domains,
            bucket=settings.bucket_screenshots,
            timeout_seconds=settings.screenshot_timeout_seconds,
        )
        media_auth = None
        if settings.twilio_account_sid and settings.twilio_auth_token:
            media_auth = (settings.twilio_account_sid, settings.twilio_auth_token)

        return cls(
            repo=repo,
            classifier=ClassificationService(
                repo=repo,
                inference=inference,
                storage=storage,
                platform_domains=config.platform_domains,
            ),
            sender=SenderExtractionService(repo=repo, inference=inference, storage=storage),
            capture=capture,
            ocr_stage=OcrStage(repo=repo, ocr=ocr, config=config, extractor=extractor),
            storage=storage,
            platform_domains=config.platform_domains,
            incoming_bucket=settings.bucket_incoming,
            media_auth=media_auth,
            inference=inference,
        )

    async def aclose(self) -> None:
        if self._inference is not None:
            await self._inference.close()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def classify(
        self,
        submission_id: str,
        options: Optional[ClassifyOptions] = None,
    ) -> ClassificationResult:
        return await self.classifier.classify(submission_id, options)

    async def extract_sender(self, submission_id: str) -> SenderResult:
        return await self.sender.extract_sender(submission_id)

    async def trigger_pipelines(self, submission_id: str) -> JoinResult:
        """Run classification and sender extraction concurrently.

        A classification branch that raised instead of returning a result
        still leaves the submission in a terminal status.
        """
        context = PipelineContext(submission_id=submission_id, stage="trigger")
        joined = await dispatch_and_join(
            {
                "classify": self.classifier.classify(
                    submission_id, ClassifyOptions(replace_existing=True)
                ),
                "sender": self.sender.extract_sender(submission_id),
            },
            context=context,
        )
        if "classify" in joined.failures:
            status.transition(self.repo, submission_id, ProcessingStatus.ERROR)
        logger.info(
            "pipeline:triggered",
            context=context,
            completed=sorted(joined.outcomes),
            failed=sorted(joined.failures),
        )
        return joined

    async def capture_landing(
        self,
        submission_id: str,
        url: str,
    ) -> tuple[CaptureResult, Optional[ClassificationResult]]:
        """Capture the landing page, then re-classify with the new evidence.

        Re-classification starts only after the screenshot reference has
        been written.
        """
        if self.capture is None:
            return CaptureResult(ok=False, url=url, error="capture_unavailable"), None

        result = await self.capture.capture_landing_page(submission_id, url)
        if not result.ok:
            return result, None

        reclassified = await self.classifier.classify(
            submission_id,
            ClassifyOptions(include_existing_comments=True, replace_existing=True),
        )
        return result, reclassified

    async def process_submission(
        self,
        submission_id: str,
        landing_url: Optional[str] = None,
    ) -> ProcessResult:
        """Run the triggers, then capture the landing page if one is known."""
        context = PipelineContext(submission_id=submission_id, stage="process")
        triggers = await self.trigger_pipelines(submission_id)

        if landing_url is None:
            submission = self.repo.get(submission_id)
            landing_url = submission.landing_url if submission else None

        if not is_capturable_url(landing_url, self.platform_domains):
            logger.debug("pipeline:no_landing_capture", context=context, url=landing_url)
            return ProcessResult(triggers=triggers)

        capture, reclassified = await self.capture_landing(submission_id, landing_url)
        return ProcessResult(triggers=triggers, capture=capture, reclassification=reclassified)

    async def on_comment_added(self, submission_id: str) -> ClassificationResult:
        """Re-classify after a reviewer comment has been stored."""
        return await self.classifier.classify(
            submission_id,
            ClassifyOptions(include_existing_comments=True, replace_existing=True),
        )

    async def request_reclassification(
        self,
        submission_id: str,
        actor: str = "admin",
        extra_comments: Optional[list[str]] = None,
    ) -> ClassificationResult:
        """Manual re-run requested by an operator; audited."""
        self.repo.add_audit(
            actor=actor,
            action="classification.requested",
            submission_id=submission_id,
            payload={"extra_comments": len(extra_comments or [])},
        )
        return await self.classifier.classify(
            submission_id,
            ClassifyOptions(
                include_existing_comments=True,
                extra_comments=list(extra_comments or []),
                replace_existing=True,
            ),
        )

    async def ocr_media(
        self,
        submission_id: str,
        media: list[dict],
        client: Optional[httpx.AsyncClient] = None,
    ) -> Optional[OcrStageResult]:
        """OCR the first usable MMS attachment, then run the pipeline.

        The pipeline runs whenever the submission is fundraising afterwards,
        so a fundraising text body is still processed when its media cannot
        be read.

        Args:
            submission_id: Submission the media belongs to.
            media: List of {"url", "content_type"} dicts.
            client: Optional HTTP client for downloading media.
        """
        context = PipelineContext(submission_id=submission_id, stage="ocr_media", channel="sms")
        result = await self._ocr_first_media(submission_id, media, client, context)

        submission = self.repo.get(submission_id)
        if submission is not None and submission.is_fundraising:
            await self.process_submission(submission_id, submission.landing_url)
        return result

    async def _ocr_first_media(
        self,
        submission_id: str,
        media: list[dict],
        client: Optional[httpx.AsyncClient],
        context: PipelineContext,
    ) -> Optional[OcrStageResult]:
        if self.ocr_stage is None or self.storage is None:
            logger.warning("pipeline:ocr_unavailable", context=context)
            return None

        item = next(
            (
                m for m in media
                if m.get("url") and str(m.get("content_type", "")).startswith(OCR_MIME_TYPES)
            ),
            None,
        )
        if item is None:
            logger.info("pipeline:no_ocr_media", context=context, count=len(media))
            return None

        http = client or httpx.AsyncClient(timeout=MEDIA_DOWNLOAD_TIMEOUT)
        try:
            response = await http.get(item["url"], auth=self.media_auth, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("pipeline:media_download_failed", context=context, error=str(e))
            return None
        finally:
            if client is None:
                await http.aclose()

        mime = item["content_type"].split(";")[0].strip()
        data = response.content
        ref = self.storage.put(self.incoming_bucket, data, mime)
        self.repo.update_fields(submission_id, image_url=ref)

        return await self.ocr_stage.run(submission_id, data, mime)


# =============================================================================
# DISPATCH
# =============================================================================


class CeleryPipelineDispatcher:
    """Enqueues pipeline work on the worker.

    Task names match the ones registered in abjail_worker.tasks.pipeline.
    """

    QUEUE = "pipeline"

    def __init__(self, celery_app: Any):
        self.celery_app = celery_app

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CeleryPipelineDispatcher":
        from celery import Celery

        settings = settings or get_settings()
        return cls(
            Celery(broker=settings.celery_broker_url, backend=settings.celery_result_backend)
        )

    def _send(self, name: str, **kwargs: Any) -> str:
        task = self.celery_app.send_task(name, kwargs=kwargs, queue=self.QUEUE)
        logger.debug("pipeline:enqueued", task=name, task_id=task.id, **kwargs)
        return task.id

    def process_submission(self, submission_id: str, landing_url: Optional[str] = None) -> str:
        return self._send(
            "pipeline.process_submission",
            submission_id=submission_id,
            landing_url=landing_url,
        )

    def classify(self, submission_id: str) -> str:
        return self._send("pipeline.classify", submission_id=submission_id)

    def extract_sender(self, submission_id: str) -> str:
        return self._send("pipeline.extract_sender", submission_id=submission_id)

    def capture_landing(self, submission_id: str, url: str) -> str:
        return self._send("pipeline.capture_landing", submission_id=submission_id, url=url)

    def ocr_media(self, submission_id: str, media: list[dict]) -> str:
        return self._send("pipeline.ocr_media", submission_id=submission_id, media=media)
