"""Ingestion service for inbound fundraising messages.

This service handles:
1. The fundraising heuristic (cheap keyword prefilter)
2. Duplicate detection against the corpus (at most one row per message)
3. Landing URL extraction (text and HTML)
4. Persisting the new submission with its dedupe fingerprint

Channel adapters call ingest() and decide from the result whether to
enqueue the AI pipeline.

Usage:
    ingest = IngestService(repo=repo, config=IngestConfig.from_settings(settings))

    result = await ingest.ingest(
        text=cleaned_text,
        raw_text=raw_text,
        sender_id="+15551234567",
        message_type="sms",
        metadata=ChannelMetadata(image_url="sms://no-image"),
    )
    if result.ok and result.is_fundraising:
        dispatcher.process_submission(result.id, result.landing_url)
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from abjail_core.config import IngestConfig
from abjail_core.domain.models import MessageType, ProcessingStatus
from abjail_core.domain.services.dedupe import (
    DuplicateDetector,
    DuplicateMatch,
    MatchKind,
    build_fingerprint,
)
from abjail_core.domain.services.landing_url import LandingUrlExtractor
from abjail_core.infra.repository import DuplicateHashError, SubmissionRepository
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)

DOLLAR_AMOUNT_RE = re.compile(r"\$\d{1,3}")
DEFAULT_IMAGE_PLACEHOLDER = "sms://no-image"
ERROR_DUPLICATE = "duplicate"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ChannelMetadata:
    """Channel-specific fields stored alongside a submission."""

    image_url: str = DEFAULT_IMAGE_PLACEHOLDER
    html: Optional[str] = None
    forwarder_email: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    media_urls: list[dict] = field(default_factory=list)
    ocr_method: Optional[str] = None


@dataclass
class IngestResult:
    """Result of ingest()."""

    ok: bool
    id: Optional[str] = None
    error: Optional[str] = None
    is_fundraising: bool = False
    landing_url: Optional[str] = None
    match: Optional[DuplicateMatch] = None
    heuristic_score: int = 0

    @property
    def is_duplicate(self) -> bool:
        return self.error == ERROR_DUPLICATE

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "id": self.id,
            "error": self.error,
            "is_fundraising": self.is_fundraising,
            "landing_url": self.landing_url,
            "match": self.match.to_dict() if self.match else None,
            "heuristic_score": self.heuristic_score,
        }


# =============================================================================
# HEURISTIC
# =============================================================================


def compute_fundraising_score(
    text: Optional[str],
    keywords: list[str],
) -> tuple[int, bool]:
    """Score text against the fundraising keyword list.

    Args:
        text: Message text.
        keywords: Lowercase keywords; each present keyword adds one.

    Returns:
        Tuple of (score, is_fundraising). Fundraising when the score is at
        least 2, or at least 1 together with a dollar amount.
    """
    lowered = (text or "").lower()
    score = sum(1 for keyword in keywords if keyword in lowered)
    is_fundraising = score >= 2 or (score >= 1 and bool(DOLLAR_AMOUNT_RE.search(lowered)))
    return score, is_fundraising


# =============================================================================
# SERVICE
# =============================================================================


class IngestService:
    """Turns an inbound message into (at most) one submission row."""

    def __init__(
        self,
        repo: SubmissionRepository,
        config: Optional[IngestConfig] = None,
        detector: Optional[DuplicateDetector] = None,
        extractor: Optional[LandingUrlExtractor] = None,
    ):
        """Initialize the ingest service.

        Args:
            repo: Submission repository.
            config: Ingestion tunables.
            detector: Duplicate detector (built from config if omitted).
            extractor: Landing URL extractor (built from config if omitted).
        """
        self.repo = repo
        self.config = config or IngestConfig()
        self.detector = detector or DuplicateDetector(
            repo,
            threshold=self.config.simhash_distance,
        )
        self.extractor = extractor or LandingUrlExtractor(config=self.config)

    async def ingest(
        self,
        text: Optional[str],
        raw_text: Optional[str] = None,
        sender_id: Optional[str] = None,
        message_type: str = MessageType.UNKNOWN,
        metadata: Optional[ChannelMetadata] = None,
    ) -> IngestResult:
        """Ingest one inbound message.

        Args:
            text: Cleaned message text (used for heuristics and URLs).
            raw_text: Original text (preferred for dedupe; stored as raw_text).
            sender_id: Channel sender identifier (phone number, address).
            message_type: "sms", "email" or "unknown".
            metadata: Channel-specific fields.

        Returns:
            IngestResult; error="duplicate" with the existing id when the
            message matches an existing submission.
        """
        metadata = metadata or ChannelMetadata()
        context = PipelineContext(stage="ingest", channel=message_type)

        score, is_fundraising = compute_fundraising_score(
            text or raw_text, self.config.fundraising_keywords
        )

        dedupe_source = raw_text or text or ""
        fingerprint = build_fingerprint(dedupe_source)

        try:
            match = self.detector.find_by_fingerprint(fingerprint)
        except Exception as e:
            logger.warning(
                "ingest:dedupe_failed", context=context, error=str(e), exc_info=True
            )
            match = DuplicateMatch()

        if match.is_duplicate:
            logger.info(
                "ingest:duplicate",
                context=context,
                existing_id=match.case_id,
                match=match.match_kind,
                distance=match.distance,
            )
            return IngestResult(
                ok=False,
                id=match.case_id,
                error=ERROR_DUPLICATE,
                is_fundraising=is_fundraising,
                match=match,
                heuristic_score=score,
            )

        try:
            landing_url = await self.extractor.extract_canonical_landing_url(
                text or raw_text, html=metadata.html
            )
        except Exception as e:
            logger.warning("ingest:landing_url_failed", context=context, error=str(e))
            landing_url = None

        fields = {
            "image_url": metadata.image_url or DEFAULT_IMAGE_PLACEHOLDER,
            "media_urls": metadata.media_urls or None,
            "raw_text": raw_text or text,
            "message_type": message_type,
            "sender_id": sender_id,
            "forwarder_email": metadata.forwarder_email,
            "email_subject": metadata.email_subject,
            "email_body": metadata.email_body,
            "landing_url": landing_url,
            "is_fundraising": is_fundraising,
            "public": is_fundraising,
            "processing_status": ProcessingStatus.OCR if is_fundraising else ProcessingStatus.DONE,
            "ocr_method": metadata.ocr_method or (
                "sms" if message_type == MessageType.SMS else "text"
            ),
            **fingerprint.to_columns(),
        }

        try:
            submission = self.repo.insert_submission(**fields)
        except DuplicateHashError as e:
            logger.info("ingest:duplicate_on_insert", context=context, existing_id=e.existing_id)
            return IngestResult(
                ok=False,
                id=e.existing_id,
                error=ERROR_DUPLICATE,
                is_fundraising=is_fundraising,
                match=DuplicateMatch(MatchKind.EXACT, e.existing_id, 0),
                heuristic_score=score,
            )
        except SQLAlchemyError as e:
            logger.error("ingest:persist_failed", context=context, error=str(e))
            return IngestResult(
                ok=False,
                error=str(e),
                is_fundraising=is_fundraising,
                heuristic_score=score,
            )

        context.submission_id = submission.id
        logger.info(
            "ingest:created",
            context=context,
            is_fundraising=is_fundraising,
            score=score,
            landing_url=landing_url,
        )
        return IngestResult(
            ok=True,
            id=submission.id,
            is_fundraising=is_fundraising,
            landing_url=landing_url,
            match=match,
            heuristic_score=score,
        )
