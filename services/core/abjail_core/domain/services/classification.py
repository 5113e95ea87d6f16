"""AI classification of fundraising messages.

Flags policy violations from a closed taxonomy (AB001..AB008) with one LLM
call per run. The stage guarantees a terminal processing status: it moves
the submission to "classified" on start and always ends in "done" or
"error".

Usage:
    service = ClassificationService(
        repo=repo,
        inference=get_inference_client(),
        storage=storage,
        platform_domains=["actblue.com"],
    )

    result = await service.classify(
        submission_id,
        ClassifyOptions(include_existing_comments=True, replace_existing=True),
    )
    print(result.ok, result.violation_count, result.ms)
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import SQLAlchemyError

from abjail_core.domain.models import ProcessingStatus, RenderStatus, Submission
from abjail_core.domain.services import status
from abjail_core.domain.services.exemptions import ExemptionService
from abjail_core.domain.services.inference import (
    ChatMessage,
    InferenceClient,
    InferenceError,
    MissingApiKeyError,
    image_part,
    text_part,
)
from abjail_core.domain.services.text_normalizer import clean_text_for_ai, strip_query
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage, StorageError, is_blob_ref
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# TAXONOMY
# =============================================================================


VIOLATION_CODES: dict[str, str] = {
    "AB001": "Misrepresentation/Impersonation",
    "AB002": "Direct-Benefit Claim",
    "AB003": "Missing Full Entity Name",
    "AB004": "Entity Clarity (Org vs Candidate)",
    "AB005": "Branding/Form Clarity",
    "AB006": "PAC Disclosure Clarity",
    "AB007": "False/Unsubstantiated Claims",
    "AB008": "Unverified Matching Program",
}

MAX_TEXT_CHARS = 8000
MAX_COMMENTS = 50
TRUNCATION_MARKER = "\n\n[Message truncated at {limit} characters]"
COMMENTS_PREFACE = "Additional reviewer comments that should be considered:"
PARSE_FAILED_SUMMARY = "Parse failed"

SYSTEM_PROMPT = """Role: Political Fundraising Compliance Assistant

Instructions:
- Accept message text and optional images (the original message screenshot and the donation landing page). Use ALL sources: read the text carefully and visually inspect images when present.
- Evaluate only for these 8 violation codes:
{code_list}

- Output STRICT JSON with these top-level keys, in order:
  1. violations (array)
  2. summary (string)
  3. overall_confidence (float, 0-1 inclusive)
- Each violation is a single object with keys: code (string), title (string), rationale (string), evidence_span_indices (array of integers), severity (int 1-5), confidence (float 0-1 inclusive).
- Emit at most one violation object per code; if there are multiple findings, merge rationales and union indices for that code.

Specific rules and disambiguation:
- AB001 (Misrepresentation/Impersonation):
  - Use the screenshot image as evidence. If the image prominently features candidate(s) unaffiliated with the sending entity and the text does not clearly state an affiliation to those candidates, RETURN AB001.
  - Do NOT return AB001 when the sending entity is that candidate or an affiliated campaign/committee is clearly stated, or when a celebrity lends their likeness to an organization.
- AB003 (Missing Full Entity Name): Only flag when NO full entity name appears anywhere in the message. If any full entity name is present, DO NOT return AB003.
- AB005 (Branding/Form Clarity): Use the landing page screenshot when provided. Flag when the contribution form lacks the entity's name or logo, or when the link text misleads about the destination.
- AB006 (PAC Disclosure Clarity):
  - RETURN AB006 when the sender is a PAC/committee and the copy or branding implies donations go to a specific candidate or campaign without clarifying that funds go to the PAC.
  - If a full organization name is present, there is no claim of being a PAC, and the copy does not imply funds go to a candidate, DO NOT return AB006.
  - When choosing between AB001 and AB006: prefer AB001 for image-based unaffiliated candidate usage; do not also return AB006 unless the copy additionally misdirects the destination of funds.
- AB007 and AB008: Merge contributing lines into one object per code. AB008 applies to advertised donation matches (e.g. "5X match") with no verifiable matching program.

- All confidence values must be floats (0-1).
- evidence_span_indices must point to text spans; if the evidence is image-only, use an empty array and explain in the rationale.
- Reviewer comments, when present, are corrections from humans and should be weighed heavily.
- If the message is malformed or incomplete, return: {{"violations": [], "summary": "Input message is malformed or incomplete.", "overall_confidence": 0.1}}
- If no policy violations are found, return: {{"violations": [], "summary": "No clear violations.", "overall_confidence": 0.3}}

Output Format:
- Output JSON only, no commentary or markdown.
- Structure: {{ "violations": [ ... ], "summary": "...", "overall_confidence": ... }}
"""


def build_system_prompt() -> str:
    code_list = "\n".join(f"  {code}: {title}" for code, title in VIOLATION_CODES.items())
    return SYSTEM_PROMPT.format(code_list=code_list)


# =============================================================================
# MODEL OUTPUT
# =============================================================================


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RawFinding(BaseModel):
    """One violation entry as emitted by the model."""

    code: str = Field(default="")
    title: Optional[str] = None
    rationale: Optional[str] = None
    evidence_span_indices: Optional[list[Any]] = None
    evidence_spans: Optional[list[Any]] = None
    severity: Optional[float] = None
    confidence: Optional[float] = None

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v: Any) -> str:
        return str(v or "").strip().upper()

    @field_validator("title", "rationale", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("severity", "confidence", mode="before")
    @classmethod
    def coerce_number(cls, v: Any) -> Optional[float]:
        return _as_float(v)

    @field_validator("evidence_span_indices", "evidence_spans", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> Optional[list[Any]]:
        return v if isinstance(v, list) else None

    @property
    def spans(self) -> list[Any]:
        if self.evidence_span_indices is not None:
            return self.evidence_span_indices
        return self.evidence_spans or []


class ClassificationOutput(BaseModel):
    """Parsed model response."""

    violations: list[RawFinding] = Field(default_factory=list)
    summary: str = ""
    overall_confidence: Optional[float] = None

    @field_validator("violations", mode="before")
    @classmethod
    def coerce_violations(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    @field_validator("summary", mode="before")
    @classmethod
    def coerce_summary(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("overall_confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> Optional[float]:
        value = _as_float(v)
        return None if value is None else _clamp(value, 0.0, 1.0)


def parse_classification_response(content: str) -> ClassificationOutput:
    """Parse the model's JSON answer.

    Malformed output yields no findings with summary "Parse failed" and
    confidence 0.
    """
    text = (content or "").strip()

    # Handle potential markdown code blocks
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1]) if len(lines) > 2 else ""

    try:
        data = json.loads(text or "{}")
        if not isinstance(data, dict):
            raise ValueError("top-level JSON is not an object")
        return ClassificationOutput.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning("classify:parse_failed", error=str(e)[:200])
        return ClassificationOutput(
            violations=[], summary=PARSE_FAILED_SUMMARY, overall_confidence=0.0
        )


# =============================================================================
# MERGE
# =============================================================================


@dataclass
class MergedViolation:
    """Exactly one violation per code, ready to persist."""

    code: str
    title: str
    description: str
    evidence_spans: list[Any] = field(default_factory=list)
    severity: int = 1
    confidence: float = 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _union(first: Iterable[Any], second: Iterable[Any]) -> list[Any]:
    out: list[Any] = []
    seen: set[str] = set()
    for item in list(first) + list(second):
        key = json.dumps(item, sort_keys=True, default=str)
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


def _join_rationales(first: str, second: str) -> str:
    if first and second:
        return f"{first}; {second}"
    return first or second


def merge_findings(
    findings: Iterable[RawFinding],
    overall_confidence: Optional[float] = None,
) -> list[MergedViolation]:
    """Collapse raw findings into one violation per code.

    Codes outside the taxonomy are dropped. The highest-confidence entry
    supplies title and severity; rationales are joined with "; " and
    evidence spans unioned in order of appearance; confidence is the max.
    A finding without confidence inherits the overall confidence.
    """
    default_confidence = overall_confidence if overall_confidence is not None else 0.5
    merged: dict[str, MergedViolation] = {}

    for finding in findings:
        code = finding.code
        if code not in VIOLATION_CODES:
            logger.debug("classify:unknown_code_dropped", code=code)
            continue

        confidence = _clamp(
            finding.confidence if finding.confidence is not None else default_confidence,
            0.0,
            1.0,
        )
        severity = int(_clamp(round(finding.severity if finding.severity is not None else 1), 1, 5))
        title = (finding.title or "").strip() or VIOLATION_CODES[code]
        rationale = (finding.rationale or "").strip()

        existing = merged.get(code)
        if existing is None:
            merged[code] = MergedViolation(
                code=code,
                title=title,
                description=rationale,
                evidence_spans=_union([], finding.spans),
                severity=severity,
                confidence=confidence,
            )
            continue

        if confidence > existing.confidence:
            existing.title = title
            existing.severity = severity
            existing.confidence = confidence
        existing.description = _join_rationales(existing.description, rationale)
        existing.evidence_spans = _union(existing.evidence_spans, finding.spans)

    return [merged[code] for code in sorted(merged)]


def merge_with_existing(
    existing_rows: Iterable[Any],
    new: list[MergedViolation],
) -> list[MergedViolation]:
    """Fold newly merged violations into stored rows with the same rules."""
    by_code = {
        row.code: MergedViolation(
            code=row.code,
            title=row.title,
            description=row.description or "",
            evidence_spans=list(row.evidence_spans or []),
            severity=row.severity,
            confidence=row.confidence,
        )
        for row in existing_rows
    }
    for violation in new:
        current = by_code.get(violation.code)
        if current is None:
            by_code[violation.code] = violation
            continue
        if violation.confidence > current.confidence:
            current.title = violation.title
            current.severity = violation.severity
            current.confidence = violation.confidence
        if violation.description and violation.description not in current.description:
            current.description = _join_rationales(current.description, violation.description)
        current.evidence_spans = _union(current.evidence_spans, violation.evidence_spans)
    return [by_code[code] for code in sorted(by_code)]


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ClassifyOptions:
    include_existing_comments: bool = False
    extra_comments: list[str] = field(default_factory=list)
    replace_existing: bool = False


@dataclass
class ClassificationResult:
    ok: bool
    violation_count: int = 0
    ms: int = 0
    error: Optional[str] = None
    summary: Optional[str] = None


# =============================================================================
# SERVICE
# =============================================================================


class ClassificationService:
    """Runs one classification pass for a submission."""

    def __init__(
        self,
        repo: SubmissionRepository,
        inference: InferenceClient,
        storage: Optional[LocalBlobStorage] = None,
        platform_domains: Iterable[str] = ("actblue.com",),
        exemptions: Optional[ExemptionService] = None,
    ):
        """Initialize the classification service.

        Args:
            repo: Submission repository.
            inference: LLM client.
            storage: Blob storage used to inline evidence images.
            platform_domains: Domains whose links are kept in the prompt.
            exemptions: Exemption check run after persisting.
        """
        self.repo = repo
        self.inference = inference
        self.storage = storage
        self.platform_domains = list(platform_domains)
        self.exemptions = exemptions or ExemptionService(repo)

    def build_messages(
        self,
        submission: Submission,
        options: ClassifyOptions,
    ) -> list[ChatMessage]:
        """Assemble the system prompt and multimodal user content."""
        text = clean_text_for_ai(submission.raw_text, self.platform_domains)
        if len(text) > MAX_TEXT_CHARS:
            text = text[:MAX_TEXT_CHARS] + TRUNCATION_MARKER.format(limit=MAX_TEXT_CHARS)
        if submission.email_subject:
            text = f"Subject: {submission.email_subject}\n\n{text}"

        content = [text_part(text.strip() or "(none)")]

        evidence = self._inline_image(submission.image_url)
        if evidence:
            content.append(image_part(evidence))

        if (
            submission.landing_render_status == RenderStatus.SUCCESS
            and submission.landing_screenshot_url
        ):
            screenshot = self._inline_image(submission.landing_screenshot_url)
            if screenshot:
                landing = strip_query(submission.landing_url) if submission.landing_url else "unknown"
                content.append(
                    text_part(f"Landing page screenshot (donation form) for URL: {landing}")
                )
                content.append(image_part(screenshot))

        messages = [
            ChatMessage(role="system", content=build_system_prompt()),
            ChatMessage(role="user", content=content),
        ]

        comments: list[str] = []
        if options.include_existing_comments:
            comments.extend(
                c.content for c in self.repo.list_comments(submission.id, limit=MAX_COMMENTS)
                if c.content
            )
        comments.extend(c for c in options.extra_comments if c)
        if comments:
            bullets = "\n".join(f"- {c}" for c in comments)
            messages.append(
                ChatMessage(role="user", content=[text_part(f"{COMMENTS_PREFACE}\n{bullets}")])
            )
        return messages

    def _inline_image(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        if ref.startswith("https://"):
            return ref
        if not is_blob_ref(ref) or self.storage is None:
            return None
        try:
            return self.storage.data_url(ref)
        except StorageError as e:
            logger.warning("classify:image_unavailable", ref=ref, error=str(e))
            return None

    async def classify(
        self,
        submission_id: str,
        options: Optional[ClassifyOptions] = None,
    ) -> ClassificationResult:
        """Classify a submission and persist its violations.

        Returns:
            ClassificationResult. On failure the submission is left in
            "error"; it is never left in "classified".
        """
        options = options or ClassifyOptions()
        context = PipelineContext(submission_id=submission_id, stage="classify")
        start = time.monotonic()

        submission = self.repo.get(submission_id)
        if submission is None:
            return ClassificationResult(ok=False, error="not_found")

        status.transition(self.repo, submission_id, ProcessingStatus.CLASSIFIED)

        try:
            result = await self._run(submission, options, context, start)
        except MissingApiKeyError:
            logger.error("classify:openai_key_missing", context=context)
            result = ClassificationResult(ok=False, error="openai_key_missing")
        except InferenceError as e:
            logger.warning("classify:openai_failed", context=context, error=str(e))
            result = ClassificationResult(ok=False, error="openai_failed")
        except SQLAlchemyError as e:
            logger.error("classify:persist_failed", context=context, error=str(e))
            self.repo.db.rollback()
            result = ClassificationResult(ok=False, error="persist_failed")
        except Exception as e:
            logger.error("classify:unexpected", context=context, exc_info=True, error=str(e))
            result = ClassificationResult(ok=False, error="unexpected_error")

        result.ms = int((time.monotonic() - start) * 1000)
        target = ProcessingStatus.DONE if result.ok else ProcessingStatus.ERROR
        if not status.transition(self.repo, submission_id, target):
            status.transition(self.repo, submission_id, ProcessingStatus.ERROR)
        logger.info(
            "classify:finished",
            context=context,
            ok=result.ok,
            violations=result.violation_count,
            ms=result.ms,
            error=result.error,
        )
        return result

    async def _run(
        self,
        submission: Submission,
        options: ClassifyOptions,
        context: PipelineContext,
        start: float,
    ) -> ClassificationResult:
        messages = self.build_messages(submission, options)
        response = await self.inference.chat(messages, json_mode=True)
        output = parse_classification_response(response.content)

        merged = merge_findings(output.violations, output.overall_confidence)
        if not options.replace_existing:
            merged = merge_with_existing(self.repo.list_violations(submission.id), merged)

        written = self.repo.save_violations(
            submission.id, merged, replace=options.replace_existing
        )

        try:
            self.exemptions.apply(submission.id)
        except Exception as e:
            logger.warning("classify:exemption_check_failed", context=context, error=str(e))
            # The session may hold a failed transaction
            self.repo.db.rollback()

        self.repo.update_fields(
            submission.id,
            ai_version=response.model_info.model_name,
            ai_confidence=output.overall_confidence,
            ai_summary=output.summary or None,
            classifier_ms=int((time.monotonic() - start) * 1000),
        )
        return ClassificationResult(ok=True, violation_count=written, summary=output.summary)
