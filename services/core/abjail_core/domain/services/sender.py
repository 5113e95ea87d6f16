"""Sender extraction.

Asks the vision model for the entity responsible for a message. The
address that forwarded the message to us is named in the prompt as NOT the
sender. The evidence image and, once rendered, the landing page
screenshot are attached. Only sender_name is written; failures are
non-fatal and never touch processing_status.
"""

import json
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator

from abjail_core.domain.models import RenderStatus, Submission
from abjail_core.domain.services.inference import (
    ChatMessage,
    InferenceClient,
    InferenceError,
    MissingApiKeyError,
    image_part,
    text_part,
)
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage, StorageError, is_blob_ref
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)

SenderType = Literal["org", "pac", "candidate", "unknown"]

SYSTEM_PROMPT = """You are reviewing a political fundraising appeal to extract the sending entity.

Goals:
- Identify the organization, PAC, or candidate that sent the message or is responsible for the messaging.
- Prefer explicit disclosures, headers/footers, sender lines, or signature blocks.
- If the message ends with a PAC or organization name, use that.
- Use the screenshot image (logos/branding) to corroborate when available.
- If none is provided, return sender_name = null and sender_type = "unknown".

Output JSON only (no markdown), with keys:
{
  "sender_name": string | null,
  "sender_type": "org" | "pac" | "candidate" | "unknown",
  "confidence": number (0..1),
  "notes": string
}"""


class SenderOutput(BaseModel):
    sender_name: Optional[str] = None
    sender_type: SenderType = "unknown"
    confidence: float = 0.2
    notes: Optional[str] = None

    @field_validator("sender_name", mode="before")
    @classmethod
    def clean_name(cls, v: Any) -> Optional[str]:
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    @field_validator("sender_type", mode="before")
    @classmethod
    def clean_type(cls, v: Any) -> str:
        return v if v in ("org", "pac", "candidate", "unknown") else "unknown"

    @field_validator("confidence", mode="before")
    @classmethod
    def clean_confidence(cls, v: Any) -> float:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(v)
        return 0.2

    @field_validator("notes", mode="before")
    @classmethod
    def clean_notes(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) else None


@dataclass
class SenderResult:
    ok: bool
    sender_name: Optional[str] = None
    sender_type: str = "unknown"
    error: Optional[str] = None


def parse_sender_response(content: str) -> SenderOutput:
    """Parse the model answer; malformed output yields an unknown sender."""
    text = (content or "").strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1]) if len(lines) > 2 else ""
    try:
        data = json.loads(text or "{}")
        if not isinstance(data, dict):
            raise ValueError("top-level JSON is not an object")
        return SenderOutput.model_validate(data)
    except (ValueError, ValidationError):
        return SenderOutput(notes="Parse failed")


class SenderExtractionService:
    """Identifies the sending entity of a submission."""

    def __init__(
        self,
        repo: SubmissionRepository,
        inference: InferenceClient,
        storage: Optional[LocalBlobStorage] = None,
    ):
        self.repo = repo
        self.inference = inference
        self.storage = storage

    def build_messages(self, submission: Submission) -> list[ChatMessage]:
        """Message text, forwarder note, evidence image and landing screenshot."""
        content = [text_part((submission.raw_text or "").strip() or "(none)")]
        if submission.forwarder_email:
            content.append(
                text_part(
                    f"Note: {submission.forwarder_email} forwarded this message to us. "
                    "That address is NOT the sender; do not return it."
                )
            )
        evidence = self._inline_image(submission.image_url)
        if evidence:
            content.append(image_part(evidence))
        if (
            submission.landing_render_status == RenderStatus.SUCCESS
            and submission.landing_screenshot_url
        ):
            screenshot = self._inline_image(submission.landing_screenshot_url)
            if screenshot:
                content.append(text_part("Landing page screenshot (donation form):"))
                content.append(image_part(screenshot))
        return [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=content),
        ]

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
            logger.debug("sender:image_unavailable", ref=ref, error=str(e))
            return None

    async def extract_sender(self, submission_id: str) -> SenderResult:
        context = PipelineContext(submission_id=submission_id, stage="sender")
        submission = self.repo.get(submission_id)
        if submission is None:
            return SenderResult(ok=False, error="not_found")

        messages = self.build_messages(submission)
        try:
            response = await self.inference.chat(messages, json_mode=True)
        except MissingApiKeyError:
            logger.error("sender:openai_key_missing", context=context)
            return SenderResult(ok=False, error="openai_key_missing")
        except InferenceError as e:
            logger.warning("sender:openai_failed", context=context, error=str(e))
            return SenderResult(ok=False, error="openai_failed")

        output = parse_sender_response(response.content)

        # A name found on an earlier run is not erased by an empty answer
        if output.sender_name:
            try:
                self.repo.update_fields(submission_id, sender_name=output.sender_name)
            except Exception as e:
                logger.warning("sender:persist_failed", context=context, error=str(e))
                return SenderResult(ok=False, error="persist_failed")

        logger.info(
            "sender:extracted",
            context=context,
            sender_name=output.sender_name,
            sender_type=output.sender_type,
            confidence=output.confidence,
        )
        return SenderResult(
            ok=True,
            sender_name=output.sender_name,
            sender_type=output.sender_type,
        )
