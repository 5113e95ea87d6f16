"""Case API schemas."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from abjail_core.domain.models import Comment, Submission, Violation


class ViolationResponse(BaseModel):
    """Response schema for a violation."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    title: str
    description: Optional[str] = None
    evidence_spans: list[Any] = Field(default_factory=list)
    severity: int
    confidence: float
    exempt: bool = False
    exemption_reason: Optional[str] = None

    @classmethod
    def from_model(cls, violation: Violation) -> "ViolationResponse":
        return cls(
            code=violation.code,
            title=violation.title,
            description=violation.description,
            evidence_spans=list(violation.evidence_spans or []),
            severity=violation.severity,
            confidence=violation.confidence,
            exempt=bool(violation.exempt),
            exemption_reason=violation.exemption_reason,
        )


class CommentResponse(BaseModel):
    """Response schema for a comment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    content: str
    kind: str
    created_at: datetime


class CaseResponse(BaseModel):
    """Response schema for a case with its violations and comments."""

    id: str
    created_at: datetime
    message_type: str
    processing_status: str
    image_url: str
    raw_text: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    landing_url: Optional[str] = None
    landing_render_status: Optional[str] = None
    is_fundraising: Optional[bool] = None
    public: bool = False
    ai_summary: Optional[str] = None
    ai_confidence: Optional[float] = None
    ai_version: Optional[str] = None
    violations: list[ViolationResponse] = Field(default_factory=list)
    comments: list[CommentResponse] = Field(default_factory=list)

    @classmethod
    def from_model(
        cls,
        submission: Submission,
        violations: list[Violation],
        comments: list[Comment],
    ) -> "CaseResponse":
        return cls(
            id=submission.id,
            created_at=submission.created_at,
            message_type=submission.message_type,
            processing_status=submission.processing_status,
            image_url=submission.image_url,
            raw_text=submission.raw_text,
            sender_id=submission.sender_id,
            sender_name=submission.sender_name,
            email_subject=submission.email_subject,
            email_body=submission.email_body,
            landing_url=submission.landing_url,
            landing_render_status=submission.landing_render_status,
            is_fundraising=submission.is_fundraising,
            public=bool(submission.public),
            ai_summary=submission.ai_summary,
            ai_confidence=submission.ai_confidence,
            ai_version=submission.ai_version,
            violations=[ViolationResponse.from_model(v) for v in violations],
            comments=[CommentResponse.model_validate(c) for c in comments],
        )


class CommentCreate(BaseModel):
    content: str = Field(min_length=1)


class CommentCreateResponse(BaseModel):
    ok: bool
    comment_id: str
    violation_count: int = 0
    ms: int = 0
    error: Optional[str] = None


class LandingUrlResponse(BaseModel):
    landing_url: Optional[str] = None
    landing_screenshot_url: Optional[str] = None
    landing_render_status: Optional[str] = None
    landing_rendered_at: Optional[datetime] = None
