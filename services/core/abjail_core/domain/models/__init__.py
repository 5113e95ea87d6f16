"""Domain models for AB Jail.

This module defines the SQLAlchemy ORM models for submissions, their
violations and reviewer comments, outbound reports, the verified
exemption allowlist and the audit log.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def new_id() -> str:
    """Generate a primary key for a new row."""
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================


class ProcessingStatus(str):
    """Submission processing status values."""

    OCR = "ocr"
    CLASSIFIED = "classified"
    DONE = "done"
    ERROR = "error"


class MessageType(str):
    """Inbound channel values."""

    SMS = "sms"
    EMAIL = "email"
    UNKNOWN = "unknown"


class RenderStatus(str):
    """Landing page render status values."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class CommentKind(str):
    """Comment kind values."""

    USER = "user"
    LANDING_PAGE = "landing_page"


class ReportStatus(str):
    """Outbound report status values."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


# =============================================================================
# MODELS
# =============================================================================


class Submission(Base):
    """A single ingested fundraising message (a case)."""

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Evidence reference: blob://bucket/path or a channel placeholder
    image_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    media_urls: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    normalized_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Written together; both NULL when the normalized text is empty
    normalized_hash: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    simhash64: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    # Bytes of the unsigned simhash, low byte first; NULL with simhash64
    simhash_band0: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band1: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band2: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band3: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band4: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band5: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band6: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    simhash_band7: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)

    message_type: Mapped[str] = mapped_column(
        Enum("sms", "email", "unknown", name="message_type_enum"),
        nullable=False,
        default="unknown",
    )
    processing_status: Mapped[str] = mapped_column(
        Enum("ocr", "classified", "done", "error", name="processing_status_enum"),
        nullable=False,
        default="ocr",
    )

    sender_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    forwarder_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_subject: Mapped[Optional[str]] = mapped_column(String(998), nullable=True)
    email_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    landing_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    landing_screenshot_url: Mapped[Optional[str]] = mapped_column(
        String(1024), nullable=True
    )
    landing_render_status: Mapped[Optional[str]] = mapped_column(
        Enum("pending", "success", "failed", name="landing_render_status_enum"),
        nullable=True,
    )
    landing_rendered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    is_fundraising: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    ai_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ocr_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ocr_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    classifier_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_sub_simhash", "simhash64"),
        *(Index(f"idx_sub_simhash_band{i}", f"simhash_band{i}") for i in range(8)),
        Index("idx_sub_status_updated", "processing_status", "updated_at"),
        Index("idx_sub_created", "created_at"),
    )

    # Relationships
    violations: Mapped[list["Violation"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )
    comments: Mapped[list["Comment"]] = relationship(
        back_populates="submission", cascade="all, delete-orphan"
    )


class Violation(Base):
    """A flagged policy violation (at most one per code per submission)."""

    __tablename__ = "violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_spans: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    severity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    exempt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exemption_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("submission_id", "code", name="uq_violation_code"),
    )

    submission: Mapped["Submission"] = relationship(back_populates="violations")


class Comment(Base):
    """Reviewer or system comment attached to a submission. Immutable."""

    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    submission_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(
        Enum("user", "landing_page", name="comment_kind_enum"),
        nullable=False,
        default="user",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    __table_args__ = (Index("idx_comment_sub_time", "submission_id", "created_at"),)

    submission: Mapped["Submission"] = relationship(back_populates="comments")


class Report(Base):
    """Outbound violation report for a case."""

    __tablename__ = "reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    case_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("submissions.id", ondelete="CASCADE"), nullable=False
    )
    to_email: Mapped[str] = mapped_column(String(255), nullable=False)
    cc_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    html_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    landing_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    screenshot_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    status: Mapped[str] = mapped_column(
        Enum("queued", "sent", "failed", name="report_status_enum"),
        nullable=False,
        default="queued",
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("idx_report_case", "case_id"),)


class VerifiedExemption(Base):
    """Allowlist entry that marks matching violations as exempt."""

    __tablename__ = "verified_exemptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    # Case-insensitive substring of sender name or sender id
    sender_pattern: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    landing_url_prefix: Mapped[Optional[str]] = mapped_column(
        String(2048), nullable=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    __table_args__ = (Index("idx_exemption_code", "code", "active"),)


class AuditLog(Base):
    """Append-only audit log."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    submission_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_created", "created_at"),
        Index("idx_audit_submission", "submission_id"),
    )
