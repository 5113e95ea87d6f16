"""Submission repository for AB Jail Core.

All reads and writes of submissions and their child rows go through this
class. Every public method commits its own unit of work and never awaits,
so concurrent pipeline stages sharing one session cannot interleave inside
a transaction.

Usage:
    repo = SubmissionRepository(db=session)

    submission = repo.insert_submission(
        image_url="sms://no-image",
        raw_text="Chip in $5 now!",
        normalized_text="chip in 5 now",
        normalized_hash="...",
        simhash64=123,
        message_type="sms",
        processing_status="ocr",
    )
    repo.transition_status(submission.id, "classified", {"ocr", "done", "error"})
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from abjail_core.domain.models import (
    AuditLog,
    Comment,
    CommentKind,
    Report,
    Submission,
    VerifiedExemption,
    Violation,
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class RepositoryError(Exception):
    """Base exception for repository operations."""
    pass


class DuplicateHashError(RepositoryError):
    """Raised when an insert collides on normalized_hash."""

    def __init__(self, existing_id: Optional[str], normalized_hash: str):
        super().__init__(f"Duplicate normalized_hash (existing={existing_id})")
        self.existing_id = existing_id
        self.normalized_hash = normalized_hash


class SubmissionNotFoundError(RepositoryError):
    """Raised when a submission id does not exist."""
    pass


# =============================================================================
# DATA CLASSES
# =============================================================================


class ViolationRecord(Protocol):
    """Shape of a violation row to be written."""

    code: str
    title: str
    description: str
    evidence_spans: list[str]
    severity: int
    confidence: float


@dataclass
class SimhashCandidate:
    """A submission sharing enough simhash bands with the one looked up."""

    id: str
    simhash64: int


# =============================================================================
# REPOSITORY
# =============================================================================


class SubmissionRepository:
    """Persistence gateway for submissions and related rows."""

    def __init__(self, db: Session):
        """Initialize the repository.

        Args:
            db: SQLAlchemy database session.
        """
        self.db = db

    # -------------------------------------------------------------------------
    # Submissions
    # -------------------------------------------------------------------------

    def get(self, submission_id: str) -> Optional[Submission]:
        """Load a submission by id, refreshing any cached state."""
        submission = self.db.get(Submission, submission_id)
        if submission is not None:
            self.db.refresh(submission)
        return submission

    def require(self, submission_id: str) -> Submission:
        """Load a submission or raise SubmissionNotFoundError."""
        submission = self.get(submission_id)
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        return submission

    def insert_submission(self, **fields: Any) -> Submission:
        """Insert a new submission.

        Raises:
            DuplicateHashError: If normalized_hash collides with an existing row.
        """
        submission = Submission(**fields)
        self.db.add(submission)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            normalized_hash = fields.get("normalized_hash")
            if not normalized_hash:
                raise
            existing_id = self.find_id_by_hash(normalized_hash)
            if existing_id is None:
                raise
            raise DuplicateHashError(existing_id, normalized_hash)
        return submission

    def find_id_by_hash(self, normalized_hash: str) -> Optional[str]:
        """Return the id of the submission with this exact hash."""
        stmt = (
            select(Submission.id)
            .where(Submission.normalized_hash == normalized_hash)
            .limit(1)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def find_simhash_candidates(
        self,
        bands: list[int],
        min_shared: int = 1,
        limit: int = 200,
    ) -> list[SimhashCandidate]:
        """Return submissions sharing at least min_shared simhash bands.

        Args:
            bands: Band values, band 0 first.
            min_shared: Number of equal bands a row needs.
            limit: Maximum rows returned.
        """
        columns = [getattr(Submission, f"simhash_band{i}") for i in range(len(bands))]
        shared = sum(
            case((column == band, 1), else_=0) for column, band in zip(columns, bands)
        )
        stmt = (
            select(Submission.id, Submission.simhash64)
            .where(Submission.simhash64.is_not(None))
            .where(or_(*(column == band for column, band in zip(columns, bands))))
            .where(shared >= min_shared)
            .limit(limit)
        )
        return [
            SimhashCandidate(id=row.id, simhash64=row.simhash64)
            for row in self.db.execute(stmt)
        ]

    def update_fields(self, submission_id: str, **fields: Any) -> None:
        """Write the given columns on a submission.

        Raises:
            DuplicateHashError: If a new normalized_hash collides.
        """
        if not fields:
            return
        fields.setdefault("updated_at", datetime.utcnow())
        stmt = update(Submission).where(Submission.id == submission_id).values(**fields)
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            normalized_hash = fields.get("normalized_hash")
            if not normalized_hash:
                raise
            raise DuplicateHashError(self.find_id_by_hash(normalized_hash), normalized_hash)
        if result.rowcount == 0:
            raise SubmissionNotFoundError(submission_id)

    def transition_status(
        self,
        submission_id: str,
        target: str,
        allowed_sources: Iterable[str],
    ) -> bool:
        """Conditionally move a submission to a new processing status.

        Returns:
            True when a row was updated.
        """
        sources = list(allowed_sources)
        if not sources:
            return False
        stmt = (
            update(Submission)
            .where(Submission.id == submission_id)
            .where(Submission.processing_status.in_(sources))
            .values(processing_status=target, updated_at=datetime.utcnow())
        )
        result = self.db.execute(stmt)
        self.db.commit()
        return result.rowcount > 0

    def current_status(self, submission_id: str) -> Optional[str]:
        stmt = select(Submission.processing_status).where(Submission.id == submission_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_stale(self, statuses: Iterable[str], older_than: datetime) -> list[str]:
        """Return ids of submissions stuck in the given statuses."""
        stmt = (
            select(Submission.id)
            .where(Submission.processing_status.in_(list(statuses)))
            .where(Submission.updated_at < older_than)
        )
        return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    def add_comment(
        self,
        submission_id: str,
        content: str,
        kind: str = CommentKind.USER,
    ) -> Comment:
        comment = Comment(submission_id=submission_id, content=content, kind=kind)
        self.db.add(comment)
        self.db.commit()
        return comment

    def count_comments(self, submission_id: str, kind: Optional[str] = None) -> int:
        stmt = select(func.count(Comment.id)).where(Comment.submission_id == submission_id)
        if kind:
            stmt = stmt.where(Comment.kind == kind)
        return self.db.execute(stmt).scalar_one()

    def list_comments(self, submission_id: str, limit: int = 50) -> list[Comment]:
        """List comments oldest first."""
        stmt = (
            select(Comment)
            .where(Comment.submission_id == submission_id)
            .order_by(Comment.created_at.asc(), Comment.id.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Violations
    # -------------------------------------------------------------------------

    def list_violations(self, submission_id: str) -> list[Violation]:
        stmt = (
            select(Violation)
            .where(Violation.submission_id == submission_id)
            .order_by(Violation.code.asc())
        )
        return list(self.db.execute(stmt).scalars())

    def save_violations(
        self,
        submission_id: str,
        violations: Iterable[ViolationRecord],
        replace: bool,
    ) -> int:
        """Persist violations for a submission in a single transaction.

        With replace=True every previous row is deleted first. Otherwise rows
        are upserted per code; callers pass values already merged with the
        existing rows.

        Returns:
            Number of violation rows written.
        """
        written = 0
        try:
            if replace:
                self.db.execute(
                    delete(Violation).where(Violation.submission_id == submission_id)
                )
                existing: dict[str, Violation] = {}
            else:
                existing = {v.code: v for v in self.list_violations(submission_id)}

            for record in violations:
                row = existing.get(record.code)
                if row is None:
                    row = Violation(submission_id=submission_id, code=record.code)
                    self.db.add(row)
                row.title = record.title
                row.description = record.description
                row.evidence_spans = list(record.evidence_spans)
                row.severity = record.severity
                row.confidence = record.confidence
                written += 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return written

    def mark_exempt(self, violation_id: str, reason: str) -> None:
        stmt = (
            update(Violation)
            .where(Violation.id == violation_id)
            .values(exempt=True, exemption_reason=reason)
        )
        self.db.execute(stmt)
        self.db.commit()

    def list_active_exemptions(self, codes: Iterable[str]) -> list[VerifiedExemption]:
        codes = list(codes)
        if not codes:
            return []
        stmt = (
            select(VerifiedExemption)
            .where(VerifiedExemption.active.is_(True))
            .where(VerifiedExemption.code.in_(codes))
        )
        return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    def add_report(self, **fields: Any) -> Report:
        report = Report(**fields)
        self.db.add(report)
        self.db.commit()
        return report

    def update_report(self, report: Report, **fields: Any) -> Report:
        for key, value in fields.items():
            setattr(report, key, value)
        self.db.commit()
        return report

    def list_reports(
        self,
        case_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Report]:
        stmt = select(Report).order_by(Report.created_at.desc()).limit(limit)
        if case_id:
            stmt = stmt.where(Report.case_id == case_id)
        return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def add_audit(
        self,
        actor: str,
        action: str,
        submission_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor=actor,
            action=action,
            submission_id=submission_id,
            payload=payload,
        )
        self.db.add(entry)
        self.db.commit()
        return entry
