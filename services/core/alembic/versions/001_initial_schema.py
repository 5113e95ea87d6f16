"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates all tables for AB Jail:
- submissions
- violations
- comments
- reports
- verified_exemptions
- audit_log
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Submissions (cases)
    op.create_table(
        "submissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column("image_url", sa.String(1024), nullable=False),
        sa.Column("media_urls", sa.JSON, nullable=True),
        sa.Column("raw_text", sa.Text, nullable=True),
        sa.Column("normalized_text", sa.Text, nullable=True),
        sa.Column("normalized_hash", sa.String(64), nullable=True),
        sa.Column("simhash64", sa.BigInteger, nullable=True),
        sa.Column(
            "message_type",
            sa.Enum("sms", "email", "unknown", name="message_type_enum"),
            nullable=False,
            server_default="unknown",
        ),
        sa.Column(
            "processing_status",
            sa.Enum("ocr", "classified", "done", "error", name="processing_status_enum"),
            nullable=False,
            server_default="ocr",
        ),
        sa.Column("sender_id", sa.String(255), nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("forwarder_email", sa.String(255), nullable=True),
        sa.Column("email_subject", sa.String(998), nullable=True),
        sa.Column("email_body", sa.Text, nullable=True),
        sa.Column("landing_url", sa.String(2048), nullable=True),
        sa.Column("landing_screenshot_url", sa.String(1024), nullable=True),
        sa.Column(
            "landing_render_status",
            sa.Enum("pending", "success", "failed", name="landing_render_status_enum"),
            nullable=True,
        ),
        sa.Column("landing_rendered_at", sa.DateTime, nullable=True),
        sa.Column("is_fundraising", sa.Boolean, nullable=True),
        sa.Column("public", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("ai_version", sa.String(64), nullable=True),
        sa.Column("ai_confidence", sa.Float, nullable=True),
        sa.Column("ai_summary", sa.Text, nullable=True),
        sa.Column("ocr_method", sa.String(32), nullable=True),
        sa.Column("ocr_confidence", sa.Float, nullable=True),
        sa.Column("ocr_ms", sa.Integer, nullable=True),
        sa.Column("classifier_ms", sa.Integer, nullable=True),
        sa.UniqueConstraint("normalized_hash", name="uq_sub_normalized_hash"),
    )
    op.create_index("idx_sub_simhash", "submissions", ["simhash64"])
    op.create_index(
        "idx_sub_status_updated", "submissions", ["processing_status", "updated_at"]
    )
    op.create_index("idx_sub_created", "submissions", ["created_at"])

    # Violations: one row per code per submission
    op.create_table(
        "violations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "submission_id",
            sa.String(36),
            sa.ForeignKey("submissions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("evidence_spans", sa.JSON, nullable=True),
        sa.Column("severity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("confidence", sa.Float, nullable=False, server_default="0"),
        sa.Column("exempt", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("exemption_reason", sa.Text, nullable=True),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("submission_id", "code", name="uq_violation_code"),
    )

    # Comments
    op.create_table(
        "comments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "submission_id",
            sa.String(36),
            sa.ForeignKey("submissions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column(
            "kind",
            sa.Enum("user", "landing_page", name="comment_kind_enum"),
            nullable=False,
            server_default="user",
        ),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "idx_comment_sub_time", "comments", ["submission_id", "created_at"]
    )

    # Outbound reports
    op.create_table(
        "reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "case_id",
            sa.String(36),
            sa.ForeignKey("submissions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("to_email", sa.String(255), nullable=False),
        sa.Column("cc_email", sa.String(255), nullable=True),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("html_body", sa.Text, nullable=True),
        sa.Column("landing_url", sa.String(2048), nullable=False),
        sa.Column("screenshot_url", sa.String(1024), nullable=True),
        sa.Column(
            "status",
            sa.Enum("queued", "sent", "failed", name="report_status_enum"),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column("sent_at", sa.DateTime, nullable=True),
    )
    op.create_index("idx_report_case", "reports", ["case_id"])

    # Verified exemption allowlist
    op.create_table(
        "verified_exemptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("sender_pattern", sa.String(255), nullable=True),
        sa.Column("landing_url_prefix", sa.String(2048), nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index("idx_exemption_code", "verified_exemptions", ["code", "active"])

    # Audit log (append-only)
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "created_at", sa.DateTime, nullable=False, server_default=sa.func.now()
        ),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("submission_id", sa.String(36), nullable=True),
        sa.Column("payload", sa.JSON, nullable=True),
    )
    op.create_index("idx_audit_created", "audit_log", ["created_at"])
    op.create_index("idx_audit_submission", "audit_log", ["submission_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("verified_exemptions")
    op.drop_table("reports")
    op.drop_table("comments")
    op.drop_table("violations")
    op.drop_table("submissions")
