"""Outbound violation reports.

Drafts a report for a case from the pipeline output and sends it to the
payment platform through a Notifier. Every attempt is persisted: the row
is written as "queued" before sending and then marked "sent" or "failed".

Usage:
    service = ReportService(
        repo=repo,
        notifier=ResendNotifier(api_key="re_..."),
        storage=storage,
        to_email="compliance@example.com",
        from_email="reports@example.org",
    )
    result = await service.submit(case_id, note="Fake match offer")
"""

import base64
import html
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Protocol

import httpx

from abjail_core.domain.models import CommentKind, ReportStatus, Submission
from abjail_core.domain.services.text_normalizer import strip_query
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage, StorageError, is_blob_ref
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class NotifierError(Exception):
    """Raised when an outbound e-mail could not be sent."""
    pass


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "text/plain"


@dataclass
class OutboundEmail:
    to: str
    from_email: str
    subject: str
    text: str
    html: str
    reply_to: Optional[str] = None
    cc: Optional[str] = None
    attachments: list[EmailAttachment] = field(default_factory=list)


@dataclass
class ReportDraft:
    subject: str
    body: str
    html_body: str
    landing_url: str
    screenshot_url: Optional[str]


@dataclass
class ReportResult:
    ok: bool
    report_id: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# NOTIFIER
# =============================================================================


class Notifier(Protocol):
    """Outbound e-mail capability."""

    async def send(self, message: OutboundEmail) -> Optional[str]:
        ...


class ResendNotifier:
    """Sends e-mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.resend.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    def build_payload(self, message: OutboundEmail) -> dict:
        payload = {
            "from": message.from_email,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to
        if message.cc:
            payload["cc"] = [message.cc]
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "content_type": a.content_type,
                }
                for a in message.attachments
            ]
        return payload

    async def send(self, message: OutboundEmail) -> Optional[str]:
        """Send a message and return the provider's id.

        Raises:
            NotifierError: If no key is configured or the API call fails.
        """
        if not self.api_key:
            raise NotifierError("resend_key_missing")

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(
                f"{self.base_url}/emails",
                json=self.build_payload(message),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise NotifierError(f"Resend returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NotifierError(f"Resend request failed: {e}") from e
        except ValueError as e:
            raise NotifierError(f"Resend response is not JSON: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
        return data.get("id") if isinstance(data, dict) else None


# =============================================================================
# DRAFTING
# =============================================================================


def short_id(case_id: str) -> str:
    return case_id.split("-")[0]


def override_lines(violations_override: Optional[str]) -> list[str]:
    """Split a free-text violations override into bullet lines."""
    lines = []
    for line in (violations_override or "").splitlines():
        line = re.sub(r"^[-*•]\s*", "", line.strip())
        if line:
            lines.append(line)
    return lines


def _section(title: str, content: str) -> str:
    return f"{title}\n{'-' * len(title)}\n{content}"


def build_report(
    submission: Submission,
    violations: Iterable,
    landing_url: str,
    screenshot_url: Optional[str] = None,
    note: Optional[str] = None,
    violations_override: Optional[str] = None,
) -> ReportDraft:
    """Build subject, plain-text and HTML bodies for a case report."""
    sid = short_id(submission.id)
    campaign = submission.sender_name or submission.sender_id or "(unknown sender)"
    overrides = override_lines(violations_override)
    rows = [v for v in violations if not getattr(v, "exempt", False)]

    if overrides:
        vio_lines = [f"- {line}" for line in overrides] if len(overrides) > 1 else overrides
        vio_items = overrides
    else:
        vio_items = [
            f"{v.code} {v.title}" + (f": {v.description}" if v.description else "")
            for v in rows
        ]
        vio_lines = [f"- {item}" for item in vio_items]
    vio_text = "\n".join(vio_lines) or "(none detected)"

    sections = [
        _section("Campaign/Org", campaign),
        _section("Violations", vio_text),
        _section("Landing page URL", landing_url),
    ]
    if note:
        sections.append(_section("Reporter note", note))
    if screenshot_url:
        sections.append(_section("Screenshot", screenshot_url))
    sections.append(
        _section(
            "Meta",
            "This report was submitted using AB Jail.\n"
            f"Case UUID: {submission.id}\nCase short_id: {sid}",
        )
    )

    esc = html.escape
    if len(vio_items) > 1 or (vio_items and not overrides):
        vio_html = "<ul>" + "".join(f"<li>{esc(item)}</li>" for item in vio_items) + "</ul>"
    elif vio_items:
        vio_html = f"<p>{esc(vio_items[0])}</p>"
    else:
        vio_html = "<p>(none detected)</p>"

    parts = [
        "<!doctype html><html><body style=\"font-family:system-ui,Arial,sans-serif;line-height:1.4\">",
        f"<p><strong>Campaign/Org</strong></p><p>{esc(campaign)}</p>",
        f"<p><strong>Violations</strong></p><div>{vio_html}</div>",
        "<p><strong>Landing page</strong></p>"
        f"<p><a href=\"{esc(landing_url)}\" target=\"_blank\" rel=\"noopener noreferrer\">"
        f"{esc(landing_url)}</a></p>",
    ]
    if note:
        parts.append(f"<p><strong>Reporter note</strong></p><p>{esc(note)}</p>")
    if screenshot_url:
        parts.append(
            "<p><strong>Screenshot</strong></p>"
            f"<p><a href=\"{esc(screenshot_url)}\" target=\"_blank\" rel=\"noopener noreferrer\">"
            "Screenshot</a></p>"
        )
    parts.append(
        "<p><strong>Meta</strong></p><p>This report was submitted using AB Jail.</p>"
        f"<p>Case UUID: <code>{esc(submission.id)}</code></p>"
        f"<p>Case short_id: <code>{esc(sid)}</code></p>"
        "</body></html>"
    )

    return ReportDraft(
        subject=f"Reporting Possible Violation - Case #{sid}",
        body="\n\n".join(sections),
        html_body="".join(parts),
        landing_url=landing_url,
        screenshot_url=screenshot_url,
    )


# =============================================================================
# SERVICE
# =============================================================================


class ReportService:
    """Drafts, persists and sends violation reports."""

    def __init__(
        self,
        repo: SubmissionRepository,
        notifier: Notifier,
        storage: Optional[LocalBlobStorage] = None,
        to_email: Optional[str] = None,
        from_email: Optional[str] = None,
        site_url: str = "",
        signed_url_ttl: int = 3600,
    ):
        self.repo = repo
        self.notifier = notifier
        self.storage = storage
        self.to_email = to_email
        self.from_email = from_email
        self.site_url = site_url
        self.signed_url_ttl = signed_url_ttl

    def _screenshot_url(self, submission: Submission) -> Optional[str]:
        ref = submission.image_url
        if ref and ref.startswith("http"):
            return ref
        if ref and is_blob_ref(ref) and self.storage is not None:
            try:
                return self.storage.sign(ref, self.signed_url_ttl, base_url=self.site_url)
            except StorageError as e:
                logger.warning("report:sign_failed", ref=ref, error=str(e))
        return None

    async def submit(
        self,
        case_id: str,
        landing_url: Optional[str] = None,
        cc_email: Optional[str] = None,
        note: Optional[str] = None,
        violations_override: Optional[str] = None,
    ) -> ReportResult:
        """Draft and send a report for a case.

        The stored landing URL wins over the supplied one; the query string
        is always stripped.
        """
        context = PipelineContext(submission_id=case_id, stage="report")
        if not self.to_email:
            return ReportResult(ok=False, error="missing_report_to")
        if not self.from_email:
            return ReportResult(ok=False, error="missing_report_from")

        submission = self.repo.get(case_id)
        if submission is None:
            return ReportResult(ok=False, error="not_found")

        url = (submission.landing_url or (landing_url or "").strip()) or None
        if not url:
            return ReportResult(ok=False, error="landing_url_required")
        try:
            url = strip_query(url)
        except ValueError:
            pass

        draft = build_report(
            submission,
            self.repo.list_violations(case_id),
            landing_url=url,
            screenshot_url=self._screenshot_url(submission),
            note=(note or "").strip() or None,
            violations_override=violations_override,
        )

        report = self.repo.add_report(
            case_id=case_id,
            to_email=self.to_email,
            cc_email=(cc_email or "").strip() or None,
            subject=draft.subject,
            body=draft.body,
            html_body=draft.html_body,
            landing_url=draft.landing_url,
            screenshot_url=draft.screenshot_url,
            status=ReportStatus.QUEUED,
        )

        original = submission.email_body or submission.raw_text or ""
        message = OutboundEmail(
            to=self.to_email,
            from_email=self.from_email,
            reply_to=self.from_email,
            cc=report.cc_email,
            subject=draft.subject,
            text=draft.body,
            html=draft.html_body,
            attachments=(
                [EmailAttachment("original_email.txt", original.encode("utf-8"))]
                if original else []
            ),
        )

        try:
            await self.notifier.send(message)
        except NotifierError as e:
            logger.warning("report:send_failed", context=context, report_id=report.id, error=str(e))
            self.repo.update_report(report, status=ReportStatus.FAILED, error=str(e))
            self.repo.add_audit("system", "report.failed", case_id, {"report_id": report.id})
            return ReportResult(ok=False, report_id=report.id, error="send_failed")

        sent_at = datetime.utcnow()
        self.repo.update_report(report, status=ReportStatus.SENT, sent_at=sent_at)
        self.repo.add_comment(
            case_id,
            f"Report filed on {sent_at.isoformat()}.",
            kind=CommentKind.LANDING_PAGE,
        )
        self.repo.add_audit("system", "report.sent", case_id, {"report_id": report.id})
        logger.info("report:sent", context=context, report_id=report.id)
        return ReportResult(ok=True, report_id=report.id)
