"""Unit tests for violation reports."""

import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest

from abjail_core.domain.models import ReportStatus
from abjail_core.domain.services.reports import (
    EmailAttachment,
    NotifierError,
    OutboundEmail,
    ReportService,
    ResendNotifier,
    build_report,
    override_lines,
)
from tests.factories import create_submission, create_violation

LANDING = "https://secure.actblue.com/donate/jane"


def violation(code, title, description=None, exempt=False):
    return SimpleNamespace(code=code, title=title, description=description, exempt=exempt)


@pytest.fixture
def notifier():
    mock = AsyncMock()
    mock.send.return_value = "email-1"
    return mock


@pytest.fixture
def service(repo, storage, notifier):
    return ReportService(
        repo=repo,
        notifier=notifier,
        storage=storage,
        to_email="compliance@platform.test",
        from_email="reports@abjail.test",
        site_url="https://abjail.test",
    )


class TestBuildReport:
    def test_sections(self):
        submission = SimpleNamespace(
            id="3f2a9c1e-0000-4000-8000-000000000000", sender_name="Friends of Jane", sender_id=None
        )

        draft = build_report(
            submission,
            [
                violation("AB008", "Unverified Matching Program", "Advertises a 5X match"),
                violation("AB007", "False/Unsubstantiated Claims", exempt=True),
            ],
            landing_url=LANDING,
            screenshot_url="https://abjail.test/blobs/incoming/x.png?sig=1",
            note="Seen three times this week",
        )

        assert draft.subject == "Reporting Possible Violation - Case #3f2a9c1e"
        assert "Campaign/Org\n------------\nFriends of Jane" in draft.body
        assert "- AB008 Unverified Matching Program: Advertises a 5X match" in draft.body
        assert "AB007" not in draft.body
        assert "Reporter note" in draft.body
        assert "Case UUID: 3f2a9c1e-0000-4000-8000-000000000000" in draft.body
        assert "<li>AB008 Unverified Matching Program: Advertises a 5X match</li>" in draft.html_body
        assert 'href="https://abjail.test/blobs/incoming/x.png?sig=1"' in draft.html_body

    def test_override_replaces_violations(self):
        submission = SimpleNamespace(id="abc", sender_name=None, sender_id="+15550001111")

        draft = build_report(
            submission,
            [violation("AB008", "Match")],
            landing_url=LANDING,
            violations_override="Impersonates a candidate",
        )

        assert "Violations\n----------\nImpersonates a candidate" in draft.body
        assert "AB008" not in draft.body
        assert "<p>Impersonates a candidate</p>" in draft.html_body
        assert "+15550001111" in draft.body

    def test_no_violations(self):
        submission = SimpleNamespace(id="abc", sender_name=None, sender_id=None)

        draft = build_report(submission, [], landing_url=LANDING)

        assert "(none detected)" in draft.body
        assert "(unknown sender)" in draft.body
        assert "Screenshot" not in draft.body

    def test_html_escaped(self):
        submission = SimpleNamespace(id="abc", sender_name="<b>Evil</b>", sender_id=None)
        draft = build_report(submission, [], landing_url=LANDING, note="<script>")
        assert "<b>Evil</b>" not in draft.html_body
        assert "&lt;script&gt;" in draft.html_body

    def test_override_lines(self):
        assert override_lines("- one\n* two\n\n  three ") == ["one", "two", "three"]
        assert override_lines(None) == []


class TestResendNotifier:
    async def test_posts_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "re-123"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = ResendNotifier(api_key="re_key", client=client)
        message = OutboundEmail(
            to="to@x.test",
            from_email="from@x.test",
            subject="S",
            text="T",
            html="<p>T</p>",
            cc="cc@x.test",
            attachments=[EmailAttachment("original_email.txt", b"hello")],
        )

        assert await notifier.send(message) == "re-123"
        assert seen["auth"] == "Bearer re_key"
        assert seen["body"]["to"] == ["to@x.test"]
        assert seen["body"]["cc"] == ["cc@x.test"]
        attachment = seen["body"]["attachments"][0]
        assert base64.b64decode(attachment["content"]) == b"hello"

    async def test_http_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(422)))
        with pytest.raises(NotifierError, match="422"):
            await ResendNotifier(api_key="k", client=client).send(
                OutboundEmail(to="a", from_email="b", subject="s", text="t", html="h")
            )

    async def test_missing_key(self):
        with pytest.raises(NotifierError):
            await ResendNotifier(api_key=None).send(
                OutboundEmail(to="a", from_email="b", subject="s", text="t", html="h")
            )


class TestReportService:
    async def test_sent_report_is_recorded(self, service, notifier, repo, db_session, storage):
        ref = storage.put("incoming", b"\x89PNG", "image/png")
        submission = create_submission(
            db_session,
            landing_url=LANDING + "?refcode=sms",
            image_url=ref,
            raw_text="Chip in $5",
        )
        create_violation(db_session, submission.id, code="AB008")

        result = await service.submit(submission.id, cc_email=" me@x.test ", note="note")

        assert result.ok
        report = repo.list_reports(submission.id)[0]
        assert report.id == result.report_id
        assert report.status == ReportStatus.SENT
        assert report.sent_at is not None
        assert report.landing_url == LANDING
        assert report.cc_email == "me@x.test"
        assert report.screenshot_url.startswith("https://abjail.test/blobs/incoming/")

        message = notifier.send.await_args.args[0]
        assert message.reply_to == "reports@abjail.test"
        assert message.attachments[0].content == b"Chip in $5"
        assert any(c.content.startswith("Report filed on") for c in repo.list_comments(submission.id))

    async def test_stored_landing_url_wins(self, service, repo, db_session):
        submission = create_submission(db_session, landing_url=LANDING)

        await service.submit(submission.id, landing_url="https://secure.actblue.com/donate/other")

        assert repo.list_reports(submission.id)[0].landing_url == LANDING

    async def test_supplied_landing_url_used_when_none_stored(self, service, repo, db_session):
        submission = create_submission(db_session)

        result = await service.submit(submission.id, landing_url=" https://x.example/a?b=1 ")

        assert result.ok
        assert repo.list_reports(submission.id)[0].landing_url == "https://x.example/a"

    async def test_landing_url_required(self, service, db_session):
        submission = create_submission(db_session)
        result = await service.submit(submission.id)
        assert result.error == "landing_url_required"

    async def test_send_failure_recorded(self, service, notifier, repo, db_session):
        submission = create_submission(db_session, landing_url=LANDING)
        notifier.send.side_effect = NotifierError("Resend returned 500")

        result = await service.submit(submission.id)

        assert result.error == "send_failed"
        report = repo.list_reports(submission.id)[0]
        assert report.status == ReportStatus.FAILED
        assert report.error == "Resend returned 500"

    @pytest.mark.parametrize(
        "to_email,from_email,error",
        [(None, "f@x", "missing_report_to"), ("t@x", None, "missing_report_from")],
    )
    async def test_missing_addresses(self, repo, notifier, to_email, from_email, error):
        service = ReportService(repo=repo, notifier=notifier, to_email=to_email, from_email=from_email)
        result = await service.submit("any")
        assert result.error == error
        notifier.send.assert_not_awaited()

    async def test_not_found(self, service):
        assert (await service.submit("missing")).error == "not_found"
