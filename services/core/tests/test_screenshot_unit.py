"""Unit tests for landing page capture."""

import asyncio
import json

import httpx
import pytest

from abjail_core.domain.models import CommentKind, RenderStatus
from abjail_core.domain.services.screenshot import (
    HttpScreenshotCapability,
    LandingCaptureService,
    ScreenshotConfigError,
    ScreenshotError,
    is_capturable_url,
)
from tests.factories import create_submission

LANDING = "https://secure.actblue.com/donate/jane"
PNG = b"\x89PNG\r\n\x1a\nrendered"


class FakeBrowser:
    def __init__(self, result=PNG, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.urls = []

    async def capture(self, url: str) -> bytes:
        self.urls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def make_service(repo, storage, browser, **kwargs) -> LandingCaptureService:
    return LandingCaptureService(
        repo=repo,
        storage=storage,
        capability=browser,
        platform_domains=["actblue.com"],
        **kwargs,
    )


class TestIsCapturableUrl:
    @pytest.mark.parametrize(
        "url,expected",
        [
            (LANDING, True),
            ("https://actblue.com/x", True),
            ("http://secure.actblue.com/donate/jane", False),
            ("https://actblue.com.evil.example/x", False),
            ("https://example.org/donate", False),
            ("", False),
            (None, False),
        ],
    )
    def test_allowlist(self, url, expected):
        assert is_capturable_url(url, ["actblue.com"]) is expected


class TestLandingCaptureService:
    async def test_success_stores_screenshot(self, repo, db_session, storage):
        submission = create_submission(db_session)
        browser = FakeBrowser()

        result = await make_service(repo, storage, browser).capture_landing_page(
            submission.id, f"  {LANDING}  "
        )

        assert result.ok
        assert browser.urls == [LANDING]
        assert result.screenshot_ref.startswith(f"blob://screenshots/{submission.id}-")
        assert storage.get(result.screenshot_ref) == PNG

        fresh = repo.get(submission.id)
        assert fresh.landing_url == LANDING
        assert fresh.landing_render_status == RenderStatus.SUCCESS
        assert fresh.landing_screenshot_url == result.screenshot_ref
        assert fresh.landing_rendered_at is not None

        comments = repo.list_comments(submission.id)
        assert [c.content for c in comments] == [f"landing_page: {LANDING}"]
        assert comments[0].kind == CommentKind.LANDING_PAGE

    async def test_invalid_url_touches_nothing(self, repo, db_session, storage):
        submission = create_submission(db_session)
        browser = FakeBrowser()

        result = await make_service(repo, storage, browser).capture_landing_page(
            submission.id, "https://evil.example/donate"
        )

        assert result.error == "invalid_url"
        assert result.step == "validate"
        assert browser.urls == []
        assert repo.get(submission.id).landing_render_status is None

    async def test_timeout_marks_failed(self, repo, db_session, storage):
        submission = create_submission(db_session)
        browser = FakeBrowser(delay=1.0)

        result = await make_service(
            repo, storage, browser, timeout_seconds=0.01
        ).capture_landing_page(submission.id, LANDING)

        assert not result.ok
        assert result.error == "timeout"
        assert result.step == "render"
        assert repo.get(submission.id).landing_render_status == RenderStatus.FAILED

    async def test_render_error_marks_failed(self, repo, db_session, storage):
        submission = create_submission(db_session)
        browser = FakeBrowser(result=ScreenshotError("503"))

        result = await make_service(repo, storage, browser).capture_landing_page(
            submission.id, LANDING
        )

        assert result.error == "503"
        assert repo.get(submission.id).landing_render_status == RenderStatus.FAILED

    async def test_empty_image_fails_at_upload(self, repo, db_session, storage):
        submission = create_submission(db_session)

        result = await make_service(repo, storage, FakeBrowser(result=b"")).capture_landing_page(
            submission.id, LANDING
        )

        assert result.step == "upload"
        assert repo.get(submission.id).landing_render_status == RenderStatus.FAILED

    async def test_unknown_submission_never_raises(self, repo, storage):
        result = await make_service(repo, storage, FakeBrowser()).capture_landing_page(
            "missing", LANDING
        )

        assert not result.ok
        assert result.step == "pending"


class TestHttpScreenshotCapability:
    async def test_posts_render_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        capability = HttpScreenshotCapability("http://browser:3000/", token="t", client=client)

        assert await capability.capture(LANDING) == PNG
        assert seen["url"] == "http://browser:3000/screenshot?token=t"
        assert seen["body"]["url"] == LANDING
        assert seen["body"]["options"]["fullPage"] is True
        assert "Loading" in seen["body"]["waitForFunction"]["fn"]

    async def test_non_image_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "x"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ScreenshotError):
            await HttpScreenshotCapability("http://browser", client=client).capture(LANDING)

    async def test_http_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        with pytest.raises(ScreenshotError):
            await HttpScreenshotCapability("http://browser", client=client).capture(LANDING)

    async def test_not_configured(self):
        with pytest.raises(ScreenshotConfigError):
            await HttpScreenshotCapability(None).capture(LANDING)
