"""Landing page capture.

Renders a donation landing page through a headless browser service and
stores the PNG as evidence for re-classification. Capture never raises:
every failure ends with landing_render_status "failed" and a structured
result.

Render status moves pending -> success | failed. A new request while a
capture is pending overwrites the target URL and resets to pending.

Usage:
    capability = HttpScreenshotCapability(base_url="http://browserless:3000")
    service = LandingCaptureService(
        repo=repo,
        storage=storage,
        capability=capability,
        platform_domains=["actblue.com"],
    )

    result = await service.capture_landing_page(submission_id, url)
    if result.ok:
        print(result.screenshot_ref)
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol
from urllib.parse import urlsplit

import httpx

from abjail_core.domain.models import CommentKind, RenderStatus
from abjail_core.domain.services.text_normalizer import host_matches
from abjail_core.infra.repository import SubmissionRepository
from abjail_core.infra.storage import LocalBlobStorage, StorageError
from abjail_core.observability import PipelineContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ScreenshotError(Exception):
    """Base exception for screenshot capture errors."""
    pass


class ScreenshotConfigError(ScreenshotError):
    """No rendering service configured."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TIMEOUT_SECONDS = 15.0
VIEWPORT = {"width": 1280, "height": 1200, "deviceScaleFactor": 1}
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
# Payment forms show this placeholder until hydrated
LOADING_PLACEHOLDER_FN = (
    "() => !/Loading\\s*Form/i.test((document.body && document.body.innerText) || '')"
)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class CaptureResult:
    """Result of capture_landing_page()."""

    ok: bool
    url: Optional[str] = None
    screenshot_ref: Optional[str] = None
    ms: int = 0
    error: Optional[str] = None
    step: Optional[str] = None


# =============================================================================
# CAPABILITY
# =============================================================================


class ScreenshotCapability(Protocol):
    """Headless browser rendering a page to PNG."""

    async def capture(self, url: str) -> bytes:
        ...


class HttpScreenshotCapability:
    """Browserless-style rendering service reached over HTTP.

    The request asks the service to wait for the body element, network
    idle and the disappearance of the form loading placeholder.
    """

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        wait_timeout_ms: int = 6000,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self._client = client
        self.wait_timeout_ms = wait_timeout_ms

    def build_payload(self, url: str) -> dict:
        return {
            "url": url,
            "options": {"fullPage": True, "type": "png"},
            "gotoOptions": {"waitUntil": "networkidle2"},
            "viewport": VIEWPORT,
            "userAgent": USER_AGENT,
            "waitForSelector": {"selector": "body", "timeout": 5000},
            "waitForFunction": {"fn": LOADING_PLACEHOLDER_FN, "timeout": self.wait_timeout_ms},
        }

    async def capture(self, url: str) -> bytes:
        """Render url and return PNG bytes.

        Raises:
            ScreenshotConfigError: If no service URL is configured.
            ScreenshotError: On transport errors or non-image responses.
        """
        if not self.base_url:
            raise ScreenshotConfigError("screenshot_service_missing")

        params = {"token": self.token} if self.token else None
        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(
                f"{self.base_url}/screenshot",
                json=self.build_payload(url),
                params=params,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ScreenshotError(f"Render request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("image/") or not response.content:
            raise ScreenshotError(f"Unexpected render response: {content_type or 'empty'}")
        return response.content


# =============================================================================
# SERVICE
# =============================================================================


def is_capturable_url(url: Optional[str], platform_domains: Iterable[str]) -> bool:
    """Only https URLs on allowlisted platform domains may be rendered."""
    if not url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme == "https" and host_matches(parts.hostname, platform_domains)


class LandingCaptureService:
    """Captures landing page screenshots for submissions."""

    def __init__(
        self,
        repo: SubmissionRepository,
        storage: LocalBlobStorage,
        capability: ScreenshotCapability,
        platform_domains: Iterable[str],
        bucket: str = "screenshots",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """Initialize the capture service.

        Args:
            repo: Submission repository.
            storage: Blob storage for the PNG.
            capability: Rendering service.
            platform_domains: Allowlisted domains.
            bucket: Bucket screenshots are stored in.
            timeout_seconds: Hard limit covering the whole render.
        """
        self.repo = repo
        self.storage = storage
        self.capability = capability
        self.platform_domains = list(platform_domains)
        self.bucket = bucket
        self.timeout_seconds = timeout_seconds

    async def capture_landing_page(self, submission_id: str, url: str) -> CaptureResult:
        """Render and store a landing page screenshot.

        Returns:
            CaptureResult; never raises.
        """
        context = PipelineContext(submission_id=submission_id, stage="screenshot")
        url = (url or "").strip()
        if not is_capturable_url(url, self.platform_domains):
            logger.warning("screenshot:invalid_url", context=context, url=url)
            return CaptureResult(ok=False, url=url, error="invalid_url", step="validate")

        start = time.monotonic()
        step = "pending"
        try:
            self.repo.update_fields(
                submission_id,
                landing_url=url,
                landing_render_status=RenderStatus.PENDING,
            )
            self.repo.add_comment(submission_id, f"landing_page: {url}", kind=CommentKind.LANDING_PAGE)

            step = "render"
            data = await asyncio.wait_for(
                self.capability.capture(url), timeout=self.timeout_seconds
            )

            step = "upload"
            key = f"{submission_id}-{int(time.time() * 1000)}.png"
            ref = self.storage.put(self.bucket, data, "image/png", key=key)

            self.repo.update_fields(
                submission_id,
                landing_url=url,
                landing_screenshot_url=ref,
                landing_render_status=RenderStatus.SUCCESS,
                landing_rendered_at=datetime.utcnow(),
            )
        except asyncio.TimeoutError:
            return self._fail(submission_id, url, context, "timeout", step, start)
        except (ScreenshotError, StorageError) as e:
            return self._fail(submission_id, url, context, str(e), step, start)
        except Exception as e:
            logger.error("screenshot:unexpected", context=context, exc_info=True, step=step)
            return self._fail(submission_id, url, context, str(e) or type(e).__name__, step, start)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info("screenshot:success", context=context, ref=ref, ms=elapsed_ms)
        return CaptureResult(ok=True, url=url, screenshot_ref=ref, ms=elapsed_ms)

    def _fail(
        self,
        submission_id: str,
        url: str,
        context: PipelineContext,
        error: str,
        step: str,
        start: float,
    ) -> CaptureResult:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.warning("screenshot:failed", context=context, error=error, step=step, ms=elapsed_ms)
        try:
            self.repo.update_fields(
                submission_id,
                landing_render_status=RenderStatus.FAILED,
                landing_rendered_at=datetime.utcnow(),
            )
        except Exception as e:
            logger.error("screenshot:status_write_failed", context=context, error=str(e))
        return CaptureResult(ok=False, url=url, ms=elapsed_ms, error=error, step=step)
