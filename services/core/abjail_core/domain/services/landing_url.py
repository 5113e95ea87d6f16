"""Landing URL extraction for fundraising messages.

Finds the donation page a message points at. Links on the payment
platform's domain are accepted directly; tracking/redirect links are
resolved with HEAD requests (redirects followed manually, bounded by hop
count and a per-hop timeout). Resolution fails open: any network problem
simply drops that candidate.

Usage:
    extractor = LandingUrlExtractor(config=IngestConfig())

    url = await extractor.extract_canonical_landing_url(text, html=html_body)
    # "https://secure.actblue.com/donate/xyz" (query stripped) or None
"""

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import unquote, urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup

from abjail_core.config import IngestConfig
from abjail_core.domain.services.text_normalizer import host_matches, strip_query

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

URL_CANDIDATE_RE = re.compile(r"(?:https?://|www\.)[^\s<>\"'()\[\]{}]+", re.IGNORECASE)
TRAILING_PUNCTUATION = ".,;:!?)]}'\"*>"
TRACKING_PATH_RE = re.compile(r"^/l/", re.IGNORECASE)
NESTED_URL_RE = re.compile(r"https?://[^&\s\"'<>]+", re.IGNORECASE)

MAX_RESOLVE_CANDIDATES = 10
REDIRECT_STATUSES = {301, 302, 303, 307, 308}


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class UrlClassification:
    """URLs found in a message, split by how they are handled."""

    direct: list[str] = field(default_factory=list)
    tracking: list[str] = field(default_factory=list)


# =============================================================================
# HELPERS
# =============================================================================


def clean_candidate(raw: str) -> str:
    """Trim trailing punctuation and add a scheme to bare www. links."""
    url = raw.strip().rstrip(TRAILING_PUNCTUATION)
    if url.lower().startswith("www."):
        url = "https://" + url
    return url


def find_urls(text: Optional[str], html: Optional[str] = None) -> list[str]:
    """Collect URL-shaped substrings from text and HTML href attributes.

    Order of first appearance is kept; repeated links are kept so that
    selection can count them.
    """
    urls: list[str] = []
    for match in URL_CANDIDATE_RE.finditer(text or ""):
        url = clean_candidate(match.group(0))
        if url:
            urls.append(url)

    if html:
        soup = BeautifulSoup(html, "html.parser")
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if href.lower().startswith(("http://", "https://", "www.")):
                urls.append(clean_candidate(href))
    return urls


def _host(url: str) -> Optional[str]:
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


def nested_platform_url(url: str, domains: Iterable[str]) -> Optional[str]:
    """Find a platform URL URL-encoded inside another link's query."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.query:
        return None
    decoded = unquote(parts.query)
    for match in NESTED_URL_RE.finditer(decoded):
        candidate = clean_candidate(match.group(0))
        if host_matches(_host(candidate), domains):
            return candidate
    return None


def select_landing_url(urls: Iterable[str]) -> Optional[str]:
    """Pick the canonical landing URL among resolved platform URLs.

    Groups by origin+path and picks the most frequent group. Ties go to
    the longer path, then to groups seen with a query string, then to the
    lexicographically smallest base.
    """
    counts: dict[str, int] = defaultdict(int)
    has_query: dict[str, bool] = defaultdict(bool)
    paths: dict[str, str] = {}

    for url in urls:
        try:
            parts = urlsplit(url)
        except ValueError:
            continue
        if not parts.scheme or not parts.netloc:
            continue
        base = f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}"
        counts[base] += 1
        has_query[base] = has_query[base] or bool(parts.query)
        paths[base] = parts.path

    if not counts:
        return None

    ranked = sorted(
        counts,
        key=lambda base: (
            -counts[base],
            -len(paths[base].rstrip("/")),
            not has_query[base],
            base,
        ),
    )
    return ranked[0]


# =============================================================================
# EXTRACTOR
# =============================================================================


class LandingUrlExtractor:
    """Extracts the canonical landing URL from message text and HTML."""

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the extractor.

        Args:
            config: Ingestion tunables (platform domains, tracking patterns).
            client: Optional HTTP client used for redirect resolution.
        """
        self.config = config or IngestConfig()
        self._client = client

    def classify_urls(self, urls: Iterable[str]) -> UrlClassification:
        """Split URLs into direct platform links and tracking candidates."""
        result = UrlClassification()
        domains = self.config.platform_domains

        for url in urls:
            if host_matches(_host(url), domains):
                result.direct.append(url)
                continue

            nested = nested_platform_url(url, domains)
            if nested:
                result.direct.append(nested)
                continue

            if self.is_tracking_url(url) and url not in result.tracking:
                result.tracking.append(url)

        return result

    def is_tracking_url(self, url: str) -> bool:
        lowered = url.lower()
        try:
            parts = urlsplit(lowered)
        except ValueError:
            return False
        # Opt-out keywords are matched outside the host (list-manage.com)
        tail = f"{parts.path}?{parts.query}"
        if any(keyword in tail for keyword in self.config.optout_keywords):
            return False
        if any(pattern in lowered for pattern in self.config.tracking_patterns):
            return True
        return bool(TRACKING_PATH_RE.match(parts.path))

    async def resolve_redirects(self, url: str) -> Optional[str]:
        """Follow Location headers until a platform URL is reached.

        Returns:
            The platform URL, or None on network failure, timeout,
            a non-platform destination, or hop exhaustion.
        """
        domains = self.config.platform_domains
        current = url
        client = self._client or httpx.AsyncClient()
        try:
            for _ in range(self.config.redirect_max_hops):
                try:
                    response = await client.head(
                        current,
                        follow_redirects=False,
                        timeout=self.config.redirect_hop_timeout,
                    )
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug(f"landing:resolve_failed url={current} error={e}")
                    return None

                location = response.headers.get("location")
                if response.status_code not in REDIRECT_STATUSES or not location:
                    return current if host_matches(_host(current), domains) else None

                current = urljoin(current, location)
                if host_matches(_host(current), domains):
                    return current

            logger.debug(f"landing:max_hops url={url} hops={self.config.redirect_max_hops}")
            return None
        finally:
            if self._client is None:
                await client.aclose()

    async def extract_canonical_landing_url(
        self,
        text: Optional[str],
        html: Optional[str] = None,
    ) -> Optional[str]:
        """Extract the canonical landing URL (query stripped).

        Args:
            text: Message text.
            html: Optional HTML body whose hrefs are also scanned.

        Returns:
            Canonical landing URL or None.
        """
        classified = self.classify_urls(find_urls(text, html))
        resolved: list[str] = list(classified.direct)

        candidates = classified.tracking[:MAX_RESOLVE_CANDIDATES]
        if candidates:
            outcomes = await asyncio.gather(
                *(self.resolve_redirects(url) for url in candidates),
                return_exceptions=True,
            )
            for candidate, outcome in zip(candidates, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(f"landing:resolve_error url={candidate} error={outcome}")
                elif outcome:
                    resolved.append(outcome)

        chosen = select_landing_url(resolved)
        return strip_query(chosen) if chosen else None
