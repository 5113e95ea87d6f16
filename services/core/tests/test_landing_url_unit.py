"""Unit tests for landing URL extraction."""

import httpx
import pytest

from abjail_core.config import IngestConfig
from abjail_core.domain.services.landing_url import (
    LandingUrlExtractor,
    clean_candidate,
    find_urls,
    nested_platform_url,
    select_landing_url,
)


def make_extractor(handler, **config) -> LandingUrlExtractor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LandingUrlExtractor(config=IngestConfig(**config), client=client)


class TestFindUrls:
    def test_text_and_html(self):
        text = "Give here: https://secure.actblue.com/donate/a. Or www.example.org/x!"
        html = '<a href="https://secure.actblue.com/donate/b">b</a><a href="mailto:x@y">m</a>'

        assert find_urls(text, html) == [
            "https://secure.actblue.com/donate/a",
            "https://www.example.org/x",
            "https://secure.actblue.com/donate/b",
        ]

    def test_repeats_are_kept(self):
        text = "https://a.example/x and again https://a.example/x"
        assert len(find_urls(text)) == 2

    def test_clean_candidate(self):
        assert clean_candidate("https://x.example/a),") == "https://x.example/a"


class TestClassification:
    def test_direct_tracking_and_ignored(self):
        extractor = LandingUrlExtractor(IngestConfig())
        result = extractor.classify_urls(
            [
                "https://secure.actblue.com/donate/a",
                "https://bit.ly/3abc",
                "https://click.mail.example.org/ls/xyz",
                "https://news.example/story",
                "https://links.example.org/unsubscribe?id=1",
            ]
        )

        assert result.direct == ["https://secure.actblue.com/donate/a"]
        assert result.tracking == [
            "https://bit.ly/3abc",
            "https://click.mail.example.org/ls/xyz",
        ]

    def test_mailchimp_host_is_tracking(self):
        extractor = LandingUrlExtractor(IngestConfig())
        assert extractor.is_tracking_url("https://team.us1.list-manage.com/track/click?u=1")

    def test_l_path_is_tracking(self):
        extractor = LandingUrlExtractor(IngestConfig())
        assert extractor.is_tracking_url("https://go.example.org/l/abc")

    def test_nested_platform_url(self):
        url = "https://t.example/r?u=https%3A%2F%2Fsecure.actblue.com%2Fdonate%2Fx%3Frefcode%3D1&z=2"
        assert nested_platform_url(url, ["actblue.com"]) == (
            "https://secure.actblue.com/donate/x?refcode=1"
        )

    def test_nested_ignores_lookalikes(self):
        url = "https://t.example/r?u=https%3A%2F%2Factblue.com.evil.example%2Fx"
        assert nested_platform_url(url, ["actblue.com"]) is None


class TestSelectLandingUrl:
    def test_most_frequent_wins(self):
        chosen = select_landing_url(
            [
                "https://secure.actblue.com/donate/a",
                "https://secure.actblue.com/donate/b?refcode=1",
                "https://secure.actblue.com/donate/b?refcode=2",
            ]
        )
        assert chosen == "https://secure.actblue.com/donate/b"

    def test_longer_path_breaks_tie(self):
        chosen = select_landing_url(
            ["https://secure.actblue.com/donate", "https://secure.actblue.com/donate/longer"]
        )
        assert chosen == "https://secure.actblue.com/donate/longer"

    def test_query_breaks_tie(self):
        chosen = select_landing_url(
            ["https://secure.actblue.com/donate/aa", "https://secure.actblue.com/donate/bb?x=1"]
        )
        assert chosen == "https://secure.actblue.com/donate/bb"

    def test_lexicographic_last_resort(self):
        chosen = select_landing_url(
            ["https://secure.actblue.com/donate/bb", "https://secure.actblue.com/donate/aa"]
        )
        assert chosen == "https://secure.actblue.com/donate/aa"

    def test_empty(self):
        assert select_landing_url([]) is None


class TestResolveRedirects:
    async def test_follows_to_platform(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "HEAD"
            if request.url.host == "bit.ly":
                return httpx.Response(301, headers={"location": "https://click.example.org/next"})
            return httpx.Response(
                302, headers={"location": "https://secure.actblue.com/donate/z?refcode=t"}
            )

        extractor = make_extractor(handler)
        resolved = await extractor.resolve_redirects("https://bit.ly/3abc")

        assert resolved == "https://secure.actblue.com/donate/z?refcode=t"

    async def test_relative_location(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/start":
                return httpx.Response(302, headers={"location": "/donate/rel"})
            return httpx.Response(200)

        extractor = make_extractor(handler, platform_domains=["actblue.com"])
        resolved = await extractor.resolve_redirects("https://secure.actblue.com/start")

        assert resolved == "https://secure.actblue.com/donate/rel"

    async def test_non_platform_destination(self):
        extractor = make_extractor(lambda request: httpx.Response(200))
        assert await extractor.resolve_redirects("https://bit.ly/x") is None

    async def test_hop_exhaustion(self):
        def handler(request: httpx.Request) -> httpx.Response:
            hop = int(request.url.path.strip("/") or 0)
            return httpx.Response(302, headers={"location": f"https://bit.ly/{hop + 1}"})

        extractor = make_extractor(handler, redirect_max_hops=3)
        assert await extractor.resolve_redirects("https://bit.ly/0") is None

    async def test_network_error_fails_open(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("slow", request=request)

        extractor = make_extractor(handler)
        assert await extractor.resolve_redirects("https://bit.ly/x") is None


class TestExtractCanonicalLandingUrl:
    async def test_resolved_tracking_link_counts(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                302, headers={"location": "https://secure.actblue.com/donate/main?refcode=x"}
            )

        extractor = make_extractor(handler)
        text = (
            "Give https://secure.actblue.com/donate/other and "
            "https://bit.ly/1 and https://bit.ly/2"
        )

        assert await extractor.extract_canonical_landing_url(text) == (
            "https://secure.actblue.com/donate/main"
        )

    async def test_no_urls(self):
        extractor = make_extractor(lambda request: httpx.Response(200))
        assert await extractor.extract_canonical_landing_url("Chip in today") is None

    @pytest.mark.parametrize("text", [None, ""])
    async def test_empty_input(self, text):
        extractor = make_extractor(lambda request: httpx.Response(200))
        assert await extractor.extract_canonical_landing_url(text) is None
