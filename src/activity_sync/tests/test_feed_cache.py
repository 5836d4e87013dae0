"""Tests for the feed cache — TTL freshness, revalidation, and the merged digest."""

from __future__ import annotations

import httpx
import pytest

from src.activity_sync.config_loader import FeedSource
from src.activity_sync.errors import ParseError, TransientError
from src.activity_sync.feeds.cache import FeedCache, canonical_link, feed_item_key
from src.activity_sync.feeds.parser import FeedItem
from src.activity_sync.tests.conftest import ALPHA_FEED, BETA_FEED, utc

BROKEN_FEED = FeedSource(id="broken", label="Broken", url="https://broken.example.com/rss")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeFeedServer:
    """Serves fixed bodies per URL and honours If-None-Match."""

    def __init__(self, bodies: dict[str, bytes]) -> None:
        self.bodies = dict(bodies)
        self.etags = {url: f'"v1-{i}"' for i, url in enumerate(bodies)}
        self.status: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.status:
            return httpx.Response(self.status[url])
        if request.headers.get("If-None-Match") == self.etags[url]:
            return httpx.Response(304)
        return httpx.Response(
            200,
            content=self.bodies[url],
            headers={
                "ETag": self.etags[url],
                "Last-Modified": "Wed, 25 Feb 2026 13:30:00 GMT",
                "Content-Type": "application/rss+xml",
            },
        )

    def publish(self, url: str, body: bytes) -> None:
        self.bodies[url] = body
        self.etags[url] = self.etags[url].replace("v1", "v2")

    def requests_for(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]


@pytest.fixture
def server(rss_xml: bytes, atom_xml: bytes) -> FakeFeedServer:
    return FakeFeedServer({ALPHA_FEED.url: rss_xml, BETA_FEED.url: atom_xml, BROKEN_FEED.url: b"<rss><oops"})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(server: FakeFeedServer, clock: FakeClock) -> FeedCache:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return FeedCache(client, ttl_seconds=900, clock=clock, user_agent="activity-sync-test")


# ---------------------------------------------------------------------------
# Single-feed freshness
# ---------------------------------------------------------------------------


class TestFeedFreshness:
    @pytest.mark.asyncio
    async def test_within_ttl_single_request_equal_items(
        self, cache: FeedCache, server: FakeFeedServer, clock: FakeClock
    ) -> None:
        first = await cache.get(ALPHA_FEED)
        clock.now += 899
        second = await cache.get(ALPHA_FEED)

        assert first == second
        assert len(server.requests_for(ALPHA_FEED.url)) == 1
        assert server.requests[0].headers["User-Agent"] == "activity-sync-test"

    @pytest.mark.asyncio
    async def test_stale_entry_revalidates_with_validators(
        self, cache: FeedCache, server: FakeFeedServer, clock: FakeClock
    ) -> None:
        await cache.get(ALPHA_FEED)
        clock.now += 900
        await cache.get(ALPHA_FEED)

        revalidation = server.requests_for(ALPHA_FEED.url)[1]
        assert revalidation.headers["If-None-Match"] == server.etags[ALPHA_FEED.url]
        assert revalidation.headers["If-Modified-Since"] == "Wed, 25 Feb 2026 13:30:00 GMT"

    @pytest.mark.asyncio
    async def test_304_keeps_items_and_refreshes_fetched_at(
        self, cache: FeedCache, server: FakeFeedServer, clock: FakeClock
    ) -> None:
        first = await cache.get(ALPHA_FEED)
        clock.now += 1000
        revalidated = await cache.get(ALPHA_FEED)

        assert revalidated == first
        assert cache.entry(ALPHA_FEED.url).fetched_at == clock.now

        clock.now += 10
        await cache.get(ALPHA_FEED)
        assert len(server.requests_for(ALPHA_FEED.url)) == 2

    @pytest.mark.asyncio
    async def test_200_replaces_items_and_validators(
        self, cache: FeedCache, server: FakeFeedServer, clock: FakeClock, atom_xml: bytes
    ) -> None:
        await cache.get(ALPHA_FEED)
        server.publish(ALPHA_FEED.url, atom_xml)
        clock.now += 901

        items = await cache.get(ALPHA_FEED)

        assert [i.title for i in items][-1] == "Beta launches AI agent"
        assert cache.entry(ALPHA_FEED.url).etag == server.etags[ALPHA_FEED.url]

    @pytest.mark.asyncio
    async def test_malformed_feed_raises_parse_error(self, cache: FeedCache) -> None:
        with pytest.raises(ParseError):
            await cache.get(BROKEN_FEED)

    @pytest.mark.asyncio
    async def test_upstream_error_raises_transient(self, cache: FeedCache, server: FakeFeedServer) -> None:
        server.status[ALPHA_FEED.url] = 502
        with pytest.raises(TransientError):
            await cache.get(ALPHA_FEED)


# ---------------------------------------------------------------------------
# Multi-feed digest
# ---------------------------------------------------------------------------


class TestFeedDigest:
    @pytest.mark.asyncio
    async def test_merged_deduplicated_newest_first(self, cache: FeedCache) -> None:
        digest = await cache.get_many([ALPHA_FEED, BETA_FEED], limit=50)

        assert [i.title for i in digest.items] == [
            "Beta launches AI agent",
            "Markets open higher",
            "Acme raises $20M Series A",
            "Weekly digest",
        ]
        # the syndicated Acme copy in the Atom feed is the same article
        assert digest.items[2].feed_id == "alpha"
        assert digest.failed == []

    @pytest.mark.asyncio
    async def test_limit_truncates(self, cache: FeedCache) -> None:
        digest = await cache.get_many([ALPHA_FEED, BETA_FEED], limit=2)
        assert [i.title for i in digest.items] == ["Beta launches AI agent", "Markets open higher"]

    @pytest.mark.asyncio
    async def test_keyword_filter(self, cache: FeedCache) -> None:
        digest = await cache.get_many([ALPHA_FEED, BETA_FEED], limit=50, keywords=["funding"])
        assert [i.title for i in digest.items] == ["Acme raises $20M Series A"]

    @pytest.mark.asyncio
    async def test_failed_feed_reported_others_kept(
        self, cache: FeedCache, server: FakeFeedServer
    ) -> None:
        server.status[BETA_FEED.url] = 500
        digest = await cache.get_many([ALPHA_FEED, BETA_FEED, BROKEN_FEED], limit=50)

        assert digest.failed == ["beta", "broken"]
        assert len(digest.items) == 3

    @pytest.mark.asyncio
    async def test_repeated_digest_served_from_cache(
        self, cache: FeedCache, server: FakeFeedServer
    ) -> None:
        await cache.get_many([ALPHA_FEED, BETA_FEED], limit=50)
        await cache.get_many([ALPHA_FEED, BETA_FEED], limit=50)
        assert len(server.requests) == 2


class TestDedupKeys:
    def test_canonical_link(self) -> None:
        assert canonical_link("https://WWW.Alpha-News.com/acme/?utm_source=rss&id=7#top") == (
            "https://alpha-news.com/acme?id=7"
        )

    def test_link_key_ignores_tracking(self) -> None:
        a = FeedItem(title="A", link="https://x.com/a?utm_medium=feed")
        b = FeedItem(title="A (updated)", link="https://x.com/a")
        assert feed_item_key(a) == feed_item_key(b)

    def test_fallback_key_without_link(self) -> None:
        item = FeedItem(title="Weekly Digest ", link="", source="Alpha News", published_at=utc(2026, 2, 20, 8))
        assert feed_item_key(item) == "weekly digest|Alpha News|2026-02-20T08:00:00+00:00"
